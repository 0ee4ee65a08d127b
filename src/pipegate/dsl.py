# src/pipegate/dsl.py
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .context import StepContext
from .gate import Gate
from .model import JobTemplate, Pipeline, Step, StepFn
from .predicates import Predicate
from .trigger import TriggerPolicy


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    when: Optional[Predicate] = None,
    primary_only: bool = False,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, when=when, primary_only=primary_only, timeout=timeout)


def call(
    name: str,
    fn: StepFn,
    *,
    when: Optional[Predicate] = None,
    primary_only: bool = False,
) -> Step:
    """Create a step that calls `fn(ctx)` in-process."""
    return Step(name=name, run=fn, when=when, primary_only=primary_only)


@dataclass(frozen=True)
class UploadArtifact:
    artifact: str
    paths: Tuple[str, ...]

    @property
    def description(self) -> str:
        return f"upload-artifact {self.artifact} <- {', '.join(self.paths)}"

    def __call__(self, ctx: StepContext) -> None:
        ctx.upload(self.artifact, *self.paths)


@dataclass(frozen=True)
class DownloadArtifact:
    artifact: str
    dest: str = "."
    merge: bool = False
    coordinate: Tuple[Tuple[str, str], ...] = ()

    @property
    def description(self) -> str:
        return f"download-artifact {self.artifact} -> {self.dest}"

    def __call__(self, ctx: StepContext) -> None:
        ctx.download(
            self.artifact,
            self.dest,
            coordinate=self.coordinate or None,
            merge=self.merge,
        )


def upload_artifact(
    name: str,
    artifact: str,
    *paths: str,
    when: Optional[Predicate] = None,
    primary_only: bool = False,
) -> Step:
    """Store files (paths / dirs / globs under the workdir) as `artifact`."""
    if not paths:
        raise ValueError(f"upload_artifact({name!r}) needs at least one path")
    return Step(name=name, run=UploadArtifact(artifact, tuple(paths)), when=when, primary_only=primary_only)


def download_artifact(
    name: str,
    artifact: str,
    dest: str = ".",
    *,
    merge: bool = False,
    coordinate: Optional[Mapping[str, Any]] = None,
    when: Optional[Predicate] = None,
) -> Step:
    """
    Write `artifact` into `dest`. A matrix producer needs either
    `coordinate=` (one instance) or `merge=True` (all of them).
    """
    coord = tuple((k, str(v)) for k, v in (coordinate or {}).items())
    return Step(name=name, run=DownloadArtifact(artifact, dest, merge, coord), when=when)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def _normalize_matrix(matrix: Optional[Mapping[str, Iterable[Any]]]) -> Dict[str, List[str]]:
    return {axis: [str(v) for v in values] for axis, values in (matrix or {}).items()}


def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    matrix: Optional[Mapping[str, Iterable[Any]]] = None,
    primary: Optional[Mapping[str, Any]] = None,
    when: Optional[Predicate] = None,
    gate: Optional[Gate] = None,
    max_parallel: Optional[int] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to shell steps missing cwd
) -> JobTemplate:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None or not s.is_shell else replace(s, cwd=cwd) for s in steps_final]

    return JobTemplate(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        matrix=_normalize_matrix(matrix),
        primary={k: str(v) for k, v in primary.items()} if primary is not None else None,
        condition=when,
        gate=gate,
        max_parallel=max_parallel,
        env={k: str(v) for k, v in (env or {}).items()},
    )


def gate(event: Optional[str] = "push", branch: Optional[str] = None, needs: Sequence[str] = ()) -> Gate:
    """
    Gate for a terminal action. The job's own `needs` are always added to
    the groups that must have succeeded.
    """
    return Gate(event=event, branch=branch, groups=tuple(needs))


def triggers(**rules: Sequence[str]) -> TriggerPolicy:
    """triggers(push=["master", "release"], pull_request=["master"])"""
    return TriggerPolicy({kind: tuple(branches) for kind, branches in rules.items()})


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._matrix: dict[str, list[str]] = {}
        self._primary: Optional[dict[str, str]] = None
        self._when: Optional[Predicate] = None
        self._gate: Optional[Gate] = None
        self._max_parallel: Optional[int] = None
        self._env: dict[str, str] = {}

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def add_step(self, step: Step):
        self._steps.append(step)
        return self

    def axis(self, name: str, *values: Any):
        self._matrix[name] = [str(v) for v in values]
        return self

    def primary(self, **coordinate: Any):
        self._primary = {k: str(v) for k, v in coordinate.items()}
        return self

    def when(self, predicate: Predicate):
        self._when = predicate
        return self

    def gated_by(self, event: Optional[str] = "push", branch: Optional[str] = None, *groups: str):
        self._gate = gate(event, branch, groups)
        return self

    def max_parallel(self, n: int):
        self._max_parallel = n
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def build(self) -> JobTemplate:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return JobTemplate(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            matrix=dict(self._matrix),
            primary=self._primary,
            condition=self._when,
            gate=self._gate,
            max_parallel=self._max_parallel,
            env=dict(self._env),
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helpers (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: JobTemplate) -> List[JobTemplate]:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

    Users can write:
        from pipegate import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    return list(jobs)


def pipeline(name: str, *jobs: JobTemplate, on: Optional[TriggerPolicy] = None) -> Pipeline:
    return Pipeline(name=name, jobs=list(jobs), triggers=on)
