# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from .dsl import download_artifact, gate, job, sh, upload_artifact
from .errors import DefinitionError
from .model import JobTemplate, Pipeline, Step
from .predicates import from_mapping
from .schema import JobSpec, PipelineSpec, StepSpec
from .trigger import TriggerPolicy


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a `.py` or `.yml`/`.yaml` file.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise DefinitionError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix == ".py":
        return load_python_workflow(wf_path)
    if wf_path.suffix in (".yml", ".yaml"):
        return load_yaml_workflow(wf_path)
    raise DefinitionError(f"Workflow must be a .py, .yml or .yaml file, got: {wf_path.name}")


def load_python_workflow(wf_path: Path) -> Pipeline:
    """
    The file must define one of:
      - workflow() -> Pipeline | List[JobTemplate]
      - PIPELINE = Pipeline(...)
      - JOBS = [JobTemplate, ...]
    """
    module_name = f"pipegate_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    found: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            found = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise DefinitionError(
                    "Your workflow() is being called with arguments (name collision with a helper). "
                    "Use the 'wf' helper instead: `from pipegate import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "PIPELINE" in globals_dict:
        found = globals_dict["PIPELINE"]
    elif "JOBS" in globals_dict:
        found = globals_dict["JOBS"]

    if isinstance(found, Pipeline):
        return found
    if isinstance(found, list) and all(isinstance(j, JobTemplate) for j in found):
        return Pipeline(name=wf_path.stem, jobs=found)

    raise DefinitionError(
        "Workflow must return/define a Pipeline or a List[JobTemplate]. "
        "Define workflow(), PIPELINE = pipeline(...) or JOBS = [job(...), ...]."
    )


def load_yaml_workflow(wf_path: Path) -> Pipeline:
    try:
        data = yaml.safe_load(wf_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise DefinitionError(f"Invalid YAML in {wf_path.name}: {e}") from e
    if not isinstance(data, dict):
        raise DefinitionError(f"{wf_path.name}: top level must be a mapping")
    data.setdefault("name", wf_path.stem)
    return pipeline_from_dict(data)


# ----------------------------------------------------------------------
# dict -> Pipeline
# ----------------------------------------------------------------------

def pipeline_from_dict(data: Dict[str, Any]) -> Pipeline:
    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as the boolean True
    if True in data:
        data["on"] = data.pop(True)

    try:
        spec = PipelineSpec.model_validate(data)
    except ValidationError as e:
        raise DefinitionError(f"Invalid workflow definition:\n{e}") from e

    policy: Optional[TriggerPolicy] = None
    if spec.on is not None:
        policy = TriggerPolicy({kind: tuple(rule.branches) for kind, rule in spec.on.items()})

    jobs = [_job_from_spec(name, js) for name, js in spec.jobs.items()]
    return Pipeline(name=spec.name, jobs=jobs, triggers=policy)


def _job_from_spec(name: str, js: JobSpec) -> JobTemplate:
    try:
        when = from_mapping(js.if_) if js.if_ else None
    except ValueError as e:
        raise DefinitionError(f"job {name!r}: {e}") from e

    return job(
        name,
        steps_list=[_step_from_spec(name, s) for s in js.steps],
        needs=js.needs,
        matrix=js.matrix,
        primary=js.primary,
        when=when,
        gate=gate(js.gate.event, js.gate.branch, js.gate.needs) if js.gate else None,
        max_parallel=js.max_parallel,
        env=js.env,
    )


def _step_from_spec(job_name: str, ss: StepSpec) -> Step:
    try:
        when = from_mapping(ss.if_) if ss.if_ else None
    except ValueError as e:
        raise DefinitionError(f"job {job_name!r} step {ss.name!r}: {e}") from e

    if ss.upload is not None:
        return upload_artifact(ss.name, ss.upload.name, *ss.upload.paths, when=when, primary_only=ss.primary_only)
    if ss.download is not None:
        if ss.primary_only:
            raise DefinitionError(f"job {job_name!r} step {ss.name!r}: primary-only applies to run/upload steps")
        return download_artifact(
            ss.name,
            ss.download.name,
            ss.download.path,
            merge=ss.download.merge,
            coordinate=ss.download.coordinate,
            when=when,
        )
    return sh(ss.name, ss.run, cwd=ss.cwd, when=when, primary_only=ss.primary_only, timeout=ss.timeout)
