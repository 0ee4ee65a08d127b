# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class PipelineError(Exception):
    """Base class for everything pipegate raises on purpose."""


# ----------------------------------------------------------------------
# Structural errors (raised before any job runs)
# ----------------------------------------------------------------------

class GraphError(PipelineError):
    """The job graph cannot be built or ordered."""


class DuplicateJob(GraphError):
    def __init__(self, names: List[str]):
        self.names = names
        super().__init__(f"Duplicate job names found: {names}")


class UnknownDependency(GraphError):
    def __init__(self, job: str, missing: str, known: List[str]):
        self.job = job
        self.missing = missing
        super().__init__(
            f"Job '{job}' needs missing job '{missing}'. Known jobs: {known}"
        )


class CycleError(GraphError):
    def __init__(self, stuck: List[str]):
        self.stuck = stuck
        super().__init__(f"DAG has a cycle. Stuck nodes: {stuck}")


class ExpansionError(PipelineError):
    """A matrix cannot be expanded into instances."""


class EmptyAxis(ExpansionError):
    def __init__(self, job: str, axis: str):
        self.job = job
        self.axis = axis
        super().__init__(f"Job '{job}' matrix axis '{axis}' has no values")


class DefinitionError(PipelineError):
    """A workflow file could not be loaded or validated."""


# ----------------------------------------------------------------------
# Trigger / gate
# ----------------------------------------------------------------------

class UnsupportedEvent(PipelineError):
    def __init__(self, kind: str, branch: Optional[str]):
        self.kind = kind
        self.branch = branch
        super().__init__(f"Event '{kind}' on branch '{branch}' does not trigger this pipeline")


class GateError(PipelineError):
    """A gate was evaluated while the run still had non-terminal instances."""


# ----------------------------------------------------------------------
# Runtime errors (contained to one instance)
# ----------------------------------------------------------------------

class TransitionError(PipelineError):
    def __init__(self, instance: str, current: str, target: str):
        super().__init__(f"[{instance}] illegal transition {current} -> {target}")


@dataclass
class StepFailure(PipelineError):
    """
    A step reported failure. Carries enough context for a clean CLI line
    without a traceback.
    """
    job: str
    step: str
    cmd: str
    exit_code: Optional[int]
    output: str = field(default="", repr=False)

    def __str__(self) -> str:
        code = "timeout" if self.exit_code is None else f"exit={self.exit_code}"
        return f"[{self.job}] step '{self.step}' failed ({code}): {self.cmd}"


class ArtifactError(PipelineError):
    """Base for artifact store failures."""


class DuplicateArtifact(ArtifactError):
    def __init__(self, name: str, producer: str, existing: str):
        self.name = name
        self.producer = producer
        self.existing = existing
        super().__init__(
            f"Artifact '{name}' from '{producer}' conflicts with existing producer '{existing}'"
        )


class NotFound(ArtifactError):
    def __init__(self, name: str, coordinate: Optional[str] = None):
        self.name = name
        self.coordinate = coordinate
        where = f" at {coordinate}" if coordinate else ""
        super().__init__(f"Artifact '{name}'{where} not found")


class AmbiguousProducer(ArtifactError):
    def __init__(self, name: str, producers: List[str]):
        self.name = name
        self.producers = producers
        super().__init__(
            f"Artifact '{name}' was produced by {len(producers)} instances {producers}; "
            "pass a coordinate or collect() them"
        )
