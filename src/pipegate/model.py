# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple, Union

from .errors import TransitionError
from .predicates import Predicate

if TYPE_CHECKING:
    from .context import StepContext
    from .gate import Gate
    from .trigger import TriggerPolicy


# A step action is either a shell command or a callable taking the step context.
# Callables signal failure by returning False / a non-zero int, or by raising.
StepFn = Callable[["StepContext"], Any]

# Ordered (axis, value) pairs; empty for templates without a matrix.
Coordinate = Tuple[Tuple[str, str], ...]


@dataclass(frozen=True)
class Step:
    """A single action (step) inside a job."""
    name: str
    run: Union[str, StepFn]
    cwd: str | None = None
    when: Optional[Predicate] = None
    primary_only: bool = False
    timeout: float | None = None

    @property
    def is_shell(self) -> bool:
        return isinstance(self.run, str)

    def describe(self) -> str:
        if self.is_shell:
            return self.run
        return getattr(self.run, "description", None) or getattr(self.run, "__name__", repr(self.run))


@dataclass
class JobTemplate:
    """
    A declared unit of work before matrix expansion.

    `needs` names other templates; a needed template with a matrix is only
    satisfied once every one of its instances has succeeded.

    `primary` pins the designated coordinate of a matrix (the instance that
    produces the canonical artifact). Steps marked `primary_only` run there
    and nowhere else.

    A template with a `gate` is a terminal action: it is held back until the
    rest of the run is terminal and only runs when the gate authorizes it.
    """
    name: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    matrix: Dict[str, List[str]] = field(default_factory=dict)
    primary: Optional[Dict[str, str]] = None
    condition: Optional[Predicate] = None
    gate: Optional["Gate"] = None
    max_parallel: Optional[int] = None
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def is_terminal_action(self) -> bool:
        return self.gate is not None


@dataclass(frozen=True)
class JobInstance:
    """One schedulable execution of a template at a fixed matrix coordinate."""
    template: str
    coordinate: Coordinate = ()
    is_primary: bool = False

    @property
    def id(self) -> str:
        if not self.coordinate:
            return self.template
        return f"{self.template}[{coordinate_label(self.coordinate)}]"

    @property
    def matrix(self) -> Dict[str, str]:
        return dict(self.coordinate)

    def __str__(self) -> str:
        return self.id


def coordinate_label(coordinate: Coordinate) -> str:
    return ",".join(value for _axis, value in coordinate)


def template_of(instance_id: str) -> str:
    """`build[linux,3.9]` -> `build`."""
    return instance_id.split("[", 1)[0]


class InstanceState(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (InstanceState.SUCCEEDED, InstanceState.FAILED, InstanceState.SKIPPED)


_TRANSITIONS: Dict[InstanceState, Tuple[InstanceState, ...]] = {
    InstanceState.PENDING: (InstanceState.BLOCKED, InstanceState.READY, InstanceState.SKIPPED),
    InstanceState.BLOCKED: (InstanceState.READY, InstanceState.SKIPPED),
    InstanceState.READY: (InstanceState.RUNNING, InstanceState.SKIPPED),
    InstanceState.RUNNING: (InstanceState.SUCCEEDED, InstanceState.FAILED),
}


def check_transition(instance: str, current: InstanceState, target: InstanceState) -> None:
    if target not in _TRANSITIONS.get(current, ()):
        raise TransitionError(instance, current.value, target.value)


@dataclass
class Pipeline:
    """A named set of job templates plus the events that trigger it."""
    name: str
    jobs: List[JobTemplate]
    triggers: Optional["TriggerPolicy"] = None

    def job(self, name: str) -> JobTemplate:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)
