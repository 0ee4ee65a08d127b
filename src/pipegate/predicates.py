# predicates.py
"""
Conditions for jobs and steps (the `if:` of a workflow).

A predicate is any callable taking a `Scope` and returning a bool. The
helpers below cover the equality checks workflows actually use and carry a
readable repr so skipped jobs/steps can say why.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from .trigger import TriggerContext


@dataclass(frozen=True)
class Scope:
    matrix: Mapping[str, str] = field(default_factory=dict)
    trigger: Optional["TriggerContext"] = None
    is_primary: bool = False


Predicate = Callable[[Scope], bool]


@dataclass(frozen=True)
class MatrixIs:
    values: Tuple[Tuple[str, str], ...]

    def __call__(self, scope: Scope) -> bool:
        return all(scope.matrix.get(axis) == value for axis, value in self.values)

    def __repr__(self) -> str:
        return " && ".join(f"matrix.{a} == {v!r}" for a, v in self.values)


@dataclass(frozen=True)
class EventIs:
    kind: str

    def __call__(self, scope: Scope) -> bool:
        return scope.trigger is not None and scope.trigger.event == self.kind

    def __repr__(self) -> str:
        return f"event == {self.kind!r}"


@dataclass(frozen=True)
class BranchIs:
    branch: str

    def __call__(self, scope: Scope) -> bool:
        return scope.trigger is not None and scope.trigger.target_branch == self.branch

    def __repr__(self) -> str:
        return f"branch == {self.branch!r}"


@dataclass(frozen=True)
class AllOf:
    parts: Tuple[Predicate, ...]

    def __call__(self, scope: Scope) -> bool:
        return all(p(scope) for p in self.parts)

    def __repr__(self) -> str:
        return " && ".join(repr(p) for p in self.parts) or "true"


def matrix_is(**values: Any) -> MatrixIs:
    """matrix_is(os="ubuntu-latest", python="3.9")"""
    return MatrixIs(tuple((k, str(v)) for k, v in values.items()))


def event_is(kind: str, branch: str | None = None) -> Predicate:
    if branch is None:
        return EventIs(kind)
    return AllOf((EventIs(kind), BranchIs(branch)))


def all_of(*parts: Predicate) -> AllOf:
    return AllOf(tuple(parts))


def from_mapping(clauses: Mapping[str, Any]) -> Predicate:
    """
    Build a predicate from a YAML `if:` mapping.

    Keys are `matrix.<axis>`, `event` or `branch`; every clause must hold.
    """
    matrix: Dict[str, str] = {}
    parts = []
    for key, value in clauses.items():
        if key.startswith("matrix."):
            matrix[key[len("matrix."):]] = str(value)
        elif key == "event":
            parts.append(EventIs(str(value)))
        elif key == "branch":
            parts.append(BranchIs(str(value)))
        else:
            raise ValueError(f"Unsupported condition key {key!r} (use matrix.<axis>, event or branch)")
    if matrix:
        parts.insert(0, MatrixIs(tuple(matrix.items())))
    if len(parts) == 1:
        return parts[0]
    return AllOf(tuple(parts))
