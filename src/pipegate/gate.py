# gate.py
"""
Authorization for terminal actions (publishing).

A gate is the conjunction of three clauses, checked in this order:

    event == gate.event
    target branch == gate.branch
    every named job group terminal-succeeded

Evaluation is side-effect free and only legal once the run is terminal;
the caller decides what to do with the decision. A denied gate is a normal
outcome, not an error.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import GateError
from .model import InstanceState
from .trigger import TriggerContext


@dataclass(frozen=True)
class Gate:
    event: Optional[str] = "push"
    branch: Optional[str] = None
    groups: Tuple[str, ...] = ()

    def with_groups(self, groups: Iterable[str]) -> "Gate":
        merged = list(self.groups)
        for g in groups:
            if g not in merged:
                merged.append(g)
        return Gate(event=self.event, branch=self.branch, groups=tuple(merged))

    def describe(self) -> str:
        parts: List[str] = []
        if self.event is not None:
            parts.append(f"event == {self.event!r}")
        if self.branch is not None:
            parts.append(f"branch == {self.branch!r}")
        if self.groups:
            parts.append(f"succeeded({', '.join(self.groups)})")
        return " && ".join(parts) or "true"


@dataclass(frozen=True)
class GateDecision:
    authorized: bool
    unmet: Optional[str] = None

    @property
    def label(self) -> str:
        return "authorized" if self.authorized else "denied"


def group_outcome(states: Iterable[InstanceState]) -> InstanceState:
    """
    Fold instance states into one group state.

    failed beats skipped beats anything unfinished; only a group whose
    instances all succeeded is succeeded. An empty group is not succeeded.
    """
    states = list(states)
    if not states:
        return InstanceState.PENDING
    if any(s is InstanceState.FAILED for s in states):
        return InstanceState.FAILED
    if any(s is InstanceState.SKIPPED for s in states):
        return InstanceState.SKIPPED
    if all(s is InstanceState.SUCCEEDED for s in states):
        return InstanceState.SUCCEEDED
    return InstanceState.RUNNING


def evaluate_gate(
    gate: Gate,
    trigger: TriggerContext,
    outcomes: Mapping[str, InstanceState],
    *,
    terminal: bool = True,
) -> GateDecision:
    """
    Decide whether the protected action may run.

    `outcomes` maps group (template) names to their folded state, see
    `group_outcome`. Raises GateError when `terminal` is False: a gate
    never looks at a partially finished run.
    """
    if not terminal:
        raise GateError("gate evaluated before the run reached a terminal state")

    if gate.event is not None and trigger.event != gate.event:
        return GateDecision(False, f"event is {trigger.event!r}, requires {gate.event!r}")

    if gate.branch is not None and trigger.target_branch != gate.branch:
        return GateDecision(False, f"branch is {trigger.target_branch!r}, requires {gate.branch!r}")

    for group in gate.groups:
        state = outcomes.get(group)
        if state is not InstanceState.SUCCEEDED:
            shown = state.value if state is not None else "unknown"
            return GateDecision(False, f"job group {group!r} is {shown}, requires succeeded")

    return GateDecision(True)


def group_outcomes(states: Mapping[str, InstanceState], members: Mapping[str, List[str]]) -> Dict[str, InstanceState]:
    """Fold a per-instance state table into per-group outcomes."""
    return {group: group_outcome(states[i] for i in ids) for group, ids in members.items()}
