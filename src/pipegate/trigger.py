# trigger.py
"""
Decides whether an incoming event activates a pipeline run, and under
which context. Pure functions of the event record; nothing here touches
the repository.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from .errors import UnsupportedEvent

PUSH = "push"
PULL_REQUEST = "pull_request"

_HEADS = "refs/heads/"


def branch_from_ref(ref: Optional[str]) -> Optional[str]:
    """`refs/heads/release` -> `release`; plain branch names pass through."""
    if not ref:
        return None
    if ref.startswith(_HEADS):
        return ref[len(_HEADS):]
    return ref


@dataclass(frozen=True)
class TriggerEvent:
    """
    Raw event record.

    push:          `ref` (or `branch`) is the pushed branch.
    pull_request:  `base_ref` is the target branch, `head_ref` the source.
    """
    kind: str
    ref: Optional[str] = None
    branch: Optional[str] = None
    base_ref: Optional[str] = None
    head_ref: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TriggerEvent":
        """Build the event from the GITHUB_* variables a hosted runner exports."""
        env = os.environ if environ is None else environ
        return cls(
            kind=env.get("GITHUB_EVENT_NAME", PUSH),
            ref=env.get("GITHUB_REF") or None,
            base_ref=env.get("GITHUB_BASE_REF") or None,
            head_ref=env.get("GITHUB_HEAD_REF") or None,
        )


@dataclass(frozen=True)
class TriggerContext:
    """Read-only context of one run."""
    event: str
    source_branch: Optional[str]
    target_branch: Optional[str]

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {
            "event": self.event,
            "source_branch": self.source_branch,
            "target_branch": self.target_branch,
        }


@dataclass(frozen=True)
class TriggerPolicy:
    """Registered (event kind -> target branches) combinations."""
    rules: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def default(cls, primary: str = "master", release: str = "release") -> "TriggerPolicy":
        return cls({PUSH: (primary, release), PULL_REQUEST: (primary,)})

    def accepts(self, kind: str, target_branch: Optional[str]) -> bool:
        branches = self.rules.get(kind)
        if branches is None:
            return False
        return target_branch in branches


def evaluate(event: TriggerEvent, policy: TriggerPolicy) -> TriggerContext:
    """
    Resolve a raw event into a TriggerContext.

    Raises UnsupportedEvent when the (kind, branch) pair is not registered.
    """
    if event.kind == PULL_REQUEST:
        target = branch_from_ref(event.base_ref or event.branch)
        source = branch_from_ref(event.head_ref or event.ref)
    else:
        target = branch_from_ref(event.ref or event.branch)
        source = target

    if not policy.accepts(event.kind, target):
        raise UnsupportedEvent(event.kind, target)

    return TriggerContext(event=event.kind, source_branch=source, target_branch=target)
