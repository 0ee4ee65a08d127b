# report.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

from .gate import GateDecision
from .model import InstanceState
from .trigger import TriggerContext


class RunOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RunReport:
    """Aggregate outcome of one run plus the full per-instance state table."""
    run_id: str
    pipeline: str
    trigger: TriggerContext
    outcome: RunOutcome
    states: Dict[str, InstanceState]
    reasons: Dict[str, str] = field(default_factory=dict)
    gates: Dict[str, GateDecision] = field(default_factory=dict)
    artifacts: List[Dict[str, Any]] = field(default_factory=list)
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome is RunOutcome.SUCCEEDED

    @property
    def denied(self) -> List[str]:
        """Terminal actions whose gate said no."""
        return [name for name, d in self.gates.items() if not d.authorized]

    def by_state(self, state: InstanceState) -> List[str]:
        return [iid for iid, s in self.states.items() if s is state]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "trigger": self.trigger.as_dict(),
            "outcome": self.outcome.value,
            "duration": round(self.duration, 3),
            "instances": [
                {"id": iid, "state": state.value, "reason": self.reasons.get(iid)}
                for iid, state in self.states.items()
            ],
            "gates": {
                name: {"decision": d.label, "unmet": d.unmet}
                for name, d in self.gates.items()
            },
            "artifacts": self.artifacts,
        }
