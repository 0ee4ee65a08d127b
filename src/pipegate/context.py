# context.py
from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

from .artifacts import Artifact, ArtifactStore, CoordinateRef, Payload, PayloadInput
from .config import EngineConfig
from .dag import ExecutionPlan
from .gate import GateDecision, group_outcomes
from .model import InstanceState, JobInstance, Step, check_transition
from .predicates import Scope
from .trigger import TriggerContext

logger = logging.getLogger(__name__)


class RunContext:
    """
    Everything mutable about one run: the state table, the artifact store
    and gate decisions. Nothing here is global, so independent runs can
    share a process.

    State changes go through `transition`, which holds `lock` and refuses
    anything that is not a forward lifecycle move.
    """

    def __init__(self, plan: ExecutionPlan, trigger: TriggerContext, config: EngineConfig):
        self.run_id = uuid.uuid4().hex[:12]
        self.plan = plan
        self.trigger = trigger
        self.config = config
        self.lock = threading.RLock()

        instances = plan.all_instances()
        self.instances: Dict[str, JobInstance] = {i.id: i for i in instances}
        self.members: Dict[str, List[str]] = {
            name: [i.id for i in plan.instances[name]] for name in plan.order
        }
        self.states: Dict[str, InstanceState] = {i.id: InstanceState.PENDING for i in instances}
        self.reasons: Dict[str, str] = {}
        self.gates: Dict[str, GateDecision] = {}
        self.artifacts = ArtifactStore(
            allow_overwrite=config.allow_overwrite,
            order=[i.id for i in instances],
        )

    def transition(self, instance_id: str, target: InstanceState, reason: Optional[str] = None) -> None:
        with self.lock:
            current = self.states[instance_id]
            check_transition(instance_id, current, target)
            self.states[instance_id] = target
            if reason:
                self.reasons[instance_id] = reason
        logger.debug("[%s] %s -> %s%s", instance_id, current.value, target.value, f" ({reason})" if reason else "")

    def snapshot(self) -> Dict[str, InstanceState]:
        with self.lock:
            return dict(self.states)

    def group_outcomes(self) -> Dict[str, InstanceState]:
        with self.lock:
            return group_outcomes(self.states, self.members)

    def is_terminal(self, exclude: Optional[List[str]] = None) -> bool:
        """True once every instance (outside the `exclude` templates) is terminal."""
        skip = set(exclude or [])
        with self.lock:
            return all(
                self.states[iid].terminal
                for name, ids in self.members.items()
                if name not in skip
                for iid in ids
            )

    def scope(self, instance: JobInstance) -> Scope:
        return Scope(matrix=instance.matrix, trigger=self.trigger, is_primary=instance.is_primary)

    def close(self) -> None:
        """Release run-scoped resources. Artifacts do not outlive the run."""
        self.artifacts.clear()


@dataclass
class StepContext:
    """What a callable step sees: its instance, the trigger and the artifact store."""
    run: RunContext
    instance: JobInstance
    step: Step
    env: Dict[str, str] = field(default_factory=dict)
    workdir: Path = Path(".")

    @property
    def matrix(self) -> Mapping[str, str]:
        return self.instance.matrix

    @property
    def trigger(self) -> TriggerContext:
        return self.run.trigger

    def publish(self, name: str, payload: PayloadInput) -> Artifact:
        return self.run.artifacts.put(name, self.instance, payload)

    def upload(self, name: str, *patterns: str) -> Artifact:
        return self.run.artifacts.upload_files(name, self.instance, self.workdir, patterns)

    def fetch(self, name: str, coordinate: Optional[CoordinateRef] = None) -> Payload:
        return self.run.artifacts.get(name, coordinate).payload

    def collect(self, name: str) -> Payload:
        return self.run.artifacts.collect(name)

    def download(
        self,
        name: str,
        dest: Union[str, Path],
        *,
        coordinate: Optional[CoordinateRef] = None,
        merge: bool = False,
    ) -> List[Path]:
        return self.run.artifacts.download(name, self.workdir / dest, coordinate=coordinate, merge=merge)
