# runner.py
from __future__ import annotations

import logging
import os
import re
import subprocess
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Deque, Dict, List, Optional, Set, Union

from .config import EngineConfig
from .context import RunContext, StepContext
from .dag import ExecutionPlan, plan as build_plan, transitive_dependents
from .errors import StepFailure
from .gate import evaluate_gate
from .model import InstanceState, JobInstance, JobTemplate, Pipeline, Step
from .predicates import Scope
from .report import RunOutcome, RunReport
from .trigger import TriggerContext, TriggerEvent, TriggerPolicy, evaluate

logger = logging.getLogger(__name__)

_OUTPUT_TAIL = 4000


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _env_key(axis: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", axis).upper()


def _instance_env(ctx: RunContext, template: JobTemplate, instance: JobInstance) -> Dict[str, str]:
    env = {k: str(v) for k, v in template.env.items()}
    for axis, value in instance.coordinate:
        env[f"MATRIX_{_env_key(axis)}"] = value
    env["PIPEGATE_RUN_ID"] = ctx.run_id
    env["PIPEGATE_INSTANCE"] = instance.id
    env["PIPEGATE_EVENT"] = ctx.trigger.event
    env["PIPEGATE_BRANCH"] = ctx.trigger.target_branch or ""
    return env


def _step_skip_reason(step: Step, instance: JobInstance, scope: Scope) -> Optional[str]:
    if step.primary_only and not instance.is_primary:
        return "not the primary instance"
    if step.when is not None and not step.when(scope):
        return f"condition false: {step.when!r}"
    return None


def _run_shell(step: Step, sctx: StepContext) -> None:
    cwd = (sctx.workdir / (step.cwd or ".")).resolve()
    if not cwd.exists():
        raise FileNotFoundError(f"[{sctx.instance.id}] step '{step.name}' cwd not found: {cwd}")

    env = os.environ.copy()
    env.update(sctx.env)

    try:
        proc = subprocess.run(
            step.run,
            shell=True,
            cwd=str(cwd),
            env=env,
            text=True,
            capture_output=True,   # so we can show output on failure
            timeout=step.timeout,
        )
    except subprocess.TimeoutExpired as e:
        out = e.stdout or ""
        if isinstance(out, bytes):
            out = out.decode("utf-8", errors="replace")
        raise StepFailure(
            job=sctx.instance.id,
            step=step.name,
            cmd=step.run,
            exit_code=None,
            output=out[-_OUTPUT_TAIL:],
        ) from e

    if proc.returncode != 0:
        raise StepFailure(
            job=sctx.instance.id,
            step=step.name,
            cmd=step.run,
            exit_code=proc.returncode,
            output=(proc.stdout + proc.stderr)[-_OUTPUT_TAIL:],
        )


def _run_step(step: Step, sctx: StepContext) -> None:
    if step.is_shell:
        _run_shell(step, sctx)
        return

    result = step.run(sctx)
    # bool is an int; only a real non-zero int is an exit code
    failed = result is False or (
        isinstance(result, int) and not isinstance(result, bool) and result != 0
    )
    if failed:
        raise StepFailure(
            job=sctx.instance.id,
            step=step.name,
            cmd=step.describe(),
            exit_code=1 if result is False else int(result),
        )


def _run_instance(ctx: RunContext, instance: JobInstance) -> str:
    """
    Run the steps of one instance sequentially. The first failing step
    raises and aborts the rest. Returns the instance id.
    """
    template = ctx.plan.templates[instance.template]
    scope = ctx.scope(instance)
    env = _instance_env(ctx, template, instance)

    for step in template.steps:
        reason = _step_skip_reason(step, instance, scope)
        if reason:
            logger.info("[%s] ⏭ %s (%s)", instance.id, step.name, reason)
            continue
        logger.info("[%s] ▶ %s", instance.id, step.name)
        _run_step(step, StepContext(ctx, instance, step, env=env, workdir=ctx.config.workdir))

    return instance.id


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

class Scheduler:
    """
    Walks the plan for one run.

    Bookkeeping per template (a job group):
      remaining[t]  instances of t not yet succeeded
      unmet[d]      templates d needs that are not yet fully succeeded
      broken        groups that can no longer succeed (failed / skipped)

    Worker threads only execute steps. Every state change happens on the
    scheduler thread under ctx.lock, one completion at a time, so a
    dependent can never observe half of a matrix as success.
    """

    def __init__(self, ctx: RunContext):
        self.ctx = ctx
        self.plan: ExecutionPlan = ctx.plan
        self.remaining: Dict[str, int] = {n: len(ids) for n, ids in ctx.members.items()}
        self.unmet: Dict[str, int] = dict(self.plan.indeg)
        self.running: Dict[str, int] = {n: 0 for n in ctx.members}
        self.broken: Set[str] = set()
        self.ready: Deque[str] = deque()
        self.in_flight: Dict[Future, str] = {}

    @property
    def gated(self) -> List[str]:
        return [n for n in self.plan.order if self.plan.templates[n].is_terminal_action]

    # ---- lifecycle ----

    def run(self) -> None:
        with self.ctx.lock:
            # block everything first: releasing a root may already skip its dependents
            roots = []
            for name in self.plan.order:
                if self.unmet[name] == 0 and not self.plan.templates[name].is_terminal_action:
                    roots.append(name)
                else:
                    for iid in self.ctx.members[name]:
                        self.ctx.transition(iid, InstanceState.BLOCKED)
            for name in roots:
                self._release(name)

        with ThreadPoolExecutor(max_workers=self.ctx.config.max_parallel) as pool:
            self._drain(pool)
            for name in self.gated:
                self._open_gate(name, pool)

    def _drain(self, pool: ThreadPoolExecutor) -> None:
        while self.ready or self.in_flight:
            self._schedule(pool)
            if not self.in_flight:
                break

            # wait for a completion, then loop to schedule newly-ready instances
            done, _ = wait(list(self.in_flight), return_when=FIRST_COMPLETED)
            for fut in done:
                iid = self.in_flight.pop(fut)
                try:
                    fut.result()
                except Exception as e:
                    logger.error("✗ %s: %s", iid, e)
                    if isinstance(e, StepFailure) and e.output:
                        logger.debug("[%s] output:\n%s", iid, e.output)
                    self._complete(iid, ok=False, reason=str(e))
                else:
                    logger.info("✓ %s", iid)
                    self._complete(iid, ok=True)

    def _schedule(self, pool: ThreadPoolExecutor) -> None:
        limit = self.ctx.config.max_parallel
        deferred: List[str] = []
        with self.ctx.lock:
            while self.ready and len(self.in_flight) < limit:
                iid = self.ready.popleft()
                if self.ctx.states[iid] is not InstanceState.READY:
                    continue
                instance = self.ctx.instances[iid]
                cap = self.plan.templates[instance.template].max_parallel
                if cap is not None and self.running[instance.template] >= cap:
                    deferred.append(iid)
                    continue
                self.ctx.transition(iid, InstanceState.RUNNING)
                self.running[instance.template] += 1
                self.in_flight[pool.submit(_run_instance, self.ctx, instance)] = iid
            # deferred instances keep their place at the head of the queue
            self.ready.extendleft(reversed(deferred))

    def _complete(self, iid: str, *, ok: bool, reason: Optional[str] = None) -> None:
        with self.ctx.lock:
            template = self.ctx.instances[iid].template
            self.running[template] -= 1
            if not ok:
                self.ctx.transition(iid, InstanceState.FAILED, reason)
                self._break(template, f"needs {template}, which failed")
                return

            self.ctx.transition(iid, InstanceState.SUCCEEDED)
            self.remaining[template] -= 1
            if self.remaining[template] > 0 or template in self.broken:
                return

            # whole group succeeded: one decrement per dependent template
            for dep in sorted(self.plan.adj[template]):
                self.unmet[dep] -= 1
                # gated dependents wait for _open_gate
                if self.unmet[dep] == 0 and dep not in self.broken and dep not in self.gated:
                    self._release(dep)

    # ---- graph transitions (caller holds ctx.lock) ----

    def _release(self, name: str) -> None:
        template = self.plan.templates[name]
        for iid in self.ctx.members[name]:
            self.ctx.transition(iid, InstanceState.READY)
            instance = self.ctx.instances[iid]
            if template.condition is not None and not template.condition(self.ctx.scope(instance)):
                self.ctx.transition(iid, InstanceState.SKIPPED, f"condition false: {template.condition!r}")
                continue
            self.ready.append(iid)

        if any(self.ctx.states[i] is InstanceState.SKIPPED for i in self.ctx.members[name]):
            self._break(name, f"needs {name}, which was skipped")

    def _break(self, name: str, reason: str) -> None:
        """Fail-fast: nothing downstream of a failed/skipped group ever runs."""
        if name in self.broken:
            return
        self.broken.add(name)
        for dep in transitive_dependents(self.plan.adj, name):
            self.broken.add(dep)
            for iid in self.ctx.members[dep]:
                if not self.ctx.states[iid].terminal:
                    self.ctx.transition(iid, InstanceState.SKIPPED, reason)

    # ---- terminal actions ----

    def _open_gate(self, name: str, pool: ThreadPoolExecutor) -> None:
        template = self.plan.templates[name]
        gate = template.gate.with_groups(template.needs)
        others = [n for n in self.gated if n != name]
        decision = evaluate_gate(
            gate,
            self.ctx.trigger,
            self.ctx.group_outcomes(),
            terminal=self.ctx.is_terminal(exclude=[name, *others]),
        )
        self.ctx.gates[name] = decision

        if not decision.authorized:
            logger.info("gate %s: denied (%s)", name, decision.unmet)
            with self.ctx.lock:
                for iid in self.ctx.members[name]:
                    if not self.ctx.states[iid].terminal:
                        self.ctx.transition(iid, InstanceState.SKIPPED, f"gate denied: {decision.unmet}")
            return

        logger.info("gate %s: authorized", name)
        with self.ctx.lock:
            self._release(name)
        self._drain(pool)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def execute(
    plan: ExecutionPlan,
    trigger: TriggerContext,
    config: EngineConfig,
    *,
    pipeline_name: str = "pipeline",
) -> RunReport:
    """Run an already-validated plan under a resolved trigger context."""
    ctx = RunContext(plan, trigger, config)
    started = time.monotonic()
    logger.info(
        "run %s: %s on %s (%d instances, max_parallel=%d)",
        ctx.run_id,
        trigger.event,
        trigger.target_branch,
        len(ctx.instances),
        config.max_parallel,
    )
    try:
        Scheduler(ctx).run()
        states = ctx.snapshot()
        outcome = (
            RunOutcome.FAILED
            if any(s is InstanceState.FAILED for s in states.values())
            else RunOutcome.SUCCEEDED
        )
        return RunReport(
            run_id=ctx.run_id,
            pipeline=pipeline_name,
            trigger=trigger,
            outcome=outcome,
            states=states,
            reasons=dict(ctx.reasons),
            gates=dict(ctx.gates),
            artifacts=ctx.artifacts.manifest(),
            duration=time.monotonic() - started,
        )
    finally:
        ctx.close()


def run_pipeline(
    pipeline: Pipeline,
    event: Union[TriggerEvent, TriggerContext],
    *,
    config: Optional[EngineConfig] = None,
) -> RunReport:
    """
    Trigger -> plan -> execute -> gate.

    Raises UnsupportedEvent when the event does not activate the pipeline,
    and GraphError / ExpansionError for a broken pipeline, in both cases
    before anything runs.
    """
    config = config or EngineConfig.from_env()
    if isinstance(event, TriggerContext):
        trigger = event
    else:
        policy = pipeline.triggers or TriggerPolicy.default(config.primary_branch, config.release_branch)
        trigger = evaluate(event, policy)

    plan = build_plan(pipeline)
    return execute(plan, trigger, config, pipeline_name=pipeline.name)
