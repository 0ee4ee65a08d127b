# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Set, Tuple

from .errors import CycleError, DuplicateJob, GraphError, UnknownDependency
from .matrix import expand
from .model import JobInstance, JobTemplate, Pipeline


def build_dag(jobs: List[JobTemplate]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from job templates.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must succeed BEFORE this job)

    Returns (adj, indeg): adj maps a template to the templates that need it,
    indeg counts the distinct templates each template needs.
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DuplicateJob(dupes)

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for need in job.needs or []:
            if need not in name_set:
                raise UnknownDependency(job.name, need, sorted(name_set))
            # Edge need -> job.name (need must finish before job)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Everything within a stage may run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise CycleError(remaining)

    return levels


def transitive_dependents(adj: Dict[str, Set[str]], root: str) -> List[str]:
    """Every template reachable from `root` along needs edges, BFS order."""
    seen: Set[str] = set()
    order: List[str] = []
    q = deque(sorted(adj.get(root, set())))
    while q:
        node = q.popleft()
        if node in seen:
            continue
        seen.add(node)
        order.append(node)
        q.extend(sorted(adj.get(node, set()) - seen))
    return order


@dataclass
class ExecutionPlan:
    """
    The explicit graph for one run: templates, their expanded instances and
    the template-level edges. Built once, before anything executes.
    """
    templates: Dict[str, JobTemplate]
    instances: Dict[str, List[JobInstance]]
    adj: Dict[str, Set[str]]
    indeg: Dict[str, int]
    levels: List[List[str]]
    order: List[str] = field(default_factory=list)

    def all_instances(self) -> List[JobInstance]:
        return [i for name in self.order for i in self.instances[name]]

    def instance_levels(self) -> List[List[JobInstance]]:
        return [[i for name in level for i in self.instances[name]] for level in self.levels]


def plan(pipeline: Pipeline) -> ExecutionPlan:
    """
    Validate the pipeline and expand it into an execution plan.

    All structural errors (duplicates, unknown needs, cycles, bad matrices,
    gated jobs that others depend on) are raised here, so a broken pipeline
    never starts a single job.
    """
    jobs = list(pipeline.jobs)
    adj, indeg = build_dag(jobs)
    levels = topo_levels(adj, indeg)

    by_name = {j.name: j for j in jobs}
    for j in jobs:
        if j.is_terminal_action:
            if adj[j.name]:
                raise GraphError(
                    f"Gated job '{j.name}' is a terminal action; it cannot be needed by {sorted(adj[j.name])}"
                )
            for group in j.gate.groups:
                if group not in by_name:
                    raise UnknownDependency(j.name, group, sorted(by_name))
        if j.max_parallel is not None and j.max_parallel < 1:
            raise GraphError(f"Job '{j.name}' max_parallel must be >= 1, got {j.max_parallel}")

    instances = {j.name: expand(j) for j in jobs}
    order = [name for level in levels for name in level]

    return ExecutionPlan(
        templates=by_name,
        instances=instances,
        adj=adj,
        indeg=indeg,
        levels=levels,
        order=order,
    )
