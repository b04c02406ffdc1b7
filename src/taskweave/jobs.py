# jobs.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from .errors import ConfigError, CycleError
from .graph import ExecutionGraph, build_graph
from .model import JobDefinition, NodeStatus
from .routing import TaskTable
from .scheduler import SKIP_CONDITION, RunReport


class JobTable:
    """Job definitions plus the job-level dependency graph."""

    def __init__(self, jobs: Dict[str, JobDefinition]):
        self._jobs = dict(jobs)
        self._dependents: Dict[str, Set[str]] = {name: set() for name in self._jobs}
        for job in self._jobs.values():
            for dep in job.needs:
                if dep not in self._jobs:
                    raise ConfigError(
                        f"Job '{job.name}' needs missing job '{dep}'. Known jobs: {sorted(self._jobs)}"
                    )
                self._dependents[dep].add(job.name)
        self._order = self._topological_order()

    @classmethod
    def from_definitions(cls, jobs: Iterable[JobDefinition]) -> "JobTable":
        by_name: Dict[str, JobDefinition] = {}
        for j in jobs:
            if j.name in by_name:
                raise ConfigError(f"Duplicate job name: {j.name}")
            if not j.steps:
                raise ConfigError(f"Job '{j.name}' has no steps")
            if len(set(j.steps)) != len(j.steps):
                raise ConfigError(f"Job '{j.name}' lists the same step twice")
            by_name[j.name] = j
        return cls(by_name)

    def __contains__(self, name: str) -> bool:
        return name in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def get(self, name: str) -> JobDefinition:
        try:
            return self._jobs[name]
        except KeyError:
            raise ConfigError(f"Job '{name}' not found. Known jobs: {sorted(self._jobs)}") from None

    def names(self) -> List[str]:
        return list(self._order)

    def check_steps(self, tasks: TaskTable) -> None:
        for job in self._jobs.values():
            for step in job.steps:
                if step not in tasks:
                    raise ConfigError(f"Job '{job.name}' step '{step}' names no task")

    def _topological_order(self) -> List[str]:
        indeg = {name: len(job.needs) for name, job in self._jobs.items()}
        q = deque(sorted(n for n, d in indeg.items() if d == 0))
        order: List[str] = []
        while q:
            name = q.popleft()
            order.append(name)
            for child in sorted(self._dependents[name]):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)
        if len(order) != len(self._jobs):
            stuck = sorted(n for n, d in indeg.items() if d > 0)
            raise CycleError(_job_cycle(self._jobs, stuck))
        return order

    # ------------------------------------------------------------------
    # Graph queries at job granularity
    # ------------------------------------------------------------------

    def downstream(self, name: str) -> List[str]:
        """`name` and every job that (transitively) needs it, in run order."""
        self.get(name)
        seen = {name}
        q = deque([name])
        while q:
            for child in self._dependents[q.popleft()]:
                if child not in seen:
                    seen.add(child)
                    q.append(child)
        return [n for n in self._order if n in seen]

    def closure(self, names: Iterable[str]) -> List[str]:
        """The requested jobs plus everything they (transitively) need, in run order."""
        seen: Set[str] = set()
        q = deque(names)
        while q:
            name = q.popleft()
            if name in seen:
                continue
            seen.add(name)
            q.extend(self.get(name).needs)
        return [n for n in self._order if n in seen]


def _job_cycle(jobs: Dict[str, JobDefinition], stuck: List[str]) -> List[str]:
    # walk needs from a stuck job until a name repeats
    path: List[str] = []
    current = stuck[0]
    while current not in path:
        path.append(current)
        current = next(d for d in jobs[current].needs if d in stuck)
    return path[path.index(current):] + [current]


# ----------------------------------------------------------------------
# Graph expansion
# ----------------------------------------------------------------------

def build_job_graph(
    tasks: TaskTable,
    jobs: JobTable,
    job_names: Iterable[str],
    context: Optional[str] = None,
) -> ExecutionGraph:
    """
    Union graph of all steps of the given jobs.

    Steps of a job run in order (step i -> step i+1), and a job's first step
    waits for every step of the jobs it needs.
    """
    selected = [jobs.get(n) for n in job_names]
    targets: List[str] = []
    for job in selected:
        targets.extend(s for s in job.steps if s not in targets)

    graph = build_graph(tasks, targets, context, validate=False)

    for job in selected:
        steps = list(job.steps)
        for prev, nxt in zip(steps, steps[1:]):
            graph.add_edge(prev, nxt)
        for dep_name in job.needs:
            dep = jobs.get(dep_name)
            if dep_name not in {j.name for j in selected}:
                continue
            for step in dep.steps:
                graph.add_edge(step, steps[0])

    graph.validate()
    return graph


# ----------------------------------------------------------------------
# Reports
# ----------------------------------------------------------------------

@dataclass
class StepReport:
    name: str
    status: NodeStatus
    skip_reason: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        if self.status is NodeStatus.SUCCEEDED:
            return True
        # only the step's own condition may skip it
        return self.status is NodeStatus.SKIPPED and self.skip_reason == SKIP_CONDITION


@dataclass
class JobReport:
    name: str
    steps: List[StepReport] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(s.ok for s in self.steps)


@dataclass
class JobRunReport:
    run: RunReport
    jobs: List[JobReport]

    @property
    def ok(self) -> bool:
        return not self.run.cancelled and all(j.ok for j in self.jobs)

    @property
    def cancelled(self) -> bool:
        return self.run.cancelled

    def job(self, name: str) -> JobReport:
        return next(j for j in self.jobs if j.name == name)

    def failed_errors(self) -> List[Exception]:
        return self.run.failed_errors()


def summarize_jobs(report: RunReport, jobs: JobTable, job_names: Iterable[str]) -> JobRunReport:
    summaries: List[JobReport] = []
    for name in job_names:
        job = jobs.get(name)
        steps = []
        for step in job.steps:
            node = report.graph.nodes[step]
            steps.append(StepReport(step, node.status, node.skip_reason, node.error))
        summaries.append(JobReport(name, steps))
    return JobRunReport(run=report, jobs=summaries)
