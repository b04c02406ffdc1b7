# runner.py
from __future__ import annotations

from typing import Iterable, List, Optional

from .backends import BackendSet
from .config import RunSettings
from .graph import ExecutionGraph, build_graph
from .jobs import JobRunReport, build_job_graph, summarize_jobs
from .loader import Definitions
from .scheduler import RunReport, Scheduler
from .ui.console import Console, get_console


def make_scheduler(
    definitions: Definitions,
    settings: RunSettings,
    console: Optional[Console] = None,
    backends: Optional[BackendSet] = None,
) -> Scheduler:
    return Scheduler(settings=settings, backends=backends, hosts=definitions.hosts, console=console)


def plan_tasks(definitions: Definitions, targets: Iterable[str], context: Optional[str] = None) -> ExecutionGraph:
    """Resolve and validate the graph for `targets` without running anything."""
    return build_graph(definitions.tasks, list(targets), context)


def select_jobs(definitions: Definitions, name: str, *, downstream: bool = False) -> List[str]:
    """The job, its dependents with `downstream`, and everything they need."""
    jobs = definitions.jobs
    return jobs.closure(jobs.downstream(name) if downstream else [name])


def plan_job(
    definitions: Definitions,
    name: str,
    *,
    downstream: bool = False,
    context: Optional[str] = None,
) -> ExecutionGraph:
    selected = select_jobs(definitions, name, downstream=downstream)
    return build_job_graph(definitions.tasks, definitions.jobs, selected, context)


def run_tasks(
    definitions: Definitions,
    targets: Iterable[str],
    settings: Optional[RunSettings] = None,
    console: Optional[Console] = None,
    backends: Optional[BackendSet] = None,
) -> RunReport:
    """
    Run `targets` and everything they need.

    Graph errors (unknown task, cycle) are raised before anything executes;
    task failures end up in the returned report.
    """
    settings = settings or RunSettings()
    console = console or get_console()
    targets: List[str] = list(targets)

    graph = plan_tasks(definitions, targets, settings.context)
    console.print_run_started(
        definitions=definitions.source.name if definitions.source else "-",
        targets=targets,
        node_count=len(graph),
        context=settings.context,
    )
    for name, node in graph.nodes.items():
        console.print_debug(f"resolved {name} -> {node.task.name} (runtime={node.task.runtime})")
    console.print_debug(f"stages: {graph.levels()}")

    scheduler = make_scheduler(definitions, settings, console, backends)
    return scheduler.run(graph)


def run_job(
    definitions: Definitions,
    name: str,
    settings: Optional[RunSettings] = None,
    console: Optional[Console] = None,
    *,
    downstream: bool = False,
    backends: Optional[BackendSet] = None,
) -> JobRunReport:
    """Run one job (plus the jobs it needs, plus its dependents with `downstream`)."""
    settings = settings or RunSettings()
    console = console or get_console()

    selected = select_jobs(definitions, name, downstream=downstream)
    graph = build_job_graph(definitions.tasks, definitions.jobs, selected, settings.context)
    console.print_run_started(
        definitions=definitions.source.name if definitions.source else "-",
        targets=[f"job {j}" for j in selected],
        node_count=len(graph),
        context=settings.context,
    )

    scheduler = make_scheduler(definitions, settings, console, backends)
    report = scheduler.run(graph)
    return summarize_jobs(report, definitions.jobs, selected)
