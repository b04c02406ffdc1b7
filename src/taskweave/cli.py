# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from .config import HostPolicy, RunSettings
from .errors import (
    EXIT_GRAPH_ERROR,
    EXIT_INTERRUPTED,
    ConfigError,
    CycleError,
    TaskNotFoundError,
    exit_code_for,
)
from .loader import DEFAULT_DEFINITIONS_FILE, Definitions, find_definition_files, load_definitions
from .model import parse_duration
from .runner import plan_job, plan_tasks, run_job, run_tasks
from .ui.console import Console, get_console, set_console


def discover_definitions(file_arg: str | None) -> Path:
    """
    Discover the definition file from argument or default.

    Raises:
        SystemExit: If no file can be found or several candidates exist
    """
    console = get_console()

    if file_arg:
        path = Path(file_arg)
        if not path.exists() and path.suffix != ".py":
            path = Path(str(path) + ".py")
        if not path.exists():
            console.print_error(
                "Definitions file not found",
                f"Could not find definitions file: {file_arg}",
                suggestion="Create a definitions file or specify a different path:\n  taskweave run --file my_tasks.py build",
            )
            sys.exit(EXIT_GRAPH_ERROR)
        return path

    files = find_definition_files()

    if len(files) == 0:
        console.print_error(
            "No definitions file found",
            "Could not find any definitions files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_DEFINITIONS_FILE}",
                "  *_tasks.py",
            ],
            suggestion=f"Create a definitions file:\n  {DEFAULT_DEFINITIONS_FILE}\n\nOr specify one explicitly:\n  taskweave run --file my_tasks.py build",
        )
        sys.exit(EXIT_GRAPH_ERROR)

    # the default file wins over other *_tasks.py files
    if files[0].name == DEFAULT_DEFINITIONS_FILE:
        return files[0]

    if len(files) > 1:
        file_list = "\n".join(f"  {f}" for f in files)
        console.print_error(
            "Multiple definitions files found",
            "Found multiple definitions files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify one explicitly:\n  taskweave run --file ci_tasks.py build",
        )
        sys.exit(EXIT_GRAPH_ERROR)

    return files[0]


def _load(file_arg: str | None) -> Definitions:
    return load_definitions(discover_definitions(file_arg))


def _fail(e: BaseException) -> None:
    console = get_console()
    if isinstance(e, (ConfigError, TaskNotFoundError, CycleError)):
        console.print_error(type(e).__name__, str(e))
    else:
        console.print_exception(e)
    sys.exit(exit_code_for(e))


def _settings(context, workers, timeout, host_policy) -> RunSettings:
    return RunSettings(
        context=context or None,
        max_workers=workers,
        default_timeout=parse_duration(timeout),
        host_policy=HostPolicy(host_policy),
    )


file_option = click.option(
    "--file", "-f", "file_arg",
    default=None,
    help=f"Definitions file path (defaults to {DEFAULT_DEFINITIONS_FILE} if present)",
)
context_option = click.option(
    "--context", "-c",
    default=None,
    envvar="TASKWEAVE_CONTEXT",
    help="Active context; name:context definitions override name",
)


def run_options(f):
    f = click.option("--dry-run", is_flag=True, default=False, help="Print the plan without executing")(f)
    f = click.option("--stream", is_flag=True, default=False, help="Print each task's captured output")(f)
    f = click.option(
        "--host-policy",
        type=click.Choice([p.value for p in HostPolicy]),
        default=HostPolicy.PARALLEL.value,
        envvar="TASKWEAVE_HOST_POLICY",
        show_default=True,
        help="Whether nodes may share a remote host concurrently",
    )(f)
    f = click.option("--timeout", default=None, help="Default per-task timeout (e.g. 30s, 5m)")(f)
    f = click.option(
        "--workers", default=None, type=int, envvar="TASKWEAVE_WORKERS", help="Maximum concurrently running tasks"
    )(f)
    f = context_option(f)
    f = file_option(f)
    return f


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """taskweave: declarative task runner."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("targets", nargs=-1, required=True)
@run_options
@click.pass_context
def run(ctx, targets, file_arg, context, workers, timeout, host_policy, stream, dry_run):
    """Run TARGETS and everything they need."""
    console = get_console()
    console.stream_output = stream

    try:
        definitions = _load(file_arg)
        settings = _settings(context, workers, timeout, host_policy)

        if dry_run:
            graph = plan_tasks(definitions, targets, settings.context)
            console.print_plan(graph.levels())
            return

        report = run_tasks(definitions, targets, settings, console)
        console.print_results(report)
        code = exit_code_for(report)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        _fail(e)
        return

    if code:
        sys.exit(code)


@cli.command()
@click.argument("name")
@click.option("--downstream", is_flag=True, default=False, help="Also run every job that depends on NAME")
@run_options
@click.pass_context
def job(ctx, name, downstream, file_arg, context, workers, timeout, host_policy, stream, dry_run):
    """Run job NAME (and the jobs it needs)."""
    console = get_console()
    console.stream_output = stream

    try:
        definitions = _load(file_arg)
        settings = _settings(context, workers, timeout, host_policy)

        if dry_run:
            graph = plan_job(definitions, name, downstream=downstream, context=settings.context)
            console.print_plan(graph.levels())
            return

        report = run_job(definitions, name, settings, console, downstream=downstream)
        console.print_results(report.run)
        console.print_job_results(report)
        code = exit_code_for(report)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        _fail(e)
        return

    if code:
        sys.exit(code)


@cli.command(name="list")
@file_option
@click.pass_context
def list_(ctx, file_arg):
    """List tasks, their context overrides, and jobs."""
    console = get_console()
    try:
        definitions = _load(file_arg)
    except Exception as e:
        _fail(e)
        return

    tasks = definitions.tasks
    console.print_header("TASKS")
    for name in tasks.names():
        try:
            desc = tasks.resolve(name).desc
        except TaskNotFoundError:
            desc = ""
        line = f"  {name}"
        contexts = tasks.contexts_for(name)
        if contexts:
            line += f" [{', '.join(contexts)}]"
        if desc:
            line += f" - {desc}"
        console.print_info(line)

    if len(definitions.jobs):
        console.print_header("JOBS")
        for name in definitions.jobs.names():
            j = definitions.jobs.get(name)
            line = f"  {name}: {' -> '.join(j.steps)}"
            if j.needs:
                line += f" (needs {', '.join(j.needs)})"
            if j.desc:
                line += f" - {j.desc}"
            console.print_info(line)


@cli.command()
@click.argument("targets", nargs=-1, required=True)
@file_option
@context_option
@click.pass_context
def graph(ctx, targets, file_arg, context):
    """Print the resolved nodes and edges for TARGETS."""
    console = get_console()
    try:
        definitions = _load(file_arg)
        g = plan_tasks(definitions, targets, context or None)
    except Exception as e:
        _fail(e)
        return

    console.print_header("NODES")
    for name in sorted(g.nodes):
        task = g.nodes[name].task
        suffix = f" (as {task.name})" if task.name != name else ""
        console.print_info(f"  {name}{suffix}")
    console.print_header("EDGES")
    for dep, dependent in sorted(g.edges()):
        console.print_info(f"  {dep} -> {dependent}")
    console.print_plan(g.levels())


if __name__ == "__main__":
    cli()
