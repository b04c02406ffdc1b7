# dsl.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .model import DotenvSource, Hooks, Host, JobDefinition, TaskDefinition, parse_duration


# ---------------------------------------------------------------------
# Dotenv / hooks helpers
# ---------------------------------------------------------------------

def dotenv(path: str, *, optional: bool = False) -> DotenvSource:
    """A dotenv source; `optional=True` tolerates a missing file."""
    return DotenvSource(path=path, optional=optional)


def hooks(*, before: Sequence[str] = (), after: Sequence[str] = ()) -> Hooks:
    return Hooks(before=tuple(before), after=tuple(after))


def _env_items(env: Union[Mapping[str, Any], Iterable[Any], None]) -> tuple:
    if not env:
        return ()
    if isinstance(env, Mapping):
        return tuple((str(k), str(v)) for k, v in env.items())
    items = []
    for entry in env:
        if isinstance(entry, str):
            key, _, value = entry.partition("=")
            items.append((key, value))
        elif isinstance(entry, Mapping):
            items.extend((str(k), str(v)) for k, v in entry.items())
        else:
            key, value = entry
            items.append((str(key), str(value)))
    return tuple(items)


def _dotenv_sources(sources: Union[str, DotenvSource, Iterable[Any], None]) -> tuple:
    if not sources:
        return ()
    if isinstance(sources, (str, DotenvSource)):
        sources = [sources]
    out = []
    for src in sources:
        if isinstance(src, DotenvSource):
            out.append(src)
        elif isinstance(src, Mapping):
            out.append(DotenvSource(path=str(src["path"]), optional=bool(src.get("optional", False))))
        else:
            out.append(DotenvSource(path=str(src)))
    return tuple(out)


def _names(value: Union[str, Iterable[str], None]) -> tuple:
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


# ---------------------------------------------------------------------
# Task / job / host helpers
# ---------------------------------------------------------------------

def task(
    name: str,
    run: str,
    *,
    runtime: str = "sh",
    desc: str = "",
    env: Union[Mapping[str, Any], Iterable[Any], None] = None,
    dotenv: Union[str, DotenvSource, Iterable[Any], None] = None,
    cwd: Optional[str] = None,
    needs: Union[str, Iterable[str], None] = None,
    before: Union[str, Iterable[str], None] = None,
    after: Union[str, Iterable[str], None] = None,
    timeout: Union[float, str, None] = None,
    when: Optional[str] = None,
    force: bool = False,
    hosts: Union[str, Iterable[str], None] = None,
    template: bool = False,
    params: Optional[Dict[str, Any]] = None,
) -> TaskDefinition:
    """
    Create a task. `when` is the task's condition (`if` in dict records),
    `params` its runtime parameters (`with` in dict records).
    """
    return TaskDefinition(
        name=name,
        run=run,
        runtime=runtime,
        desc=desc,
        env=_env_items(env),
        dotenv=_dotenv_sources(dotenv),
        cwd=cwd,
        needs=_names(needs),
        hooks=Hooks(before=_names(before), after=_names(after)),
        timeout=parse_duration(timeout),
        condition=when,
        force=force,
        hosts=_names(hosts),
        template=template,
        params=dict(params or {}),
    )


def job(name: str, *steps: str, needs: Union[str, Iterable[str], None] = None, desc: str = "") -> JobDefinition:
    return JobDefinition(name=name, steps=tuple(steps), needs=_names(needs), desc=desc)


def host(
    name: str,
    address: Optional[str] = None,
    *,
    user: Optional[str] = None,
    port: Optional[int] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Host:
    return Host(name=name, address=address or name, user=user, port=port, tags=dict(tags or {}))


# ---------------------------------------------------------------------
# Definition file helper
# ---------------------------------------------------------------------

@dataclass
class Workflow:
    tasks: List[TaskDefinition] = field(default_factory=list)
    jobs: List[JobDefinition] = field(default_factory=list)
    hosts: List[Host] = field(default_factory=list)


def wf(*items: Union[TaskDefinition, JobDefinition, Host, Iterable[Any]]) -> Workflow:
    """
    Collect tasks, jobs and hosts for a definition file:

        from taskweave import wf, task, job

        def definitions():
            return wf(
                task("build", "make"),
                task("test", "make test", needs=["build"]),
                job("ci", "build", "test"),
            )
    """
    w = Workflow()
    for item in items:
        if isinstance(item, TaskDefinition):
            w.tasks.append(item)
        elif isinstance(item, JobDefinition):
            w.jobs.append(item)
        elif isinstance(item, Host):
            w.hosts.append(item)
        elif isinstance(item, (list, tuple)):
            nested = wf(*item)
            w.tasks.extend(nested.tasks)
            w.jobs.extend(nested.jobs)
            w.hosts.extend(nested.hosts)
        else:
            raise TypeError(f"wf() expects tasks, jobs or hosts, got {type(item).__name__}")
    return w
