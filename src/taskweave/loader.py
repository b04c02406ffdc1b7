# loader.py
from __future__ import annotations

import runpy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from . import dsl
from .backends.base import CONTAINER_RUNTIMES
from .errors import ConfigError
from .jobs import JobTable
from .model import Hooks, Host, JobDefinition, TaskDefinition, split_context_name
from .routing import TaskTable


DEFAULT_DEFINITIONS_FILE = "taskweave_tasks.py"

TASK_FIELDS = {
    "runtime", "run", "desc", "env", "dotenv", "cwd", "needs", "hooks",
    "timeout", "if", "force", "hosts", "template", "with",
}
JOB_FIELDS = {"steps", "needs", "desc"}
HOST_FIELDS = {"address", "user", "port", "tags"}


@dataclass
class Definitions:
    """Everything a definition file declares, validated and immutable for the run."""
    tasks: TaskTable
    jobs: JobTable
    hosts: Dict[str, Host] = field(default_factory=dict)
    source: Optional[Path] = None


# ----------------------------------------------------------------------
# Dict records (the plain-data configuration surface)
# ----------------------------------------------------------------------

def _check_fields(kind: str, name: str, record: Mapping[str, Any], allowed: set) -> None:
    unknown = sorted(set(record) - allowed - {"name"})
    if unknown:
        raise ConfigError(f"{kind} '{name}' has unknown field(s): {unknown}")


def task_from_dict(name: str, record: Mapping[str, Any]) -> TaskDefinition:
    if not isinstance(record, Mapping):
        raise ConfigError(f"Task '{name}' must be a mapping, got {type(record).__name__}")
    _check_fields("Task", name, record, TASK_FIELDS)
    if "run" not in record:
        raise ConfigError(f"Task '{name}' has no 'run'")

    hooks = record.get("hooks") or {}
    if isinstance(hooks, Hooks):
        before, after = hooks.before, hooks.after
    elif isinstance(hooks, Mapping):
        extra = sorted(set(hooks) - {"before", "after"})
        if extra:
            raise ConfigError(f"Task '{name}' hooks have unknown key(s): {extra}")
        before, after = hooks.get("before"), hooks.get("after")
    else:
        raise ConfigError(f"Task '{name}' hooks must be a mapping with before/after")

    params = record.get("with") or {}
    if not isinstance(params, Mapping):
        raise ConfigError(f"Task '{name}' 'with' must be a mapping")

    try:
        return dsl.task(
            name,
            str(record["run"]),
            runtime=str(record.get("runtime", "sh")),
            desc=str(record.get("desc", "")),
            env=record.get("env"),
            dotenv=record.get("dotenv"),
            cwd=record.get("cwd"),
            needs=record.get("needs"),
            before=before,
            after=after,
            timeout=record.get("timeout"),
            when=record.get("if"),
            force=bool(record.get("force", False)),
            hosts=record.get("hosts"),
            template=bool(record.get("template", False)),
            params=dict(params),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"Task '{name}' is malformed: {e}") from e


def job_from_dict(name: str, record: Mapping[str, Any]) -> JobDefinition:
    if not isinstance(record, Mapping):
        raise ConfigError(f"Job '{name}' must be a mapping, got {type(record).__name__}")
    _check_fields("Job", name, record, JOB_FIELDS)
    steps = record.get("steps")
    if isinstance(steps, str):
        steps = [steps]
    if not steps:
        raise ConfigError(f"Job '{name}' has no steps")
    return dsl.job(name, *[str(s) for s in steps], needs=record.get("needs"), desc=str(record.get("desc", "")))


def host_from_dict(name: str, record: Mapping[str, Any]) -> Host:
    if not isinstance(record, Mapping):
        raise ConfigError(f"Host '{name}' must be a mapping, got {type(record).__name__}")
    _check_fields("Host", name, record, HOST_FIELDS)
    port = record.get("port")
    try:
        port = int(port) if port is not None else None
    except (TypeError, ValueError):
        raise ConfigError(f"Host '{name}' has an invalid port: {port!r}") from None
    return dsl.host(
        name,
        record.get("address"),
        user=record.get("user"),
        port=port,
        tags={str(k): str(v) for k, v in (record.get("tags") or {}).items()},
    )


def _collect(items: Any, cls: type, from_dict, kind: str) -> List[Any]:
    if items is None:
        return []
    if isinstance(items, Mapping):
        out = []
        for name, record in items.items():
            out.append(record if isinstance(record, cls) else from_dict(str(name), record))
        return out
    out = []
    for item in items:
        if isinstance(item, cls):
            out.append(item)
        elif isinstance(item, Mapping) and "name" in item:
            out.append(from_dict(str(item["name"]), item))
        else:
            raise ConfigError(f"Cannot interpret {kind} entry: {item!r}")
    return out


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------

def build_definitions(
    tasks: Iterable[TaskDefinition],
    jobs: Iterable[JobDefinition] = (),
    hosts: Iterable[Host] = (),
    source: Optional[Path] = None,
) -> Definitions:
    tasks = list(tasks)
    host_map: Dict[str, Host] = {}
    for h in hosts:
        if h.name in host_map:
            raise ConfigError(f"Duplicate host name: {h.name}")
        host_map[h.name] = h

    for t in tasks:
        split_context_name(t.name)
        for h in t.hosts:
            if h not in host_map:
                raise ConfigError(f"Task '{t.name}' targets unknown host '{h}'. Known hosts: {sorted(host_map)}")
        if t.runtime in CONTAINER_RUNTIMES and not t.hosts and not t.params.get("image"):
            raise ConfigError(f"Task '{t.name}' uses runtime {t.runtime!r} but sets no 'image' in 'with'")

    table = TaskTable.from_definitions(tasks)
    for t in tasks:
        for hook in (*t.hooks.before, *t.hooks.after):
            if hook not in table:
                raise ConfigError(f"Task '{t.name}' hook '{hook}' names no task")

    job_table = JobTable.from_definitions(jobs)
    job_table.check_steps(table)
    return Definitions(tasks=table, jobs=job_table, hosts=host_map, source=source)


# ----------------------------------------------------------------------
# Definition file loading
# ----------------------------------------------------------------------

def load_definitions(path: Union[str, Path]) -> Definitions:
    """
    Load definitions from a python file path.

    The file must define either:
      - definitions() -> wf(...)
      - TASKS (plus optional JOBS, HOSTS): lists of model objects or dict
        records, or mappings of name -> record
    """
    def_path = Path(path).expanduser().resolve()
    if not def_path.exists():
        raise ConfigError(f"Definitions file not found: {def_path}")
    if def_path.suffix != ".py":
        raise ConfigError(f"Definitions must be a .py file, got: {def_path.name}")

    module_name = f"taskweave_definitions_{def_path.stem}"
    globals_dict = runpy.run_path(str(def_path), run_name=module_name)

    if "definitions" in globals_dict and callable(globals_dict["definitions"]):
        result = globals_dict["definitions"]()
        if not isinstance(result, dsl.Workflow):
            raise ConfigError("definitions() must return wf(...)")
        return build_definitions(result.tasks, result.jobs, result.hosts, source=def_path)

    if "TASKS" not in globals_dict:
        raise ConfigError(
            f"{def_path.name} defines no tasks. Define definitions() -> wf(...) or TASKS = [...]."
        )

    return build_definitions(
        _collect(globals_dict["TASKS"], TaskDefinition, task_from_dict, "task"),
        _collect(globals_dict.get("JOBS"), JobDefinition, job_from_dict, "job"),
        _collect(globals_dict.get("HOSTS"), Host, host_from_dict, "host"),
        source=def_path,
    )


def find_definition_files(directory: Union[str, Path] = ".") -> List[Path]:
    """taskweave_tasks.py first, then any other *_tasks.py in the directory."""
    current = Path(directory)
    found: List[Path] = []
    default = current / DEFAULT_DEFINITIONS_FILE
    if default.exists():
        found.append(default)
    for p in sorted(current.glob("*_tasks.py")):
        if p != default:
            found.append(p)
    return found
