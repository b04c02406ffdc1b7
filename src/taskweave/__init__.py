"""taskweave: a declarative task runner's task graph execution engine."""

from .config import HostPolicy, RunSettings
from .dsl import dotenv, host, hooks, job, task, wf
from .errors import (
    ConfigError,
    CycleError,
    TaskNotFoundError,
    TaskweaveError,
)
from .loader import Definitions, load_definitions
from .runner import plan_tasks, run_job, run_tasks

__version__ = "0.1.0"

__all__ = [
    "ConfigError",
    "CycleError",
    "Definitions",
    "HostPolicy",
    "RunSettings",
    "TaskNotFoundError",
    "TaskweaveError",
    "dotenv",
    "host",
    "hooks",
    "job",
    "load_definitions",
    "plan_tasks",
    "run_job",
    "run_tasks",
    "task",
    "wf",
]
