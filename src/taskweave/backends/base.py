# backends/base.py
from __future__ import annotations

import shlex
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import ClassVar, Dict, List, Optional, Sequence, Tuple

from ..channels import NodeChannels
from ..model import ExecutionResult, Host, TaskDefinition
from .process import ProcessRegistry


class BackendKind(str, Enum):
    LOCAL = "local"
    CONTAINER = "container"
    REMOTE = "remote"


CONTAINER_RUNTIMES = {"docker", "podman", "container"}

# runtime -> (interpreter argv, script suffix)
INTERPRETERS: Dict[str, Tuple[List[str], str]] = {
    "sh": (["sh"], ".sh"),
    "bash": (["bash"], ".sh"),
    "zsh": (["zsh"], ".sh"),
    "python": (["python3"], ".py"),
    "python3": (["python3"], ".py"),
    "node": (["node"], ".js"),
    "deno": (["deno", "run", "-A"], ".ts"),
    "ruby": (["ruby"], ".rb"),
    "perl": (["perl"], ".pl"),
    "pwsh": (["pwsh", "-NoProfile", "-File"], ".ps1"),
}


def interpreter_for(task: TaskDefinition) -> Tuple[List[str], str]:
    """Interpreter argv and script suffix; `with.interpreter` overrides argv[0]."""
    argv, suffix = INTERPRETERS.get(task.runtime, ([task.runtime], ""))
    argv = list(argv)
    override = task.params.get("interpreter")
    if override:
        argv = shlex.split(override) if isinstance(override, str) else list(override)
    return argv, suffix


def extra_args(task: TaskDefinition) -> List[str]:
    args = task.params.get("args") or []
    if isinstance(args, str):
        return shlex.split(args)
    return [str(a) for a in args]


def backend_kind(task: TaskDefinition) -> BackendKind:
    if task.hosts:
        return BackendKind.REMOTE
    if task.runtime in CONTAINER_RUNTIMES:
        return BackendKind.CONTAINER
    return BackendKind.LOCAL


class Backend(ABC):
    """
    Runs a rendered task body against one concrete runtime.

    `env` is the task's own environment overlay (inherited, dotenv, declared,
    channel locations); backends decide how it reaches the process. `path`
    holds inherited PATH entries to prepend, highest precedence first.
    """

    kind: ClassVar[BackendKind]

    def __init__(self, registry: Optional[ProcessRegistry] = None):
        self.registry = registry or ProcessRegistry()

    @abstractmethod
    def run(
        self,
        body: str,
        env: Dict[str, str],
        cwd: Path,
        timeout: Optional[float],
        *,
        task: TaskDefinition,
        channels: NodeChannels,
        path: Sequence[str] = (),
        host: Optional[Host] = None,
    ) -> ExecutionResult:
        raise NotImplementedError

    def close(self) -> None:
        """Release anything held across nodes (connections, ...)."""
