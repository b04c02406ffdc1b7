# model.py
from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import ConfigError


CONTEXT_SEPARATOR = ":"


@dataclass(frozen=True)
class DotenvSource:
    """A dotenv file path; `optional` sources are skipped when missing."""
    path: str
    optional: bool = False


@dataclass(frozen=True)
class Hooks:
    before: Tuple[str, ...] = ()
    after: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Host:
    """A remote machine targeted by `TaskDefinition.hosts`."""
    name: str
    address: str
    user: Optional[str] = None
    port: Optional[int] = None
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.address}" if self.user else self.address


@dataclass(frozen=True)
class TaskDefinition:
    """
    A single named unit of work.

    `name` may carry a context qualifier (`deploy:prod`), in which case the
    definition overrides the bare `deploy` while that context is active.
    """
    name: str
    run: str
    runtime: str = "sh"
    desc: str = ""
    cwd: Optional[str] = None
    env: Tuple[Tuple[str, str], ...] = ()
    dotenv: Tuple[DotenvSource, ...] = ()
    needs: Tuple[str, ...] = ()
    hooks: Hooks = field(default_factory=Hooks)
    timeout: Optional[float] = None
    condition: Optional[str] = None
    force: bool = False
    hosts: Tuple[str, ...] = ()
    template: bool = False
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def base_name(self) -> str:
        return split_context_name(self.name)[0]

    @property
    def context(self) -> Optional[str]:
        return split_context_name(self.name)[1]

    def env_dict(self) -> Dict[str, str]:
        # later entries shadow earlier ones
        return dict(self.env)


@dataclass(frozen=True)
class JobDefinition:
    """A named, ordered pipeline of task references."""
    name: str
    steps: Tuple[str, ...]
    needs: Tuple[str, ...] = ()
    desc: str = ""


# ----------------------------------------------------------------------
# Runtime state
# ----------------------------------------------------------------------

class NodeStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.SKIPPED)


_TRANSITIONS = {
    NodeStatus.PENDING: {NodeStatus.READY, NodeStatus.SKIPPED},
    NodeStatus.READY: {NodeStatus.RUNNING, NodeStatus.SKIPPED, NodeStatus.FAILED},
    NodeStatus.RUNNING: {NodeStatus.SUCCEEDED, NodeStatus.FAILED},
}


@dataclass
class ExecutionResult:
    """What a backend hands back after running a task body."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    host: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class ExecutionNode:
    """Per-run state of one resolved task."""
    task: TaskDefinition
    status: NodeStatus = NodeStatus.PENDING
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    results: List[ExecutionResult] = field(default_factory=list)
    error: Optional[Exception] = None
    skip_reason: Optional[str] = None
    blocked_by: List[str] = field(default_factory=list)

    # assembled once, when the node becomes Ready
    inherited_env: Dict[str, str] = field(default_factory=dict)
    inherited_path: List[str] = field(default_factory=list)
    inherited_outputs: Dict[str, Dict[str, str]] = field(default_factory=dict)

    # filled from the node's own channels after a successful run
    exported_env: Dict[str, str] = field(default_factory=dict)
    exported_path: List[str] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def name(self) -> str:
        return self.task.base_name

    @property
    def result(self) -> Optional[ExecutionResult]:
        return self.results[-1] if self.results else None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def transition(self, status: NodeStatus) -> None:
        with self._lock:
            allowed = _TRANSITIONS.get(self.status, set())
            if status not in allowed:
                raise RuntimeError(
                    f"Illegal transition for node '{self.name}': {self.status.value} -> {status.value}"
                )
            self.status = status


# ----------------------------------------------------------------------
# Parsing helpers
# ----------------------------------------------------------------------

def split_context_name(name: str) -> Tuple[str, Optional[str]]:
    """`deploy:prod` -> ("deploy", "prod"); `deploy` -> ("deploy", None)."""
    base, sep, context = name.partition(CONTEXT_SEPARATOR)
    if not base:
        raise ConfigError(f"Invalid task name: {name!r}")
    if sep and not context:
        raise ConfigError(f"Invalid task name (empty context): {name!r}")
    return base, (context if sep else None)


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> Optional[float]:
    """
    Parse a timeout value into seconds.

    Accepts numbers (seconds) and strings like "500ms", "1s", "2m", "1h30m".
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip().replace(" ", "")
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for m in _DURATION_PART.finditer(text):
                if m.start() != pos:
                    break
                seconds += float(m.group(1)) * _UNIT_SECONDS[m.group(2)]
                pos = m.end()
            if pos != len(text) or not text:
                raise ConfigError(f"Invalid duration: {value!r}") from None
    if seconds <= 0:
        raise ConfigError(f"Duration must be positive: {value!r}")
    return seconds
