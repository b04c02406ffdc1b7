# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterable, List, Optional


class TaskweaveError(Exception):
    """Base class for everything taskweave raises on purpose."""
    kind: ClassVar[str] = "error"


# ----------------------------------------------------------------------
# Run-fatal errors (nothing executes)
# ----------------------------------------------------------------------

class ConfigError(TaskweaveError):
    kind = "config"


class TaskNotFoundError(TaskweaveError):
    kind = "task_not_found"

    def __init__(
        self,
        name: str,
        context: Optional[str] = None,
        known: Iterable[str] = (),
        referenced_by: Optional[str] = None,
    ):
        self.name = name
        self.context = context
        self.known = sorted(known)
        self.referenced_by = referenced_by
        where = f" (context={context})" if context else ""
        msg = f"Task '{name}' not found{where}"
        if referenced_by:
            msg += f", referenced by '{referenced_by}'"
        if self.known:
            msg += f". Known tasks: {self.known}"
        super().__init__(msg)


class CycleError(TaskweaveError):
    kind = "cycle"

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__("Dependency cycle detected: " + " -> ".join(self.cycle))


# ----------------------------------------------------------------------
# Node-local errors (mark one node Failed)
# ----------------------------------------------------------------------

@dataclass(eq=False)
class NodeError(TaskweaveError):
    """
    Structured per-node error with enough context for:
      - the final report
      - exit code mapping
      - debugging without full tracebacks
    """
    task: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[str] = "node"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"task={self.task}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class TemplateError(NodeError):
    kind = "template"


class ConditionEvaluationError(NodeError):
    kind = "condition"


class RuntimeExecError(NodeError):
    kind = "runtime"

    @property
    def exit_code(self) -> Optional[int]:
        return self.details.get("exit_code")


class TaskTimeoutError(NodeError):
    kind = "timeout"


class RemoteConnectionError(NodeError):
    kind = "remote_connection"


class RunCancelledError(NodeError):
    kind = "cancelled"


# ----------------------------------------------------------------------
# Exit codes
# ----------------------------------------------------------------------

EXIT_OK = 0
EXIT_TASK_FAILED = 1
EXIT_GRAPH_ERROR = 2
EXIT_TIMEOUT = 3
EXIT_INTERRUPTED = 130


def exit_code_for(outcome: Any) -> int:
    """
    Map a run outcome to a process exit code.

    `outcome` is either a fatal exception or anything exposing `failed_errors()`
    (a run or job report).
    """
    if isinstance(outcome, (ConfigError, TaskNotFoundError, CycleError)):
        return EXIT_GRAPH_ERROR
    if isinstance(outcome, KeyboardInterrupt):
        return EXIT_INTERRUPTED
    if isinstance(outcome, BaseException):
        return EXIT_TASK_FAILED

    errors = list(outcome.failed_errors())
    if getattr(outcome, "cancelled", False):
        return EXIT_INTERRUPTED
    if not errors and outcome.ok:
        return EXIT_OK
    if errors and all(isinstance(e, TaskTimeoutError) for e in errors):
        return EXIT_TIMEOUT
    return EXIT_TASK_FAILED
