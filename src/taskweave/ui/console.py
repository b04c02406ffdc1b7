"""Console output formatting utilities for taskweave."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from ..jobs import JobRunReport
    from ..scheduler import RunReport


class Console:
    """Centralized console output formatting (safe to call from worker threads)."""

    def __init__(self, debug: bool = False, stream_output: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream_output: If True, print each task's captured stdout/stderr when it finishes
        """
        self.debug = debug
        self.stream_output = stream_output
        self._lock = threading.Lock()

    def _print(self, *lines: str, err: bool = False) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        definitions: str,
        targets: Iterable[str],
        node_count: int,
        context: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        self._print(
            "\nRUN STARTED",
            f"Definitions: {definitions}",
            f"Targets: {', '.join(targets)}",
            f"Context: {context or '-'}",
            f"Tasks: {node_count}",
            "",
        )

    # ------------------------------------------------------------------
    # per-node events
    # ------------------------------------------------------------------

    def print_node_started(self, name: str) -> None:
        self._print(f"▶ {name}")

    def print_node_succeeded(self, name: str, duration: Optional[float] = None) -> None:
        suffix = f" ({duration:.1f}s)" if duration is not None else ""
        self._print(f"✓ {name}{suffix}")

    def print_node_skipped(self, name: str, reason: str) -> None:
        self._print(f"⏭ {name} (skipped: {reason})")

    def print_node_failed(self, name: str, error: Optional[BaseException]) -> None:
        kind = getattr(error, "kind", type(error).__name__ if error else "error")
        message = getattr(error, "message", str(error) if error else "unknown error")
        self._print(f"✗ {name} [{kind}] {message}")

    def print_node_output(self, name: str, stdout: str, stderr: str) -> None:
        lines: List[str] = []
        for line in stdout.splitlines():
            lines.append(f"[{name}] {line}")
        for line in stderr.splitlines():
            lines.append(f"[{name}:err] {line}")
        if lines:
            self._print(*lines)

    # ------------------------------------------------------------------
    # summaries
    # ------------------------------------------------------------------

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print the execution plan (stages that may run in parallel)."""
        self.print_header("PLAN")
        for idx, level in enumerate(levels, start=1):
            self._print(f"  Stage {idx}: {', '.join(level)}")

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary: every node's terminal status."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for node in report.nodes:
            status = node.status.value.upper()
            if node.skip_reason:
                status += f" ({node.skip_reason})"
            lines.append(f"  {node.name}: {status}")
            if node.error is not None:
                kind = getattr(node.error, "kind", type(node.error).__name__)
                message = getattr(node.error, "message", str(node.error))
                lines.append(f"      error: {kind}: {message}")
                stderr = node.result.stderr.strip() if node.result else ""
                if not stderr:
                    stderr = str(getattr(node.error, "details", {}).get("stderr", "")).strip()
                if stderr:
                    tail = stderr.splitlines()[-5:] if not self.debug else stderr.splitlines()
                    lines.extend(f"      | {line}" for line in tail)
        if report.cancelled:
            lines.append("  (run was cancelled)")
        lines.append(f"Duration: {report.duration:.1f}s")
        self._print(*lines)

    def print_job_results(self, report: "JobRunReport") -> None:
        """Print per-job aggregate: each job with every step's status."""
        lines = ["", "=" * 40, "JOBS", "=" * 40]
        for job in report.jobs:
            lines.append(f"  {job.name}: {'SUCCESS' if job.ok else 'FAILED'}")
            for step in job.steps:
                status = step.status.value.upper()
                if step.skip_reason:
                    status += f" ({step.skip_reason})"
                lines.append(f"      {step.name}: {status}")
        self._print(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._print(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._print(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
