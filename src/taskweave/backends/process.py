# backends/process.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from ..errors import RunCancelledError, RuntimeExecError, TaskTimeoutError
from ..model import ExecutionResult


TOOL_HINTS = {
    "sh": "Install a POSIX shell or fix PATH.",
    "bash": "Install bash or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "deno": "Install Deno (https://deno.land) or fix PATH.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "docker": "Install Docker and ensure the daemon is running.",
    "podman": "Install Podman or fix PATH.",
    "ssh": "Install an OpenSSH client or fix PATH.",
}

# Output kept on results and errors (tail)
OUTPUT_LIMIT = 64_000


class ProcessRegistry:
    """
    Tracks live child processes so a run-wide interrupt can reach them.

    Once `cancel()` is called no new process may start, and every registered
    process is terminated the same way a timeout terminates it.
    """

    def __init__(self, kill_grace: float = 5.0):
        self.kill_grace = kill_grace
        self._lock = threading.Lock()
        self._procs: Dict[subprocess.Popen, Optional[Callable[[], None]]] = {}
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def register(self, proc: subprocess.Popen, on_terminate: Optional[Callable[[], None]] = None) -> None:
        with self._lock:
            self._procs[proc] = on_terminate
            cancelled = self.cancelled
        if cancelled:
            terminate(proc, self.kill_grace, on_terminate)

    def unregister(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.pop(proc, None)

    def cancel(self) -> None:
        self._cancelled.set()
        with self._lock:
            live = list(self._procs.items())
        for proc, hook in live:
            terminate(proc, self.kill_grace, hook)


def terminate(proc: subprocess.Popen, grace: float, on_terminate: Optional[Callable[[], None]] = None) -> None:
    """SIGTERM the process group, then SIGKILL it if it outlives `grace`."""
    if on_terminate is not None:
        on_terminate()
    if proc.poll() is not None:
        return
    _signal_group(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        _signal_group(proc, signal.SIGKILL)


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass
    except AttributeError:
        # no process groups on this platform
        proc.kill()


def _tail(text: str) -> str:
    return text[-OUTPUT_LIMIT:] if text else ""


def run_process(
    argv: List[str],
    *,
    task: str,
    env: Dict[str, str],
    cwd: Path,
    timeout: Optional[float],
    registry: Optional[ProcessRegistry] = None,
    stdin: Optional[str] = None,
    on_terminate: Optional[Callable[[], None]] = None,
) -> ExecutionResult:
    """
    Run argv to completion in its own process group.

    Raises TaskTimeoutError when `timeout` elapses (after terminating the group)
    and RunCancelledError when the registry was cancelled underneath it.
    A non-zero exit is *not* an error here; callers decide.
    """
    registry = registry or ProcessRegistry()
    if registry.cancelled:
        raise RunCancelledError(task=task, message="run cancelled before start")

    start = time.monotonic()
    try:
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd),
            env=env,
            stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            start_new_session=True,
        )
    except FileNotFoundError as e:
        tool = Path(argv[0]).name
        raise RuntimeExecError(
            task=task,
            message=f"executable not found: {argv[0]}",
            details={"hint": TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")},
        ) from e
    except NotADirectoryError as e:
        raise RuntimeExecError(task=task, message=f"working directory is not usable: {cwd}") from e

    registry.register(proc, on_terminate)
    try:
        try:
            out, err = proc.communicate(input=stdin, timeout=timeout)
        except subprocess.TimeoutExpired:
            terminate(proc, registry.kill_grace, on_terminate)
            try:
                out, err = proc.communicate(timeout=registry.kill_grace)
            except subprocess.TimeoutExpired:
                proc.kill()
                out, err = "", ""
            raise TaskTimeoutError(
                task=task,
                message=f"timed out after {timeout:g}s",
                details={"timeout": timeout, "stderr": _tail(err or "")[-2000:]},
            )
    finally:
        registry.unregister(proc)

    duration = time.monotonic() - start
    if registry.cancelled and proc.returncode != 0:
        raise RunCancelledError(
            task=task,
            message="terminated by run cancellation",
            details={"exit_code": proc.returncode},
        )

    return ExecutionResult(
        exit_code=proc.returncode,
        stdout=_tail(out or ""),
        stderr=_tail(err or ""),
        duration=duration,
    )
