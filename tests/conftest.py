from __future__ import annotations

import threading
from typing import Callable, Dict, List, Optional

import pytest

from taskweave.backends import Backend, BackendKind, BackendSet, ProcessRegistry
from taskweave.model import ExecutionResult
from taskweave.ui.console import Console, set_console


class FakeBackend(Backend):
    """Records what it was asked to run; per-task behaviour hooks write channels or fail."""

    kind = BackendKind.LOCAL

    def __init__(self, behaviours: Optional[Dict[str, Callable]] = None):
        super().__init__(ProcessRegistry(kill_grace=0.1))
        self.behaviours = dict(behaviours or {})
        self.calls: List[str] = []
        self.bodies: Dict[str, str] = {}
        self.envs: Dict[str, Dict[str, str]] = {}
        self.paths: Dict[str, List[str]] = {}
        self.hosts: List[Optional[str]] = []
        self._lock = threading.Lock()

    def run(self, body, env, cwd, timeout, *, task, channels, path=(), host=None):
        name = task.base_name
        with self._lock:
            self.calls.append(name)
            self.bodies[name] = body
            self.envs[name] = dict(env)
            self.paths[name] = list(path)
            self.hosts.append(host.name if host else None)
        behaviour = self.behaviours.get(name)
        result = behaviour(channels) if behaviour else None
        if result is None:
            result = ExecutionResult(exit_code=0)
        if host is not None:
            result.host = host.name
        return result


def fake_set(fake: FakeBackend) -> BackendSet:
    return BackendSet(
        {BackendKind.LOCAL: fake, BackendKind.CONTAINER: fake, BackendKind.REMOTE: fake},
        fake.registry,
    )


def write_env(text: str) -> Callable:
    def behaviour(channels):
        with channels.env_file.open("a", encoding="utf-8") as f:
            f.write(text)
    return behaviour


def exit_with(code: int, stderr: str = "") -> Callable:
    return lambda channels: ExecutionResult(exit_code=code, stderr=stderr)


@pytest.fixture(autouse=True)
def quiet_console() -> Console:
    console = Console()
    set_console(console)
    return console
