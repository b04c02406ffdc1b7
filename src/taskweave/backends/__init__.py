from __future__ import annotations

from typing import Dict, Optional

from ..config import RunSettings
from ..model import TaskDefinition
from .base import Backend, BackendKind, INTERPRETERS, backend_kind
from .container import ContainerBackend
from .local import LocalBackend
from .process import ProcessRegistry, run_process, terminate
from .remote import RemoteBackend


class BackendSet:
    """One instance per backend kind for a run, sharing a process registry."""

    def __init__(self, backends: Dict[BackendKind, Backend], registry: ProcessRegistry):
        self._backends = dict(backends)
        self.registry = registry

    @classmethod
    def from_settings(cls, settings: RunSettings, registry: Optional[ProcessRegistry] = None) -> "BackendSet":
        registry = registry or ProcessRegistry(kill_grace=settings.kill_grace)
        return cls(
            {
                BackendKind.LOCAL: LocalBackend(registry),
                BackendKind.CONTAINER: ContainerBackend(registry, engine=settings.container_engine),
                BackendKind.REMOTE: RemoteBackend(registry, ssh_command=settings.ssh_command),
            },
            registry,
        )

    def select(self, task: TaskDefinition) -> Backend:
        return self._backends[backend_kind(task)]

    def close(self) -> None:
        for backend in self._backends.values():
            backend.close()


def select_backend(task: TaskDefinition, backends: BackendSet) -> Backend:
    return backends.select(task)


__all__ = [
    "Backend",
    "BackendKind",
    "BackendSet",
    "ContainerBackend",
    "INTERPRETERS",
    "LocalBackend",
    "ProcessRegistry",
    "RemoteBackend",
    "backend_kind",
    "run_process",
    "select_backend",
    "terminate",
]
