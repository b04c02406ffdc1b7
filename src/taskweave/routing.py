"""Context routing: pick the effective definition of a task name.

Definitions are kept in two tables, base definitions keyed by name and
context overrides keyed by ``(name, context)``. A lookup tries the override
for the active context first and falls back to the base definition.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

from .errors import ConfigError, TaskNotFoundError
from .model import TaskDefinition


class TaskTable:
    def __init__(
        self,
        base: Dict[str, TaskDefinition],
        overrides: Dict[Tuple[str, str], TaskDefinition],
    ):
        self._base = dict(base)
        self._overrides = dict(overrides)

    @classmethod
    def from_definitions(cls, tasks: Iterable[TaskDefinition]) -> "TaskTable":
        base: Dict[str, TaskDefinition] = {}
        overrides: Dict[Tuple[str, str], TaskDefinition] = {}

        for t in tasks:
            name, context = t.base_name, t.context
            if context is None:
                if name in base:
                    raise ConfigError(f"Duplicate task name: {name}")
                base[name] = t
            else:
                if (name, context) in overrides:
                    raise ConfigError(f"Duplicate task override: {name}:{context}")
                overrides[(name, context)] = t

        return cls(base, overrides)

    def resolve(self, name: str, context: Optional[str] = None) -> TaskDefinition:
        if context is not None:
            hit = self._overrides.get((name, context))
            if hit is not None:
                return hit
        hit = self._base.get(name)
        if hit is None:
            raise TaskNotFoundError(name, context, known=self.names())
        return hit

    def __contains__(self, name: str) -> bool:
        return name in self._base or any(n == name for n, _ in self._overrides)

    def names(self) -> List[str]:
        """All routable task names (an override-only task counts)."""
        return sorted(set(self._base) | {n for n, _ in self._overrides})

    def contexts_for(self, name: str) -> List[str]:
        return sorted(c for n, c in self._overrides if n == name)

    def definitions(self) -> List[TaskDefinition]:
        return list(self._base.values()) + list(self._overrides.values())
