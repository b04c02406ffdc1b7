# graph.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .errors import CycleError, TaskNotFoundError
from .model import ExecutionNode, TaskDefinition
from .routing import TaskTable


class ExecutionGraph:
    """
    Nodes for one invocation plus directed edges dependency -> dependent.

    Predecessors are kept in declaration order (explicit `needs` first, then
    synthetic hook edges) because env merging depends on that order.
    """

    def __init__(self, context: Optional[str] = None):
        self.context = context
        self.nodes: Dict[str, ExecutionNode] = {}
        self.targets: List[str] = []
        self._preds: Dict[str, List[str]] = {}
        self._succs: Dict[str, Set[str]] = {}

    def add_node(self, task: TaskDefinition) -> ExecutionNode:
        node = ExecutionNode(task=task)
        self.nodes[node.name] = node
        self._preds[node.name] = []
        self._succs[node.name] = set()
        return node

    def add_edge(self, dependency: str, dependent: str) -> None:
        if dependency not in self._preds[dependent]:
            self._preds[dependent].append(dependency)
            self._succs[dependency].add(dependent)

    def predecessors(self, name: str) -> List[str]:
        return list(self._preds[name])

    def dependents(self, name: str) -> Set[str]:
        return set(self._succs[name])

    def edges(self) -> Set[Tuple[str, str]]:
        return {(dep, name) for name, preds in self._preds.items() for dep in preds}

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, name: str) -> bool:
        return name in self.nodes

    def validate(self) -> None:
        cycle = find_cycle(self)
        if cycle:
            raise CycleError(cycle)

    def levels(self) -> List[List[str]]:
        """
        Topological "levels" (stages); every node in a level can run in parallel.
        Only meaningful for a validated graph.
        """
        indeg = {n: len(p) for n, p in self._preds.items()}
        q = deque(sorted(n for n, d in indeg.items() if d == 0))
        levels: List[List[str]] = []

        while q:
            level: List[str] = []
            for _ in range(len(q)):
                node = q.popleft()
                level.append(node)
                for child in sorted(self._succs[node]):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
            levels.append(level)

        return levels


# ----------------------------------------------------------------------
# Cycle detection
# ----------------------------------------------------------------------

_WHITE, _GRAY, _BLACK = 0, 1, 2


def find_cycle(graph: ExecutionGraph) -> Optional[List[str]]:
    """
    Depth-first coloring walk. Returns the first cycle found as a closed path
    (`["a", "b", "a"]`), or None.
    """
    color = {name: _WHITE for name in graph.nodes}

    for root in graph.nodes:
        if color[root] != _WHITE:
            continue
        # stack of (node, iterator over its dependents)
        path: List[str] = [root]
        stack = [(root, iter(sorted(graph.dependents(root))))]
        color[root] = _GRAY

        while stack:
            node, children = stack[-1]
            advanced = False
            for child in children:
                if color[child] == _GRAY:
                    start = path.index(child)
                    return path[start:] + [child]
                if color[child] == _WHITE:
                    color[child] = _GRAY
                    path.append(child)
                    stack.append((child, iter(sorted(graph.dependents(child)))))
                    advanced = True
                    break
            if not advanced:
                color[node] = _BLACK
                path.pop()
                stack.pop()

    return None


# ----------------------------------------------------------------------
# Build
# ----------------------------------------------------------------------

def build_graph(
    table: TaskTable,
    targets: Iterable[str],
    context: Optional[str] = None,
    *,
    validate: bool = True,
) -> ExecutionGraph:
    """
    Resolve every reachable task once (through the context router) and wire
    `needs` plus hook edges. Raises TaskNotFoundError / CycleError before
    anything can run.

    Hooks become ordinary edges:
      before: [h1, h2]  ->  h1 -> h2 -> task
      after:  [a1, a2]  ->  task -> a1 -> a2
    """
    graph = ExecutionGraph(context)

    def visit(name: str, referenced_by: Optional[str]) -> None:
        if name in graph.nodes:
            return
        try:
            task = table.resolve(name, context)
        except TaskNotFoundError as e:
            raise TaskNotFoundError(name, context, e.known, referenced_by=referenced_by) from None

        graph.add_node(task)

        for dep in task.needs:
            visit(dep, name)
            graph.add_edge(dep, name)

        previous: Optional[str] = None
        for hook in task.hooks.before:
            visit(hook, name)
            if previous is not None:
                graph.add_edge(previous, hook)
            graph.add_edge(hook, name)
            previous = hook

        previous = name
        for hook in task.hooks.after:
            visit(hook, name)
            graph.add_edge(previous, hook)
            previous = hook

    for target in targets:
        visit(target, None)
        if target not in graph.targets:
            graph.targets.append(target)

    if validate:
        graph.validate()
    return graph
