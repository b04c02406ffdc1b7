# scheduler.py
from __future__ import annotations

import os
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Dict, Iterator, List, Mapping, Optional

from .backends import BackendKind, BackendSet, backend_kind
from .channels import ChannelOutput, NodeChannels, export_from, merge_inherited
from .conditions import ConditionScope, Decision, evaluate
from .config import HostPolicy, RunSettings
from .envfiles import load_dotenv_sources
from .errors import ConditionEvaluationError, ConfigError, RuntimeExecError
from .graph import ExecutionGraph
from .model import ExecutionNode, Host, NodeStatus
from .template import TemplateScope, render_task
from .ui.console import Console, get_console


SKIP_CONDITION = "condition"
SKIP_UPSTREAM = "dependency failed"
SKIP_CANCELLED = "cancelled"


@dataclass
class RunReport:
    """Terminal state of every node of one run."""
    graph: ExecutionGraph
    cancelled: bool = False
    started_at: float = 0.0
    finished_at: float = 0.0

    @property
    def nodes(self) -> List[ExecutionNode]:
        return list(self.graph.nodes.values())

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at

    def node(self, name: str) -> ExecutionNode:
        return self.graph.nodes[name]

    def statuses(self) -> Dict[str, NodeStatus]:
        return {n.name: n.status for n in self.nodes}

    def failed(self) -> List[ExecutionNode]:
        return [n for n in self.nodes if n.status is NodeStatus.FAILED]

    def failed_errors(self) -> List[Exception]:
        return [n.error for n in self.failed() if n.error is not None]

    @property
    def ok(self) -> bool:
        """Nothing failed and nothing was skipped for any reason but its own condition."""
        if self.cancelled:
            return False
        for n in self.nodes:
            if n.status is NodeStatus.SUCCEEDED:
                continue
            if n.status is NodeStatus.SKIPPED and n.skip_reason == SKIP_CONDITION:
                continue
            return False
        return True


def _blocks(node: ExecutionNode) -> bool:
    """Does this terminal predecessor stop a non-forced dependent?"""
    if node.status is NodeStatus.FAILED:
        return True
    # a skip caused by an upstream failure carries the failure along
    return node.status is NodeStatus.SKIPPED and node.skip_reason != SKIP_CONDITION


class Scheduler:
    """
    Drives an ExecutionGraph to completion.

    - A node becomes Ready once every predecessor is terminal; its inherited
      env is assembled right then, on the scheduling thread, and never again.
    - Ready nodes run on a thread pool bounded by `max_workers`.
    - A failed predecessor turns a dependent into Skipped unless it is `force`,
      in which case it runs with env from the successful predecessors only.
    - `cancel()` (or Ctrl-C while `run()` waits) stops new work and terminates
      every in-flight process.
    """

    def __init__(
        self,
        settings: Optional[RunSettings] = None,
        backends: Optional[BackendSet] = None,
        hosts: Optional[Mapping[str, Host]] = None,
        console: Optional[Console] = None,
    ):
        self.settings = settings or RunSettings()
        self.backends = backends or BackendSet.from_settings(self.settings)
        self.hosts = dict(hosts or {})
        self.console = console or get_console()
        self._cancelled = threading.Event()
        self._host_locks: Dict[str, threading.Lock] = {}
        self._host_locks_guard = threading.Lock()
        self._context: Optional[str] = self.settings.context

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        self._cancelled.set()
        self.backends.registry.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def run(self, graph: ExecutionGraph) -> RunReport:
        report = RunReport(graph=graph, started_at=time.time())
        self._context = graph.context if graph.context is not None else self.settings.context

        remaining: Dict[str, int] = {name: len(graph.predecessors(name)) for name in graph.nodes}
        ready: Deque[str] = deque(name for name, deg in remaining.items() if deg == 0)
        in_flight: Dict[Future, str] = {}

        max_workers = self.settings.max_workers or max(1, len(graph))

        try:
            with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="taskweave") as pool:
                while ready or in_flight:
                    try:
                        # schedule everything currently unblocked
                        while ready and not self.cancelled:
                            name = ready.popleft()
                            node = graph.nodes[name]
                            if self._prepare(node, graph):
                                fut = pool.submit(self._execute, node)
                                in_flight[fut] = name
                            else:
                                self._unlock(name, graph, remaining, ready)

                        if self.cancelled:
                            ready.clear()
                        if not in_flight:
                            continue

                        # wait for one completion, then loop to schedule newly-ready nodes
                        fut = next(as_completed(list(in_flight.keys())))
                        name = in_flight.pop(fut)
                        fut.result()
                        self._unlock(name, graph, remaining, ready)
                    except KeyboardInterrupt:
                        self.console.print_info("\nInterrupted, terminating running tasks...")
                        self.cancel()
        finally:
            self.backends.close()

        if self.cancelled:
            report.cancelled = True
            for node in graph.nodes.values():
                if node.status in (NodeStatus.PENDING, NodeStatus.READY):
                    node.skip_reason = SKIP_CANCELLED
                    node.transition(NodeStatus.SKIPPED)

        report.finished_at = time.time()
        return report

    # ------------------------------------------------------------------
    # Scheduling-thread bookkeeping
    # ------------------------------------------------------------------

    def _unlock(self, name: str, graph: ExecutionGraph, remaining: Dict[str, int], ready: Deque[str]) -> None:
        for nxt in sorted(graph.dependents(name)):
            remaining[nxt] -= 1
            if remaining[nxt] == 0:
                ready.append(nxt)

    def _prepare(self, node: ExecutionNode, graph: ExecutionGraph) -> bool:
        """
        Decide the fate of a node whose predecessors are all terminal.
        Returns True when it must be submitted for execution.
        """
        preds = [graph.nodes[p] for p in graph.predecessors(node.name)]
        blocked = [p.name for p in preds if _blocks(p)]

        if blocked and not node.task.force:
            node.skip_reason = SKIP_UPSTREAM
            node.blocked_by = blocked
            node.transition(NodeStatus.SKIPPED)
            self.console.print_node_skipped(node.name, f"{SKIP_UPSTREAM}: {', '.join(blocked)}")
            return False

        inherited = merge_inherited(preds)
        node.inherited_env = inherited.env
        node.inherited_path = inherited.path
        node.inherited_outputs = inherited.outputs
        node.transition(NodeStatus.READY)

        try:
            decision = evaluate(
                node.task.condition,
                ConditionScope(task=node.name, context=self._context, inherited_env=node.inherited_env),
            )
        except ConditionEvaluationError as e:
            node.error = e
            node.finished_at = time.time()
            node.transition(NodeStatus.FAILED)
            self.console.print_node_failed(node.name, e)
            return False

        if decision is Decision.SKIP:
            node.skip_reason = SKIP_CONDITION
            node.transition(NodeStatus.SKIPPED)
            self.console.print_node_skipped(node.name, SKIP_CONDITION)
            return False

        return True

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    @contextmanager
    def _host_slot(self, host: Optional[Host]) -> Iterator[None]:
        if host is None or self.settings.host_policy is not HostPolicy.SERIAL:
            yield
            return
        with self._host_locks_guard:
            lock = self._host_locks.setdefault(host.name, threading.Lock())
        with lock:
            yield

    def _hosts_for(self, node: ExecutionNode) -> List[Optional[Host]]:
        if not node.task.hosts:
            return [None]
        hosts: List[Optional[Host]] = []
        for name in node.task.hosts:
            host = self.hosts.get(name)
            if host is None:
                raise ConfigError(f"Task '{node.name}' targets unknown host '{name}'")
            hosts.append(host)
        return hosts

    def _cwd(self, node: ExecutionNode, rendered_cwd: Optional[str]) -> Path:
        if backend_kind(node.task) is BackendKind.REMOTE:
            # interpreted on the remote side
            return Path(rendered_cwd or ".")
        base = Path(self.settings.workdir)
        if not rendered_cwd:
            return base
        cwd = Path(rendered_cwd).expanduser()
        return cwd if cwd.is_absolute() else (base / cwd)

    def _execute(self, node: ExecutionNode) -> None:
        if self.cancelled:
            # queued behind the worker limit when the run was cancelled
            node.skip_reason = SKIP_CANCELLED
            node.transition(NodeStatus.SKIPPED)
            self.console.print_node_skipped(node.name, SKIP_CANCELLED)
            return

        node.transition(NodeStatus.RUNNING)
        node.started_at = time.time()
        self.console.print_node_started(node.name)

        channels = NodeChannels.create(node.name)
        status = NodeStatus.FAILED
        try:
            self._run_node(node, channels)
            status = NodeStatus.SUCCEEDED
        except Exception as e:
            node.error = e
        finally:
            node.finished_at = time.time()
            if not self.settings.keep_channels:
                channels.cleanup()
            node.transition(status)

        if self.console.stream_output:
            for result in node.results:
                self.console.print_node_output(node.name, result.stdout, result.stderr)
        if status is NodeStatus.SUCCEEDED:
            self.console.print_node_succeeded(node.name, node.duration)
        else:
            self.console.print_node_failed(node.name, node.error)

    def _run_node(self, node: ExecutionNode, channels: NodeChannels) -> None:
        task = node.task
        settings = self.settings
        backend = self.backends.select(task)
        timeout = task.timeout or settings.default_timeout

        dotenv = load_dotenv_sources(task.dotenv, Path(settings.workdir), task=node.name)

        template_env = dict(os.environ)
        template_env.update(node.inherited_env)
        template_env.update(dotenv)
        template_env.update(task.env_dict())

        # every host renders before any of them runs
        plan = []
        for host in self._hosts_for(node):
            scope = TemplateScope(
                task_name=node.name,
                env=template_env,
                context=self._context,
                host=host,
                outputs=node.inherited_outputs,
            )
            rendered = render_task(task, scope)
            plan.append((host, rendered, self._cwd(node, rendered.cwd)))

        own = ChannelOutput()
        for host, rendered, cwd in plan:
            env: Dict[str, str] = {}
            env.update(node.inherited_env)
            env.update(dotenv)
            env.update(rendered.env)
            env.update(channels.variables())
            env["TASKWEAVE_TASK"] = node.name
            env["TASKWEAVE_CONTEXT"] = self._context or ""

            self.console.print_debug(f"[{node.name}] env: {sorted(env)} path+: {node.inherited_path}")
            self.console.print_debug(f"[{node.name}] backend={backend.kind.value} cwd={cwd} host={host.name if host else '-'}")

            with self._host_slot(host):
                result = backend.run(
                    rendered.body,
                    env,
                    cwd,
                    timeout,
                    task=task,
                    channels=channels,
                    path=node.inherited_path,
                    host=host,
                )
            node.results.append(result)

            if result.exit_code != 0:
                raise RuntimeExecError(
                    task=node.name,
                    message=f"exited with code {result.exit_code}",
                    details={
                        "exit_code": result.exit_code,
                        **({"host": host.name} if host else {}),
                        "stderr": result.stderr.strip()[-2000:],
                    },
                )

            # fold this host's channels in, then start clean for the next one
            parsed = channels.parse()
            own.env.update(parsed.env)
            own.path = parsed.path + [p for p in own.path if p not in parsed.path]
            own.outputs.update(parsed.outputs)
            for f in (channels.env_file, channels.path_file, channels.output_file):
                f.write_text("", encoding="utf-8")

        node.exported_env, node.exported_path = export_from(node.inherited_env, node.inherited_path, own)
        node.outputs = own.outputs
