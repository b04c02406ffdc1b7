# backends/local.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Optional, Sequence

from ..channels import NodeChannels
from ..model import ExecutionResult, Host, TaskDefinition
from .base import Backend, BackendKind, extra_args, interpreter_for
from .process import run_process


class LocalBackend(Backend):
    """Runs the body with a local interpreter (sh, bash, python3, deno, ...)."""

    kind = BackendKind.LOCAL

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
        argv, suffix = interpreter_for(task)

        # the body goes into a script file next to the node's channels
        script = channels.root / f"script{suffix}"
        script.write_text(body, encoding="utf-8")

        full_env = os.environ.copy()
        full_env.update(env)
        if path:
            current = full_env.get("PATH", "")
            full_env["PATH"] = os.pathsep.join(list(path) + ([current] if current else []))

        return run_process(
            [*argv, str(script), *extra_args(task)],
            task=task.base_name,
            env=full_env,
            cwd=cwd,
            timeout=timeout,
            registry=self.registry,
        )
