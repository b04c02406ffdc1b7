# backends/container.py
from __future__ import annotations

import os
import subprocess
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ..channels import NodeChannels
from ..errors import ConfigError
from ..model import ExecutionResult, Host, TaskDefinition
from .base import Backend, BackendKind, extra_args
from .process import ProcessRegistry, run_process


CONTAINER_WORKDIR = "/workspace"
CONTAINER_CHANNELS = "/taskweave"


class ContainerBackend(Backend):
    """
    Runs the body inside a throwaway container.

    The task's working directory is mounted at /workspace and its channel
    directory at /taskweave. Task `with` parameters:
      image    (required)
      shell    interpreter inside the image, default "sh"
      volumes  extra "-v" specs
      user     "--user" value
    """

    kind = BackendKind.CONTAINER

    def __init__(self, registry: Optional[ProcessRegistry] = None, engine: str = "docker"):
        super().__init__(registry)
        self.engine = engine

    def build_argv(
        self,
        name: str,
        env: Dict[str, str],
        cwd: Path,
        task: TaskDefinition,
        channels: NodeChannels,
        path: Sequence[str] = (),
    ) -> List[str]:
        image = task.params.get("image")
        if not image:
            raise ConfigError(f"Task '{task.base_name}' uses runtime {task.runtime!r} without an image")

        cmd = [self.engine, "run", "--rm", "-i", "--name", name]
        cmd.extend(["-v", f"{cwd.resolve()}:{CONTAINER_WORKDIR}"])
        cmd.extend(["-v", f"{channels.root}:{CONTAINER_CHANNELS}"])
        for vol in task.params.get("volumes") or []:
            cmd.extend(["-v", vol])
        cmd.extend(["-w", CONTAINER_WORKDIR])

        container_env = dict(env)
        container_env.update(channels.variables(CONTAINER_CHANNELS))
        for key, value in container_env.items():
            cmd.extend(["-e", f"{key}={value}"])

        user = task.params.get("user")
        if user:
            cmd.extend(["--user", str(user)])

        shell = task.params.get("shell", "sh")
        script = f"{CONTAINER_CHANNELS}/script"
        if path:
            # PATH of the image is only known inside the container
            prefix = ":".join(path)
            cmd.extend([image, "sh", "-c", f'PATH="{prefix}:$PATH" exec {shell} {script} "$@"', "sh"])
        else:
            cmd.extend([image, shell, script])
        cmd.extend(extra_args(task))
        return cmd

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
        (channels.root / "script").write_text(body, encoding="utf-8")

        name = f"taskweave-{task.base_name}-{uuid.uuid4().hex[:8]}"
        argv = self.build_argv(name, env, cwd, task, channels, path)

        # killing the client does not stop the container; remove it explicitly
        def _remove() -> None:
            subprocess.run(
                [self.engine, "rm", "-f", name],
                capture_output=True,
                check=False,
            )

        return run_process(
            argv,
            task=task.base_name,
            env=os.environ.copy(),
            cwd=cwd,
            timeout=timeout,
            registry=self.registry,
            on_terminate=_remove,
        )
