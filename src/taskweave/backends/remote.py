# backends/remote.py
from __future__ import annotations

import os
import re
import shlex
import shutil
import subprocess
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..channels import NodeChannels
from ..errors import ConfigError, RemoteConnectionError, RuntimeExecError
from ..model import ExecutionResult, Host, TaskDefinition
from .base import Backend, BackendKind, extra_args, interpreter_for
from .process import ProcessRegistry, run_process

# ssh reserves 255 for its own failures
SSH_FAILURE = 255

SECTIONS = ("env", "path", "output")

ENV_KEY = re.compile(r"[A-Za-z_][A-Za-z0-9_]*\Z")

# how long the remote kill may take before the local client is killed anyway
KILL_TIMEOUT = 30


class RemoteBackend(Backend):
    """
    Runs the body on a remote host over the `ssh` client.

    The whole invocation is a POSIX shell script fed to the remote `sh -s`:
    it creates a remote run directory named after the run marker, records the
    remote shell's pid there, writes the body to a script, runs it with the
    task's interpreter, then prints the channel contents after a marker line. The marker section is cut off stdout and copied into the node's
    local channel files, so remote tasks propagate env exactly like local ones.

    Killing the local client does not stop the remote side, so a timeout or
    cancellation also runs `kill_script` on the host, which signals the
    process group of the recorded pid.

    Connections are multiplexed per host through an ssh ControlMaster socket
    for the lifetime of the backend.
    """

    kind = BackendKind.REMOTE

    def __init__(
        self,
        registry: Optional[ProcessRegistry] = None,
        ssh_command: Sequence[str] = ("ssh",),
        multiplex: bool = True,
    ):
        super().__init__(registry)
        self.ssh_command = list(ssh_command)
        self.multiplex = multiplex
        self._control_dir: Optional[Path] = None
        self._used: Dict[str, Host] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # ssh argv
    # ------------------------------------------------------------------

    def _control_path(self) -> Path:
        with self._lock:
            if self._control_dir is None:
                self._control_dir = Path(tempfile.mkdtemp(prefix="taskweave-ssh-"))
            return self._control_dir

    def ssh_argv(self, host: Host) -> List[str]:
        argv = list(self.ssh_command)
        argv.extend(["-o", "BatchMode=yes"])
        if self.multiplex:
            argv.extend([
                "-o", "ControlMaster=auto",
                "-o", f"ControlPath={self._control_path()}/%C",
                "-o", "ControlPersist=60",
            ])
        if host.port:
            argv.extend(["-p", str(host.port)])
        argv.append(host.destination)
        return argv

    # ------------------------------------------------------------------
    # script
    # ------------------------------------------------------------------

    def build_script(
        self,
        body: str,
        env: Dict[str, str],
        cwd: Optional[str],
        task: TaskDefinition,
        path: Sequence[str],
        marker: str,
    ) -> str:
        argv, _suffix = interpreter_for(task)
        run_cmd = " ".join(shlex.quote(a) for a in argv)
        args = " ".join(shlex.quote(a) for a in extra_args(task))
        eof = f"__TASKWEAVE_EOF_{marker}__"

        lines = [
            f"__tw_dir={run_dir(marker)}",
            'mkdir -m 700 "$__tw_dir" || exit 255',
            'echo $$ > "$__tw_dir/pid"',
        ]
        for key, value in env.items():
            if not ENV_KEY.match(key):
                raise RuntimeExecError(
                    task=task.base_name,
                    message=f"cannot export {key!r} to a remote shell: not a valid variable name",
                )
            lines.append(f"export {key}={shlex.quote(value)}")
        if path:
            lines.append(f'export PATH={shlex.quote(":".join(path))}:"$PATH"')
        for section, var in zip(SECTIONS, ("TASKWEAVE_ENV", "TASKWEAVE_PATH", "TASKWEAVE_OUTPUT")):
            lines.append(f'export {var}="$__tw_dir/{section}"; : > "${var}"')
        lines.append(f'cat > "$__tw_dir/script" <<\'{eof}\'')
        lines.append(body.rstrip("\n"))
        lines.append(eof)
        if cwd:
            lines.append(f"cd {shlex.quote(cwd)} || exit 1")
        lines.append(" ".join(p for p in (run_cmd, '"$__tw_dir/script"', args, "</dev/null") if p))
        lines.append("__tw_rc=$?")
        for section in SECTIONS:
            lines.append(f"printf '\\n%s\\n' {shlex.quote(f'{marker}:{section}')}")
            lines.append(f'cat "$__tw_dir/{section}"')
        lines.append('rm -rf "$__tw_dir"')
        lines.append('exit "$__tw_rc"')
        return "\n".join(lines) + "\n"

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------

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
        if host is None:
            raise ConfigError(f"Task '{task.base_name}' needs a host for remote execution")

        marker = f"__TASKWEAVE_{uuid.uuid4().hex}__"
        # the remote side gets only the task's own env, never the orchestrator's
        remote_env = {k: v for k, v in env.items() if not k.startswith("TASKWEAVE_")}
        remote_env["TASKWEAVE_TASK"] = task.base_name
        if "TASKWEAVE_CONTEXT" in env:
            remote_env["TASKWEAVE_CONTEXT"] = env["TASKWEAVE_CONTEXT"]
        remote_cwd = None if str(cwd) in ("", ".") else str(cwd)
        script = self.build_script(body, remote_env, remote_cwd, task, path, marker)

        argv = self.ssh_argv(host) + ["sh", "-s"]
        with self._lock:
            self._used[host.name] = host

        def _kill_remote() -> None:
            try:
                subprocess.run(
                    self.ssh_argv(host) + ["sh", "-s"],
                    input=kill_script(marker),
                    capture_output=True,
                    text=True,
                    check=False,
                    timeout=KILL_TIMEOUT,
                )
            except subprocess.TimeoutExpired:
                # host unreachable; the local client is still killed
                pass

        result = run_process(
            argv,
            task=task.base_name,
            env=os.environ.copy(),
            cwd=Path.cwd(),
            timeout=timeout,
            registry=self.registry,
            stdin=script,
            on_terminate=_kill_remote,
        )
        result.host = host.name

        stdout, sections, complete = split_marker_output(result.stdout, marker)
        if result.exit_code == SSH_FAILURE and not complete:
            raise RemoteConnectionError(
                task=task.base_name,
                message=f"could not reach host '{host.name}' ({host.destination})",
                details={"stderr": result.stderr.strip()[-2000:]},
            )

        result.stdout = stdout
        channels.env_file.write_text(sections.get("env", ""), encoding="utf-8")
        channels.path_file.write_text(sections.get("path", ""), encoding="utf-8")
        channels.output_file.write_text(sections.get("output", ""), encoding="utf-8")
        return result

    def close(self) -> None:
        if self._control_dir is None:
            return
        if self.multiplex:
            for name in sorted(self._used):
                host = self._used[name]
                argv = self.ssh_command + ["-o", f"ControlPath={self._control_dir}/%C"]
                if host.port:
                    argv.extend(["-p", str(host.port)])
                # best effort: the master exits on its own after ControlPersist
                subprocess.run(
                    argv + ["-O", "exit", host.destination],
                    capture_output=True,
                    check=False,
                )
        shutil.rmtree(self._control_dir, ignore_errors=True)
        self._control_dir = None


def split_marker_output(stdout: str, marker: str) -> Tuple[str, Dict[str, str], bool]:
    """
    Separate task stdout from the channel sections printed after it.

    Returns (task_stdout, sections, complete) where `complete` tells whether
    the trailing sections were printed at all.
    """
    lines = stdout.split("\n")
    sections: Dict[str, List[str]] = {}
    task_lines: List[str] = []
    current: Optional[str] = None

    for line in lines:
        if line.startswith(marker + ":"):
            current = line[len(marker) + 1:]
            sections[current] = []
            continue
        if current is None:
            task_lines.append(line)
        else:
            sections[current].append(line)

    complete = all(s in sections for s in SECTIONS)
    # printf adds one blank line before each marker
    if task_lines and task_lines[-1] == "" and sections:
        task_lines.pop()
    cleaned = {}
    for name, content in sections.items():
        if content and content[-1] == "" and name != SECTIONS[-1]:
            content = content[:-1]
        cleaned[name] = "\n".join(content)
    return "\n".join(task_lines), cleaned, complete


def run_dir(marker: str) -> str:
    """Shell expression of the remote directory for one run."""
    return f'"${{TMPDIR:-/tmp}}/{marker}"'


def kill_script(marker: str) -> str:
    """Remote script that terminates the run recorded under `marker` and removes its directory."""
    return "\n".join([
        f"__tw_dir={run_dir(marker)}",
        'if [ -f "$__tw_dir/pid" ]; then',
        '  __tw_pid=$(cat "$__tw_dir/pid")',
        '  __tw_pgid=$(ps -o pgid= -p "$__tw_pid" 2>/dev/null | tr -d " ")',
        '  if [ -n "$__tw_pgid" ]; then kill -TERM -- "-$__tw_pgid"; else kill -TERM "$__tw_pid"; fi',
        "fi 2>/dev/null",
        'rm -rf "$__tw_dir"',
    ]) + "\n"
