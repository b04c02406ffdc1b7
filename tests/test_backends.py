import threading
from pathlib import Path

import pytest

from taskweave import dsl
from taskweave.backends import (
    BackendKind,
    BackendSet,
    ContainerBackend,
    LocalBackend,
    ProcessRegistry,
    RemoteBackend,
    backend_kind,
    run_process,
    select_backend,
)
from taskweave.backends.base import interpreter_for
from taskweave.backends.remote import kill_script, split_marker_output
from taskweave.channels import NodeChannels
from taskweave.config import RunSettings
from taskweave.errors import ConfigError, RemoteConnectionError, RunCancelledError, RuntimeExecError, TaskTimeoutError


@pytest.fixture
def channels():
    ch = NodeChannels.create("test")
    yield ch
    ch.cleanup()


def test_backend_kind_selection() -> None:
    assert backend_kind(dsl.task("a", "x")) is BackendKind.LOCAL
    assert backend_kind(dsl.task("a", "x", runtime="deno")) is BackendKind.LOCAL
    assert backend_kind(dsl.task("a", "x", runtime="docker", params={"image": "alpine"})) is BackendKind.CONTAINER
    assert backend_kind(dsl.task("a", "x", hosts=["web"])) is BackendKind.REMOTE


def test_backend_set_selects_by_kind() -> None:
    backends = BackendSet.from_settings(RunSettings(container_engine="podman"))
    container = backends.select(dsl.task("a", "x", runtime="docker", params={"image": "alpine"}))
    assert isinstance(container, ContainerBackend)
    assert container.engine == "podman"
    assert isinstance(backends.select(dsl.task("a", "x")), LocalBackend)
    assert isinstance(backends.select(dsl.task("a", "x", hosts=["h"])), RemoteBackend)
    assert select_backend(dsl.task("a", "x"), backends) is backends.select(dsl.task("b", "y"))


def test_interpreter_for_runtime_and_override() -> None:
    assert interpreter_for(dsl.task("a", "x", runtime="deno")) == (["deno", "run", "-A"], ".ts")
    assert interpreter_for(dsl.task("a", "x", runtime="python")) == (["python3"], ".py")
    argv, _ = interpreter_for(dsl.task("a", "x", params={"interpreter": "bash -eu"}))
    assert argv == ["bash", "-eu"]


# ----------------------------------------------------------------------
# process
# ----------------------------------------------------------------------

def test_run_process_captures_output(tmp_path) -> None:
    result = run_process(["sh", "-c", "echo out; echo err >&2; exit 3"], task="t", env={"PATH": "/usr/bin:/bin"}, cwd=tmp_path, timeout=10)
    assert result.exit_code == 3
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"
    assert not result.ok


def test_run_process_missing_executable(tmp_path) -> None:
    with pytest.raises(RuntimeExecError, match="executable not found"):
        run_process(["definitely-not-a-real-binary-xyz"], task="t", env={}, cwd=tmp_path, timeout=1)


def test_run_process_timeout(tmp_path) -> None:
    registry = ProcessRegistry(kill_grace=1.0)
    with pytest.raises(TaskTimeoutError) as exc:
        run_process(["sh", "-c", "sleep 30"], task="t", env={"PATH": "/usr/bin:/bin"}, cwd=tmp_path, timeout=0.2, registry=registry)
    assert exc.value.details["timeout"] == 0.2


def test_registry_cancel_terminates_running_process(tmp_path) -> None:
    registry = ProcessRegistry(kill_grace=1.0)
    timer = threading.Timer(0.3, registry.cancel)
    timer.start()
    try:
        with pytest.raises(RunCancelledError):
            run_process(["sh", "-c", "sleep 30"], task="t", env={"PATH": "/usr/bin:/bin"}, cwd=tmp_path, timeout=20, registry=registry)
    finally:
        timer.cancel()


def test_cancelled_registry_refuses_new_processes(tmp_path) -> None:
    registry = ProcessRegistry()
    registry.cancel()
    with pytest.raises(RunCancelledError):
        run_process(["true"], task="t", env={}, cwd=tmp_path, timeout=1, registry=registry)


# ----------------------------------------------------------------------
# local
# ----------------------------------------------------------------------

def test_local_backend_runs_body_with_env_and_path(tmp_path, channels) -> None:
    backend = LocalBackend()
    task = dsl.task("greet", "x", params={"args": ["one", "two"]})
    result = backend.run(
        'echo "$GREETING $1 $2"; echo "$PATH"',
        {"GREETING": "hello"},
        tmp_path,
        10,
        task=task,
        channels=channels,
        path=["/opt/first", "/opt/second"],
    )
    lines = result.stdout.splitlines()
    assert lines[0] == "hello one two"
    assert lines[1].startswith("/opt/first:/opt/second:")


def test_local_backend_python_runtime(tmp_path, channels) -> None:
    result = LocalBackend().run(
        "import os\nprint(os.environ['X'])",
        {"X": "42"},
        tmp_path,
        10,
        task=dsl.task("py", "x", runtime="python"),
        channels=channels,
    )
    assert result.stdout.strip() == "42"


# ----------------------------------------------------------------------
# container
# ----------------------------------------------------------------------

def test_container_argv(tmp_path, channels) -> None:
    backend = ContainerBackend(engine="docker")
    task = dsl.task(
        "build",
        "x",
        runtime="docker",
        params={"image": "node:20", "volumes": ["/cache:/cache"], "user": "1000", "shell": "bash"},
    )
    argv = backend.build_argv("taskweave-build-1", {"A": "1"}, tmp_path, task, channels)

    assert argv[:6] == ["docker", "run", "--rm", "-i", "--name", "taskweave-build-1"]
    assert f"{tmp_path.resolve()}:/workspace" in argv
    assert f"{channels.root}:/taskweave" in argv
    assert "/cache:/cache" in argv
    assert "A=1" in argv
    assert "TASKWEAVE_ENV=/taskweave/env" in argv
    assert argv[argv.index("--user") + 1] == "1000"
    assert argv[-3:] == ["node:20", "bash", "/taskweave/script"]


def test_container_argv_with_inherited_path(tmp_path, channels) -> None:
    task = dsl.task("build", "x", runtime="docker", params={"image": "alpine"})
    argv = ContainerBackend().build_argv("n", {}, tmp_path, task, channels, path=["/tools"])
    assert argv[argv.index("alpine") + 1:argv.index("alpine") + 3] == ["sh", "-c"]
    assert 'PATH="/tools:$PATH"' in argv[argv.index("alpine") + 3]


def test_container_without_image_is_config_error(tmp_path, channels) -> None:
    with pytest.raises(ConfigError, match="image"):
        ContainerBackend().build_argv("n", {}, tmp_path, dsl.task("c", "x", runtime="docker"), channels)


# ----------------------------------------------------------------------
# remote
# ----------------------------------------------------------------------

def test_ssh_argv() -> None:
    backend = RemoteBackend(ssh_command=["ssh"], multiplex=False)
    argv = backend.ssh_argv(dsl.host("web", "10.0.0.5", user="ops", port=2222))
    assert argv == ["ssh", "-o", "BatchMode=yes", "-p", "2222", "ops@10.0.0.5"]


def test_ssh_argv_multiplexed() -> None:
    backend = RemoteBackend()
    try:
        argv = backend.ssh_argv(dsl.host("web"))
        assert "ControlMaster=auto" in argv
        assert argv[-1] == "web"
    finally:
        backend.close()


def test_build_script_exports_env_and_embeds_body() -> None:
    backend = RemoteBackend(multiplex=False)
    script = backend.build_script(
        "echo 'it''s'",
        {"TOKEN": "a b"},
        "/srv/app",
        dsl.task("t", "x"),
        ["/opt/bin"],
        "MARK",
    )
    assert "export TOKEN='a b'" in script
    assert "cd /srv/app || exit 1" in script
    assert "echo 'it''s'" in script
    assert "MARK:env" in script
    assert '"${TMPDIR:-/tmp}/MARK"' in script
    assert 'echo $$ > "$__tw_dir/pid"' in script


@pytest.mark.parametrize("key", ["BAD KEY", "X;rm -rf /", "1ST", ""])
def test_build_script_rejects_unexportable_env_keys(key) -> None:
    with pytest.raises(RuntimeExecError, match="not a valid variable name"):
        RemoteBackend(multiplex=False).build_script("true", {key: "v"}, None, dsl.task("t", "x"), [], "MARK")


def test_kill_script_signals_recorded_process_group() -> None:
    script = kill_script("MARK")
    assert '__tw_dir="${TMPDIR:-/tmp}/MARK"' in script
    assert 'cat "$__tw_dir/pid"' in script
    assert 'kill -TERM -- "-$__tw_pgid"' in script
    assert script.rstrip().endswith('rm -rf "$__tw_dir"')


def test_split_marker_output() -> None:
    stdout = "hello\n\nM:env\nA=1\n\nM:path\n/opt/bin\n\nM:output\nk=v\n"
    task_out, sections, complete = split_marker_output(stdout, "M")
    assert task_out == "hello"
    assert sections["env"] == "A=1"
    assert sections["path"] == "/opt/bin"
    assert "k=v" in sections["output"]
    assert complete


def test_split_marker_output_without_sections() -> None:
    task_out, sections, complete = split_marker_output("partial output\n", "M")
    assert task_out == "partial output\n"
    assert sections == {}
    assert not complete


# a stand-in for ssh that ignores its arguments and runs the script locally
LOOPBACK_SSH = ["sh", "-c", "exec sh -s", "fake-ssh"]


def test_remote_backend_round_trip_through_loopback_shell(tmp_path, channels) -> None:
    backend = RemoteBackend(ssh_command=LOOPBACK_SSH, multiplex=False)
    body = 'echo "on $TASKWEAVE_TASK with $TOKEN"\necho "FROM_REMOTE=yes" >> "$TASKWEAVE_ENV"\necho "v=1" >> "$TASKWEAVE_OUTPUT"'
    result = backend.run(
        body,
        {"TOKEN": "abc", "TASKWEAVE_ENV": "/local/only", "TASKWEAVE_CONTEXT": "prod"},
        Path("."),
        10,
        task=dsl.task("deploy", "x", hosts=["web"]),
        channels=channels,
        host=dsl.host("web"),
    )
    assert result.exit_code == 0
    assert result.stdout.strip() == "on deploy with abc"
    assert result.host == "web"
    parsed = channels.parse()
    assert parsed.env == {"FROM_REMOTE": "yes"}
    assert parsed.outputs == {"v": "1"}
    backend.close()


def test_remote_backend_reports_unreachable_host(channels) -> None:
    backend = RemoteBackend(ssh_command=["sh", "-c", "echo 'connection refused' >&2; exit 255", "fake-ssh"], multiplex=False)
    with pytest.raises(RemoteConnectionError) as exc:
        backend.run("true", {}, Path("."), 10, task=dsl.task("t", "x", hosts=["web"]), channels=channels, host=dsl.host("web"))
    assert "connection refused" in exc.value.details["stderr"]


def test_remote_backend_requires_host(channels) -> None:
    with pytest.raises(ConfigError):
        RemoteBackend(multiplex=False).run("true", {}, Path("."), 1, task=dsl.task("t", "x"), channels=channels)


def test_remote_timeout_kills_the_remote_run(tmp_path, channels, monkeypatch) -> None:
    monkeypatch.setenv("TMPDIR", str(tmp_path))
    log = tmp_path / "ssh.log"
    # like LOOPBACK_SSH, but keeps every script it is sent
    recording_ssh = ["sh", "-c", 'script=$(cat); printf "%s\\n" "$script" >> "$0"; printf "%s\\n" "$script" | sh', str(log)]
    backend = RemoteBackend(registry=ProcessRegistry(kill_grace=0.5), ssh_command=recording_ssh, multiplex=False)

    with pytest.raises(TaskTimeoutError):
        backend.run(
            "sleep 30",
            {},
            Path("."),
            1.0,
            task=dsl.task("slow", "x", hosts=["web"]),
            channels=channels,
            host=dsl.host("web"),
        )

    sent = log.read_text()
    assert "sleep 30" in sent
    assert "kill -TERM" in sent
    # the kill script removed the remote run directory
    assert not any(p.name.startswith("__TASKWEAVE_") for p in tmp_path.iterdir())
