from taskweave import dsl
from taskweave.channels import (
    ChannelOutput,
    NodeChannels,
    export_from,
    merge_inherited,
    parse_env_lines,
    parse_path_lines,
)
from taskweave.model import ExecutionNode, NodeStatus


def _node(name: str, status: NodeStatus, env=None, path=None, outputs=None) -> ExecutionNode:
    node = ExecutionNode(task=dsl.task(name, "true"), status=status)
    node.exported_env = dict(env or {})
    node.exported_path = list(path or [])
    node.outputs = dict(outputs or {})
    return node


def test_parse_env_lines_simple_and_multiline() -> None:
    text = "\n".join([
        "# comment",
        "A=1",
        "B=x=y",
        "NOTES<<EOF",
        "line one",
        "line two",
        "EOF",
        "",
        "A=2",
        "garbage",
    ])
    assert parse_env_lines(text) == {"A": "2", "B": "x=y", "NOTES": "line one\nline two"}


def test_parse_env_lines_keeps_empty_values() -> None:
    assert parse_env_lines("EMPTY=\n") == {"EMPTY": ""}


def test_parse_path_lines_dedupes_in_order() -> None:
    assert parse_path_lines("/opt/a/bin\n\n/opt/b/bin\n/opt/a/bin\n") == ["/opt/a/bin", "/opt/b/bin"]


def test_channels_lifecycle() -> None:
    channels = NodeChannels.create("deploy:prod")
    try:
        assert channels.env_file.exists()
        assert channels.path_file.exists()
        assert channels.output_file.exists()

        variables = channels.variables()
        assert variables["TASKWEAVE_ENV"] == str(channels.env_file)
        assert channels.variables("/mnt")["TASKWEAVE_OUTPUT"] == "/mnt/output"

        channels.env_file.write_text("TOKEN=abc\n")
        channels.path_file.write_text("/tools/bin\n")
        channels.output_file.write_text("version=1.0\n")
        parsed = channels.parse()
        assert parsed.env == {"TOKEN": "abc"}
        assert parsed.path == ["/tools/bin"]
        assert parsed.outputs == {"version": "1.0"}
    finally:
        channels.cleanup()
    assert not channels.root.exists()


def test_merge_inherited_later_predecessor_wins() -> None:
    a = _node("a", NodeStatus.SUCCEEDED, env={"K": "a", "A": "1"}, path=["/a"], outputs={"v": "1"})
    b = _node("b", NodeStatus.SUCCEEDED, env={"K": "b"}, path=["/b"])
    merged = merge_inherited([a, b])
    assert merged.env == {"K": "b", "A": "1"}
    assert merged.path == ["/b", "/a"]
    assert merged.outputs == {"a": {"v": "1"}, "b": {}}

    reversed_merge = merge_inherited([b, a])
    assert reversed_merge.env["K"] == "a"


def test_merge_inherited_ignores_unsuccessful_predecessors() -> None:
    ok = _node("ok", NodeStatus.SUCCEEDED, env={"A": "1"})
    failed = _node("failed", NodeStatus.FAILED, env={"A": "boom", "B": "2"})
    skipped = _node("skipped", NodeStatus.SKIPPED, env={"C": "3"})
    merged = merge_inherited([ok, failed, skipped])
    assert merged.env == {"A": "1"}
    assert list(merged.outputs) == ["ok"]


def test_export_from_overlays_own_channels() -> None:
    env, path = export_from(
        {"A": "inherited", "B": "kept"},
        ["/inherited"],
        ChannelOutput(env={"A": "own"}, path=["/own"]),
    )
    assert env == {"A": "own", "B": "kept"}
    assert path == ["/own", "/inherited"]
