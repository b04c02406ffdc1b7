"""Per-node propagation channels.

Each node gets three files in a private temp directory while it runs:

- env channel (``$TASKWEAVE_ENV``): ``KEY=value`` lines merged into the
  environment of dependents
- path channel (``$TASKWEAVE_PATH``): one directory per line, prepended to
  ``PATH`` for dependents
- outputs channel (``$TASKWEAVE_OUTPUT``): ``key=value`` results for
  programmatic consumers

Both key/value channels also accept a multi-line form::

    NOTES<<EOF
    first line
    second line
    EOF

Nothing is shared between nodes at runtime; a dependent only ever sees a merge
of its predecessors' parsed channels, assembled once when it becomes Ready.
"""

from __future__ import annotations

import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Sequence, Tuple

from .model import ExecutionNode, NodeStatus

ENV_VAR = "TASKWEAVE_ENV"
PATH_VAR = "TASKWEAVE_PATH"
OUTPUT_VAR = "TASKWEAVE_OUTPUT"


@dataclass
class ChannelOutput:
    env: Dict[str, str] = field(default_factory=dict)
    path: List[str] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)


@dataclass
class NodeChannels:
    root: Path

    @property
    def env_file(self) -> Path:
        return self.root / "env"

    @property
    def path_file(self) -> Path:
        return self.root / "path"

    @property
    def output_file(self) -> Path:
        return self.root / "output"

    @classmethod
    def create(cls, task_name: str) -> "NodeChannels":
        safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in task_name)
        root = Path(tempfile.mkdtemp(prefix=f"taskweave-{safe}-"))
        channels = cls(root)
        for f in (channels.env_file, channels.path_file, channels.output_file):
            f.touch()
        return channels

    def variables(self, root: str | None = None) -> Dict[str, str]:
        """Env vars pointing the task body at its channels (optionally under another mount root)."""
        base = root or str(self.root)
        return {
            ENV_VAR: f"{base}/env",
            PATH_VAR: f"{base}/path",
            OUTPUT_VAR: f"{base}/output",
        }

    def parse(self) -> ChannelOutput:
        return ChannelOutput(
            env=parse_env_lines(_read(self.env_file)),
            path=parse_path_lines(_read(self.path_file)),
            outputs=parse_env_lines(_read(self.output_file)),
        )

    def cleanup(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)


def _read(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text(encoding="utf-8", errors="replace")


def parse_env_lines(text: str) -> Dict[str, str]:
    """Parse `KEY=value` and `KEY<<DELIM ... DELIM` blocks; later keys win."""
    result: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip() or line.lstrip().startswith("#"):
            continue

        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            key, _, delim = line.partition("<<")
            key, delim = key.strip(), delim.strip()
            block: List[str] = []
            while i < len(lines) and lines[i] != delim:
                block.append(lines[i])
                i += 1
            i += 1  # skip delimiter (or run off the end)
            if key:
                result[key] = "\n".join(block)
            continue

        key, sep, value = line.partition("=")
        key = key.strip()
        if sep and key:
            result[key] = value
    return result


def parse_path_lines(text: str) -> List[str]:
    entries: List[str] = []
    for line in text.splitlines():
        entry = line.strip()
        if entry and entry not in entries:
            entries.append(entry)
    return entries


# ----------------------------------------------------------------------
# Merge
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Inherited:
    env: Dict[str, str]
    path: List[str]
    outputs: Dict[str, Dict[str, str]]


def merge_inherited(predecessors: Sequence[ExecutionNode]) -> Inherited:
    """
    Fold predecessor exports into one inherited view.

    `predecessors` must be in the dependent's declared order. Only Succeeded
    nodes contribute. For env keys the later predecessor wins; PATH entries of
    later predecessors are placed first so lookup precedence matches.
    """
    env: Dict[str, str] = {}
    path: List[str] = []
    outputs: Dict[str, Dict[str, str]] = {}

    for node in predecessors:
        if node.status is not NodeStatus.SUCCEEDED:
            continue
        env.update(node.exported_env)
        path = _prepend(node.exported_path, path)
        outputs[node.name] = dict(node.outputs)

    return Inherited(env=env, path=path, outputs=outputs)


def _prepend(front: Iterable[str], rest: List[str]) -> List[str]:
    merged = list(dict.fromkeys(front))
    merged.extend(p for p in rest if p not in merged)
    return merged


def export_from(inherited_env: Dict[str, str], inherited_path: List[str], own: ChannelOutput) -> Tuple[Dict[str, str], List[str]]:
    """What a succeeded node passes on: its inheritance overlaid with its own channels."""
    env = dict(inherited_env)
    env.update(own.env)
    return env, _prepend(own.path, inherited_path)
