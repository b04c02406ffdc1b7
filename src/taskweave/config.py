# config.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional


class HostPolicy(str, Enum):
    """How nodes that target the same remote host share it."""
    PARALLEL = "parallel"   # sessions to one host may overlap
    SERIAL = "serial"       # one node at a time per host


@dataclass
class RunSettings:
    """Knobs for one invocation. Definitions themselves are immutable."""
    context: Optional[str] = None
    max_workers: Optional[int] = None          # None -> one worker per node
    default_timeout: Optional[float] = None    # applies to tasks without their own
    host_policy: HostPolicy = HostPolicy.PARALLEL
    workdir: Path = field(default_factory=Path.cwd)
    container_engine: str = "docker"
    ssh_command: List[str] = field(default_factory=lambda: ["ssh"])
    kill_grace: float = 5.0                    # SIGTERM -> SIGKILL delay
    keep_channels: bool = False
