# envfiles.py
from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable

from dotenv import dotenv_values

from .errors import ConfigError
from .model import DotenvSource


def load_dotenv_sources(sources: Iterable[DotenvSource], cwd: Path, task: str = "") -> Dict[str, str]:
    """
    Load dotenv files in order; later files override earlier ones.

    Relative paths resolve against `cwd` (the run's workdir). A missing
    file is an error unless its source is marked optional.
    """
    env: Dict[str, str] = {}
    for src in sources:
        path = Path(src.path).expanduser()
        if not path.is_absolute():
            path = cwd / path
        if not path.exists():
            if src.optional:
                continue
            raise ConfigError(f"Task '{task}' dotenv file not found: {path}")
        loaded = dotenv_values(path)
        env.update({k: v for k, v in loaded.items() if v is not None})
    return env
