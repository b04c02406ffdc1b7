import pytest

from taskweave.envfiles import load_dotenv_sources
from taskweave.errors import ConfigError
from taskweave.model import DotenvSource


def test_later_files_override_earlier(tmp_path) -> None:
    (tmp_path / ".env").write_text("A=1\nB=base\n")
    (tmp_path / ".env.local").write_text("B=local\n# comment\nexport C=\"quoted value\"\n")

    env = load_dotenv_sources([DotenvSource(".env"), DotenvSource(".env.local")], tmp_path, task="t")

    assert env == {"A": "1", "B": "local", "C": "quoted value"}


def test_missing_optional_file_is_skipped(tmp_path) -> None:
    assert load_dotenv_sources([DotenvSource("nope.env", optional=True)], tmp_path) == {}


def test_missing_required_file_is_config_error(tmp_path) -> None:
    with pytest.raises(ConfigError, match="nope.env"):
        load_dotenv_sources([DotenvSource("nope.env")], tmp_path, task="t")


def test_absolute_path(tmp_path) -> None:
    f = tmp_path / "abs.env"
    f.write_text("X=y\n")
    assert load_dotenv_sources([DotenvSource(str(f))], tmp_path / "elsewhere") == {"X": "y"}
