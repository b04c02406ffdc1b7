from dataclasses import dataclass, field
from typing import List

import pytest

from taskweave.errors import (
    EXIT_GRAPH_ERROR,
    EXIT_INTERRUPTED,
    EXIT_OK,
    EXIT_TASK_FAILED,
    EXIT_TIMEOUT,
    ConfigError,
    CycleError,
    RuntimeExecError,
    TaskNotFoundError,
    TaskTimeoutError,
    exit_code_for,
)


@dataclass
class _Outcome:
    errors: List[Exception] = field(default_factory=list)
    ok: bool = True
    cancelled: bool = False

    def failed_errors(self):
        return self.errors


def test_node_error_str_includes_details() -> None:
    err = RuntimeExecError(task="build", message="exited with code 2", details={"exit_code": 2})
    assert str(err).splitlines() == ["runtime: exited with code 2", "task=build", "exit_code=2"]
    assert err.exit_code == 2


def test_task_not_found_message() -> None:
    err = TaskNotFoundError("ghost", "prod", known=["b", "a"], referenced_by="deploy")
    assert "ghost" in str(err) and "context=prod" in str(err) and "deploy" in str(err)
    assert err.known == ["a", "b"]


@pytest.mark.parametrize(
    "outcome, code",
    [
        (ConfigError("bad"), EXIT_GRAPH_ERROR),
        (CycleError(["a", "b", "a"]), EXIT_GRAPH_ERROR),
        (TaskNotFoundError("x"), EXIT_GRAPH_ERROR),
        (KeyboardInterrupt(), EXIT_INTERRUPTED),
        (RuntimeError("boom"), EXIT_TASK_FAILED),
        (_Outcome(), EXIT_OK),
        (_Outcome(ok=False), EXIT_TASK_FAILED),
        (_Outcome([TaskTimeoutError(task="a", message="t")], ok=False), EXIT_TIMEOUT),
        (
            _Outcome([TaskTimeoutError(task="a", message="t"), RuntimeExecError(task="b", message="x")], ok=False),
            EXIT_TASK_FAILED,
        ),
        (_Outcome(cancelled=True, ok=False), EXIT_INTERRUPTED),
    ],
)
def test_exit_code_for(outcome, code) -> None:
    assert exit_code_for(outcome) == code
