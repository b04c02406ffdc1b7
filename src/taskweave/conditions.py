# conditions.py
from __future__ import annotations

import ast
import os
import platform
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .errors import ConditionEvaluationError


# ---------------------------------------------------------------------
# Condition language
# ---------------------------------------------------------------------
# A task's `if` is a small Python-syntax boolean expression, checked
# against a whitelist of AST nodes and evaluated without builtins.
#
# Names available:
#   context   active context name ("" when none)
#   env       orchestrator env merged with the node's inherited env
#   os        platform.system().lower()  ("linux", "darwin", "windows")
#   arch      platform.machine()
#   task      task name
# Functions:
#   defined("NAME")   NAME is set and non-empty in env
#   exists("path")    a path exists on the orchestrator
#
# Examples:
#   context == "prod"
#   os != "windows" and env.get("CI") == "true"
#   defined("DEPLOY_TOKEN") and not exists("/tmp/lock")
# ---------------------------------------------------------------------

MAX_CONDITION_LEN = 500

_ALLOWED_NODES = (
    ast.Expression, ast.BoolOp, ast.UnaryOp, ast.Compare,
    ast.Name, ast.Load, ast.Constant, ast.List, ast.Tuple, ast.Set,
    ast.Subscript, ast.Call, ast.Attribute,
    ast.And, ast.Or, ast.Not,
    ast.Eq, ast.NotEq, ast.In, ast.NotIn,
)
_FUNCTIONS = {"defined", "exists"}
_ENV_METHODS = {"get"}


class Decision(str, Enum):
    RUN = "run"
    SKIP = "skip"


@dataclass
class ConditionScope:
    task: str
    context: Optional[str] = None
    inherited_env: Mapping[str, str] = field(default_factory=dict)
    process_env: Optional[Mapping[str, str]] = None

    def namespace(self) -> Dict[str, Any]:
        env = dict(os.environ if self.process_env is None else self.process_env)
        env.update(self.inherited_env)
        return {
            "context": self.context or "",
            "env": env,
            "os": platform.system().lower(),
            "arch": platform.machine(),
            "task": self.task,
            "defined": lambda name: bool(env.get(name)),
            "exists": lambda path: os.path.exists(path),
        }


def _validate(tree: ast.AST, task: str, expression: str) -> None:
    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ConditionEvaluationError(
                task=task,
                message=f"unsupported syntax in condition: {type(node).__name__}",
                details={"condition": expression},
            )
        if isinstance(node, ast.Call):
            func = node.func
            plain = isinstance(func, ast.Name) and func.id in _FUNCTIONS
            env_method = (
                isinstance(func, ast.Attribute)
                and func.attr in _ENV_METHODS
                and isinstance(func.value, ast.Name)
                and func.value.id == "env"
            )
            if not (plain or env_method) or node.keywords:
                raise ConditionEvaluationError(
                    task=task,
                    message="only defined(), exists() and env.get() may be called",
                    details={"condition": expression},
                )
        elif isinstance(node, ast.Attribute) and not (
            isinstance(node.value, ast.Name) and node.value.id == "env" and node.attr in _ENV_METHODS
        ):
            raise ConditionEvaluationError(
                task=task,
                message=f"attribute access is not allowed: .{node.attr}",
                details={"condition": expression},
            )


def evaluate(expression: Optional[str], scope: ConditionScope) -> Decision:
    """Decide whether a task runs. An empty condition always runs."""
    if expression is None or not expression.strip():
        return Decision.RUN

    expression = expression.strip()
    if len(expression) > MAX_CONDITION_LEN:
        raise ConditionEvaluationError(
            task=scope.task,
            message=f"condition too long ({len(expression)} > {MAX_CONDITION_LEN})",
        )

    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        raise ConditionEvaluationError(
            task=scope.task,
            message=f"malformed condition: {e.msg}",
            details={"condition": expression},
        ) from e

    _validate(tree, scope.task, expression)

    try:
        value = eval(compile(tree, "<condition>", "eval"), {"__builtins__": {}}, scope.namespace())
    except Exception as e:
        raise ConditionEvaluationError(
            task=scope.task,
            message=f"condition failed to evaluate: {e}",
            details={"condition": expression},
        ) from e

    if not isinstance(value, bool):
        raise ConditionEvaluationError(
            task=scope.task,
            message=f"condition must be boolean, got {type(value).__name__}",
            details={"condition": expression},
        )
    return Decision.RUN if value else Decision.SKIP
