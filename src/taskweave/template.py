# template.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .errors import TemplateError
from .model import Host, TaskDefinition

# ---------------------------------------------------------------------
# Rendering happens on the orchestrator, before any backend is invoked.
# A remote shell cannot see orchestrator state, so every reference must
# resolve to literal text here.
#
# Supported references:
#   {{ .Env.NAME }}            orchestrator env + inherited + declared env
#   {{ .Context }}             active context ("" when none)
#   {{ .Task.Name }}
#   {{ .Host.Name }} / .Address / .User / .Port / .Tags.<key>
#   {{ .Outputs.<task>.<key> }}  outputs of a predecessor
# ---------------------------------------------------------------------

_OPEN = "{{"
_CLOSE = "}}"
_REFERENCE = re.compile(r"^\.[A-Za-z_][\w]*(?:\.[\w-]+)*$")


@dataclass
class TemplateScope:
    task_name: str
    env: Mapping[str, str] = field(default_factory=dict)
    context: Optional[str] = None
    host: Optional[Host] = None
    outputs: Mapping[str, Mapping[str, str]] = field(default_factory=dict)

    def root(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "Env": self.env,
            "Context": self.context or "",
            "Task": {"Name": self.task_name},
            "Outputs": self.outputs,
        }
        if self.host is not None:
            data["Host"] = {
                "Name": self.host.name,
                "Address": self.host.address,
                "User": self.host.user or "",
                "Port": "" if self.host.port is None else str(self.host.port),
                "Tags": self.host.tags,
            }
        return data


def _lookup(expr: str, scope: TemplateScope) -> str:
    value: Any = scope.root()
    walked = ""
    for part in expr[1:].split("."):
        walked += "." + part
        if not isinstance(value, Mapping) or part not in value:
            raise TemplateError(
                task=scope.task_name,
                message=f"unresolved reference {{{{ {expr} }}}}",
                details={"missing": walked},
            )
        value = value[part]
    if isinstance(value, Mapping):
        raise TemplateError(
            task=scope.task_name,
            message=f"reference {{{{ {expr} }}}} does not name a value",
        )
    return str(value)


def render(text: str, scope: TemplateScope) -> str:
    """Expand every `{{ .Ref }}` in text, or raise TemplateError."""
    out = []
    pos = 0
    while True:
        start = text.find(_OPEN, pos)
        if start < 0:
            out.append(text[pos:])
            break
        end = text.find(_CLOSE, start + len(_OPEN))
        if end < 0:
            raise TemplateError(
                task=scope.task_name,
                message="unterminated template expression",
                details={"offset": start},
            )
        expr = text[start + len(_OPEN):end].strip()
        if not _REFERENCE.match(expr):
            raise TemplateError(
                task=scope.task_name,
                message=f"malformed template expression {{{{ {expr} }}}}",
                details={"offset": start},
            )
        out.append(text[pos:start])
        out.append(_lookup(expr, scope))
        pos = end + len(_CLOSE)
    return "".join(out)


@dataclass(frozen=True)
class RenderedTask:
    body: str
    env: Dict[str, str]
    cwd: Optional[str]


def render_task(task: TaskDefinition, scope: TemplateScope) -> RenderedTask:
    """
    Render the parts of a task that may carry templates.

    Tasks without `template` enabled pass through untouched.
    """
    env = task.env_dict()
    if not task.template:
        return RenderedTask(body=task.run, env=env, cwd=task.cwd)

    rendered_env: Dict[str, str] = {}
    for key, value in env.items():
        rendered_env[key] = render(value, scope)

    return RenderedTask(
        body=render(task.run, scope),
        env=rendered_env,
        cwd=render(task.cwd, scope) if task.cwd else task.cwd,
    )
