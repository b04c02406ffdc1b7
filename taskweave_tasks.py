# taskweave_tasks.py
# Tasks for working on taskweave itself: install, test, and a demo chain
from __future__ import annotations
from taskweave import wf, task, job, dotenv

def definitions():
    return wf(
        task("install", "pip install -e '.[test]'", desc="editable install with test extra"),
        task("test", "pytest -q", needs=["install"], desc="run the test suite"),

        # A short chain showing env propagation between tasks
        task(
            "version",
            'echo "TW_VERSION=$(grep -m1 \'^version\' pyproject.toml | cut -d\\" -f2)" >> "$TASKWEAVE_ENV"',
            desc="export the project version",
        ),
        task(
            "announce",
            'echo "taskweave {{ .Env.TW_VERSION }} ({{ .Context }})"',
            needs=["version"],
            template=True,
            dotenv=dotenv(".env", optional=True),
        ),
        task("announce:release", 'echo "releasing taskweave $TW_VERSION"', needs=["version", "test"]),

        job("ci", "install", "test"),
        job("release", "announce", needs=["ci"]),
    )
