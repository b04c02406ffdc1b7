import pytest

from taskweave import dsl
from taskweave.config import RunSettings
from taskweave.errors import ConfigError, CycleError, EXIT_OK, EXIT_TASK_FAILED, exit_code_for
from taskweave.jobs import JobTable, build_job_graph
from taskweave.loader import Definitions
from taskweave.model import NodeStatus
from taskweave.routing import TaskTable
from taskweave.runner import run_job

from conftest import FakeBackend, exit_with, fake_set, write_env


TASKS = TaskTable.from_definitions([
    dsl.task("checkout", "x"),
    dsl.task("compile", "x"),
    dsl.task("unit", "x"),
    dsl.task("package", "x"),
    dsl.task("deploy", "x"),
    dsl.task("smoke", "x"),
    dsl.task("docs", "x"),
])


def _jobs() -> JobTable:
    return JobTable.from_definitions([
        dsl.job("build", "checkout", "compile"),
        dsl.job("test", "unit", needs=["build"]),
        dsl.job("release", "package", "deploy", needs=["test"]),
        dsl.job("verify", "smoke", needs=["release"]),
        dsl.job("docs", "docs", needs=["build"]),
    ])


def _run(name, fake, downstream=False):
    definitions = Definitions(tasks=TASKS, jobs=_jobs())
    return run_job(definitions, name, RunSettings(), downstream=downstream, backends=fake_set(fake))


def test_downstream_lists_job_and_all_dependents_in_order() -> None:
    jobs = _jobs()
    assert jobs.downstream("release") == ["release", "verify"]
    assert jobs.downstream("build") == ["build", "docs", "test", "release", "verify"]
    assert jobs.downstream("verify") == ["verify"]


def test_closure_pulls_in_needed_jobs() -> None:
    assert _jobs().closure(["release"]) == ["build", "test", "release"]


def test_unknown_job_and_missing_need() -> None:
    with pytest.raises(ConfigError, match="not found"):
        _jobs().downstream("nope")
    with pytest.raises(ConfigError, match="missing job"):
        JobTable.from_definitions([dsl.job("a", "checkout", needs=["ghost"])])


def test_job_cycle() -> None:
    with pytest.raises(CycleError) as exc:
        JobTable.from_definitions([
            dsl.job("a", "checkout", needs=["b"]),
            dsl.job("b", "compile", needs=["a"]),
        ])
    assert exc.value.cycle[0] == exc.value.cycle[-1]


def test_malformed_jobs() -> None:
    with pytest.raises(ConfigError, match="no steps"):
        JobTable.from_definitions([dsl.job("empty")])
    with pytest.raises(ConfigError, match="Duplicate job"):
        JobTable.from_definitions([dsl.job("a", "checkout"), dsl.job("a", "compile")])
    with pytest.raises(ConfigError, match="same step twice"):
        JobTable.from_definitions([dsl.job("a", "checkout", "checkout")])


def test_check_steps_rejects_unknown_tasks() -> None:
    jobs = JobTable.from_definitions([dsl.job("a", "checkout", "ghost")])
    with pytest.raises(ConfigError, match="ghost"):
        jobs.check_steps(TASKS)


def test_job_graph_chains_steps_and_needed_jobs() -> None:
    jobs = _jobs()
    graph = build_job_graph(TASKS, jobs, jobs.closure(["release"]))
    edges = graph.edges()
    assert ("checkout", "compile") in edges
    assert ("checkout", "unit") in edges
    assert ("compile", "unit") in edges
    assert ("unit", "package") in edges
    assert ("package", "deploy") in edges
    assert "smoke" not in graph.nodes


def test_run_job_executes_steps_in_order() -> None:
    fake = FakeBackend()
    report = _run("release", fake)
    assert fake.calls == ["checkout", "compile", "unit", "package", "deploy"]
    assert report.ok
    assert [j.name for j in report.jobs] == ["build", "test", "release"]
    assert exit_code_for(report) == EXIT_OK


def test_downstream_runs_dependents() -> None:
    fake = FakeBackend()
    report = _run("release", fake, downstream=True)
    assert fake.calls[-1] == "smoke"
    assert report.job("verify").ok


def test_failed_step_fails_job_and_skips_later_steps_and_jobs() -> None:
    fake = FakeBackend({"package": exit_with(1)})
    report = _run("release", fake, downstream=True)

    release = report.job("release")
    assert not release.ok
    assert [s.status for s in release.steps] == [NodeStatus.FAILED, NodeStatus.SKIPPED]
    assert not report.job("verify").ok
    assert report.job("build").ok
    assert exit_code_for(report) == EXIT_TASK_FAILED


def test_condition_skipped_step_keeps_job_ok() -> None:
    tasks = TaskTable.from_definitions([
        dsl.task("a", "x"),
        dsl.task("b", "x", when="False"),
        dsl.task("c", "x"),
    ])
    jobs = JobTable.from_definitions([dsl.job("j", "a", "b", "c")])
    fake = FakeBackend()
    definitions = Definitions(tasks=tasks, jobs=jobs)

    report = run_job(definitions, "j", RunSettings(), backends=fake_set(fake))

    assert report.ok
    assert fake.calls == ["a", "c"]


def test_env_flows_from_needed_job_into_dependent_job() -> None:
    fake = FakeBackend({"compile": write_env("ARTIFACT=app.tar\n")})
    _run("test", fake)
    assert fake.envs["unit"]["ARTIFACT"] == "app.tar"
