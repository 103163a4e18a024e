import json

import pytest

from matrixci.dsl import job, matrix, on_push, pipeline, sh, triggers
from matrixci.errors import ConfigurationError
from matrixci.matrix import expand, parse_selector
from matrixci.model import JobStatus, JobTemplate, StepSpec, TriggerEvent, TriggerKind, Verdict
from matrixci.run import aggregate, execute_run, plan_run

PUSH = TriggerEvent(kind=TriggerKind.PUSH, branch="main", changed_paths=frozenset({"src/lib.rs"}))


def _with_statuses(statuses, optional=False):
    t = job("t", sh("s", "exit 0"), matrix=matrix(i=list(range(len(statuses)))), optional=optional)
    instances = expand(t)
    for inst, status in zip(instances, statuses):
        inst.status = status
    return instances


S, F, C = JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED


@pytest.mark.parametrize(
    "statuses, verdict",
    [
        ([S, S, S], Verdict.SUCCESS),
        ([S, F, S], Verdict.FAILURE),
        ([S, C, S], Verdict.FAILURE),
    ],
)
def test_verdict_is_and_of_required_instances(statuses, verdict):
    got, failures = aggregate(_with_statuses(statuses))
    assert got is verdict
    assert len(failures) == sum(1 for s in statuses if s is not S)


def test_optional_failures_do_not_fail_the_run():
    required = _with_statuses([S, S, S])
    optional = _with_statuses([F], optional=True)
    verdict, failures = aggregate(required + optional)
    assert verdict is Verdict.SUCCESS
    assert failures == []


def test_failures_name_job_binding_and_status():
    verdict, failures = aggregate(_with_statuses([S, F]))
    assert verdict is Verdict.FAILURE
    assert failures == [("t", {"i": 1}, JobStatus.FAILED)]


def test_verdict_stays_pending_until_all_terminal():
    instances = _with_statuses([S, JobStatus.RUNNING])
    assert aggregate(instances) == (Verdict.PENDING, [])


def test_execute_run_success(console, recorder, tmp_path):
    jobs = [
        job("lint", sh("fmt", recorder.ok("fmt"))),
        job("test", sh("run", recorder.ok("run")), matrix=matrix(os=["a", "b"])),
    ]
    report = execute_run(jobs, PUSH, repo_root=tmp_path, cache_root=None, console=console, max_workers=2)

    assert report.verdict is Verdict.SUCCESS
    assert report.exit_code == 0
    assert [o.name for o in report.outcomes] == ["lint", "test (a)", "test (b)"]
    assert report.failures == []


def test_execute_run_reports_failing_cells(console, tmp_path):
    def fail_on_b(ctx):
        return ctx.binding["os"] != "b"

    jobs = [job("check", sh("build", fail_on_b), matrix=matrix(os=["a", "b", "c"]), fail_fast=False)]
    report = execute_run(jobs, PUSH, repo_root=tmp_path, cache_root=None, console=console, max_workers=1)

    assert report.verdict is Verdict.FAILURE
    assert report.exit_code == 1
    (failure,) = report.failures
    assert failure.cell == "check:os=b"
    assert failure.failed_step == "build"
    assert failure.error_kind == "StepFailure"

    data = report.to_dict()
    json.dumps(data, default=str)
    assert data["verdict"] == "failure"
    assert data["failures"] == [{"job": "check", "binding": {"os": "b"}, "status": "failed"}]


def test_cancelled_instances_are_reported_distinctly(console, tmp_path):
    def fail_first(ctx):
        return ctx.binding["os"] != "a"

    jobs = [job("check", sh("build", fail_first), matrix=matrix(os=["a", "b"]))]
    report = execute_run(jobs, PUSH, repo_root=tmp_path, cache_root=None, console=console, max_workers=1)

    kinds = {o.cell: o.error_kind for o in report.failures}
    assert kinds == {"check:os=a": "StepFailure", "check:os=b": "CancellationFailure"}


def test_rejected_trigger_creates_no_run(console, recorder, tmp_path):
    p = pipeline("ci", job("lint", sh("fmt", recorder.ok("fmt"))), on=triggers(on_push(branches=["main"])))
    event = TriggerEvent(kind=TriggerKind.PUSH, branch="feature", changed_paths=frozenset({"a.rs"}))

    assert execute_run(p, event, repo_root=tmp_path, cache_root=None, console=console) is None
    assert recorder.calls == []


def test_explicit_triggers_override_pipeline_triggers(console, recorder, tmp_path):
    from matrixci.trigger import any_event

    p = pipeline("ci", job("lint", sh("fmt", recorder.ok("fmt"))), on=triggers(on_push(branches=["main"])))
    event = TriggerEvent(kind=TriggerKind.PUSH, branch="feature")
    report = execute_run(p, event, triggers=any_event(), repo_root=tmp_path, cache_root=None, console=console)
    assert report.verdict is Verdict.SUCCESS


def test_configuration_error_runs_nothing(console, recorder, tmp_path):
    jobs = [
        job("lint", sh("fmt", recorder.ok("fmt"))),
        JobTemplate(name="check", steps=(StepSpec("s", recorder.ok("s")),), matrix=(("os", ()),)),
    ]
    with pytest.raises(ConfigurationError):
        execute_run(jobs, PUSH, repo_root=tmp_path, cache_root=None, console=console)
    assert recorder.calls == []


def test_selectors_reproduce_one_cell(console, recorder, tmp_path):
    jobs = [job("check", sh("build", recorder.ok("build")), matrix=matrix(os=["a", "b", "c"]))]
    report = execute_run(
        jobs, PUSH, selectors=[parse_selector("check:os=b")], repo_root=tmp_path, cache_root=None, console=console
    )
    assert [o.cell for o in report.outcomes] == ["check:os=b"]
    assert recorder.calls == [("check (b)", "build")]


def test_plan_run_expands_without_running(recorder):
    jobs = [job("check", sh("build", recorder.ok("build")), matrix=matrix(os=["a", "b"], tc=["x", "y"]))]
    instances = plan_run(jobs)
    assert len(instances) == 4
    assert recorder.calls == []
