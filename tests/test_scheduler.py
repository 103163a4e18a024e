import threading
import time

import pytest

from matrixci.dsl import job, matrix, sh
from matrixci.errors import CancellationFailure, ConfigurationError
from matrixci.matrix import expand_all
from matrixci.model import JobStatus
from matrixci.scheduler import Scheduler


def _fails_on(value, recorder, axis="x"):
    def command(ctx):
        recorder._record(ctx, "step")
        return 1 if ctx.binding[axis] == value else 0
    return command


def test_fail_fast_cancels_pending_siblings(console, recorder, tmp_path):
    t = job("check", sh("step", _fails_on(1, recorder)), matrix=matrix(x=[1, 2, 3]), fail_fast=True)
    instances = expand_all([t])

    Scheduler(max_workers=1, repo_root=tmp_path, console=console).run(instances)

    assert [i.status for i in instances] == [JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.CANCELLED]
    assert recorder.labels("check (1)") == ["step"]
    assert recorder.labels("check (2)") == []
    assert recorder.labels("check (3)") == []
    for cancelled in instances[1:]:
        assert isinstance(cancelled.error, CancellationFailure)
        assert "check (1)" in cancelled.error.reason


def test_without_fail_fast_siblings_run_to_completion(console, recorder, tmp_path):
    t = job("check", sh("step", _fails_on(1, recorder)), matrix=matrix(x=[1, 2, 3]), fail_fast=False)
    instances = expand_all([t])

    Scheduler(max_workers=1, repo_root=tmp_path, console=console).run(instances)

    assert [i.status for i in instances] == [JobStatus.FAILED, JobStatus.SUCCEEDED, JobStatus.SUCCEEDED]
    assert len(recorder.calls) == 3


@pytest.mark.timeout(10)
def test_fail_fast_stops_running_sibling_at_step_boundary(console, recorder, tmp_path):
    holder = {}

    def wait_until(predicate):
        deadline = time.monotonic() + 5
        while not predicate() and time.monotonic() < deadline:
            time.sleep(0.01)

    def wait_for_sibling_failure(ctx):
        recorder._record(ctx, "first")
        if ctx.binding["x"] == 1:
            sibling = holder["instances"][1]
            wait_until(lambda: sibling.status is JobStatus.FAILED)
            return 0
        # fail only once the other instance is inside its first step
        wait_until(lambda: ("test (1)", "first") in recorder.calls)
        return 1

    t = job(
        "test",
        sh("first", wait_for_sibling_failure),
        sh("second", recorder.ok("second")),
        matrix=matrix(x=[1, 2]),
    )
    instances = expand_all([t])
    holder["instances"] = instances

    Scheduler(max_workers=2, repo_root=tmp_path, console=console).run(instances)

    running, failing = instances
    assert failing.status is JobStatus.FAILED
    assert running.status is JobStatus.CANCELLED
    assert running.step_cursor == 1
    assert "second" not in recorder.labels()


def test_fail_fast_is_scoped_to_one_job(console, recorder, tmp_path):
    lint = job("lint", sh("fmt", recorder.fail("fmt")))
    check = job("check", sh("build", recorder.ok("build")), matrix=matrix(os=["a", "b"]))
    instances = expand_all([lint, check])

    Scheduler(max_workers=1, repo_root=tmp_path, console=console).run(instances)

    statuses = {i.name: i.status for i in instances}
    assert statuses == {
        "lint": JobStatus.FAILED,
        "check (a)": JobStatus.SUCCEEDED,
        "check (b)": JobStatus.SUCCEEDED,
    }


@pytest.mark.timeout(10)
def test_independent_jobs_run_concurrently(console, tmp_path):
    barrier = threading.Barrier(2, timeout=5)

    def meet(ctx):
        barrier.wait()  # BrokenBarrierError (a step failure) unless both run at once

    instances = expand_all([job("lint", sh("meet", meet)), job("check", sh("meet", meet))])
    Scheduler(max_workers=2, repo_root=tmp_path, console=console).run(instances)

    assert [i.status for i in instances] == [JobStatus.SUCCEEDED, JobStatus.SUCCEEDED]


@pytest.mark.timeout(10)
def test_concurrency_is_bounded_by_workers(console, tmp_path):
    lock = threading.Lock()
    state = {"running": 0, "peak": 0}

    def work(ctx):
        with lock:
            state["running"] += 1
            state["peak"] = max(state["peak"], state["running"])
        time.sleep(0.05)
        with lock:
            state["running"] -= 1

    instances = expand_all([job("test", sh("work", work), matrix=matrix(x=list(range(6))))])
    Scheduler(max_workers=2, repo_root=tmp_path, console=console).run(instances)

    assert all(i.status is JobStatus.SUCCEEDED for i in instances)
    assert 1 <= state["peak"] <= 2


def test_needs_runs_dependents_after_success(console, recorder, tmp_path):
    lint = job("lint", sh("fmt", recorder.ok("lint")))
    test = job("test", sh("run", recorder.ok("test")), matrix=matrix(os=["a", "b"]), needs=["lint"])
    instances = expand_all([test, lint])

    Scheduler(max_workers=4, repo_root=tmp_path, console=console).run(instances)

    assert all(i.status is JobStatus.SUCCEEDED for i in instances)
    assert recorder.labels()[0] == "lint"


def test_needs_cancels_dependents_when_needed_job_fails(console, recorder, tmp_path):
    lint = job("lint", sh("fmt", recorder.fail("lint")))
    test = job("test", sh("run", recorder.ok("test")), needs=["lint"])
    docs = job("docs", sh("build", recorder.ok("docs")), needs=["test"])
    other = job("check", sh("build", recorder.ok("check")))
    instances = expand_all([lint, test, docs, other])

    Scheduler(max_workers=2, repo_root=tmp_path, console=console).run(instances)

    statuses = {i.name: i.status for i in instances}
    assert statuses == {
        "lint": JobStatus.FAILED,
        "test": JobStatus.CANCELLED,
        "docs": JobStatus.CANCELLED,
        "check": JobStatus.SUCCEEDED,
    }
    assert "test" not in recorder.labels()
    test_inst = next(i for i in instances if i.name == "test")
    assert "lint" in test_inst.error.reason


def test_needs_outside_the_selected_instances_are_ignored(console, recorder, tmp_path):
    lint = job("lint", sh("fmt", recorder.ok("lint")))
    test = job("test", sh("run", recorder.ok("test")), needs=["lint"])
    instances = [i for i in expand_all([lint, test]) if i.job == "test"]

    Scheduler(max_workers=1, repo_root=tmp_path, console=console).run(instances)

    assert instances[0].status is JobStatus.SUCCEEDED
    assert recorder.labels() == ["test"]


def test_scheduler_rejects_cycles(console, tmp_path):
    from matrixci.matrix import expand

    a = job("a", sh("s", "exit 0"), needs=["b"])
    b = job("b", sh("s", "exit 0"), needs=["a"])
    instances = expand(a) + expand(b)
    with pytest.raises(ConfigurationError):
        Scheduler(max_workers=1, repo_root=tmp_path, console=console).run(instances)
    assert all(i.status is JobStatus.PENDING for i in instances)
