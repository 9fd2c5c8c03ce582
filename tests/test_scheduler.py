from datetime import datetime, timezone
import threading

import pytest

from pipewright import CACHE_MISS, Pipeline, Scheduler, cache, job, matrix, run_pipeline, run_variables, sh, step
from pipewright.errors import InvalidTransition
from pipewright.model import RunState
from pipewright.runner import StepRunner

FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _ok(name, *, needs=(), **kw):
    return job(name, step("Run", lambda ctx: None), needs=list(needs), **kw)


def _fail(name, *, needs=(), **kw):
    return job(name, step("Run", lambda ctx: 1), needs=list(needs), **kw)


def _run(jobs, step_runner, variables, **kw):
    pipeline = Pipeline.build(jobs, variables)
    return Scheduler(pipeline, runner=step_runner, variables=variables, **kw).run()


def test_max_parallel_bounds_running_instances(step_runner, variables, gauge, transitions):
    jobs = [job(f"j{i}", step("Run", gauge.action(0.2))) for i in range(5)]

    result = _run(jobs, step_runner, variables, max_parallel=3, listener=transitions)

    assert result.ok
    assert gauge.peak <= 3
    assert gauge.peak >= 2

    running, peak = set(), 0
    for name, state in transitions.seen:
        if state == "running":
            running.add(name)
        else:
            running.discard(name)
        peak = max(peak, len(running))
    assert peak <= 3


def test_per_job_max_parallel(step_runner, variables, gauge):
    jobs = [job("t", step("Run", gauge.action(0.1)), matrix=matrix(n=[1, 2, 3, 4]), max_parallel=1)]

    result = _run(jobs, step_runner, variables, max_parallel=4)

    assert result.ok
    assert gauge.peak == 1


def test_dependency_starts_after_all_of_its_needs(step_runner, variables, transitions):
    jobs = [
        _ok("build", matrix=matrix(os=["linux", "windows"])),
        _ok("test", needs=["build"]),
    ]

    result = _run(jobs, step_runner, variables, max_parallel=2, listener=transitions)

    assert result.ok
    seen = transitions.seen
    test_started = seen.index(("test", "running"))
    assert seen.index(("build-linux", "succeeded")) < test_started
    assert seen.index(("build-windows", "succeeded")) < test_started


def test_fail_fast_starts_nothing_after_a_failure(step_runner, variables, transitions):
    jobs = [_fail(f"j{i}") for i in range(4)]

    result = _run(jobs, step_runner, variables, max_parallel=1, fail_fast=True, listener=transitions)

    states = [r.state for r in result.results.values()]
    assert states.count(RunState.FAILED) == 1
    assert states.count(RunState.CANCELLED) == 3
    first_failure = next(i for i, (_, s) in enumerate(transitions.seen) if s == "failed")
    assert all(s != "running" for _, s in transitions.seen[first_failure:])


def test_without_fail_fast_failures_only_cancel_dependents(step_runner, variables):
    jobs = [
        _fail("a"),
        _ok("b", needs=["a"]),
        _ok("c", needs=["b"]),
        _ok("d"),
    ]

    result = _run(jobs, step_runner, variables, max_parallel=2, fail_fast=False)

    assert result.state_of("a") is RunState.FAILED
    assert result.state_of("b") is RunState.CANCELLED
    assert result.state_of("c") is RunState.CANCELLED
    assert result.state_of("d") is RunState.SUCCEEDED
    assert result.failed == ["a"]
    assert result.status == "failure"


def test_job_level_fail_fast_off_does_not_stop_the_pipeline(step_runner, variables):
    jobs = [_fail("flaky", fail_fast=False), _ok("other")]

    result = _run(jobs, step_runner, variables, max_parallel=1, fail_fast=True)

    assert result.state_of("flaky") is RunState.FAILED
    assert result.state_of("other") is RunState.SUCCEEDED


def test_skipped_job_satisfies_dependents(step_runner, variables):
    variables = dict(variables, vars={"yyyymm": "202610", "branch": "dev"})
    jobs = [
        _ok("deploy", if_="vars.branch == 'main'"),
        _ok("notify", needs=["deploy"], if_="needs.deploy.result == 'skipped'"),
    ]

    result = _run(jobs, step_runner, variables, max_parallel=1)

    assert result.state_of("deploy") is RunState.SKIPPED
    assert result.state_of("notify") is RunState.SUCCEEDED
    assert result.ok
    assert result.status == "success"


def test_bad_job_condition_fails_that_instance(step_runner, variables):
    jobs = [_ok("broken", if_="vars.x =="), _ok("after", needs=["broken"])]

    result = _run(jobs, step_runner, variables, max_parallel=1)

    assert result.state_of("broken") is RunState.FAILED
    assert "bad job condition" in result.results["broken"].exit.message
    assert result.state_of("after") is RunState.CANCELLED


def test_runner_crash_marks_instance_failed(variables):
    class Crashing:
        def run(self, instance, variables=None):
            raise RuntimeError("worker died")

    pipeline = Pipeline.build([_ok("a")], variables)
    result = Scheduler(pipeline, runner=Crashing(), variables=variables, max_parallel=1).run()

    assert result.state_of("a") is RunState.FAILED
    assert "worker died" in result.results["a"].exit.message


def test_transitions_are_monotonic(step_runner, variables):
    pipeline = Pipeline.build([_ok("a"), _fail("b", needs=["a"]), _ok("c", needs=["b"])], variables)
    scheduler = Scheduler(pipeline, runner=step_runner, variables=variables, max_parallel=1)

    scheduler.run()

    with pytest.raises(InvalidTransition):
        scheduler._move(pipeline.index("a"), RunState.RUNNING)
    with pytest.raises(InvalidTransition):
        scheduler._move(pipeline.index("c"), RunState.SUCCEEDED)


def test_max_parallel_must_be_positive(variables):
    with pytest.raises(ValueError):
        Scheduler(Pipeline.build([_ok("a")]), max_parallel=0, variables=variables)


def test_end_to_end_checks_pipeline(tmp_path, store, console):
    """Format/Lint/Audit in parallel, Test behind Format and Lint; Lint fails."""
    workspace = tmp_path / "repo"
    workspace.mkdir()
    variables = run_variables(now=FIXED_NOW)
    installs = []

    def install_deny(ctx):
        installs.append(ctx.job)
        (ctx.workspace / "deny-bin").write_text("cargo-deny")

    jobs = [
        job("Format", sh("Setup", "true"), sh("Run", "true")),
        job("Lint", sh("Setup", "true"), sh("Run", "echo 'warning: unused' >&2; exit 1")),
        job(
            "Audit",
            step("Setup", install_deny, if_=CACHE_MISS),
            sh("Run", "test -f deny-bin"),
            cache=cache(key="${{ runner.os }}-${{ vars.yyyymm }}", path="deny-bin"),
        ),
        job(
            "Test",
            sh("Build", "true"),
            sh("Test", "true"),
            needs=["Format", "Lint"],
            matrix=matrix(build=["linux"], include=[{"build": "linux", "os": "ubuntu-latest"}]),
            runs_on="${{ matrix.os }}",
        ),
    ]
    pipeline = Pipeline.build(jobs, variables)
    runner = StepRunner(workspace=workspace, cache=store, variables=variables, console=console)

    result = run_pipeline(pipeline, max_parallel=3, fail_fast=True, runner=runner, variables=variables)

    assert result.state_of("Format") is RunState.SUCCEEDED
    assert result.state_of("Audit") is RunState.SUCCEEDED
    assert result.state_of("Lint") is RunState.FAILED
    assert result.state_of("Test-linux") is RunState.CANCELLED
    assert result.status == "failure"
    assert result.failed == ["Lint"]

    lint = result.results["Lint"]
    assert lint.failed_step == "Run"
    assert lint.exit.exit_code == 1
    assert "warning: unused" in lint.exit.stderr

    assert installs == ["Audit"]
    assert store.lookup(f"{variables['runner']['os']}-202610").hit

    console.print_results(result)
    output = console.stream.getvalue()
    assert "PIPELINE: FAILURE" in output
    assert "Failed: Lint" in output


def test_raising_job_condition_fails_only_that_instance(step_runner, variables):
    jobs = [
        _ok("a", if_=lambda v: v["vars"]["missing"] == "x"),
        _ok("b"),
        _ok("c", needs=["a"]),
    ]

    result = _run(jobs, step_runner, variables, max_parallel=2, fail_fast=False)

    assert result.state_of("a") is RunState.FAILED
    assert "bad job condition" in result.results["a"].exit.message
    assert "KeyError" in result.results["a"].exit.message
    assert result.state_of("b") is RunState.SUCCEEDED
    assert result.state_of("c") is RunState.CANCELLED


def test_raising_job_condition_triggers_fail_fast(step_runner, variables):
    def explode(v):
        raise RuntimeError("no such variable")

    jobs = [_ok("a", if_=explode), _ok("b", needs=["a"]), _ok("z")]

    result = _run(jobs, step_runner, variables, max_parallel=1, fail_fast=True)

    assert result.failed == ["a"]
    assert result.state_of("b") is RunState.CANCELLED
    assert result.state_of("z") is RunState.CANCELLED


def test_skips_do_not_wait_for_a_slot(step_runner, variables):
    released = threading.Event()
    seen = []

    def listener(inst, state, res):
        seen.append((inst.name, state.value))
        if sum(1 for _, s in seen if s == "skipped") == 3:
            released.set()

    def hold(ctx):
        # only succeeds if every skip happened while this instance held the slot
        return None if released.wait(timeout=5) else 1

    jobs = [job("hold", step("Run", hold))] + [_ok(f"skip-{i}", if_="false") for i in range(3)]

    result = _run(jobs, step_runner, variables, max_parallel=1, listener=listener)

    assert result.state_of("hold") is RunState.SUCCEEDED
    finished = seen.index(("hold", "succeeded"))
    assert seen.index(("hold", "running")) < seen.index(("skip-0", "skipped"))
    assert all(seen.index((f"skip-{i}", "skipped")) < finished for i in range(3))
