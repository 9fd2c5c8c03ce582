# scheduler.py
from __future__ import annotations

import os
import platform
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from .cache import month_bucket
from .dag import Pipeline
from .errors import ExitInfo, ExpressionError, InvalidTransition
from .expressions import evaluate_condition
from .matrix import instance_variables
from .model import TRANSITIONS, JobInstance, JobResult, PipelineResult, RunState
from .runner import StepRunner
from .ui.console import Console, get_console

Listener = Callable[[JobInstance, RunState, JobResult], None]

_DONE_OK = (RunState.SUCCEEDED, RunState.SKIPPED)
_DONE_BAD = (RunState.FAILED, RunState.CANCELLED)


def default_max_parallel() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _runner_os() -> str:
    system = platform.system()
    return {"Darwin": "macOS"}.get(system, system)


def run_variables(
    extra: Optional[Mapping[str, Any]] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Run-scoped variables shared by every instance.

    vars.yyyymm is the UTC month bucket used by monthly-refreshed cache keys;
    `extra` entries (e.g. from --var) land in vars and win over defaults.
    """
    variables: Dict[str, Any] = {"yyyymm": month_bucket(now)}
    variables.update(extra or {})
    return {
        "vars": variables,
        "runner": {"os": _runner_os(), "arch": platform.machine()},
        "env": dict(env or {}),
    }


class Scheduler:
    """
    Runs a Pipeline to completion on a thread pool.

    - an instance starts only once every dependency SUCCEEDED or was SKIPPED
    - at most `max_parallel` instances run at once (and at most
      `job.max_parallel` instances of a single job)
    - a FAILED/CANCELLED dependency cancels every transitive dependent
    - fail-fast: after a failure nothing new starts, running instances
      finish, everything still pending is CANCELLED

    All state changes happen on the calling thread; workers only run steps.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        *,
        max_parallel: Optional[int] = None,
        fail_fast: bool = True,
        runner: Optional[StepRunner] = None,
        variables: Optional[Mapping[str, Any]] = None,
        console: Optional[Console] = None,
        listener: Optional[Listener] = None,
    ):
        if max_parallel is None:
            max_parallel = default_max_parallel()
        if max_parallel < 1:
            raise ValueError(f"max_parallel must be >= 1, got {max_parallel}")

        self.pipeline = pipeline
        self.max_parallel = max_parallel
        self.fail_fast = fail_fast
        self.console = console or get_console()
        self.variables = dict(variables) if variables is not None else run_variables()
        self.runner = runner or StepRunner(variables=self.variables, console=self.console)
        self.listener = listener

        n = len(pipeline)
        self.states: List[RunState] = [RunState.PENDING] * n
        self.results: List[JobResult] = [JobResult(name=i.name) for i in pipeline.instances]
        self._topo = pipeline.order()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _move(self, idx: int, target: RunState, result: Optional[JobResult] = None, **fields: Any) -> None:
        current = self.states[idx]
        if target not in TRANSITIONS[current]:
            raise InvalidTransition(self.pipeline.name(idx), current.value, target.value)

        if result is not None:
            self.results[idx] = result
        res = self.results[idx]
        res.state = target
        for k, v in fields.items():
            setattr(res, k, v)
        self.states[idx] = target

        self._report(self.pipeline.instances[idx], target, res)
        if self.listener is not None:
            self.listener(self.pipeline.instances[idx], target, res)

    def _report(self, inst: JobInstance, state: RunState, res: JobResult) -> None:
        if state is RunState.RUNNING:
            self.console.print_job_start(inst.name, inst.runs_on)
        elif state is RunState.SKIPPED:
            self.console.print_job_skipped(inst.name, res.reason or "")
        elif state is RunState.CANCELLED:
            self.console.print_job_cancelled(inst.name, res.reason or "")
        else:
            self.console.print_job_finished(inst.name, state.value, res.duration)

    def _indices(self, *states: RunState) -> Set[int]:
        return {i for i, s in enumerate(self.states) if s in states}

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def _cascade(self) -> None:
        """Cancel pending instances behind a failed or cancelled dependency."""
        for idx in self._topo:
            if self.states[idx] is not RunState.PENDING:
                continue
            for dep in sorted(self.pipeline.deps[idx]):
                if self.states[dep] in _DONE_BAD:
                    reason = f"needs '{self.pipeline.name(dep)}' ({self.states[dep].value})"
                    self._move(idx, RunState.CANCELLED, reason=reason)
                    break

    def _condition_scope(self, idx: int) -> Dict[str, Any]:
        inst = self.pipeline.instances[idx]
        scope = instance_variables(inst.job, inst.matrix, self.variables)
        needs: Dict[str, Dict[str, str]] = {}
        for need in inst.job.needs:
            group = self.pipeline.group(need)
            skipped = all(self.states[i] is RunState.SKIPPED for i in group)
            needs[need] = {"result": "skipped" if skipped else "success"}
        scope["needs"] = needs
        return scope

    def _should_run(self, idx: int) -> bool:
        condition = self.pipeline.instances[idx].job.if_
        if condition is None:
            return True
        return evaluate_condition(condition, self._condition_scope(idx))

    def _stops_pipeline(self, idx: int) -> bool:
        return self.fail_fast and self.pipeline.instances[idx].job.fail_fast

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self) -> PipelineResult:
        in_flight: Dict[Future, int] = {}
        running_per_job: Dict[str, int] = {}
        approved: Set[int] = set()  # condition already evaluated to true
        stopping = False

        with ThreadPoolExecutor(max_workers=self.max_parallel) as pool:
            while True:
                self._cascade()

                if stopping:
                    for idx in sorted(self._indices(RunState.PENDING)):
                        self._move(idx, RunState.CANCELLED, reason="fail-fast")
                else:
                    stopping = self._schedule(pool, in_flight, running_per_job, approved)

                if not in_flight:
                    if stopping and self._indices(RunState.PENDING):
                        continue
                    break

                # wait for one completion, then loop to schedule newly-ready jobs
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    idx = in_flight.pop(fut)
                    job_name = self.pipeline.instances[idx].job.name
                    running_per_job[job_name] -= 1

                    try:
                        res = fut.result()
                    except Exception as e:
                        res = JobResult(
                            name=self.pipeline.name(idx),
                            state=RunState.FAILED,
                            exit=ExitInfo(exit_code=None, message=f"{type(e).__name__}: {e}"),
                        )

                    final = res.state if res.state in (RunState.SUCCEEDED, RunState.FAILED) else RunState.FAILED
                    self._move(idx, final, result=res)
                    if final is RunState.FAILED and self._stops_pipeline(idx):
                        stopping = True

        # nothing can start any more (e.g. blocked behind a failure)
        for idx in sorted(self._indices(RunState.PENDING)):
            self._move(idx, RunState.CANCELLED, reason="not reached")

        return PipelineResult(results={r.name: r for r in self.results})

    def _schedule(
        self,
        pool: ThreadPoolExecutor,
        in_flight: Dict[Future, int],
        running_per_job: Dict[str, int],
        approved: Set[int],
    ) -> bool:
        """
        Start (or skip) everything that is ready. Returns True when a job
        condition failed in a way that stops the pipeline.
        """
        progressed = True
        while progressed:
            progressed = False
            completed = self._indices(*_DONE_OK)
            started = set(range(len(self.states))) - self._indices(RunState.PENDING)
            ready = self.pipeline.ready(completed, started)

            for idx in sorted(ready, key=self.pipeline.name):
                inst = self.pipeline.instances[idx]

                if idx not in approved:
                    try:
                        should_run = self._should_run(idx)
                    except Exception as e:
                        detail = e if isinstance(e, ExpressionError) else f"{type(e).__name__}: {e}"
                        self._move(
                            idx,
                            RunState.FAILED,
                            exit=ExitInfo(exit_code=None, message=f"bad job condition: {detail}"),
                        )
                        if self._stops_pipeline(idx):
                            return True
                        progressed = True
                        continue
                    if not should_run:
                        # skipping takes no slot and satisfies dependents
                        self._move(idx, RunState.SKIPPED, reason="condition is false")
                        progressed = True
                        continue
                    approved.add(idx)

                if len(in_flight) >= self.max_parallel:
                    continue
                limit = inst.job.max_parallel
                if limit is not None and running_per_job.get(inst.job.name, 0) >= limit:
                    continue

                self._move(idx, RunState.RUNNING)
                running_per_job[inst.job.name] = running_per_job.get(inst.job.name, 0) + 1
                fut = pool.submit(self.runner.run, inst, self.variables)
                in_flight[fut] = idx

            if progressed:
                # a skip or failure may have unlocked or cancelled something
                self._cascade()
        return False


def run_pipeline(
    pipeline: Pipeline,
    *,
    max_parallel: Optional[int] = None,
    fail_fast: bool = True,
    runner: Optional[StepRunner] = None,
    variables: Optional[Mapping[str, Any]] = None,
    listener: Optional[Listener] = None,
) -> PipelineResult:
    return Scheduler(
        pipeline,
        max_parallel=max_parallel,
        fail_fast=fail_fast,
        runner=runner,
        variables=variables,
        listener=listener,
    ).run()
