# runner.py
from __future__ import annotations

import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .cache import CacheStore, describe
from .errors import CacheUnavailable, ExitInfo, ExpressionError, StepFailure
from .expressions import evaluate_condition
from .matrix import instance_variables
from .model import JobInstance, JobResult, RunState, Step, StepContext, StepResult
from .ui.console import Console, get_console

# keep this much of a failing step's output
OUTPUT_TAIL = 4000


def _tail(text: Optional[str]) -> str:
    return (text or "")[-OUTPUT_TAIL:]


class StepRunner:
    """
    Executes one job instance: cache restore, steps in order, cache save.

    The first failing step stops the instance; later steps never run.
    """

    def __init__(
        self,
        *,
        workspace: str | Path = ".",
        cache: Optional[CacheStore] = None,
        variables: Optional[Mapping[str, Any]] = None,
        console: Optional[Console] = None,
    ):
        self.workspace = Path(workspace).resolve()
        self.cache = cache
        self.variables = dict(variables or {})
        self.console = console or get_console()

    # ------------------------------------------------------------------
    # Execution primitives
    # ------------------------------------------------------------------

    def _env_for(self, instance: JobInstance, step: Step) -> Dict[str, str]:
        env = os.environ.copy()
        env.update({k: str(v) for k, v in instance.job.env.items()})
        env.update({k: str(v) for k, v in step.env.items()})
        return env

    def _run_shell(self, instance: JobInstance, step: Step) -> None:
        cwd = (self.workspace / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise StepFailure(
                instance.name,
                step.name,
                ExitInfo(exit_code=None, message=f"working directory not found: {cwd}"),
            )

        executable = None
        if instance.job.shell:
            executable = shutil.which(instance.job.shell) or instance.job.shell

        try:
            proc = subprocess.run(
                step.run,
                shell=True,
                executable=executable,
                cwd=str(cwd),
                env=self._env_for(instance, step),
                text=True,
                capture_output=True,   # so we can show output on failure
            )
        except OSError as e:
            raise StepFailure(
                instance.name,
                step.name,
                ExitInfo(exit_code=None, message=f"could not start command: {e}"),
            ) from e

        if proc.returncode != 0:
            raise StepFailure(
                instance.name,
                step.name,
                ExitInfo(
                    exit_code=proc.returncode,
                    message=f"command failed: {step.run}",
                    stdout=_tail(proc.stdout),
                    stderr=_tail(proc.stderr),
                ),
            )

    def _run_action(self, instance: JobInstance, step: Step, scope: Mapping[str, Any]) -> None:
        ctx = StepContext(
            job=instance.name,
            step=step.name,
            workspace=self.workspace,
            matrix=dict(instance.matrix),
            env=self._env_for(instance, step),
            variables=dict(scope),
        )
        try:
            outcome = step.run(ctx)
        except StepFailure:
            raise
        except Exception as e:
            raise StepFailure(
                instance.name,
                step.name,
                ExitInfo(exit_code=None, message=f"{type(e).__name__}: {e}"),
            ) from e

        # None / True / 0 mean success; False or a non-zero int is a failure
        if outcome is None or outcome is True:
            return
        if outcome is False:
            raise StepFailure(instance.name, step.name, ExitInfo(exit_code=1, message="action reported failure"))
        if isinstance(outcome, int) and outcome != 0:
            raise StepFailure(instance.name, step.name, ExitInfo(exit_code=outcome, message="action returned non-zero"))

    def _run_step(self, instance: JobInstance, step: Step, scope: Mapping[str, Any]) -> None:
        if isinstance(step.run, str):
            self._run_shell(instance, step)
        else:
            self._run_action(instance, step, scope)

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _restore(self, instance: JobInstance, result: JobResult) -> bool:
        key = instance.cache_key
        try:
            hit = self.cache.lookup(key)
            if not hit.hit:
                result.cache = "miss"
                self.console.print_cache_miss(instance.name, key)
                return False
            self.cache.restore(hit, instance.cache_path, root=self.workspace)
        except CacheUnavailable as e:
            # forced miss
            result.cache = "unavailable"
            self.console.print_cache_unavailable(instance.name, str(e))
            return False

        result.cache = "hit"
        self.console.print_cache_hit(instance.name, describe(hit))
        return True

    def _save(self, instance: JobInstance) -> None:
        try:
            self.cache.save(instance.cache_key, instance.cache_path, root=self.workspace)
        except CacheUnavailable as e:
            self.console.print_cache_unavailable(instance.name, str(e))
            return
        self.console.print_cache_saved(instance.name, instance.cache_key)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, instance: JobInstance, variables: Optional[Mapping[str, Any]] = None) -> JobResult:
        """
        Run every step of `instance` and return its terminal result
        (SUCCEEDED or FAILED). Never raises for step failures.
        """
        started = time.monotonic()
        result = JobResult(name=instance.name, state=RunState.RUNNING)
        scope: Dict[str, Any] = instance_variables(
            instance.job, instance.matrix, variables if variables is not None else self.variables
        )
        steps_ctx: Dict[str, Dict[str, str]] = {}
        scope["steps"] = steps_ctx

        use_cache = self.cache is not None and bool(instance.cache_key) and bool(instance.cache_path)
        hit = self._restore(instance, result) if use_cache else False
        scope["cache"] = {"hit": hit, "key": instance.cache_key}

        for step in instance.steps:
            try:
                should_run = evaluate_condition(step.if_, scope)
            except Exception as e:
                detail = e if isinstance(e, ExpressionError) else f"{type(e).__name__}: {e}"
                self._fail(result, step, ExitInfo(exit_code=None, message=f"bad step condition: {detail}"))
                break

            if not should_run:
                result.steps.append(StepResult(step.name, "skipped", reason="condition is false"))
                steps_ctx[step.key] = {"outcome": "skipped"}
                self.console.print_step_skipped(instance.name, step.name, "condition is false")
                continue

            if step.run is None:
                result.steps.append(StepResult(step.name, "skipped", reason="external action"))
                steps_ctx[step.key] = {"outcome": "skipped"}
                self.console.print_step_skipped(instance.name, step.name, "external action")
                continue

            self.console.print_step(instance.name, step.name)
            step_started = time.monotonic()
            try:
                self._run_step(instance, step, scope)
            except StepFailure as e:
                result.steps.append(
                    StepResult(step.name, "failure", exit=e.exit, duration=time.monotonic() - step_started)
                )
                steps_ctx[step.key] = {"outcome": "failure"}
                self._fail(result, step, e.exit, record=False)
                break

            result.steps.append(StepResult(step.name, "success", duration=time.monotonic() - step_started))
            steps_ctx[step.key] = {"outcome": "success"}

        if result.state is RunState.RUNNING:
            result.state = RunState.SUCCEEDED
            if use_cache and not hit:
                self._save(instance)

        result.duration = time.monotonic() - started
        return result

    def _fail(self, result: JobResult, step: Step, exit: ExitInfo, *, record: bool = True) -> None:
        if record:
            result.steps.append(StepResult(step.name, "failure", exit=exit))
        result.state = RunState.FAILED
        result.failed_step = step.name
        result.exit = exit
        output = "\n".join(x for x in (exit.stdout, exit.stderr) if x)
        self.console.print_failure(
            f"{result.name} / {step.name}",
            exit.message,
            exit_code=exit.exit_code,
            output=output or None,
        )
