"""Console output formatting utilities for pipewright."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from ..model import PipelineResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where regular output goes (defaults to sys.stdout at print time)
        """
        self.debug = debug
        self.stream = stream
        # jobs report from worker threads; keep their lines whole
        self._lock = threading.Lock()

    def _out(self, text: str = "", *, err: bool = False) -> None:
        target = sys.stderr if err else (self.stream or sys.stdout)
        with self._lock:
            print(text, file=target)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}")
        self._out("-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        job_count: int,
        instance_count: int,
        max_parallel: int,
    ) -> None:
        """Print run start information."""
        self._out("\nRUN STARTED")
        self._out(f"Workflow: {workflow}")
        self._out(f"Jobs: {job_count} ({instance_count} instances)")
        self._out(f"Max parallel: {max_parallel}")
        self._out()

    def print_plan_stage(self, index: int, names: List[str]) -> None:
        self._out(f"Stage {index}: {', '.join(names)}")

    def print_job_start(self, name: str, runs_on: Optional[str] = None) -> None:
        """Print job start message."""
        suffix = f" (runs-on: {runs_on})" if runs_on else ""
        self._out(f"JOB STARTED: {name}{suffix}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] ▶ {name}")

    def print_step_skipped(self, job: str, name: str, reason: str) -> None:
        self._out(f"[{job}] ⏭ {name} ({reason})")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        output: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            output: Captured output tail, shown in debug mode
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if self.debug:
            lines.append(f"Error details: {reason}")
            if output:
                lines.append(output.rstrip())
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._out("\n".join(lines))

    def print_cache_hit(self, job: str, reason: str) -> None:
        """Print cache hit message."""
        self._out(f"[{job}] CACHE: hit ({reason})")

    def print_cache_miss(self, job: str, key: str) -> None:
        """Print cache miss message."""
        self._out(f"[{job}] CACHE: miss ({key})")

    def print_cache_saved(self, job: str, key: str) -> None:
        """Print cache save message."""
        short_key = key[:40] + "..." if len(key) > 40 else key
        self._out(f"[{job}] CACHE: saved ({short_key})")

    def print_cache_unavailable(self, job: str, reason: str) -> None:
        self._out(f"[{job}] CACHE: unavailable ({reason})", err=True)

    def print_job_finished(self, name: str, state: str, duration: Optional[float] = None) -> None:
        timing = f" in {duration:.1f}s" if duration is not None else ""
        self._out(f"JOB {state.upper()}: {name}{timing}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"JOB SKIPPED: {name} ({reason})")

    def print_job_cancelled(self, name: str, reason: str) -> None:
        self._out(f"JOB CANCELLED: {name} ({reason})")

    def print_results(self, result: "PipelineResult") -> None:
        """Print final results summary."""
        self._out("\n" + "=" * 40)
        self._out("RESULTS")
        self._out("=" * 40)
        for name, r in result.results.items():
            line = f"  {name}: {r.state.value.upper()}"
            if r.failed_step:
                line += f" (step '{r.failed_step}'"
                if r.exit is not None and r.exit.exit_code is not None:
                    line += f", exit={r.exit.exit_code}"
                line += ")"
            elif r.reason:
                line += f" ({r.reason})"
            self._out(line)
        self._out("-" * 40)
        self._out(f"PIPELINE: {result.status.upper()}")
        if result.failed:
            self._out(f"Failed: {', '.join(result.failed)}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out("\n".join(lines), err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
