# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .errors import ExitInfo

# A step command is either a shell string or an opaque Python action.
Action = Callable[["StepContext"], Any]
Command = Union[str, Action]

# A condition is either an expression string or a predicate over run variables.
Condition = Union[str, Callable[[Mapping[str, Any]], bool]]


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: Command | None = None      # None -> external action, never executed locally
    if_: Condition | None = None    # evaluated right before the step
    id: str | None = None           # exposes steps.<id>.outcome to later conditions
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return self.id or self.name


@dataclass(frozen=True)
class CacheSpec:
    """Cache block of a job: `key` is a template, `path` what gets archived."""
    key: str
    path: str


@dataclass(frozen=True)
class MatrixSpec:
    """
    Matrix axes of a job.

    axes:    axis name -> ordered values (declaration order drives naming)
    include: extra combinations / extra keys merged into matching combinations
    exclude: partial combinations removed from the product
    """
    axes: Dict[str, List[Any]] = field(default_factory=dict)
    include: List[Dict[str, Any]] = field(default_factory=list)
    exclude: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class Job:
    """
    A CI job descriptor: steps + dependencies + matrix/caching metadata.

    Descriptors are loaded once and never mutated; the matrix expander turns
    each one into one or more JobInstance objects.
    """
    name: str
    steps: List[Step]
    needs: List[str] = field(default_factory=list)
    matrix: Optional[MatrixSpec] = None
    if_: Condition | None = None
    cache: Optional[CacheSpec] = None
    env: Dict[str, str] = field(default_factory=dict)
    runs_on: str | None = None
    title: str | None = None        # display name ("Checks / Format")
    fail_fast: bool = True          # a failure here stops the pipeline (if the run policy allows)
    max_parallel: int | None = None # bound on running instances of this job
    shell: str | None = None


@dataclass(frozen=True)
class JobInstance:
    """One schedulable unit produced from a Job (the job itself if no matrix)."""
    name: str
    job: Job
    steps: List[Step]
    matrix: Dict[str, Any] = field(default_factory=dict)
    cache_key: str | None = None
    runs_on: str | None = None

    @property
    def cache_path(self) -> str | None:
        return self.job.cache.path if self.job.cache else None


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (RunState.PENDING, RunState.RUNNING)


# PENDING -> RUNNING | SKIPPED | CANCELLED, RUNNING -> SUCCEEDED | FAILED.
# PENDING -> FAILED only when a job condition cannot be evaluated.
TRANSITIONS: Dict[RunState, frozenset] = {
    RunState.PENDING: frozenset({RunState.RUNNING, RunState.SKIPPED, RunState.CANCELLED, RunState.FAILED}),
    RunState.RUNNING: frozenset({RunState.SUCCEEDED, RunState.FAILED}),
    RunState.SUCCEEDED: frozenset(),
    RunState.FAILED: frozenset(),
    RunState.SKIPPED: frozenset(),
    RunState.CANCELLED: frozenset(),
}


@dataclass
class StepContext:
    """What a Python action step gets to see."""
    job: str
    step: str
    workspace: Path
    matrix: Dict[str, Any]
    env: Dict[str, str]
    variables: Dict[str, Any]


@dataclass(frozen=True)
class StepResult:
    name: str
    outcome: str  # success | failure | skipped
    exit: ExitInfo | None = None
    reason: str | None = None
    duration: float = 0.0


@dataclass
class JobResult:
    name: str
    state: RunState = RunState.PENDING
    reason: str | None = None
    failed_step: str | None = None
    exit: ExitInfo | None = None
    steps: List[StepResult] = field(default_factory=list)
    cache: str | None = None  # hit | miss | unavailable
    duration: float = 0.0


@dataclass
class PipelineResult:
    results: Dict[str, JobResult]

    @property
    def failed(self) -> List[str]:
        return [name for name, r in self.results.items() if r.state is RunState.FAILED]

    @property
    def ok(self) -> bool:
        # Success iff every non-skipped instance succeeded
        return all(
            r.state in (RunState.SUCCEEDED, RunState.SKIPPED)
            for r in self.results.values()
        )

    @property
    def status(self) -> str:
        return "success" if self.ok else "failure"

    def state_of(self, name: str) -> RunState:
        return self.results[name].state
