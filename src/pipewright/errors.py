# errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence


class PipewrightError(Exception):
    """Base class for every error raised by pipewright."""


# ----------------------------------------------------------------------
# Structural errors: the pipeline cannot be built, nothing runs
# ----------------------------------------------------------------------

class PipelineError(PipewrightError, ValueError):
    """A pipeline definition is structurally invalid."""


class CyclicDependency(PipelineError):
    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class UnknownDependency(PipelineError):
    def __init__(self, job: str, missing: str, known: Sequence[str] = ()):
        self.job = job
        self.missing = missing
        msg = f"Job '{job}' needs missing job '{missing}'"
        if known:
            msg += f". Known jobs: {sorted(known)}"
        super().__init__(msg)


class DuplicateJob(PipelineError):
    def __init__(self, names: Sequence[str]):
        self.names = sorted(set(names))
        super().__init__(f"Duplicate job names found: {self.names}")


class MatrixError(PipelineError):
    """A job's matrix cannot be expanded."""


class EmptyMatrixAxis(MatrixError):
    def __init__(self, job: str, axis: str):
        self.job = job
        self.axis = axis
        super().__init__(f"Job '{job}' has an empty matrix axis '{axis}'")


class WorkflowError(PipewrightError):
    """A workflow file could not be read or validated."""


class ExpressionError(PipewrightError, ValueError):
    """A condition or template expression is malformed."""


# ----------------------------------------------------------------------
# Runtime errors: scoped to one instance / one cache operation
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ExitInfo:
    """How a step (or a job condition) failed."""
    exit_code: int | None
    message: str
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        if self.exit_code is None:
            return self.message
        return f"exit={self.exit_code}: {self.message}"


class StepFailure(PipewrightError):
    def __init__(self, job: str, step: str, exit: ExitInfo):
        self.job = job
        self.step = step
        self.exit = exit
        super().__init__(f"[{job}] step '{step}' failed ({exit})")


class CacheUnavailable(PipewrightError):
    """The cache store could not be read or written."""


class InvalidTransition(PipewrightError, RuntimeError):
    def __init__(self, instance: str, current: str, target: str):
        self.instance = instance
        super().__init__(f"Instance '{instance}' cannot move from {current} to {target}")
