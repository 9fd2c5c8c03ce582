from .dag import Pipeline
from .scheduler import Scheduler, run_pipeline, run_variables
from .model import Job, Step, RunState, PipelineResult
from .workflow import load_workflow
from .dsl import job, sh, step, cache, matrix, wf, CACHE_MISS

__all__ = [
    "job", "sh", "step", "cache", "matrix", "wf", "CACHE_MISS",
    "Pipeline", "Scheduler", "run_pipeline", "run_variables",
    "Job", "Step", "RunState", "PipelineResult", "load_workflow",
]
