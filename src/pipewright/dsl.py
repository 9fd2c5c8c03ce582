# src/pipewright/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

from .model import Action, CacheSpec, Condition, Job, MatrixSpec, Step

# step condition: only run when the job's cache lookup missed
CACHE_MISS = "!cache.hit"


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    if_: Condition | None = None,
    id: str | None = None,
    env: Optional[Dict[str, str]] = None,
) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, if_=if_, id=id, cwd=cwd, env=dict(env or {}))


def step(
    name: str,
    action: Action,
    *,
    if_: Condition | None = None,
    id: str | None = None,
    env: Optional[Dict[str, str]] = None,
) -> Step:
    """Create a step backed by a Python callable (gets a StepContext)."""
    return Step(name=name, run=action, if_=if_, id=id, env=dict(env or {}))


def cache(key: str, path: str) -> CacheSpec:
    return CacheSpec(key=key, path=path)


def matrix(
    *,
    include: Optional[Iterable[Dict[str, Any]]] = None,
    exclude: Optional[Iterable[Dict[str, Any]]] = None,
    **axes: Iterable[Any],
) -> MatrixSpec:
    """
    Matrix axes for a job.

    Example:
        job("test", sh("Test", "pytest"), matrix=matrix(py=["3.11", "3.12"], os=["linux"]))
    """
    return MatrixSpec(
        axes={k: list(v) for k, v in axes.items()},
        include=[dict(i) for i in include or []],
        exclude=[dict(e) for e in exclude or []],
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    matrix: Optional[MatrixSpec] = None,
    if_: Condition | None = None,
    cache: Optional[CacheSpec] = None,
    env: Optional[Dict[str, str]] = None,
    runs_on: str | None = None,
    title: str | None = None,
    fail_fast: bool = True,
    max_parallel: int | None = None,
    shell: str | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        matrix=matrix,
        if_=if_,
        cache=cache,
        env=dict(env or {}),
        runs_on=runs_on,
        title=title,
        fail_fast=fail_fast,
        max_parallel=max_parallel,
        shell=shell,
    )


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Job) -> List[Job]:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

    Users can write:
        from pipewright import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    return list(jobs)
