# matrix.py
from __future__ import annotations

import itertools
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import DuplicateJob, EmptyMatrixAxis, MatrixError
from .expressions import as_text, render_template
from .model import Job, JobInstance, MatrixSpec


def _matches(combo: Mapping[str, Any], partial: Mapping[str, Any]) -> bool:
    return all(k in combo and combo[k] == v for k, v in partial.items())


def combinations(job: Job) -> List[Dict[str, Any]]:
    """
    Cartesian product of a job's matrix axes, with `exclude` applied first
    and `include` merged afterwards.

    A job without a matrix has exactly one (empty) combination.
    """
    spec: Optional[MatrixSpec] = job.matrix
    if spec is None:
        return [{}]

    for axis, values in spec.axes.items():
        if not values:
            raise EmptyMatrixAxis(job.name, axis)

    names = list(spec.axes)
    combos: List[Dict[str, Any]] = []
    if names:
        for values in itertools.product(*(spec.axes[n] for n in names)):
            combos.append(dict(zip(names, values)))

    combos = [c for c in combos if not any(_matches(c, ex) for ex in spec.exclude)]

    # include: merge into every combination whose original axis values agree,
    # never overwriting those values; otherwise it becomes its own combination
    originals = [dict(c) for c in combos]
    extra: List[Dict[str, Any]] = []
    for entry in spec.include:
        overlap = {k: v for k, v in entry.items() if k in spec.axes}
        matched = False
        for original, combo in zip(originals, combos):
            if _matches(original, overlap):
                matched = True
                for k, v in entry.items():
                    if k not in original:
                        combo[k] = v
        if not matched:
            extra.append(dict(entry))
    combos.extend(extra)

    if not combos:
        raise MatrixError(f"Job '{job.name}' matrix produces no combinations")
    return combos


def instance_name(job: Job, combo: Mapping[str, Any]) -> str:
    if not combo:
        return job.name
    axes = list(job.matrix.axes) if job.matrix else []
    parts = [combo[a] for a in axes if a in combo] or list(combo.values())
    return job.name + "-" + "-".join(as_text(p) for p in parts)


def instance_variables(
    job: Job,
    combo: Mapping[str, Any],
    base: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Run-scoped variables as seen from one instance of `job`."""
    variables: Dict[str, Any] = dict(base or {})
    variables["matrix"] = dict(combo)
    variables["env"] = {**dict(variables.get("env") or {}), **job.env}
    return variables


def expand(job: Job, variables: Optional[Mapping[str, Any]] = None) -> List[JobInstance]:
    """
    Turn one job descriptor into its concrete instances.

    Templates in the cache key, runs-on and step commands are substituted
    here, so every instance carries fully resolved values.
    """
    instances: List[JobInstance] = []
    for combo in combinations(job):
        scope = instance_variables(job, combo, variables)
        steps = [
            replace(
                s,
                name=render_template(s.name, scope),
                run=render_template(s.run, scope),
            )
            for s in job.steps
        ]
        instances.append(
            JobInstance(
                name=instance_name(job, combo),
                job=job,
                steps=steps,
                matrix=dict(combo),
                cache_key=render_template(job.cache.key, scope) if job.cache else None,
                runs_on=render_template(job.runs_on, scope),
            )
        )
    return instances


def expand_all(jobs: Iterable[Job], variables: Optional[Mapping[str, Any]] = None) -> List[JobInstance]:
    jobs = list(jobs)
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        raise DuplicateJob([n for n in names if names.count(n) > 1])

    instances: List[JobInstance] = []
    for j in jobs:
        instances.extend(expand(j, variables))

    inst_names = [i.name for i in instances]
    if len(set(inst_names)) != len(inst_names):
        raise DuplicateJob([n for n in inst_names if inst_names.count(n) > 1])
    return instances
