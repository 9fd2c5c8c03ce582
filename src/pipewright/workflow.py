# workflow.py
"""
Loading pipeline definitions.

Two sources are supported:

  - YAML documents in the familiar `jobs:` / `needs:` / `strategy.matrix`
    shape (validated with pydantic models below)
  - Python files defining `workflow() -> List[Job]` or `JOBS = [...]`
"""
from __future__ import annotations

import runpy
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import WorkflowError
from .model import CacheSpec, Job, MatrixSpec, Step

YAML_SUFFIXES = (".yml", ".yaml")


# ----------------------------------------------------------------------
# Document schema
# ----------------------------------------------------------------------

class _Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StepDocument(_Document):
    name: Optional[str] = None
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    if_: Optional[Union[bool, str]] = Field(default=None, alias="if")
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    env: Dict[str, Any] = Field(default_factory=dict)
    working_directory: Optional[str] = Field(default=None, alias="working-directory")

    @model_validator(mode="after")
    def _has_action(self) -> "StepDocument":
        if not self.run and not self.uses:
            raise ValueError("a step needs either `run` or `uses`")
        return self

    def label(self, position: int) -> str:
        if self.name:
            return self.name
        if self.run:
            return self.run.strip().splitlines()[0]
        if self.uses:
            return self.uses
        return f"step {position}"


class CacheDocument(_Document):
    path: str
    key: str


class StrategyDocument(_Document):
    matrix: Optional[Dict[str, Any]] = None
    fail_fast: bool = Field(default=True, alias="fail-fast")
    max_parallel: Optional[int] = Field(default=None, alias="max-parallel", ge=1)

    @field_validator("matrix")
    @classmethod
    def _matrix_shape(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is None:
            return value
        for axis, values in value.items():
            if axis in ("include", "exclude"):
                if not isinstance(values, list) or not all(isinstance(v, dict) for v in values):
                    raise ValueError(f"matrix.{axis} must be a list of mappings")
            elif not isinstance(values, list):
                raise ValueError(f"matrix axis '{axis}' must be a list of values")
        return value


class JobDocument(_Document):
    name: Optional[str] = None
    needs: List[str] = Field(default_factory=list)
    runs_on: Optional[Union[str, List[str]]] = Field(default=None, alias="runs-on")
    if_: Optional[Union[bool, str]] = Field(default=None, alias="if")
    env: Dict[str, Any] = Field(default_factory=dict)
    defaults: Dict[str, Any] = Field(default_factory=dict)
    strategy: Optional[StrategyDocument] = None
    cache: Optional[CacheDocument] = None
    steps: List[StepDocument] = Field(min_length=1)

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_as_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


class WorkflowDocument(_Document):
    name: Optional[str] = None
    on: Any = None
    env: Dict[str, Any] = Field(default_factory=dict)
    defaults: Dict[str, Any] = Field(default_factory=dict)
    jobs: Dict[str, JobDocument] = Field(min_length=1)


# ----------------------------------------------------------------------
# Loaded workflow
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Triggers:
    """
    Events that start the pipeline on a hosting platform.

    events maps an event name (push, pull_request, ...) to its branch
    patterns; None means any branch. No events at all means "always".
    """
    events: Dict[str, Optional[List[str]]] = field(default_factory=dict)

    @classmethod
    def from_document(cls, on: Any) -> "Triggers":
        if on is None:
            return cls()
        if isinstance(on, str):
            return cls({on: None})
        if isinstance(on, list):
            return cls({str(e): None for e in on})
        if isinstance(on, dict):
            events: Dict[str, Optional[List[str]]] = {}
            for event, spec in on.items():
                branches = spec.get("branches") if isinstance(spec, dict) else None
                if isinstance(branches, str):
                    branches = [branches]
                events[str(event)] = [str(b) for b in branches] if branches is not None else None
            return cls(events)
        raise WorkflowError(f"Unsupported `on` value: {on!r}")

    def matches(self, event: str, branch: Optional[str] = None) -> bool:
        if not self.events:
            return True
        if event not in self.events:
            return False
        patterns = self.events[event]
        if patterns is None or branch is None:
            return True
        return any(fnmatch(branch, p) for p in patterns)


@dataclass(frozen=True)
class Workflow:
    name: str
    jobs: List[Job]
    triggers: Triggers = field(default_factory=Triggers)
    env: Dict[str, str] = field(default_factory=dict)
    source: Optional[Path] = None


def _str_map(values: Mapping[str, Any]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k, v in values.items():
        if isinstance(v, bool):
            out[str(k)] = "true" if v else "false"
        else:
            out[str(k)] = "" if v is None else str(v)
    return out


def _shell(*defaults: Mapping[str, Any]) -> Optional[str]:
    shell = None
    for d in defaults:
        run = d.get("run") if isinstance(d, Mapping) else None
        if isinstance(run, Mapping) and run.get("shell"):
            shell = str(run["shell"])
    return shell


def _to_job(job_id: str, doc: JobDocument, wf: WorkflowDocument) -> Job:
    steps = [
        Step(
            name=s.label(i + 1),
            run=s.run,
            if_=s.if_,
            id=s.id,
            cwd=s.working_directory,
            env=_str_map(s.env),
        )
        for i, s in enumerate(doc.steps)
    ]

    matrix = None
    strategy = doc.strategy or StrategyDocument()
    if strategy.matrix is not None:
        raw = dict(strategy.matrix)
        include = raw.pop("include", None) or []
        exclude = raw.pop("exclude", None) or []
        matrix = MatrixSpec(axes=raw, include=include, exclude=exclude)

    runs_on = doc.runs_on
    if isinstance(runs_on, list):
        runs_on = ",".join(str(r) for r in runs_on)

    return Job(
        name=job_id,
        steps=steps,
        needs=list(doc.needs),
        matrix=matrix,
        if_=doc.if_,
        cache=CacheSpec(key=doc.cache.key, path=doc.cache.path) if doc.cache else None,
        env={**_str_map(wf.env), **_str_map(doc.env)},
        runs_on=runs_on,
        title=doc.name,
        fail_fast=strategy.fail_fast,
        max_parallel=strategy.max_parallel,
        shell=_shell(wf.defaults, doc.defaults),
    )


def parse_workflow(data: Any, *, source: Optional[Path] = None) -> Workflow:
    """Validate a decoded YAML document and turn it into job descriptors."""
    where = str(source) if source else "<workflow>"
    if not isinstance(data, dict):
        raise WorkflowError(f"{where}: workflow must be a mapping, got {type(data).__name__}")

    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data and "on" not in data:
        data["on"] = data.pop(True)

    try:
        doc = WorkflowDocument.model_validate(data)
    except ValidationError as e:
        raise WorkflowError(f"{where}: invalid workflow\n{e}") from e

    jobs = [_to_job(job_id, job_doc, doc) for job_id, job_doc in doc.jobs.items()]
    name = doc.name or (source.stem if source else "workflow")
    return Workflow(
        name=name,
        jobs=jobs,
        triggers=Triggers.from_document(doc.on),
        env=_str_map(doc.env),
        source=source,
    )


def load_yaml_workflow(path: str | Path) -> Workflow:
    wf_path = Path(path)
    try:
        data = yaml.safe_load(wf_path.read_text(encoding="utf-8"))
    except OSError as e:
        raise WorkflowError(f"Could not read workflow {wf_path}: {e}") from e
    except yaml.YAMLError as e:
        raise WorkflowError(f"{wf_path}: invalid YAML\n{e}") from e
    return parse_workflow(data, source=wf_path)


def load_python_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> List[Job]
      - JOBS = [Job, ...]
    """
    wf_path = Path(path)
    module_name = f"pipewright_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
    except Exception as e:
        raise WorkflowError(f"Could not execute workflow {wf_path}: {type(e).__name__}: {e}") from e

    jobs = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            jobs = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise WorkflowError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from pipewright import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise WorkflowError(f"{wf_path}: workflow() failed: TypeError: {e}") from e
        except Exception as e:
            raise WorkflowError(f"{wf_path}: workflow() failed: {type(e).__name__}: {e}") from e
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise WorkflowError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...]."
        )

    return Workflow(name=wf_path.stem, jobs=jobs, source=wf_path)


def load_workflow(path: str | Path) -> Workflow:
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise WorkflowError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix in YAML_SUFFIXES:
        return load_yaml_workflow(wf_path)
    if wf_path.suffix == ".py":
        return load_python_workflow(wf_path)
    raise WorkflowError(f"Workflow must be a .py, .yml or .yaml file, got: {wf_path.name}")
