# cli.py
from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, Iterable

import click

from pipewright import settings
from pipewright.cache import CacheStore
from pipewright.dag import Pipeline
from pipewright.errors import ExpressionError, PipelineError, WorkflowError
from pipewright.runner import StepRunner
from pipewright.scheduler import Scheduler, default_max_parallel, run_variables
from pipewright.ui.console import Console, get_console, set_console
from pipewright.workflow import Workflow, load_workflow

DEFAULT_WORKFLOW = "pipewright_workflow.py"
YAML_CANDIDATES = ("pipewright.yml", "pipewright.yaml", ".pipewright.yml", ".pipewright.yaml")

# exit codes
EXIT_FAILED = 1
EXIT_INVALID = 2


def find_workflow_files(directory: Path = Path(".")) -> list[Path]:
    """
    Find all workflow files in a directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []

    default_workflow = directory / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    # Look for other *_workflow.py files
    for path in directory.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    for name in YAML_CANDIDATES:
        path = directory / name
        if path.exists():
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    # If workflow is explicitly provided, use it
    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix == "":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  pipewright run --workflow ci.yml",
            )
            sys.exit(EXIT_INVALID)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", "  *_workflow.py", *(f"  {n}" for n in YAML_CANDIDATES)],
            suggestion="Specify a workflow explicitly:\n  pipewright run --workflow ci.yml",
        )
        sys.exit(EXIT_INVALID)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  pipewright run --workflow {workflow_files[0]}",
        )
        sys.exit(EXIT_INVALID)

    return workflow_files[0]


def parse_vars(pairs: Iterable[str]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--var")
        out[key.strip()] = value
    return out


def _load(workflow_arg: str | None) -> Workflow:
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        return load_workflow(workflow_path)
    except WorkflowError as e:
        console.print_error("Failed to load workflow", f"Could not load workflow from {workflow_path}", details=[str(e)])
        sys.exit(EXIT_INVALID)


def _build(wf: Workflow, variables) -> Pipeline:
    console = get_console()
    try:
        return Pipeline.build(wf.jobs, variables)
    except (PipelineError, ExpressionError) as e:
        console.print_error("Invalid pipeline", str(e), details=[f"workflow: {wf.source or wf.name}"])
        sys.exit(EXIT_INVALID)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """pipewright: run CI pipelines locally."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py, .yml or .yaml)")
@click.option(
    "--max-parallel",
    default=settings.MAX_PARALLEL,
    type=click.IntRange(min=1),
    help="Maximum number of job instances running at once [default: cpu count - 1]",
)
@click.option("--fail-fast/--no-fail-fast", default=settings.FAIL_FAST, show_default=True,
              help="Stop starting new jobs after the first failure")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--cache-keep", default=settings.CACHE_KEEP, type=click.IntRange(min=0),
              help="After the run, keep only the newest N cache entries")
@click.option("--workspace", default=".", show_default=True, type=click.Path(file_okay=False),
              help="Directory steps run in")
@click.option("--var", "var_pairs", multiple=True, metavar="KEY=VALUE",
              help="Run variable available as vars.KEY (repeatable)")
@click.option("--event", type=click.Choice(["push", "pull_request"]), default=None,
              help="Only run if the workflow triggers on this event")
@click.option("--branch", default=None, help="Branch used with --event")
@click.pass_context
def run(ctx, workflow, max_parallel, fail_fast, cache_dir, cache_keep, workspace, var_pairs, event, branch):
    """Run a pipeline."""
    console = get_console()
    extra_vars = parse_vars(var_pairs)
    wf = _load(workflow)

    if event and not wf.triggers.matches(event, branch):
        console.print_info(f"Workflow '{wf.name}' is not triggered by {event}" + (f" on {branch}" if branch else ""))
        sys.exit(0)

    variables = run_variables(extra_vars, env=wf.env)
    pipeline = _build(wf, variables)
    max_parallel = max_parallel or default_max_parallel()

    try:
        store = CacheStore(cache_dir)
        runner = StepRunner(workspace=workspace, cache=store, variables=variables, console=console)

        console.print_run_started(
            workflow=wf.name,
            job_count=len(wf.jobs),
            instance_count=len(pipeline),
            max_parallel=max_parallel,
        )

        result = Scheduler(
            pipeline,
            max_parallel=max_parallel,
            fail_fast=fail_fast,
            runner=runner,
            variables=variables,
            console=console,
        ).run()

        console.print_results(result)

        if cache_keep is not None:
            for key in store.prune(cache_keep):
                console.print_debug(f"evicted cache entry {key}")

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    if not result.ok:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py, .yml or .yaml)")
@click.option("--var", "var_pairs", multiple=True, metavar="KEY=VALUE", help="Run variable (repeatable)")
def plan(workflow, var_pairs):
    """Print job instances stage by stage without running anything."""
    console = get_console()
    wf = _load(workflow)
    pipeline = _build(wf, run_variables(parse_vars(var_pairs), env=wf.env))

    console.print_header(f"PLAN: {wf.name}")
    for n, level in enumerate(pipeline.levels(), start=1):
        console.print_plan_stage(n, [pipeline.name(i) for i in level])
        for idx in level:
            inst = pipeline.instances[idx]
            if inst.runs_on:
                console.print_debug(f"{inst.name}: runs-on {inst.runs_on}")
            if inst.cache_key:
                console.print_info(f"  {inst.name}: cache {inst.cache_path} @ {inst.cache_key}")


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py, .yml or .yaml)")
def validate(workflow):
    """Check that a workflow loads and forms a valid pipeline."""
    console = get_console()
    wf = _load(workflow)
    pipeline = _build(wf, run_variables(env=wf.env))
    console.print_info(f"OK: {wf.name} ({len(wf.jobs)} jobs, {len(pipeline)} instances)")


if __name__ == "__main__":
    cli()
