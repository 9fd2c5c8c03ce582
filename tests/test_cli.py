import textwrap

import pytest
from click.testing import CliRunner

from pipewright.cli import cli, parse_vars

GOOD = """
name: checks
on:
  push:
    branches: [ main ]
jobs:
  format:
    steps:
      - run: echo format
  lint:
    steps:
      - run: echo lint
  deploy:
    if: vars.mode == 'full'
    steps:
      - run: echo deploy
  test:
    needs: [ format, lint ]
    strategy:
      matrix:
        py: [ "3.11", "3.12" ]
    steps:
      - run: echo test ${{ matrix.py }}
"""

FAILING = """
jobs:
  format:
    steps:
      - run: echo format
  lint:
    steps:
      - name: Run
        run: exit 4
  test:
    needs: [ format, lint ]
    steps:
      - run: echo test
"""

CYCLIC = """
jobs:
  a:
    needs: b
    steps: [ { run: echo a } ]
  b:
    needs: a
    steps: [ { run: echo b } ]
"""


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    def write(text, name="pipewright.yml"):
        path = tmp_path / name
        path.write_text(textwrap.dedent(text))
        return path

    return write


def _invoke(*args):
    return CliRunner().invoke(cli, list(args))


def test_run_succeeds(project):
    project(GOOD)

    result = _invoke("run", "--max-parallel", "2", "--cache-dir", "cache")

    assert result.exit_code == 0, result.output
    assert "RUN STARTED" in result.output
    assert "JOB SKIPPED: deploy" in result.output
    assert "test-3.11: SUCCEEDED" in result.output
    assert "PIPELINE: SUCCESS" in result.output


def test_run_with_vars(project):
    project(GOOD)

    result = _invoke("run", "--var", "mode=full", "--cache-dir", "cache")

    assert result.exit_code == 0, result.output
    assert "deploy: SUCCEEDED" in result.output


def test_run_failure_exits_nonzero(project):
    project(FAILING)

    result = _invoke("run", "--max-parallel", "1", "--cache-dir", "cache")

    assert result.exit_code == 1
    assert "lint: FAILED (step 'Run', exit=4)" in result.output
    assert "test: CANCELLED" in result.output
    assert "PIPELINE: FAILURE" in result.output
    assert "Failed: lint" in result.output


def test_run_skips_untriggered_workflow(project):
    project(GOOD)

    result = _invoke("run", "--event", "pull_request", "--branch", "main")

    assert result.exit_code == 0
    assert "not triggered" in result.output
    assert "RUN STARTED" not in result.output


def test_cycle_is_a_validation_error(project):
    project(CYCLIC)

    result = _invoke("run")

    assert result.exit_code == 2
    assert "Dependency cycle detected" in result.output


def test_plan_prints_stages(project):
    project(GOOD)

    result = _invoke("plan")

    assert result.exit_code == 0, result.output
    assert "PLAN: checks" in result.output
    assert "Stage 1: deploy, format, lint" in result.output
    assert "Stage 2: test-3.11, test-3.12" in result.output


def test_validate(project):
    project(GOOD)

    result = _invoke("validate")

    assert result.exit_code == 0, result.output
    assert "OK: checks (4 jobs, 5 instances)" in result.output


def test_explicit_workflow_path(project):
    project(GOOD, name="ci.yaml")

    result = _invoke("validate", "--workflow", "ci.yaml")

    assert result.exit_code == 0, result.output


def test_missing_workflow(project):
    result = _invoke("run")

    assert result.exit_code == 2
    assert "No workflow file found" in result.output


def test_ambiguous_workflow(project):
    project(GOOD)
    project(GOOD, name="pipewright.yaml")

    result = _invoke("validate")

    assert result.exit_code == 2
    assert "Multiple workflow files found" in result.output


def test_invalid_workflow_document(project):
    project("jobs: {a: {steps: []}}\n")

    result = _invoke("validate")

    assert result.exit_code == 2
    assert "Failed to load workflow" in result.output


def test_bad_var_is_a_usage_error(project):
    project(GOOD)

    result = _invoke("run", "--var", "novalue")

    assert result.exit_code == 2


def test_parse_vars():
    assert parse_vars(["a=1", "b=x=y", "empty="]) == {"a": "1", "b": "x=y", "empty": ""}


def test_malformed_template_is_a_validation_error(project):
    project(
        """
        jobs:
          test:
            runs-on: ${{ matrix.os == }}
            strategy:
              matrix:
                os: [ linux ]
            steps:
              - run: echo test
        """
    )

    result = _invoke("validate")

    assert result.exit_code == 2
    assert "Invalid pipeline" in result.output


def test_raising_python_workflow_is_a_validation_error(project):
    project(
        """
        def workflow():
            raise RuntimeError("no jobs today")
        """,
        name="ci_workflow.py",
    )

    result = _invoke("run", "--workflow", "ci_workflow.py")

    assert result.exit_code == 2
    assert "Failed to load workflow" in result.output
    assert "no jobs today" in result.output
