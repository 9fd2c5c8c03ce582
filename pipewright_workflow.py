# pipewright_workflow.py
# Workflow for pipewright itself: format, lint, dependency audit, then tests
from __future__ import annotations

from pipewright import CACHE_MISS, cache, job, matrix, sh, wf


def workflow():
    return wf(
        job(
            "format",
            sh("Setup", "ruff --version || python -m pip install ruff"),
            sh("Run", "ruff format --check ."),
            title="Checks / Format",
        ),
        job(
            "lint",
            sh("Setup", "ruff --version || python -m pip install ruff"),
            sh("Run", "ruff check ."),
            title="Checks / Lint",
        ),
        # pip-audit is installed into a local venv that is refreshed monthly
        job(
            "audit",
            sh("Setup", "python -m venv .audit-venv && .audit-venv/bin/pip install pip-audit", if_=CACHE_MISS),
            sh("Run", ".audit-venv/bin/pip-audit --skip-editable ."),
            cache=cache(key="${{ runner.os }}-audit-${{ vars.yyyymm }}", path=".audit-venv"),
            title="Checks / Audit",
        ),
        job(
            "test",
            sh("Install", "python -m pip install -e '.[test]'"),
            sh("Test", "pytest -q"),
            needs=["format", "lint"],
            matrix=matrix(build=["linux"], include=[{"build": "linux", "os": "ubuntu-latest", "python": "3.12"}]),
            runs_on="${{ matrix.os }}",
            max_parallel=3,
            title="Tests / Build & Test",
        ),
    )
