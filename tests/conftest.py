# tests/conftest.py
"""
Shared fixtures for the pipewright test suite.

Everything here is deterministic: the console writes into a buffer, run
variables use a fixed clock and runner OS, and every workspace/cache lives
under pytest's tmp_path.
"""
from __future__ import annotations

import io
import threading
import time

import pytest

from pipewright.cache import CacheStore
from pipewright.runner import StepRunner
from pipewright.ui.console import Console, set_console



@pytest.fixture(autouse=True)
def console():
    """Buffered console installed as the global one for the test."""
    c = Console(stream=io.StringIO())
    set_console(c)
    yield c
    set_console(Console())


@pytest.fixture
def variables() -> dict:
    return {
        "vars": {"yyyymm": "202610"},
        "runner": {"os": "Linux", "arch": "x86_64"},
        "env": {},
    }


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture
def store(tmp_path) -> CacheStore:
    return CacheStore(tmp_path / "cache")


@pytest.fixture
def step_runner(workspace, store, variables, console) -> StepRunner:
    return StepRunner(workspace=workspace, cache=store, variables=variables, console=console)


class Gauge:
    """Counts how many actions run at the same time."""

    def __init__(self):
        self._lock = threading.Lock()
        self.current = 0
        self.peak = 0
        self.started: list[str] = []

    def action(self, delay: float = 0.15, result=None):
        def _run(ctx):
            with self._lock:
                self.current += 1
                self.peak = max(self.peak, self.current)
                self.started.append(ctx.job)
            try:
                time.sleep(delay)
            finally:
                with self._lock:
                    self.current -= 1
            return result

        return _run


@pytest.fixture
def gauge() -> Gauge:
    return Gauge()


@pytest.fixture
def transitions():
    """Listener recording (instance name, state) in order."""
    seen: list[tuple[str, str]] = []

    def listener(inst, state, result):
        seen.append((inst.name, state.value))

    listener.seen = seen
    return listener
