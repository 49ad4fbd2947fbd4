"""Pytest configuration and fixtures."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from hive.config.manager import ConfigManager
from hive.orchestration.state import RunStateStore


@pytest.fixture(autouse=True)
def reset_config(tmp_path, monkeypatch):
    """Isolate every test from the real user config and environment."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.delenv("HIVE_DIR", raising=False)
    monkeypatch.delenv("HIVE_MAX_PARALLEL", raising=False)
    monkeypatch.chdir(tmp_path)
    ConfigManager.reset()
    yield
    ConfigManager.reset()


@pytest.fixture
def hive_dir(tmp_path):
    return tmp_path / ".hive"


@pytest.fixture
def state_store(hive_dir):
    store = RunStateStore(hive_dir)
    store.init("Build the login page", run_id="run-1", epic_id="epic-7")
    return store


class StepClock:
    """Deterministic clock advancing a fixed step on every call"""

    def __init__(self, start: datetime, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


@pytest.fixture
def clock():
    return StepClock(datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc))


def agent_output(
    status: str = "complete",
    confidence: float = 0.9,
    summary: str = "Done",
    critique: dict | None = None,
    **fields,
) -> str:
    """Raw agent output carrying a self-report and, optionally, a critique."""
    parts = ["Working on it...\n"]
    if critique is not None:
        parts.append(f"<!--HIVE_CRITIQUE\n{json.dumps(critique)}\nHIVE_CRITIQUE-->\n")
    report = {"status": status, "confidence": confidence, "summary": summary, **fields}
    parts.append(f"<!--HIVE_REPORT\n{json.dumps(report)}\nHIVE_REPORT-->\n")
    return "".join(parts)


@pytest.fixture
def make_output():
    return agent_output
