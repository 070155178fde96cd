"""Pytest hooks and fixtures."""

import os

import pytest

from scriptbridge.config.access import clear_config_cache
from scriptbridge.config.schema import Config, RateLimitConfig, SandboxConfig
from scriptbridge.sandbox.dispatch import DispatchTable


def pytest_configure(config):
    """Register custom markers (also in pyproject.toml)."""
    config.addinivalue_line(
        "markers",
        "subprocess: spawns real script contexts with the current interpreter",
    )


def pytest_collection_modifyitems(config, items):
    """Skip subprocess tests when SCRIPTBRIDGE_SKIP_SUBPROCESS=1."""
    if os.environ.get("SCRIPTBRIDGE_SKIP_SUBPROCESS") != "1":
        return
    skip = pytest.mark.skip(reason="Subprocess tests disabled")
    for item in items:
        if "subprocess" in item.keywords:
            item.add_marker(skip)


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    """Point the config file at a temp path so tests never read ~/.scriptbridge."""
    monkeypatch.setenv("SCRIPTBRIDGE_CONFIG", str(tmp_path / "config.json"))
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def config():
    return Config(
        sandbox=SandboxConfig(timeout_ms=10_000),
        rate_limit=RateLimitConfig(max_calls=150, window_ms=60_000),
    )


class FakeTasks:
    """Stand-in for a domain client."""

    def __init__(self):
        self.calls = []

    async def list(self, status=None):
        """List tasks, optionally by status."""
        self.calls.append(("list", status))
        items = [{"id": 1, "status": "open"}, {"id": 2, "status": "done"}]
        return [t for t in items if status is None or t["status"] == status]

    async def get(self, task_id):
        """Fetch one task."""
        self.calls.append(("get", task_id))
        if task_id == 404:
            raise LookupError("Task 404 not found")
        return {"id": task_id}


@pytest.fixture
def fake_tasks():
    return FakeTasks()


@pytest.fixture
def dispatch_table(fake_tasks):
    table = DispatchTable()
    table.bind_object("tasks", fake_tasks, ["list", "get"])
    return table
