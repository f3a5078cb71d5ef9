# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the buildgate test suite.

This module provides:
- An environment scrubbed of gateway variables, so host settings never leak in
- Configuration factories (host-native and Windows-flavoured allow-lists)
- A recording fake of ProcessExecutor for tests that must not spawn anything
- A FastAPI TestClient wired to the fake executor
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

from buildgate.core.config import ENV_FIELDS, GatewayConfig
from buildgate.sandbox.executor import ExecutionResult
from buildgate.server.app import create_app

TEST_TOKEN = "test-token-0123456789abcdef"


# =============================================================================
# Environment
# =============================================================================


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path_factory) -> None:
    """Remove gateway variables and point HOME at an empty directory."""
    for var in ENV_FIELDS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path_factory.mktemp("home")))


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def make_config() -> Callable[..., GatewayConfig]:
    """Factory for GatewayConfig with a valid token and test-friendly limits.

    Example:
        def test_something(make_config):
            config = make_config(rate_limit_requests=2)
    """

    def _make(**overrides: Any) -> GatewayConfig:
        values: dict[str, Any] = {"auth_token": TEST_TOKEN, "rate_limit_requests": 1000}
        values.update(overrides)
        return GatewayConfig(**values)

    return _make


@pytest.fixture
def windows_config(make_config) -> GatewayConfig:
    """Windows path semantics with C:\\builds\\ as the only allowed root."""
    return make_config(
        allowed_batch_dirs=("C:\\builds\\",),
        allowed_build_paths=("C:\\builds\\",),
        path_style="windows",
    )


@pytest.fixture
def build_root(tmp_path: Path) -> Path:
    """A real allowed directory tree on the host filesystem.

    Creates:
        - builds/app/start.sh  (a runnable script)
        - builds/app/run.bat
        - outside/evil.bat
    """
    builds = tmp_path / "builds"
    app = builds / "app"
    app.mkdir(parents=True)
    (app / "start.sh").write_text("echo started\n")
    (app / "run.bat").write_text("echo batch\n")
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "evil.bat").write_text("echo evil\n")
    return builds


# =============================================================================
# Executor Fake
# =============================================================================


class FakeExecutor:
    """Records run() calls and returns a canned ExecutionResult."""

    def __init__(self, result: ExecutionResult | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self.result = result or ExecutionResult(
            exit_code=0, stdout="ok\n", stderr="", duration_ms=5, pid=4242
        )

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: str | None = None,
        timeout_ms: int | None = None,
        env=None,
        on_output=None,
    ) -> ExecutionResult:
        self.calls.append(
            {"command": command, "args": list(args), "cwd": cwd, "timeout_ms": timeout_ms}
        )
        return self.result


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


# =============================================================================
# HTTP Fixtures
# =============================================================================


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {TEST_TOKEN}"}


@pytest.fixture
def client(windows_config, fake_executor) -> TestClient:
    """TestClient for an app with Windows allow-lists and the fake executor."""
    return TestClient(create_app(windows_config, executor=fake_executor))
