"""
Pytest configuration for Forge Controller tests.

This module provides:
1. A scripted fake worker (no `claude` binary needed)
2. Envelope builders for worker output
3. Temp-directory forge layouts and driver service bundles
4. Sample plan documents
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import httpx
import pytest

from forge_controller.driver_base import DriverServices
from forge_controller.errors import DependencyMissing, WorkerInvocationFailure
from forge_controller.notifier import NotificationDispatcher
from forge_controller.paths import ForgePaths
from forge_controller.worker import WorkerInvocation


# -----------------------------------------------------------------------------
# Worker Output Builders
# -----------------------------------------------------------------------------
def envelope(payload: Optional[Dict[str, Any]], session_id: Optional[str] = "sess-1", **extra) -> str:
    """Raw worker stdout wrapping `payload` as structured_output."""
    data: Dict[str, Any] = {"type": "result", "subtype": "success", "is_error": False}
    if session_id is not None:
        data["session_id"] = session_id
    if payload is not None:
        data["structured_output"] = payload
    data.update(extra)
    return json.dumps(data)


def build_signal(status: str = "next", task_id: str = "T001", tests_passed: bool = True, **fields) -> Dict[str, Any]:
    payload = {
        "status": status,
        "task_id": task_id,
        "tests_passed": tests_passed,
        "summary": f"{task_id} done",
    }
    payload.update(fields)
    return payload


def improve_signal(status: str = "loop", iteration: int = 1, delta: Optional[float] = 0.2, **fields) -> Dict[str, Any]:
    payload = {
        "status": status,
        "iteration": iteration,
        "delta": delta,
        "summary": f"iteration {iteration}",
    }
    payload.update(fields)
    return payload


# -----------------------------------------------------------------------------
# Fake Worker
# -----------------------------------------------------------------------------
class FakeWorker:
    """
    Scripted worker. Each entry in `responses` is raw stdout or an
    exception instance to raise. Every call is recorded.
    """

    def __init__(self, responses: List[Union[str, BaseException]], available: bool = True):
        self.responses = list(responses)
        self.available = available
        self.calls: List[Dict[str, Any]] = []

    def check_available(self) -> str:
        if not self.available:
            raise DependencyMissing("claude")
        return "/usr/bin/claude"

    def invoke(self, prompt: str, schema: Dict[str, Any], continuation_token: Optional[str] = None) -> WorkerInvocation:
        self.calls.append({
            "prompt": prompt,
            "schema": schema,
            "continuation_token": continuation_token,
        })
        if not self.responses:
            raise WorkerInvocationFailure("no scripted response left", returncode=1)
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return WorkerInvocation(
            prompt=prompt,
            continuation_token=continuation_token,
            raw_output=response,
        )

    @property
    def tokens(self) -> List[Optional[str]]:
        return [call["continuation_token"] for call in self.calls]


class RecordingTransport:
    """httpx.MockTransport wrapper that keeps every request it saw."""

    def __init__(self, status_code: int = 200):
        self.requests: List[httpx.Request] = []
        self.status_code = status_code
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, text="ok")

    @property
    def payloads(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """Keep ambient forge environment out of tests."""
    monkeypatch.delenv("WORKSPACE_TOML", raising=False)
    monkeypatch.delenv("FORGE_SLACK_WEBHOOK", raising=False)


@pytest.fixture
def forge_paths(tmp_path) -> ForgePaths:
    """Forge layout rooted in a temp directory."""
    return ForgePaths(
        state_dir=tmp_path / ".forge",
        progress_file=tmp_path / "claude-progress.txt",
        schema_dir=tmp_path / "lib",
        commands_dir=tmp_path / "commands",
        instance_config=tmp_path / ".claude" / "forge" / "project.toml",
        global_config=tmp_path / "home" / "forge.toml",
    )


@pytest.fixture
def webhook():
    return RecordingTransport()


@pytest.fixture
def make_services(forge_paths, webhook):
    """Factory: DriverServices around a FakeWorker with a recorded webhook."""
    def _make(worker: FakeWorker, webhook_url: str = TEST_WEBHOOK_URL) -> DriverServices:
        notifier = NotificationDispatcher(webhook_url=webhook_url, transport=webhook.transport)
        return DriverServices.create(paths=forge_paths, worker=worker, notifier=notifier)
    return _make


@pytest.fixture
def sample_plan_content():
    """Return a sample plan document with three tasks."""
    return """# Plan: login feature

## Context
Add a login flow to the web app.

### T001: Scaffold auth module
Create the package and empty tests.

### T002: Add login form
Render the form and validate input.

### T003 Wire session handling
Persist the session cookie.

## Notes
### Not a task heading
"""


@pytest.fixture
def sample_plan(tmp_path, sample_plan_content) -> Path:
    """Create a sample plan file for testing."""
    plan_path = tmp_path / "plan.md"
    plan_path.write_text(sample_plan_content)
    return plan_path


# -----------------------------------------------------------------------------
# Test Constants
# -----------------------------------------------------------------------------
TEST_WEBHOOK_URL = "https://hooks.example.test/forge"
