"""Shared test fixtures — reduces boilerplate across test modules.

Provides:
- ``set_test_config`` — autouse fixture that patches common settings
- ``reset_state`` — autouse fixture clearing the in-process project store
- ``ScriptedModel`` / ``FakeBuilder`` — stand-ins for the model and bundler
- ``edge_requests`` — records edge API calls on a mock transport
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

import httpx
import pytest

from app.clients import edge_client
from app.repos import project_repo
from app.services import pipeline_service
from shipyard.contracts import BuildArtifact, BuildResult, Diagnostic, Environment, ToolUse
from shipyard.turns import ModelTurn


# ---------------------------------------------------------------------------
# Environment patching
# ---------------------------------------------------------------------------

_SETTINGS_PATCHES: dict[str, Any] = {
    "app.config.settings.ANTHROPIC_API_KEY": "test-key",
    "app.config.settings.LLM_MODEL": "test-model",
    "app.config.settings.CF_ACCOUNT_ID": "acc-test",
    "app.config.settings.CF_API_TOKEN": "cf-test-token",
    "app.config.settings.CF_ZONE_ID": "",
    "app.config.settings.CF_WORKERS_SUBDOMAIN": "shipyard-test",
    "app.config.settings.R2_BUCKET": "assets-test",
    "app.config.settings.R2_PUBLIC_URL": "https://assets.example.com",
    "app.config.settings.HEAL_BACKOFF_SECONDS": 0.0,
    "app.config.settings.LIVENESS_ATTEMPTS": 2,
    "app.config.settings.LIVENESS_INITIAL_SECONDS": 0.01,
    "app.config.settings.LIVENESS_MAX_SECONDS": 0.01,
}


@pytest.fixture(autouse=True)
def set_test_config(monkeypatch):
    """Patch common application settings for a safe test environment.

    This is ``autouse=True`` so every test automatically gets a
    deterministic, non-production configuration.
    """
    for target, value in _SETTINGS_PATCHES.items():
        monkeypatch.setattr(target, value)


@pytest.fixture(autouse=True)
def reset_state():
    """Start every test with no projects, locks or abort signals."""
    project_repo.clear()
    pipeline_service.reset()
    yield
    project_repo.clear()
    pipeline_service.reset()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


def tool(name: str, **arguments: Any) -> ToolUse:
    """A ``ToolUse`` with a generated id."""
    return ToolUse(name=name, input=arguments)


def turn(*uses: ToolUse, commentary: str = "") -> ModelTurn:
    """A scripted model turn."""
    return ModelTurn(tool_uses=list(uses), commentary=commentary)


class ScriptedModel:
    """``TurnModel`` returning pre-scripted turns in order.

    Records the tool names offered and the message count on every call.
    """

    def __init__(self, turns: list[ModelTurn]) -> None:
        self._turns = list(turns)
        self.calls: list[dict[str, Any]] = []

    @property
    def remaining(self) -> int:
        return len(self._turns)

    async def next_turn(self, messages, tools) -> ModelTurn:
        self.calls.append({
            "messages": list(messages),
            "tools": [t["name"] for t in tools],
        })
        if not self._turns:
            raise AssertionError("model asked for more turns than were scripted")
        return self._turns.pop(0)


BuildStep = BuildResult | Callable[[Mapping[str, str]], BuildResult]


def ok_build(files: dict[str, bytes] | None = None) -> BuildResult:
    """Successful build producing *files* (default: one index.html)."""
    artifact = BuildArtifact(
        files=files or {"index.html": b"<h1>Hello World</h1>"},
        mode=Environment.PREVIEW,
    )
    return BuildResult(success=True, artifact=artifact, raw_output="built")


def failed_build(*diagnostics: Diagnostic, raw_output: str = "build failed") -> BuildResult:
    return BuildResult(success=False, diagnostics=list(diagnostics), raw_output=raw_output)


class FakeBuilder:
    """``BuildRunner`` replaying a list of results.

    Each step is a ``BuildResult`` or a callable receiving the file
    snapshot.  The last step repeats once the list is exhausted.
    """

    def __init__(self, steps: list[BuildStep]) -> None:
        self._steps = list(steps)
        self.snapshots: list[dict[str, str]] = []

    @property
    def calls(self) -> int:
        return len(self.snapshots)

    async def build(self, files: Mapping[str, str], mode: Environment) -> BuildResult:
        self.snapshots.append(dict(files))
        step = self._steps.pop(0) if len(self._steps) > 1 else self._steps[0]
        return step(files) if callable(step) else step


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest.fixture
def edge_requests(monkeypatch):
    """Route edge API calls through a recording ``MockTransport``.

    Returns ``(seen, failures)``: every request lands in ``seen``; map a
    URL path fragment to a response in ``failures`` to make matching
    requests fail.  Everything else gets a success envelope.
    """
    seen: list[httpx.Request] = []
    failures: dict[str, httpx.Response] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        for fragment, response in failures.items():
            if fragment in request.url.path:
                return response
        if request.method == "GET":
            return httpx.Response(200, json={"success": True, "result": []})
        return httpx.Response(200, json={"success": True, "result": {}})

    monkeypatch.setattr(
        edge_client, "_client", httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return seen, failures

