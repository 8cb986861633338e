"""Model turn protocol — one request/response exchange with the model.

The orchestrator only depends on the ``TurnModel`` protocol: given the
conversation so far and the tool schemas, return a ``ModelTurn`` with
zero or more tool uses and optional commentary.  ``AnthropicTurnModel``
implements it on top of the Messages API; tests substitute scripted
fakes.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from app.clients.llm_client import LLMAPIError, create_message
from shipyard.contracts import ToolUse
from shipyard.errors import ModelError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-6"
DEFAULT_MAX_TOKENS = 8192

SYSTEM_PROMPT = """\
You build and modify small web applications that are bundled with Vite and
served from an edge worker.  You work only through the provided tools:

- write_file to create a file or replace it entirely
- patch_file to edit part of an existing file (search/replace or unified diff)
- delete_file and rename_file to reorganise the tree
- run_build to bundle the project; build errors are repaired automatically
  where possible and the outcome is reported back to you
- finish once the requested change is complete

Every path is relative to the project root.  Keep commentary short."""


@dataclass
class ModelTurn:
    """What the model asked for in one turn."""

    tool_uses: list[ToolUse] = field(default_factory=list)
    commentary: str = ""
    stop_reason: str = ""
    usage: dict[str, int] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.tool_uses and not self.commentary.strip()

    def content_blocks(self) -> list[dict[str, Any]]:
        """Assistant message content in Messages API block format."""
        blocks: list[dict[str, Any]] = []
        if self.commentary:
            blocks.append({"type": "text", "text": self.commentary})
        for use in self.tool_uses:
            blocks.append({"type": "tool_use", "id": use.id, "name": use.name, "input": use.input})
        return blocks


class TurnModel(Protocol):
    async def next_turn(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]],
    ) -> ModelTurn: ...


def parse_anthropic_response(data: dict[str, Any]) -> ModelTurn:
    """Split a raw Messages API response into tool uses and commentary."""
    text_parts: list[str] = []
    uses: list[ToolUse] = []
    for block in data.get("content", []) or []:
        kind = block.get("type")
        if kind == "text":
            text_parts.append(block.get("text", ""))
        elif kind == "tool_use":
            uses.append(ToolUse(
                id=block.get("id") or uuid.uuid4().hex,
                name=block.get("name", ""),
                input=block.get("input") or {},
            ))
    usage = data.get("usage", {}) or {}
    return ModelTurn(
        tool_uses=uses,
        commentary="\n".join(t for t in text_parts if t).strip(),
        stop_reason=data.get("stop_reason", ""),
        usage={
            "input_tokens": usage.get("input_tokens", 0),
            "output_tokens": usage.get("output_tokens", 0),
        },
    )


class AnthropicTurnModel:
    """``TurnModel`` backed by the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt

    async def next_turn(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]],
    ) -> ModelTurn:
        start = time.perf_counter()
        try:
            data = await create_message(
                api_key=self.api_key,
                model=self.model,
                system_prompt=self.system_prompt,
                messages=messages,
                max_tokens=self.max_tokens,
                tools=tools,
            )
        except LLMAPIError as exc:
            raise ModelError(exc.message, status_code=exc.status_code) from exc
        except httpx.HTTPError as exc:
            raise ModelError(f"{type(exc).__name__}: {exc}") from exc

        turn = parse_anthropic_response(data)
        logger.info(
            "[turn:llm] model=%s stop=%s in=%d out=%d tools=%d (%dms)",
            self.model, turn.stop_reason or "-",
            turn.usage.get("input_tokens", 0), turn.usage.get("output_tokens", 0),
            len(turn.tool_uses), int((time.perf_counter() - start) * 1000),
        )
        return turn


__all__ = [
    "AnthropicTurnModel",
    "ModelTurn",
    "SYSTEM_PROMPT",
    "TurnModel",
    "parse_anthropic_response",
]
