"""Turn orchestrator — the bounded tool-use loop with the model.

Orchestrates a multi-turn conversation between the model and the tool
executor for one project:

1. The instruction (plus a digest of the current files) opens the
   conversation.
2. Each turn the model returns tool uses and/or commentary.
3. Every tool use is executed in issued order; results go back to the
   model as ``tool_result`` blocks.
4. The loop ends when a ``finish`` call succeeds.  Reaching the turn
   ceiling raises ``TurnCeilingExceeded``.

A turn with neither tool uses nor commentary is a protocol violation:
the turn is marked failed and re-requested, up to
``protocol_retry_limit`` consecutive times.  A commentary-only turn is
recorded and the model is nudged to continue.

The loop holds no global state.  The model, executor, config and turn
list are injected.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from shipyard.contracts import ChatTurn, ToolCall, ToolName, ToolResponse, TurnRole, TurnStatus
from shipyard.errors import ProtocolViolation, TurnCeilingExceeded
from shipyard.executor import ToolExecutor
from shipyard.redactor import literal_pattern, redact
from shipyard.turns import ModelTurn, TurnModel

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_MAX_TURNS = 40
DEFAULT_REPAIR_MAX_TURNS = 6
DEFAULT_PROTOCOL_RETRY_LIMIT = 2
MAX_TOOL_RESULT_CHARS = 20_000

CONTINUE_NUDGE = (
    "Continue by calling tools. Call finish when the requested change is complete."
)


@dataclass(frozen=True)
class OrchestratorConfig:
    """Limits for one orchestrator run."""

    max_turns: int = DEFAULT_MAX_TURNS
    repair_max_turns: int = DEFAULT_REPAIR_MAX_TURNS
    protocol_retry_limit: int = DEFAULT_PROTOCOL_RETRY_LIMIT
    redact_secrets: bool = True
    secret_values: tuple[str, ...] = ()
    max_tool_result_chars: int = MAX_TOOL_RESULT_CHARS


# ---------------------------------------------------------------------------
# Event types — for streaming progress to the caller
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OrchestratorEvent:
    """Base class for events emitted by the orchestrator."""
    turn: int
    elapsed_ms: int


@dataclass(frozen=True)
class TurnStartedEvent(OrchestratorEvent):
    """A model turn was requested."""
    max_turns: int


@dataclass(frozen=True)
class CommentaryEvent(OrchestratorEvent):
    """The model produced text alongside (or instead of) tool calls."""
    text: str


@dataclass(frozen=True)
class ToolExecutedEvent(OrchestratorEvent):
    """A tool call was executed and recorded."""
    call: ToolCall


@dataclass(frozen=True)
class FinishedEvent(OrchestratorEvent):
    """The model called ``finish``."""
    summary: str
    tool_calls_made: int


@dataclass
class OrchestratorResult:
    summary: str
    turns_used: int
    tool_calls_made: int


EventCallback = Callable[[OrchestratorEvent], Any]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class TurnOrchestrator:
    """Drives the model through tool-use turns against one executor.

    Parameters
    ----------
    model:
        Anything implementing ``TurnModel``.
    executor:
        The project's tool executor.
    turns:
        The project's ``ChatTurn`` list; turns are appended in place.
    config:
        Turn ceilings and retry limits.
    on_event:
        Optional sync or async progress callback.
    """

    def __init__(
        self,
        model: TurnModel,
        executor: ToolExecutor,
        turns: list[ChatTurn],
        *,
        config: OrchestratorConfig | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        self.model = model
        self.executor = executor
        self.turns = turns
        self.config = config or OrchestratorConfig()
        self.on_event = on_event
        self._executing: ChatTurn | None = None

    async def run_instruction(self, instruction: str) -> OrchestratorResult:
        """Apply a user instruction; ends on ``finish``."""
        opening = (
            f"{instruction}\n\nCurrent project files:\n"
            f"{self.executor.store.digest(preview_lines=0)}"
        )
        return await self._run(
            instruction, opening, max_turns=self.config.max_turns, label="turn",
        )

    async def run_repair(self, instruction: str) -> OrchestratorResult:
        """Focused repair conversation with a smaller ceiling and no builds.

        Called from inside a tool call (a failing ``run_build``), the repair
        turns nest under the agent turn that is still executing.
        """
        return await self._run(
            instruction,
            instruction,
            max_turns=self.config.repair_max_turns,
            label="repair",
            exclude=(ToolName.RUN_BUILD.value,),
            parent=self._executing,
        )

    # ------------------------------------------------------------------
    # Core loop
    # ------------------------------------------------------------------

    async def _run(
        self,
        instruction: str,
        opening: str,
        *,
        max_turns: int,
        label: str,
        exclude: tuple[str, ...] = (),
        parent: ChatTurn | None = None,
    ) -> OrchestratorResult:
        loop_start = time.perf_counter()
        tools = [t for t in self.executor.tool_definitions() if t["name"] not in exclude]
        messages: list[dict[str, Any]] = [{"role": "user", "content": opening}]
        tool_calls_made = 0
        violations = 0

        user_turn = self._open_turn(TurnRole.USER, parent)
        user_turn.commentary = instruction
        _close(user_turn, TurnStatus.COMPLETED)

        for turn in range(1, max_turns + 1):
            chat_turn = self._open_turn(TurnRole.AGENT, parent)
            await _emit(self.on_event, TurnStartedEvent(
                turn=turn, elapsed_ms=_elapsed_ms(loop_start), max_turns=max_turns,
            ))
            try:
                model_turn = await self.model.next_turn(messages, tools)

                if model_turn.is_empty:
                    violations += 1
                    violation = ProtocolViolation(turn, "no tool calls and no commentary")
                    _close(chat_turn, TurnStatus.FAILED, error=str(violation))
                    logger.warning(
                        "[%s] turn=%d protocol violation (%d/%d)",
                        label, turn, violations, self.config.protocol_retry_limit,
                    )
                    if violations > self.config.protocol_retry_limit:
                        raise violation
                    continue
                violations = 0

                chat_turn.status = TurnStatus.EXECUTING
                chat_turn.commentary = model_turn.commentary
                if model_turn.commentary:
                    await _emit(self.on_event, CommentaryEvent(
                        turn=turn, elapsed_ms=_elapsed_ms(loop_start), text=model_turn.commentary,
                    ))
                messages.append({"role": "assistant", "content": model_turn.content_blocks()})

                if not model_turn.tool_uses:
                    _close(chat_turn, TurnStatus.COMPLETED)
                    messages.append({"role": "user", "content": CONTINUE_NUDGE})
                    logger.info("[%s] turn=%d commentary only, nudging", label, turn)
                    continue

                summary = await self._execute_turn(
                    turn, model_turn, chat_turn, messages, loop_start, label,
                )
                tool_calls_made += len(model_turn.tool_uses)
                _close(chat_turn, TurnStatus.COMPLETED)
            except BaseException as exc:
                if not chat_turn.is_terminal:
                    _close(chat_turn, TurnStatus.FAILED, error=str(exc) or type(exc).__name__)
                raise

            if summary is not None:
                logger.info(
                    "[%s:done] turns=%d tools=%d (%dms)",
                    label, turn, tool_calls_made, _elapsed_ms(loop_start),
                )
                await _emit(self.on_event, FinishedEvent(
                    turn=turn,
                    elapsed_ms=_elapsed_ms(loop_start),
                    summary=summary,
                    tool_calls_made=tool_calls_made,
                ))
                return OrchestratorResult(
                    summary=summary, turns_used=turn, tool_calls_made=tool_calls_made,
                )

        logger.warning("[%s:done] turn ceiling of %d reached", label, max_turns)
        raise TurnCeilingExceeded(max_turns)

    async def _execute_turn(
        self,
        turn: int,
        model_turn: ModelTurn,
        chat_turn: ChatTurn,
        messages: list[dict[str, Any]],
        loop_start: float,
        label: str,
    ) -> str | None:
        """Execute every tool use in order.  Returns the finish summary, if any."""
        results: list[dict[str, Any]] = []
        summary: str | None = None
        for use in model_turn.tool_uses:
            logger.info(
                "[%s:tool_call] turn=%d  %s  input=%s",
                label, turn, use.name, json.dumps(use.input, default=str)[:200],
            )
            outer, self._executing = self._executing, chat_turn
            try:
                call = await self.executor.execute(use)
            finally:
                self._executing = outer
            chat_turn.tool_calls.append(call)
            await _emit(self.on_event, ToolExecutedEvent(
                turn=turn, elapsed_ms=_elapsed_ms(loop_start), call=call,
            ))
            results.append({
                "type": "tool_result",
                "tool_use_id": use.id,
                "content": format_tool_result(call.result, self.config),
                "is_error": not call.success,
            })
            if use.name == ToolName.FINISH.value and call.success:
                summary = str(call.result.data.get("summary", ""))
        messages.append({"role": "user", "content": results})
        return summary

    def _open_turn(self, role: TurnRole, parent: ChatTurn | None = None) -> ChatTurn:
        """Append a new turn.  Only *parent* may still be in flight."""
        for existing in self.turns:
            if not existing.is_terminal and existing is not parent:
                raise RuntimeError(
                    f"turn {existing.index} is still in flight; cannot open another"
                )
        chat_turn = ChatTurn(
            index=len(self.turns),
            role=role,
            parent_index=parent.index if parent is not None else None,
        )
        self.turns.append(chat_turn)
        return chat_turn


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _close(chat_turn: ChatTurn, status: TurnStatus, *, error: str | None = None) -> None:
    chat_turn.status = status
    chat_turn.error = error
    chat_turn.completed_at = datetime.now(timezone.utc)


def format_tool_result(result: ToolResponse, config: OrchestratorConfig) -> str:
    """Serialize a ToolResponse into text for the model.

    Large outputs are truncated.  Secrets are redacted if configured,
    including the literal values in ``config.secret_values``.
    """
    if result.success:
        text = json.dumps(result.data, indent=2, default=str)
    else:
        text = f"ERROR ({result.error_type or 'error'}): {result.error}"

    limit = config.max_tool_result_chars
    if len(text) > limit:
        text = text[:limit] + (
            f"\n\n... [truncated at {limit:,} chars, original was {len(text):,} chars]"
        )
    if config.redact_secrets:
        extra = tuple(
            literal_pattern(f"configured_{i}", value)
            for i, value in enumerate(config.secret_values) if value
        )
        text = redact(text, extra_patterns=extra)
    return text


async def _emit(callback: EventCallback | None, event: OrchestratorEvent) -> None:
    """Invoke the event callback, handling both sync and async."""
    if callback is None:
        return
    result = callback(event)
    if asyncio.iscoroutine(result):
        await result


__all__ = [
    "CommentaryEvent",
    "FinishedEvent",
    "OrchestratorConfig",
    "OrchestratorEvent",
    "OrchestratorResult",
    "ToolExecutedEvent",
    "TurnOrchestrator",
    "TurnStartedEvent",
    "format_tool_result",
]
