"""Self-healing build loop — build, classify, repair, retry.

State machine::

    BUILDING ──ok──▶ DONE
       │
       └─fail─▶ CLASSIFYING ─▶ REPAIRING ─▶ BUILDING ...
                     │
                     └─ attempts == max_attempts ─▶ HEALING_FAILED

The attempt budget belongs to the generation session, not to a single
``run()`` call: every bundler invocation counts, whichever strategy ran
before it.  A successful build snapshots the file store into a new
``Version``; versions are only ever appended.

Deterministic repairs come from ``shipyard.repairs``.  Model repairs are
delegated to an injected coroutine (the session wires it to focused
orchestrator turns).  When a deterministic repair finds nothing to
change, the attempt escalates to a model strategy instead of rebuilding
unchanged files.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from shipyard.backoff import LinearBackoff
from shipyard.classifier import Classification, classify
from shipyard.contracts import (
    BuildAttempt,
    BuildResult,
    Diagnostic,
    Environment,
    RepairStrategy,
    Version,
)
from shipyard.diagnostics import render_diagnostics
from shipyard.errors import BuildFailure, HealingExhausted, ShipyardError
from shipyard.executor import ToolExecutor
from shipyard.repairs import DETERMINISTIC_STRATEGIES, apply_repair

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
MODEL_REPAIR_REQUESTED = "model repair requested"


class HealState(str, enum.Enum):
    BUILDING = "building"
    CLASSIFYING = "classifying"
    REPAIRING = "repairing"
    DONE = "done"
    HEALING_FAILED = "healing_failed"


class BuildRunner(Protocol):
    async def build(self, files: Mapping[str, str], mode: Environment) -> BuildResult: ...


@dataclass(frozen=True)
class RepairRequest:
    """What a model repair is asked to fix."""

    strategy: RepairStrategy
    attempt: int
    diagnostics: list[Diagnostic]
    instruction: str


ModelRepair = Callable[[RepairRequest], Awaitable[Any]]
AttemptHook = Callable[[BuildAttempt], Any]


@dataclass
class HealingResult:
    version: Version
    attempts: list[BuildAttempt] = field(default_factory=list)
    strategy_log: list[dict] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Repair prompts
# ---------------------------------------------------------------------------


def single_file_instruction(path: str, content: str, diagnostics: list[Diagnostic]) -> str:
    own = [d for d in diagnostics if d.file in ("", path)]
    return (
        f"The build fails with errors in `{path}`. Fix only this file, then call finish.\n\n"
        f"Errors:\n{render_diagnostics(own)}\n\n"
        f"Current content of `{path}`:\n```\n{content}\n```"
    )


def full_context_instruction(digest: str, diagnostics: list[Diagnostic]) -> str:
    return (
        "The build fails. Fix the project so it builds, editing whichever files "
        "are involved, then call finish.\n\n"
        f"Errors:\n{render_diagnostics(diagnostics)}\n\n"
        f"Project files:\n{digest}"
    )


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


class SelfHealingLoop:
    """Bounded build/repair loop for one generation session.

    Parameters
    ----------
    builder:
        Anything with ``async build(files, mode) -> BuildResult``.
    executor:
        Tool executor used to apply deterministic repairs.
    max_attempts:
        Session-wide ceiling on bundler invocations.
    backoff:
        Delay schedule between attempts (linear by default).
    model_repair:
        Coroutine for model strategies; ``None`` disables them.
    on_attempt:
        Sync or async callback receiving each recorded ``BuildAttempt``.
    """

    def __init__(
        self,
        builder: BuildRunner,
        executor: ToolExecutor,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff: LinearBackoff | None = None,
        model_repair: ModelRepair | None = None,
        on_attempt: AttemptHook | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.builder = builder
        self.executor = executor
        self.max_attempts = max_attempts
        self.backoff = backoff or LinearBackoff(step_s=0.0)
        self.model_repair = model_repair
        self.on_attempt = on_attempt

        self.state = HealState.DONE
        self.attempts_used = 0
        self.attempts: list[BuildAttempt] = []
        self.diagnostic_history: list[list[dict]] = []
        self.strategy_log: list[dict] = []

    @property
    def remaining(self) -> int:
        return self.max_attempts - self.attempts_used

    async def run(self, mode: Environment, *, version_number: int) -> HealingResult:
        """Build until success or the attempt budget is spent.

        Returns the new ``Version`` on success.  Raises
        ``HealingExhausted`` when no attempts remain.
        """
        run_attempts: list[BuildAttempt] = []
        run_log: list[dict] = []

        while self.attempts_used < self.max_attempts:
            self.attempts_used += 1
            attempt = self.attempts_used
            started = time.perf_counter()

            self.state = HealState.BUILDING
            snapshot = self.executor.store.snapshot()
            try:
                result = await self._build(snapshot, mode)
            except BuildFailure as failure:
                diagnostics, raw_output = failure.diagnostics, failure.raw_output
            else:
                version = Version(
                    number=version_number,
                    files=snapshot,
                    build_attempt=attempt,
                    artifact=result.artifact,
                )
                record = BuildAttempt(
                    number=attempt,
                    success=True,
                    raw_output=result.raw_output,
                    diagnostics=result.diagnostics,
                    outcome="success",
                    version_id=version.id,
                    duration_ms=_elapsed_ms(started),
                )
                await self._record(record, run_attempts)
                self.state = HealState.DONE
                logger.info("[heal] attempt %d/%d built version %d", attempt, self.max_attempts, version_number)
                return HealingResult(version=version, attempts=run_attempts, strategy_log=run_log)

            self.state = HealState.CLASSIFYING
            classification = classify(diagnostics)
            self.diagnostic_history.append([d.model_dump() for d in diagnostics])
            logger.info(
                "[heal] attempt %d/%d failed: %s (%s)",
                attempt, self.max_attempts, classification.category.value, classification.reason,
            )

            if self.attempts_used >= self.max_attempts:
                await self._record(BuildAttempt(
                    number=attempt,
                    success=False,
                    raw_output=raw_output,
                    diagnostics=diagnostics,
                    category=classification.category,
                    outcome="attempts exhausted",
                    duration_ms=_elapsed_ms(started),
                ), run_attempts)
                break

            self.state = HealState.REPAIRING
            strategy, outcome = await self._repair_deterministic(classification)
            pending = outcome is None
            if pending:
                outcome = MODEL_REPAIR_REQUESTED
            entry = {
                "attempt": attempt,
                "category": classification.category.value,
                "strategy": strategy.value,
                "outcome": outcome,
            }
            self.strategy_log.append(entry)
            run_log.append(entry)
            await self._record(BuildAttempt(
                number=attempt,
                success=False,
                raw_output=raw_output,
                diagnostics=diagnostics,
                category=classification.category,
                strategy=strategy,
                outcome=outcome,
                duration_ms=_elapsed_ms(started),
            ), run_attempts)
            if pending:
                entry["outcome"] = await self._repair_with_model(
                    strategy, classification, diagnostics, attempt,
                )

            delay = self.backoff.delay(attempt)
            if delay > 0:
                await asyncio.sleep(delay)

        self.state = HealState.HEALING_FAILED
        logger.warning("[heal] exhausted after %d attempt(s)", self.attempts_used)
        raise HealingExhausted(
            attempts=self.attempts_used,
            diagnostic_history=list(self.diagnostic_history),
            strategy_log=list(self.strategy_log),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _build(self, snapshot: dict[str, str], mode: Environment) -> BuildResult:
        result = await self.builder.build(snapshot, mode)
        if not result.success or result.artifact is None:
            raise BuildFailure(result.diagnostics, raw_output=result.raw_output)
        return result

    async def _repair_deterministic(
        self, classification: Classification,
    ) -> tuple[RepairStrategy, str | None]:
        """Apply the rule-based fix, or pick the model strategy to escalate to.

        A ``None`` outcome means the model repair still has to run.
        """
        strategy = classification.strategy
        if strategy in DETERMINISTIC_STRATEGIES:
            repaired = await apply_repair(classification, self.executor)
            if repaired.applied:
                return strategy, f"changed {', '.join(repaired.changed)}"
            # Nothing to change deterministically; let the model try
            strategy = (
                RepairStrategy.MODEL_SINGLE_FILE
                if len(classification.files) == 1
                else RepairStrategy.MODEL_FULL_CONTEXT
            )
            logger.info("[heal] %s was a no-op, escalating to %s",
                        classification.strategy.value, strategy.value)

        if self.model_repair is None:
            return strategy, "no model repair available"
        return strategy, None

    async def _repair_with_model(
        self,
        strategy: RepairStrategy,
        classification: Classification,
        diagnostics: list[Diagnostic],
        attempt: int,
    ) -> str:
        request = RepairRequest(
            strategy=strategy,
            attempt=attempt,
            diagnostics=diagnostics,
            instruction=self._instruction(strategy, classification, diagnostics),
        )
        try:
            await self.model_repair(request)
        except ShipyardError as exc:
            if exc.fatal:
                raise
            logger.warning("[heal] model repair failed: %s", exc)
            return f"model repair failed: {exc}"
        return "model repair applied"

    def _instruction(
        self,
        strategy: RepairStrategy,
        classification: Classification,
        diagnostics: list[Diagnostic],
    ) -> str:
        store = self.executor.store
        if strategy is RepairStrategy.MODEL_SINGLE_FILE and classification.files:
            path = classification.files[0]
            if path in store:
                return single_file_instruction(path, store.read(path), diagnostics)
        return full_context_instruction(store.digest(preview_lines=0), diagnostics)

    async def _record(self, attempt: BuildAttempt, run_attempts: list[BuildAttempt]) -> None:
        self.attempts.append(attempt)
        run_attempts.append(attempt)
        if self.on_attempt is not None:
            result = self.on_attempt(attempt)
            if asyncio.iscoroutine(result):
                await result


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "BuildRunner",
    "HealState",
    "HealingResult",
    "ModelRepair",
    "RepairRequest",
    "SelfHealingLoop",
    "full_context_instruction",
    "single_file_instruction",
]
