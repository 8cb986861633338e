"""Generation session — the single pipeline for one project.

Wires the orchestrator, tool executor, self-healing build loop and
deployment service together and owns the project's status transitions:

    planning → generating ⇄ healing → ready → deploying → ready
                     └──────────── any fatal error ───────────▶ failed

A retryable deployment failure is recorded and leaves the project
``ready``; only auth failures are terminal.

One session handles one instruction; its build-attempt budget is shared
by every build it triggers (model ``run_build`` calls, repair rebuilds
and the final build).  All work runs under the project's abort signal:
setting it cancels the running step and raises ``SessionAborted``.
Because tool calls are atomic and versions are appended only after a
completed build, an abort leaves the last committed state intact.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import TypeVar

from shipyard.backoff import LinearBackoff
from shipyard.bundler import (
    DEFAULT_BUILD_COMMAND,
    DEFAULT_INSTALL_COMMAND,
    DEFAULT_TIMEOUT_S,
    Bundler,
)
from shipyard.contracts import (
    Deployment,
    Environment,
    ProjectStatus,
    ToolResponse,
    Version,
)
from shipyard.deploy import DeploymentConfig, DeploymentService
from shipyard.errors import (
    DeploymentFailure,
    DeploymentPreconditionError,
    SessionAborted,
    ShipyardError,
)
from shipyard.executor import ToolExecutor
from shipyard.healing import DEFAULT_MAX_ATTEMPTS, BuildRunner, RepairRequest, SelfHealingLoop
from shipyard.orchestrator import EventCallback, OrchestratorConfig, TurnOrchestrator
from shipyard.project import Project
from shipyard.turns import TurnModel

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable settings for one generation session."""

    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    max_build_attempts: int = DEFAULT_MAX_ATTEMPTS
    heal_backoff_s: float = 0.0
    build_command: str = DEFAULT_BUILD_COMMAND
    install_command: str = DEFAULT_INSTALL_COMMAND
    build_timeout_s: float = DEFAULT_TIMEOUT_S
    build_mode: Environment = Environment.PREVIEW
    deploy: DeploymentConfig = field(default_factory=DeploymentConfig)


class GenerationSession:
    """Runs one instruction (and optional deployments) for a project.

    Parameters
    ----------
    project:
        The project to mutate.
    model:
        Turn model driving the conversation.
    config:
        Pipeline limits and platform settings.
    builder:
        Build runner; defaults to ``Bundler`` with the configured command.
    deployer:
        Deployment service; defaults to one built from ``config.deploy``.
    abort_event:
        Project abort signal.  A fresh event is created when omitted.
    on_event:
        Orchestrator progress callback.
    """

    def __init__(
        self,
        project: Project,
        model: TurnModel,
        *,
        config: PipelineConfig | None = None,
        builder: BuildRunner | None = None,
        deployer: DeploymentService | None = None,
        abort_event: asyncio.Event | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        self.project = project
        self.config = config or PipelineConfig()
        self.abort_event = abort_event or asyncio.Event()
        self.deployer = deployer or DeploymentService(self.config.deploy)

        self.executor = ToolExecutor(project.store, on_build=self._on_build_tool)
        self.orchestrator = TurnOrchestrator(
            model,
            self.executor,
            project.turns,
            config=self.config.orchestrator,
            on_event=on_event,
        )
        self.healer = SelfHealingLoop(
            builder or Bundler(
                command=self.config.build_command,
                install_command=self.config.install_command,
                timeout_s=self.config.build_timeout_s,
            ),
            self.executor,
            max_attempts=self.config.max_build_attempts,
            backoff=LinearBackoff(
                step_s=self.config.heal_backoff_s,
                max_s=max(self.config.heal_backoff_s * self.config.max_build_attempts, 0.0),
            ),
            model_repair=self._model_repair,
            on_attempt=project.build_attempts.append,
        )
        self._built_revision: int | None = None
        self._building = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate(self, instruction: str) -> Version:
        """Apply *instruction* and build it.  Returns the resulting version."""
        project = self.project
        project.failure = None
        project.set_status(ProjectStatus.GENERATING)
        logger.info("[session] %s generate: %s", project.id, instruction[:120])
        try:
            await self._guarded(self.orchestrator.run_instruction(instruction))
            version = await self._guarded(self.build(self.config.build_mode))
        except Exception as exc:
            self._fail(exc)
            raise
        project.set_status(ProjectStatus.READY)
        logger.info("[session] %s ready at version %d", project.id, version.number)
        return version

    async def build(self, mode: Environment) -> Version:
        """Build the current files, healing as needed.

        Reuses the latest version when nothing changed since it was built.
        """
        project = self.project
        latest = project.latest_version
        if latest is not None and self._built_revision == project.store.revision:
            return latest

        previous = project.status
        project.set_status(ProjectStatus.HEALING)
        self._building = True
        try:
            result = await self.healer.run(mode, version_number=project.next_version_number)
        finally:
            self._building = False
        project.add_version(result.version)
        self._built_revision = project.store.revision
        project.set_status(previous)
        return result.version

    async def deploy(
        self, environment: Environment, *, version_id: str | None = None,
    ) -> Deployment:
        """Deploy *version_id* (default: latest) to *environment*."""
        project = self.project
        version = project.get_version(version_id) if version_id else project.latest_version
        if version is None:
            raise DeploymentPreconditionError(version_id or "-", "project has no built version")
        self.deployer.check_precondition(project, version)

        project.set_status(ProjectStatus.DEPLOYING)
        try:
            deployment = await self._guarded(self.deployer.deploy(project, version, environment))
        except DeploymentFailure as exc:
            project.deployments.append(Deployment(
                version_id=version.id,
                environment=environment,
                success=False,
                failure_category=exc.category,
                failure_detail=str(exc),
            ))
            if exc.retryable:
                project.set_status(ProjectStatus.READY)
                logger.warning("[session] %s deploy failed, retryable: %s", project.id, exc)
            else:
                self._fail(exc)
            raise
        except ShipyardError as exc:
            self._fail(exc)
            raise
        project.deployments.append(deployment)
        project.set_status(ProjectStatus.READY)
        return deployment

    async def rollback(self, environment: Environment) -> Deployment:
        """Re-deploy the previous version that deployed successfully."""
        target = self.deployer.select_rollback_target(self.project)
        logger.info("[session] %s rollback to v%d", self.project.id, target.number)
        return await self.deploy(environment, version_id=target.id)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    async def _on_build_tool(self, mode: Environment) -> ToolResponse:
        if self._building:
            return ToolResponse.fail(
                "A build is already running; repairs are rebuilt automatically",
                error_type="ToolValidationError",
            )
        version = await self.build(mode)
        return ToolResponse.ok({
            "version": version.number,
            "build_attempts_used": self.healer.attempts_used,
            "build_attempts_remaining": self.healer.remaining,
            "output_files": sorted(version.artifact.files),
            "message": f"Build succeeded (version {version.number})",
        })

    async def _model_repair(self, request: RepairRequest) -> None:
        logger.info("[session] %s model repair (%s)", self.project.id, request.strategy.value)
        await self.orchestrator.run_repair(request.instruction)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _guarded(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable* unless the abort signal fires first."""
        if self.abort_event.is_set():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise SessionAborted(self.project.id)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.abort_event.wait())
        try:
            done, _pending = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        if task in done:
            return task.result()
        logger.warning("[session] %s aborted", self.project.id)
        raise SessionAborted(self.project.id)

    def _fail(self, exc: Exception) -> None:
        if isinstance(exc, ShipyardError):
            self.project.failure = exc.to_dict()
        else:
            self.project.failure = {"error": type(exc).__name__, "message": str(exc)}
        self.project.set_status(ProjectStatus.FAILED)
        logger.error("[session] %s failed: %s", self.project.id, exc)


__all__ = [
    "GenerationSession",
    "PipelineConfig",
]
