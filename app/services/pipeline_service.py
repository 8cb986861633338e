"""Pipeline service -- runs generation sessions and deployments for projects.

At most one session runs per project.  ``start_generation`` launches the
session as a background task and returns immediately; ``abort`` sets the
project's abort signal, which the running session turns into
``SessionAborted``.  Deploy and rollback run inline under the same
per-project lock.
"""

import asyncio
import logging

from app.config import build_pipeline_config, settings
from app.errors import ConflictError, NotFoundError, SessionConflictError
from app.repos import project_repo
from shipyard.contracts import Deployment, Environment, Version
from shipyard.errors import ShipyardError
from shipyard.orchestrator import (
    CommentaryEvent,
    FinishedEvent,
    OrchestratorEvent,
    ToolExecutedEvent,
)
from shipyard.project import Project
from shipyard.session import GenerationSession
from shipyard.turns import AnthropicTurnModel

logger = logging.getLogger(__name__)

_locks: dict[str, asyncio.Lock] = {}
_abort_events: dict[str, asyncio.Event] = {}
_tasks: dict[str, asyncio.Task] = {}


# ---------------------------------------------------------------------------
# Session construction
# ---------------------------------------------------------------------------


def _log_event(project_id: str, event: OrchestratorEvent) -> None:
    if isinstance(event, ToolExecutedEvent):
        logger.debug(
            "[pipeline] %s turn %d %s success=%s",
            project_id, event.turn, event.call.name, event.call.result.success,
        )
    elif isinstance(event, CommentaryEvent):
        logger.debug("[pipeline] %s turn %d commentary: %s", project_id, event.turn, event.text[:200])
    elif isinstance(event, FinishedEvent):
        logger.info("[pipeline] %s finished after %d tool call(s)", project_id, event.tool_calls_made)


def _make_session(project: Project, abort_event: asyncio.Event) -> GenerationSession:
    """Build a session from the current settings."""
    model = AnthropicTurnModel(
        settings.ANTHROPIC_API_KEY,
        model=settings.LLM_MODEL,
        max_tokens=settings.LLM_MAX_TOKENS,
    )
    return GenerationSession(
        project,
        model,
        config=build_pipeline_config(),
        abort_event=abort_event,
        on_event=lambda event: _log_event(project.id, event),
    )


def _lock_for(project_id: str) -> asyncio.Lock:
    lock = _locks.get(project_id)
    if lock is None:
        lock = _locks[project_id] = asyncio.Lock()
    return lock


def is_busy(project_id: str) -> bool:
    """True while a session (or a pending background start) holds the project."""
    task = _tasks.get(project_id)
    return _lock_for(project_id).locked() or (task is not None and not task.done())


async def _require_project(project_id: str) -> Project:
    project = await project_repo.get_project_by_id(project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found")
    return project


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


async def create_project(name: str) -> Project:
    project = await project_repo.create_project(name)
    logger.info("[pipeline] created project %s (%s)", project.id, project.name)
    return project


async def get_project(project_id: str) -> Project:
    return await _require_project(project_id)


async def list_projects() -> list[Project]:
    return await project_repo.list_projects()


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


async def generate(project_id: str, instruction: str) -> Version:
    """Run one instruction to completion.  Raises pipeline errors as-is."""
    project = await _require_project(project_id)
    lock = _lock_for(project_id)
    if lock.locked():
        raise SessionConflictError(project_id)
    async with lock:
        abort_event = asyncio.Event()
        _abort_events[project_id] = abort_event
        try:
            session = _make_session(project, abort_event)
            return await session.generate(instruction)
        finally:
            _abort_events.pop(project_id, None)


async def _generate_in_background(project_id: str, instruction: str) -> None:
    try:
        await generate(project_id, instruction)
    except ShipyardError as exc:
        # The session has already recorded the failure on the project.
        logger.warning("[pipeline] %s generation ended: %s", project_id, exc)


async def start_generation(project_id: str, instruction: str) -> Project:
    """Launch ``generate`` as a background task; returns the project."""
    project = await _require_project(project_id)
    if is_busy(project_id):
        raise SessionConflictError(project_id)
    task = asyncio.create_task(_generate_in_background(project_id, instruction))
    _tasks[project_id] = task
    task.add_done_callback(lambda t: _tasks.pop(project_id, None) if _tasks.get(project_id) is t else None)
    return project


async def abort(project_id: str) -> Project:
    """Signal the running session for *project_id* to stop."""
    project = await _require_project(project_id)
    abort_event = _abort_events.get(project_id)
    if abort_event is None:
        raise ConflictError(f"Project {project_id} has no running session")
    abort_event.set()
    logger.info("[pipeline] abort requested for %s", project_id)
    return project


# ---------------------------------------------------------------------------
# Deployment
# ---------------------------------------------------------------------------


async def deploy(
    project_id: str, environment: Environment, *, version_id: str | None = None,
) -> Deployment:
    project = await _require_project(project_id)
    if version_id is not None and project.get_version(version_id) is None:
        raise NotFoundError(f"Version {version_id} not found")
    lock = _lock_for(project_id)
    if lock.locked():
        raise SessionConflictError(project_id)
    async with lock:
        abort_event = asyncio.Event()
        _abort_events[project_id] = abort_event
        try:
            session = _make_session(project, abort_event)
            return await session.deploy(environment, version_id=version_id)
        finally:
            _abort_events.pop(project_id, None)


async def rollback(project_id: str, environment: Environment) -> Deployment:
    project = await _require_project(project_id)
    lock = _lock_for(project_id)
    if lock.locked():
        raise SessionConflictError(project_id)
    async with lock:
        abort_event = asyncio.Event()
        _abort_events[project_id] = abort_event
        try:
            session = _make_session(project, abort_event)
            return await session.rollback(environment)
        finally:
            _abort_events.pop(project_id, None)


async def shutdown_all() -> None:
    """Abort and await every background session.  Called on app shutdown."""
    for abort_event in list(_abort_events.values()):
        abort_event.set()
    tasks = list(_tasks.values())
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    _tasks.clear()


def reset() -> None:
    """Forget all locks, signals and tasks (test helper)."""
    _locks.clear()
    _abort_events.clear()
    _tasks.clear()
