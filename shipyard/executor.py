"""Tool executor — applies the closed tool set against a project's file store.

Each handler validates and normalises its paths before touching the
store and computes the complete new content before committing it, so a
failing call never leaves a partial effect behind.  Failures surface as
``ShipyardError`` subclasses which the registry turns into failed
``ToolResponse`` objects for the model to read.

``run_build`` is delegated to an injected coroutine (the generation
session wires it to the self-healing build loop).  ``finish`` only
signals completion; the orchestrator decides what that means.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from shipyard.contracts import (
    DeleteFileRequest,
    Environment,
    FinishRequest,
    PatchFileRequest,
    RenameFileRequest,
    RunBuildRequest,
    ToolCall,
    ToolName,
    ToolResponse,
    ToolUse,
    WriteFileRequest,
)
from shipyard.errors import FileNotFound, PathEscape, ToolValidationError
from shipyard.file_store import FileStore, normalize_path
from shipyard.patcher import apply_patch, apply_search_replace
from shipyard.registry import Registry

logger = logging.getLogger(__name__)

BuildHook = Callable[[Environment], Awaitable[ToolResponse]]

MAX_WRITE_FILE_BYTES = 500_000  # 500KB max per write_file


class ToolExecutor:
    """Validates and applies tool calls for one project.

    Parameters
    ----------
    store:
        The project's file store.  Only this executor mutates it.
    on_build:
        Coroutine invoked for ``run_build``; returns the tool response
        reported back to the model.
    """

    def __init__(self, store: FileStore, *, on_build: BuildHook | None = None) -> None:
        self.store = store
        self.on_build = on_build
        self.registry = Registry()
        self._register()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(self, use: ToolUse) -> ToolCall:
        """Run one requested tool call and return its immutable record."""
        response = await self.registry.dispatch(use.name, use.input)
        level = logging.INFO if response.success else logging.WARNING
        logger.log(
            level,
            "[tool] %s %s  %s (%dms)",
            use.name,
            use.input.get("path", ""),
            "OK" if response.success else f"FAIL {response.error_type}: {response.error}",
            response.duration_ms,
        )
        return ToolCall(id=use.id, name=use.name, arguments=use.input, result=response)

    async def write(self, path: str, content: str) -> ToolCall:
        """Convenience used by deterministic repairs."""
        return await self.execute(
            ToolUse(name=ToolName.WRITE_FILE.value, input={"path": path, "content": content})
        )

    def tool_definitions(self) -> list[dict]:
        return self.registry.list_tools()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def _register(self) -> None:
        reg = self.registry
        reg.register(
            ToolName.WRITE_FILE, self._write_file, WriteFileRequest,
            "Create a file or fully replace its content. Use for new files and "
            "for rewrites of small files.",
        )
        reg.register(
            ToolName.PATCH_FILE, self._patch_file, PatchFileRequest,
            "Edit an existing file. Either give 'search' (exact text currently in "
            "the file, unique) and 'replace', or a unified 'diff'. Fails if the "
            "file changed since you last saw it.",
        )
        reg.register(
            ToolName.DELETE_FILE, self._delete_file, DeleteFileRequest,
            "Delete an existing file.",
        )
        reg.register(
            ToolName.RENAME_FILE, self._rename_file, RenameFileRequest,
            "Move a file to a new path.",
        )
        reg.register(
            ToolName.RUN_BUILD, self._run_build, RunBuildRequest,
            "Build the project with the bundler. Build errors are repaired "
            "automatically where possible; the result summary is returned.",
        )
        reg.register(
            ToolName.FINISH, self._finish, FinishRequest,
            "Call once the requested change is complete.",
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _write_file(self, req: WriteFileRequest) -> ToolResponse:
        path = _checked_path(ToolName.WRITE_FILE, req.path)
        size = len(req.content.encode("utf-8"))
        if size > MAX_WRITE_FILE_BYTES:
            raise ToolValidationError(
                ToolName.WRITE_FILE.value,
                f"content is {size} bytes (limit {MAX_WRITE_FILE_BYTES})",
            )
        created = path not in self.store
        record = self.store.write(path, req.content)
        return ToolResponse.ok({
            "path": record.path,
            "bytes": record.size_bytes,
            "version": record.version,
            "created": created,
            "message": f"{'Created' if created else 'Replaced'} {record.path}",
        })

    def _patch_file(self, req: PatchFileRequest) -> ToolResponse:
        path = _checked_path(ToolName.PATCH_FILE, req.path)
        if path not in self.store:
            raise FileNotFound(path)
        current = self.store.read(path)

        if req.diff:
            result = apply_patch(current, req.diff, path=path)
        else:
            result = apply_search_replace(current, req.search or "", req.replace, path=path)

        record = self.store.write(path, result.post_content)
        return ToolResponse.ok({
            "path": record.path,
            "hunks_applied": result.hunks_applied,
            "insertions": result.insertions,
            "deletions": result.deletions,
            "version": record.version,
            "message": f"Patched {record.path}",
        })

    def _delete_file(self, req: DeleteFileRequest) -> ToolResponse:
        path = _checked_path(ToolName.DELETE_FILE, req.path)
        self.store.delete(path)
        return ToolResponse.ok({"path": path, "message": f"Deleted {path}"})

    def _rename_file(self, req: RenameFileRequest) -> ToolResponse:
        path = _checked_path(ToolName.RENAME_FILE, req.path)
        new_path = _checked_path(ToolName.RENAME_FILE, req.new_path)
        if path not in self.store:
            raise FileNotFound(path)
        try:
            record = self.store.rename(path, new_path, overwrite=req.overwrite)
        except FileExistsError:
            raise ToolValidationError(
                ToolName.RENAME_FILE.value,
                f"'{new_path}' already exists (pass overwrite=true to replace it)",
            ) from None
        return ToolResponse.ok({
            "path": path,
            "new_path": record.path,
            "version": record.version,
            "message": f"Renamed {path} -> {record.path}",
        })

    async def _run_build(self, req: RunBuildRequest) -> ToolResponse:
        if self.on_build is None:
            return ToolResponse.fail(
                "Builds are not available in this session", error_type="ToolValidationError",
            )
        return await self.on_build(req.mode)

    def _finish(self, req: FinishRequest) -> ToolResponse:
        return ToolResponse.ok({"finished": True, "summary": req.summary, "message": "Finished"})


def _checked_path(tool: ToolName, path: str) -> str:
    try:
        return normalize_path(path)
    except ValueError as exc:
        if "escapes" in str(exc) or "absolute" in str(exc):
            raise PathEscape(tool.value, path) from None
        raise ToolValidationError(tool.value, str(exc)) from None
