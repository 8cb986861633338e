"""Pipeline contracts — Pydantic models for tool calls, turns, builds and deploys.

Every tool in the closed command set communicates through these models.
Tool responses are always structured (never raw strings).  Records that
must not change after the fact (``ToolCall``, ``BuildAttempt``,
``Version``, ``Deployment``) are frozen.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ProjectStatus(str, enum.Enum):
    """Lifecycle states for a project."""

    PLANNING = "planning"
    GENERATING = "generating"
    HEALING = "healing"
    DEPLOYING = "deploying"
    READY = "ready"
    FAILED = "failed"


class TurnRole(str, enum.Enum):
    USER = "user"
    AGENT = "agent"
    TOOL = "tool"


class TurnStatus(str, enum.Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class ToolName(str, enum.Enum):
    """The closed set of operations the model may request."""

    WRITE_FILE = "write_file"
    PATCH_FILE = "patch_file"
    DELETE_FILE = "delete_file"
    RENAME_FILE = "rename_file"
    RUN_BUILD = "run_build"
    FINISH = "finish"


class Environment(str, enum.Enum):
    """Build mode and deployment target."""

    PREVIEW = "preview"
    PRODUCTION = "production"


class ErrorCategory(str, enum.Enum):
    """Build failure categories, in classification priority order."""

    TYPE_CHECK = "type_check"
    MISSING_DEPENDENCY = "missing_dependency"
    SYNTAX = "syntax"
    UNCLASSIFIED = "unclassified"


class RepairStrategy(str, enum.Enum):
    RELAX_CHECK = "relax_check"
    SYNTHESIZE_TYPES = "synthesize_types"
    ADD_DEPENDENCY = "add_dependency"
    MODEL_SINGLE_FILE = "model_single_file"
    MODEL_FULL_CONTEXT = "model_full_context"


DEPLOY_FAILURE_CATEGORIES: tuple[str, ...] = (
    "auth_failure",
    "quota_exceeded",
    "script_rejected",
    "network_error",
)


# ---------------------------------------------------------------------------
# Tool responses
# ---------------------------------------------------------------------------


class ToolResponse(BaseModel):
    """Structured result from any tool invocation.

    Use the ``ok`` / ``fail`` factory class methods for clean construction.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    error_type: str | None = None
    duration_ms: int = 0

    @classmethod
    def ok(cls, data: dict[str, Any], *, duration_ms: int = 0) -> ToolResponse:
        """Create a successful response."""
        return cls(success=True, data=data, duration_ms=duration_ms)

    @classmethod
    def fail(
        cls, error: str, *, error_type: str | None = None, duration_ms: int = 0
    ) -> ToolResponse:
        """Create a failure response."""
        return cls(
            success=False, error=error, error_type=error_type, duration_ms=duration_ms,
        )

    @property
    def message(self) -> str:
        if self.success:
            return str(self.data.get("message", "ok"))
        return self.error or "failed"


# ---------------------------------------------------------------------------
# Per-tool request models
# ---------------------------------------------------------------------------


class WriteFileRequest(BaseModel):
    """Request schema for the ``write_file`` tool."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = Field(..., min_length=1, description="Project-relative path of the file")
    content: str = Field(..., description="Full content to write (replaces any existing content)")


class PatchFileRequest(BaseModel):
    """Request schema for the ``patch_file`` tool.

    Either ``search``/``replace`` (verbatim text replacement) or ``diff``
    (unified diff with @@ hunk headers) must be supplied.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = Field(..., min_length=1, description="Project-relative path of an existing file")
    search: str | None = Field(
        default=None, description="Exact text currently in the file to be replaced",
    )
    replace: str = Field(default="", description="Replacement text for 'search'")
    diff: str | None = Field(
        default=None, description="Unified diff to apply instead of search/replace",
    )

    @model_validator(mode="after")
    def _one_form(self) -> "PatchFileRequest":
        if not self.search and not self.diff:
            raise ValueError("either 'search' or 'diff' is required")
        if self.search and self.diff:
            raise ValueError("'search' and 'diff' are mutually exclusive")
        return self


class DeleteFileRequest(BaseModel):
    """Request schema for the ``delete_file`` tool."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = Field(..., min_length=1, description="Project-relative path of the file to delete")


class RenameFileRequest(BaseModel):
    """Request schema for the ``rename_file`` tool."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = Field(..., min_length=1, description="Current project-relative path")
    new_path: str = Field(..., min_length=1, description="New project-relative path")
    overwrite: bool = Field(default=False, description="Replace new_path if it already exists")


class RunBuildRequest(BaseModel):
    """Request schema for the ``run_build`` tool."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: Environment = Field(default=Environment.PREVIEW, description="Build mode")


class FinishRequest(BaseModel):
    """Request schema for the ``finish`` tool."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    summary: str = Field(default="", description="Short summary of what was done")


# ---------------------------------------------------------------------------
# Conversation records
# ---------------------------------------------------------------------------


class ToolUse(BaseModel):
    """A tool call as requested by the model, before execution."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolCall(BaseModel):
    """An executed tool call.  Immutable once recorded."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: ToolResponse
    recorded_at: datetime = Field(default_factory=_now)

    @property
    def success(self) -> bool:
        return self.result.success


class ChatTurn(BaseModel):
    """One exchange cycle.  Mutable until its status is terminal."""

    index: int = Field(..., ge=0)
    role: TurnRole
    parent_index: int | None = None
    commentary: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    status: TurnStatus = TurnStatus.PENDING
    error: str | None = None
    started_at: datetime = Field(default_factory=_now)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (TurnStatus.COMPLETED, TurnStatus.FAILED)


# ---------------------------------------------------------------------------
# Build records
# ---------------------------------------------------------------------------


class Diagnostic(BaseModel):
    """A single bundler / compiler diagnostic."""

    model_config = ConfigDict(frozen=True)

    file: str = ""
    line: int | None = Field(default=None, ge=1)
    column: int | None = Field(default=None, ge=0)
    message: str
    severity: Literal["error", "warning"] = "error"
    code: str | None = None

    def location(self) -> str:
        if not self.file:
            return "<unknown>"
        if self.line is None:
            return self.file
        if self.column is None:
            return f"{self.file}:{self.line}"
        return f"{self.file}:{self.line}:{self.column}"

    def render(self) -> str:
        code = f" {self.code}" if self.code else ""
        return f"{self.location()} {self.severity}{code}: {self.message}"


class BuildArtifact(BaseModel):
    """Bundler output: every file in the output directory."""

    model_config = ConfigDict(frozen=True)

    files: dict[str, bytes] = Field(default_factory=dict)
    entry: str = ""
    mode: Environment = Environment.PREVIEW

    @property
    def size_bytes(self) -> int:
        return sum(len(b) for b in self.files.values())


class BuildResult(BaseModel):
    """Outcome of one bundler invocation."""

    model_config = ConfigDict(frozen=True)

    success: bool
    artifact: BuildArtifact | None = None
    diagnostics: list[Diagnostic] = Field(default_factory=list)
    raw_output: str = ""
    duration_ms: int = Field(default=0, ge=0)
    timed_out: bool = False

    @property
    def errors(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == "error"]


class BuildAttempt(BaseModel):
    """One pass through the healing state machine."""

    model_config = ConfigDict(frozen=True)

    number: int = Field(..., ge=1)
    success: bool
    raw_output: str = ""
    diagnostics: list[Diagnostic] = Field(default_factory=list)
    category: ErrorCategory | None = None
    strategy: RepairStrategy | None = None
    outcome: str = ""
    version_id: str | None = None
    started_at: datetime = Field(default_factory=_now)
    duration_ms: int = Field(default=0, ge=0)


class Version(BaseModel):
    """Immutable snapshot of the file store taken after a successful build."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    number: int = Field(..., ge=1)
    files: dict[str, str]
    build_attempt: int = Field(..., ge=1)
    artifact: BuildArtifact
    created_at: datetime = Field(default_factory=_now)


class Deployment(BaseModel):
    """Record of one deployment of a version to the edge platform."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    version_id: str
    environment: Environment
    script_name: str = ""
    url: str = ""
    asset_manifest: dict[str, str] = Field(default_factory=dict)
    success: bool = False
    live: bool | None = None
    liveness_status: int | None = None
    failure_category: str | None = None
    failure_detail: str | None = None
    deployed_at: datetime = Field(default_factory=_now)
