"""Pipeline error hierarchy.

Every error carries typed fields (not just a message string),
supports ``to_dict()`` for serialisation into tool results and API
responses, and has a readable ``__str__`` for logging.

Recoverable errors (``ToolValidationError``, ``PatchConflict``,
``FileNotFound``) are turned into failed tool results and fed back to the
model.  Terminal errors (``TurnCeilingExceeded``, ``HealingExhausted``,
auth ``DeploymentFailure``) end the generation session.
"""

from __future__ import annotations

from typing import Any


class ShipyardError(Exception):
    """Base error for all pipeline failures."""

    #: Terminal errors propagate through tool dispatch instead of becoming
    #: failed tool results.
    fatal: bool = False

    def __init__(self, message: str, *, detail: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "message": self.message, **self.detail}

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Tool-level (recoverable) errors
# ---------------------------------------------------------------------------


class ToolValidationError(ShipyardError):
    """A ToolCall's arguments failed schema or path validation."""

    def __init__(self, tool_name: str, reason: str) -> None:
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(
            f"Invalid arguments for '{tool_name}': {reason}",
            detail={"tool_name": tool_name, "reason": reason},
        )


class PathEscape(ToolValidationError):
    """Path resolved outside the project root."""

    def __init__(self, tool_name: str, path: str) -> None:
        self.path = path
        super().__init__(tool_name, f"path {path!r} escapes the project root")
        self.detail["path"] = path


class PatchConflict(ShipyardError):
    """The region a patch targets no longer matches the stored content."""

    def __init__(
        self, file_path: str, hunk_index: int, expected: str, actual: str
    ) -> None:
        self.file_path = file_path
        self.hunk_index = hunk_index
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Patch conflict in '{file_path}' at hunk {hunk_index}",
            detail={
                "file_path": file_path,
                "hunk_index": hunk_index,
                "expected": expected,
                "actual": actual,
            },
        )


class FileNotFound(ShipyardError):
    """The target path does not exist in the file store."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"File not found: '{path}'", detail={"path": path})


class MalformedPatch(ShipyardError):
    """A unified diff could not be parsed."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Malformed patch: {reason}", detail={"reason": reason})


# ---------------------------------------------------------------------------
# Turn protocol errors
# ---------------------------------------------------------------------------


class ProtocolViolation(ShipyardError):
    """A model turn was malformed (e.g. no tool calls and no commentary)."""

    def __init__(self, turn: int, reason: str) -> None:
        self.turn = turn
        self.reason = reason
        super().__init__(
            f"Protocol violation on turn {turn}: {reason}",
            detail={"turn": turn, "reason": reason},
        )


class TurnCeilingExceeded(ShipyardError):
    """The model did not issue ``finish`` within the turn ceiling."""

    def __init__(self, max_turns: int) -> None:
        self.max_turns = max_turns
        super().__init__(
            f"Turn ceiling of {max_turns} reached without finish",
            detail={"max_turns": max_turns},
        )


class ModelError(ShipyardError):
    """The model provider failed after retries."""

    fatal = True

    def __init__(self, reason: str, *, status_code: int | None = None) -> None:
        self.reason = reason
        self.status_code = status_code
        super().__init__(
            f"Model request failed: {reason}",
            detail={"reason": reason, "status_code": status_code},
        )


class SessionAborted(ShipyardError):
    """The project-level abort signal fired mid-session."""

    fatal = True

    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        super().__init__(
            f"Session for project {project_id} was aborted",
            detail={"project_id": project_id},
        )


# ---------------------------------------------------------------------------
# Build / healing errors
# ---------------------------------------------------------------------------


class BuildFailure(ShipyardError):
    """The bundler reported errors.  Routed into the healing loop."""

    def __init__(self, diagnostics: list[Any], raw_output: str = "") -> None:
        self.diagnostics = diagnostics
        self.raw_output = raw_output
        super().__init__(
            f"Build failed with {len(diagnostics)} diagnostic(s)",
            detail={"diagnostic_count": len(diagnostics)},
        )


class HealingExhausted(ShipyardError):
    """The self-healing loop ran out of build attempts."""

    fatal = True

    def __init__(
        self,
        attempts: int,
        diagnostic_history: list[list[dict]],
        strategy_log: list[dict],
    ) -> None:
        self.attempts = attempts
        self.diagnostic_history = diagnostic_history
        self.strategy_log = strategy_log
        super().__init__(
            f"Build still failing after {attempts} attempt(s)",
            detail={
                "attempts": attempts,
                "diagnostic_history": diagnostic_history,
                "strategy_log": strategy_log,
            },
        )


# ---------------------------------------------------------------------------
# Deployment errors
# ---------------------------------------------------------------------------


class DeploymentPreconditionError(ShipyardError):
    """Deployment refused: the version has no successful build."""

    def __init__(self, version_id: str, reason: str) -> None:
        self.version_id = version_id
        self.reason = reason
        super().__init__(
            f"Cannot deploy version {version_id}: {reason}",
            detail={"version_id": version_id, "reason": reason},
        )


class DeploymentFailure(ShipyardError):
    """The edge platform or object storage rejected a deployment step.

    ``category`` is one of ``auth_failure``, ``quota_exceeded``,
    ``script_rejected`` or ``network_error``.
    """

    def __init__(
        self,
        category: str,
        message: str,
        *,
        status_code: int | None = None,
        body: str = "",
        step: str = "",
    ) -> None:
        self.category = category
        self.status_code = status_code
        self.body = body
        self.step = step
        super().__init__(
            f"Deployment {category} during {step or 'deploy'}: {message}",
            detail={
                "category": category,
                "status_code": status_code,
                "body": body[:2000],
                "step": step,
            },
        )

    @property
    def retryable(self) -> bool:
        """Auth failures need operator action; the others may clear on retry."""
        return self.category != "auth_failure"
