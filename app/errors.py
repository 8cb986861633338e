"""Service-layer exception hierarchy.

Services raise these instead of bare ``ValueError`` so that the global
exception handler can map them to the correct HTTP status code without
fragile string matching.  Pipeline errors (``shipyard.errors``) are mapped
separately by :func:`status_for_pipeline_error`.
"""

from shipyard.errors import (
    DeploymentFailure,
    DeploymentPreconditionError,
    HealingExhausted,
    ModelError,
    SessionAborted,
    ShipyardError,
    TurnCeilingExceeded,
)


class AppError(Exception):
    """Base for all service-layer exceptions."""

    def __init__(self, message: str = "An unexpected error occurred", *, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message, status_code=404)


class ConflictError(AppError):
    """Request conflicts with the resource's current state (409)."""

    def __init__(self, message: str = "Conflict"):
        super().__init__(message, status_code=409)


class SessionConflictError(ConflictError):
    """A generation session is already running for the project (409)."""

    def __init__(self, project_id: str):
        super().__init__(f"Project {project_id} already has a running session")
        self.project_id = project_id


_PIPELINE_STATUS: list[tuple[type[ShipyardError], int]] = [
    (DeploymentPreconditionError, 409),
    (SessionAborted, 409),
    (HealingExhausted, 422),
    (TurnCeilingExceeded, 422),
    (DeploymentFailure, 502),
    (ModelError, 502),
]


def status_for_pipeline_error(exc: ShipyardError) -> int:
    """HTTP status for a pipeline error that escaped a session."""
    for error_type, status_code in _PIPELINE_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def format_error_response(
    *,
    error: str,
    detail: object = None,
    request_id: str = "",
) -> dict:
    """Build a structured error response dict.

    Parameters
    ----------
    error : str
        Short error title (e.g. ``"Internal Server Error"``).
    detail : object
        Human-readable detail string or validation error list.
    request_id : str
        The request ID for tracing.

    Returns
    -------
    dict
        ``{"error": ..., "detail": ..., "request_id": ...}``
    """
    return {
        "error": error,
        "detail": detail if detail is not None else error,
        "request_id": request_id,
    }
