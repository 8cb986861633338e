"""Request middleware — request IDs and one access-log line per HTTP call.

Pure ASGI (not BaseHTTPMiddleware) so background generation tasks
started from a handler are not tied to the response cycle.
"""

import logging
import time
import uuid

from starlette.types import ASGIApp, Receive, Scope, Send

access_logger = logging.getLogger("shipyard.access")

_QUIET_PATHS = frozenset({"/health", "/health/version", "/favicon.ico"})


class RequestIDMiddleware:
    """Injects ``X-Request-ID`` into every HTTP request/response cycle.

    A client-supplied ID is reused; otherwise a UUID-4 is generated.
    Each completed request is logged with method, path, status, wall
    time and request ID.  Health probes are not logged.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        request_id = (
            headers.get(b"x-request-id", b"").decode() or str(uuid.uuid4())
        )
        scope.setdefault("state", {})["request_id"] = request_id
        status_code = 0
        t0 = time.perf_counter()

        async def send_with_id(message: dict) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status", 0)
                raw_headers: list = list(message.get("headers", []))
                raw_headers.append((b"x-request-id", request_id.encode()))
                message = {**message, "headers": raw_headers}
            await send(message)

        try:
            await self.app(scope, receive, send_with_id)
        except Exception:
            if status_code == 0:
                status_code = 500
            raise
        finally:
            path = scope.get("path", "")
            if path not in _QUIET_PATHS:
                access_logger.info(
                    "%s %s %d %.1fms request_id=%s",
                    scope.get("method", "?"),
                    path,
                    status_code,
                    (time.perf_counter() - t0) * 1000,
                    request_id,
                )
