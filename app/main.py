"""Shipyard -- FastAPI application entry point."""

import logging
import sys
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routers.health import router as health_router
from app.api.routers.projects import router as projects_router
from app.clients import edge_client, llm_client
from app.config import VERSION, settings
from app.middleware import RequestIDMiddleware
from app.middleware.exception_handler import setup_exception_handlers
from app.services import pipeline_service

logger = logging.getLogger(__name__)


class _LogFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL [logger] message`` lines.

    With ``color=True`` (terminal) levels are ANSI-coloured; file logs use
    full dates and carry tracebacks.
    """

    _COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    _RESET = "\033[0m"
    _DIM = "\033[2m"

    def __init__(self, *, color: bool) -> None:
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        name = record.name.rsplit(".", 1)[-1][:20]
        msg = record.getMessage()
        if not self.color:
            line = f"{self.formatTime(record, '%Y-%m-%d %H:%M:%S')} {record.levelname:<8s} [{name:>20s}] {msg}"
            if record.exc_info:
                line += "\n" + self.formatException(record.exc_info)
            return line
        tint = self._COLORS.get(record.levelno, "")
        return (
            f"{self._DIM}{self.formatTime(record, '%H:%M:%S')}{self._RESET} "
            f"{tint}{record.levelname:<8s}{self._RESET} "
            f"{self._DIM}[{name:>20s}]{self._RESET} "
            f"{tint}{msg}{self._RESET}"
        )


def configure_logging(level: str = "INFO", log_file: str = "") -> list[logging.Handler]:
    """Install the coloured stderr handler and an optional rotating file log.

    Returns the handlers installed on the root logger.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_LogFormatter(color=sys.stderr.isatty()))
    handlers: list[logging.Handler] = [handler]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            str(log_path),
            maxBytes=10 * 1024 * 1024,  # 10 MB per file
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(_LogFormatter(color=False))
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=handlers,
        force=True,
    )

    # Request lines come from shipyard.access; uvicorn's would duplicate them
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    return handlers


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Application lifespan: startup and shutdown hooks."""
    if "pytest" not in sys.modules:
        configure_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    logger.info("Shipyard %s starting", VERSION)
    yield
    # Background sessions must finish before the HTTP clients close.
    await pipeline_service.shutdown_all()
    await llm_client.close_client()
    await edge_client.close_client()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Shipyard",
        version=VERSION,
        description="Generate, build, heal and deploy web applications from instructions",
        lifespan=lifespan,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )

    setup_exception_handlers(application)

    application.add_middleware(RequestIDMiddleware)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
    )

    application.include_router(health_router)
    application.include_router(projects_router)
    return application


app = create_app()
