"""Application configuration loaded from environment variables.

Uses ``pydantic-settings`` for automatic env-var loading, type coercion,
and ``.env`` file support.  Validates required settings on import — fails
fast if critical vars are missing outside of tests.
"""

VERSION = "0.1.0"

import sys

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shipyard.contracts import Environment
from shipyard.deploy import DeploymentConfig
from shipyard.orchestrator import OrchestratorConfig
from shipyard.session import PipelineConfig


# ---------------------------------------------------------------------------
# Required var names — checked after instantiation (not during), so tests
# that leave them blank still work.
# ---------------------------------------------------------------------------
_REQUIRED_VARS: list[str] = [
    "ANTHROPIC_API_KEY",
]


class Settings(BaseSettings):
    """Application settings — sourced from environment / ``.env`` file.

    Required vars (must be set in production, may be blank in test):
      ANTHROPIC_API_KEY

    Deployment vars (CF_*, R2_*) are only needed to deploy; generation
    and builds work without them.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -- required in production (default empty so tests don't fail) --
    ANTHROPIC_API_KEY: str = ""

    # -- optional with sensible defaults --
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""
    FRONTEND_URL: str = "http://localhost:5174"

    LLM_MODEL: str = "claude-sonnet-4-6"
    LLM_MAX_TOKENS: int = Field(default=8192, ge=256)

    # Turn loop
    MAX_TURNS: int = Field(default=40, ge=1)
    REPAIR_MAX_TURNS: int = Field(default=6, ge=1)
    PROTOCOL_RETRY_LIMIT: int = Field(default=2, ge=0)
    REDACT_TOOL_OUTPUT: bool = True

    # Build + self-healing
    MAX_BUILD_ATTEMPTS: int = Field(default=3, ge=1)
    BUILD_TIMEOUT_SECONDS: float = Field(default=120.0, gt=0)
    BUILD_COMMAND: str = "npx vite build --mode {mode} --outDir {out_dir}"
    INSTALL_COMMAND: str = "npm install"  # empty disables the install step
    BUILD_MODE: str = "preview"  # "preview" | "production"
    HEAL_BACKOFF_SECONDS: float = Field(default=0.0, ge=0)

    # Edge platform (Cloudflare Workers)
    CF_ACCOUNT_ID: str = ""
    CF_API_TOKEN: str = ""
    CF_ZONE_ID: str = ""
    CF_WORKERS_SUBDOMAIN: str = ""
    CF_API_BASE: str = "https://api.cloudflare.com/client/v4"
    CF_COMPATIBILITY_DATE: str = "2024-01-01"
    BASE_DOMAIN: str = ""

    # Object storage (R2)
    R2_BUCKET: str = ""
    R2_PUBLIC_URL: str = ""
    ASSET_OFFLOAD_THRESHOLD: int = Field(default=50_000, ge=0)

    # Comma-separated KEY=value pairs bound into every deployed worker.
    WORKER_ENV_BINDINGS: str = ""

    # Liveness probe after deploy
    LIVENESS_ATTEMPTS: int = Field(default=5, ge=1)
    LIVENESS_INITIAL_SECONDS: float = Field(default=1.0, gt=0)
    LIVENESS_MAX_SECONDS: float = Field(default=16.0, gt=0)
    LIVENESS_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def _check_build_mode(self) -> "Settings":
        """Reject an unknown BUILD_MODE early instead of at first build."""
        valid = {e.value for e in Environment}
        if self.BUILD_MODE not in valid:
            raise ValueError(
                f"BUILD_MODE must be one of {sorted(valid)}, got {self.BUILD_MODE!r}"
            )
        return self


settings = Settings()


def parse_env_bindings(raw: str) -> tuple[tuple[str, str], ...]:
    """Parse ``"A=1, B=two"`` into ``(("A", "1"), ("B", "two"))``.

    Entries without ``=`` or with an empty name are ignored.
    """
    pairs: list[tuple[str, str]] = []
    for entry in raw.split(","):
        name, sep, value = entry.strip().partition("=")
        if sep and name.strip():
            pairs.append((name.strip(), value.strip()))
    return tuple(pairs)


def build_pipeline_config(source: Settings | None = None) -> PipelineConfig:
    """Freeze the current settings into a ``PipelineConfig``.

    Sessions receive this object instead of reading ``settings`` directly,
    so a running session never sees a settings change mid-flight.
    """
    s = source or settings
    return PipelineConfig(
        orchestrator=OrchestratorConfig(
            max_turns=s.MAX_TURNS,
            repair_max_turns=s.REPAIR_MAX_TURNS,
            protocol_retry_limit=s.PROTOCOL_RETRY_LIMIT,
            redact_secrets=s.REDACT_TOOL_OUTPUT,
            secret_values=(s.ANTHROPIC_API_KEY, s.CF_API_TOKEN),
        ),
        max_build_attempts=s.MAX_BUILD_ATTEMPTS,
        heal_backoff_s=s.HEAL_BACKOFF_SECONDS,
        build_command=s.BUILD_COMMAND,
        install_command=s.INSTALL_COMMAND,
        build_timeout_s=s.BUILD_TIMEOUT_SECONDS,
        build_mode=Environment(s.BUILD_MODE),
        deploy=DeploymentConfig(
            account_id=s.CF_ACCOUNT_ID,
            api_token=s.CF_API_TOKEN,
            zone_id=s.CF_ZONE_ID,
            base_domain=s.BASE_DOMAIN,
            workers_subdomain=s.CF_WORKERS_SUBDOMAIN,
            bucket=s.R2_BUCKET,
            asset_public_url=s.R2_PUBLIC_URL,
            api_base=s.CF_API_BASE,
            compatibility_date=s.CF_COMPATIBILITY_DATE,
            asset_offload_threshold=s.ASSET_OFFLOAD_THRESHOLD,
            env_bindings=parse_env_bindings(s.WORKER_ENV_BINDINGS),
            liveness_attempts=s.LIVENESS_ATTEMPTS,
            liveness_initial_s=s.LIVENESS_INITIAL_SECONDS,
            liveness_max_s=s.LIVENESS_MAX_SECONDS,
            liveness_timeout_s=s.LIVENESS_TIMEOUT_SECONDS,
        ),
    )


# Validate at import time — but only when NOT running under pytest.
if "pytest" not in sys.modules:
    _missing = [v for v in _REQUIRED_VARS if not getattr(settings, v)]
    if _missing:
        print(
            f"[config] FATAL: missing required environment variables: "
            f"{', '.join(_missing)}",
            file=sys.stderr,
        )
        sys.exit(1)
