"""Deployment service — publish a built version to the edge platform.

Steps, in order:

1. Precondition: the version's most recent build attempt succeeded.
2. Offload large or binary assets to object storage under
   content-addressed keys ``assets/<sha256[:16]>/<basename>``.
3. Assemble the worker module with an injected ``ASSET_MANIFEST``
   constant (static builds get a generated worker that serves the
   embedded files and redirects to offloaded ones).
4. Upload the script, configure plain-text bindings, bind the hostname.
5. Probe liveness with exponential backoff.

Upstream failures are raised as ``DeploymentFailure`` with one of the
categories ``auth_failure``, ``quota_exceeded``, ``script_rejected`` or
``network_error``.  A deployment that uploads fine but never answers is
recorded with ``live=False``; nothing is rolled back automatically.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import mimetypes
import posixpath
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field

import httpx

from app.clients import edge_client
from app.clients.edge_client import EdgeAPIError
from shipyard.backoff import ExponentialBackoff
from shipyard.contracts import BuildArtifact, Deployment, Environment, Version
from shipyard.errors import DeploymentFailure, DeploymentPreconditionError
from shipyard.project import Project

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ASSET_OFFLOAD_THRESHOLD = 50_000  # bytes
MAX_SCRIPT_BYTES = 10 * 1024 * 1024  # platform limit for one worker script
WORKER_MODULE = "worker.js"

ASSET_EXTENSIONS: frozenset[str] = frozenset({
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico",
    ".woff", ".woff2", ".ttf", ".otf", ".eot",
    ".mp4", ".webm", ".mp3", ".wav", ".pdf", ".zip",
})

_QUOTA_MARKERS = ("quota", "limit exceeded", "too many")

# Platform error codes from ``{"errors": [{"code": ...}]}`` bodies
_AUTH_ERROR_CODES = frozenset({9106, 9109, 10000})
_QUOTA_ERROR_CODES = frozenset({971, 10037})
_REJECTED_ERROR_CODES = frozenset({10021, 10027})

Probe = Callable[[str], Awaitable[int]]


@dataclass(frozen=True)
class DeploymentConfig:
    """Edge platform and storage settings for deployments."""

    account_id: str = ""
    api_token: str = ""
    zone_id: str = ""
    base_domain: str = ""
    workers_subdomain: str = ""
    bucket: str = ""
    asset_public_url: str = ""
    api_base: str = edge_client.CLOUDFLARE_API_BASE
    compatibility_date: str = edge_client.DEFAULT_COMPATIBILITY_DATE
    asset_offload_threshold: int = ASSET_OFFLOAD_THRESHOLD
    env_bindings: tuple[tuple[str, str], ...] = ()
    liveness_attempts: int = 5
    liveness_initial_s: float = 1.0
    liveness_max_s: float = 16.0
    liveness_timeout_s: float = 10.0


@dataclass
class DeployPlan:
    """Everything computed from a version before talking to the platform."""

    script_name: str
    hostname: str
    script: bytes
    offloads: dict[str, tuple[str, bytes]] = field(default_factory=dict)  # path -> (key, data)
    manifest: dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def asset_key(path: str, data: bytes) -> str:
    digest = hashlib.sha256(data).hexdigest()[:16]
    return f"assets/{digest}/{posixpath.basename(path)}"


def should_offload(path: str, data: bytes, threshold: int) -> bool:
    if len(data) > threshold:
        return True
    if posixpath.splitext(path)[1].lower() in ASSET_EXTENSIONS:
        return True
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return True
    return False


def script_name_for(slug: str, environment: Environment) -> str:
    return f"preview-{slug}" if environment is Environment.PREVIEW else slug


def hostname_for(slug: str, environment: Environment, config: DeploymentConfig) -> str:
    """Public hostname: a route under ``base_domain`` or the workers.dev subdomain."""
    script_name = script_name_for(slug, environment)
    if config.zone_id and config.base_domain:
        sub = f"preview--{slug}" if environment is Environment.PREVIEW else slug
        return f"{sub}.{config.base_domain}"
    if config.workers_subdomain:
        return f"{script_name}.{config.workers_subdomain}.workers.dev"
    return f"{script_name}.workers.dev"


def manifest_constant(manifest: dict[str, str]) -> str:
    return f"const ASSET_MANIFEST = {json.dumps(manifest, sort_keys=True)};\n"


_STATIC_WORKER = """\
const CODE_FILES = %(files)s;

const CONTENT_TYPES = {
  html: "text/html; charset=utf-8",
  js: "application/javascript",
  mjs: "application/javascript",
  css: "text/css",
  json: "application/json",
  txt: "text/plain; charset=utf-8",
};

function contentType(path) {
  const ext = path.split(".").pop().toLowerCase();
  return CONTENT_TYPES[ext] || "text/plain; charset=utf-8";
}

export default {
  async fetch(request) {
    const url = new URL(request.url);
    const path = url.pathname === "/" ? "index.html" : url.pathname.slice(1);
    if (ASSET_MANIFEST[path]) {
      return Response.redirect(ASSET_MANIFEST[path], 301);
    }
    if (path in CODE_FILES) {
      const cache = path === "index.html" ? "no-cache" : "public, max-age=86400";
      return new Response(CODE_FILES[path], {
        headers: { "Content-Type": contentType(path), "Cache-Control": cache },
      });
    }
    if ("index.html" in CODE_FILES) {
      return new Response(CODE_FILES["index.html"], {
        headers: { "Content-Type": CONTENT_TYPES.html, "Cache-Control": "no-cache" },
      });
    }
    return new Response("Not found", { status: 404 });
  },
};
"""


def render_worker(artifact: BuildArtifact, manifest: dict[str, str], embedded: dict[str, str]) -> bytes:
    """Worker module source with ``ASSET_MANIFEST`` injected.

    A build that produced ``worker.js`` keeps its own module, prefixed
    with the manifest.  Anything else is a static site and gets the
    generated serving worker.
    """
    if artifact.entry == WORKER_MODULE and WORKER_MODULE in artifact.files:
        source = artifact.files[WORKER_MODULE].decode("utf-8")
        return (manifest_constant(manifest) + source).encode("utf-8")
    body = _STATIC_WORKER % {"files": json.dumps(embedded, sort_keys=True)}
    return (manifest_constant(manifest) + body).encode("utf-8")


def categorize(
    status_code: int | None, body: str = "", error_codes: Iterable[int] = (),
) -> str:
    """Map an upstream response onto a deployment failure category.

    Status codes and platform error codes decide first; free-text markers
    in the body are the fallback for otherwise ambiguous 4xx responses.
    """
    codes = set(error_codes)
    if status_code in (401, 403) or codes & _AUTH_ERROR_CODES:
        return "auth_failure"
    if status_code == 429 or codes & _QUOTA_ERROR_CODES:
        return "quota_exceeded"
    if status_code == 413 or codes & _REJECTED_ERROR_CODES:
        return "script_rejected"
    lowered = body.lower()
    if any(m in lowered for m in _QUOTA_MARKERS):
        return "quota_exceeded"
    if status_code in (400, 422):
        return "script_rejected"
    return "network_error"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class DeploymentService:
    """Publishes versions for projects.

    Parameters
    ----------
    config:
        Platform credentials and limits.
    probe:
        Liveness probe returning an HTTP status; defaults to a plain GET.
    """

    def __init__(self, config: DeploymentConfig, *, probe: Probe | None = None) -> None:
        self.config = config
        self._probe = probe or (
            lambda url: edge_client.probe(url, timeout_s=config.liveness_timeout_s)
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def check_precondition(self, project: Project, version: Version) -> None:
        attempt = project.latest_attempt_for(version.id)
        if attempt is None:
            raise DeploymentPreconditionError(version.id, "no build attempt produced this version")
        if not attempt.success:
            raise DeploymentPreconditionError(version.id, "most recent build attempt failed")
        if not version.artifact.files:
            raise DeploymentPreconditionError(version.id, "build artifact is empty")

    def plan(self, project: Project, version: Version, environment: Environment) -> DeployPlan:
        """Partition the artifact and assemble the worker script."""
        artifact = version.artifact
        offloads: dict[str, tuple[str, bytes]] = {}
        manifest: dict[str, str] = {}
        embedded: dict[str, str] = {}
        keep_worker = artifact.entry == WORKER_MODULE

        for path, data in artifact.files.items():
            if keep_worker and path == WORKER_MODULE:
                continue
            if should_offload(path, data, self.config.asset_offload_threshold):
                key = asset_key(path, data)
                offloads[path] = (key, data)
                manifest[path] = self._asset_url(key)
            else:
                embedded[path] = data.decode("utf-8")

        script_name = script_name_for(project.slug, environment)
        return DeployPlan(
            script_name=script_name,
            hostname=hostname_for(project.slug, environment, self.config),
            script=render_worker(artifact, manifest, embedded),
            offloads=offloads,
            manifest=manifest,
        )

    async def deploy(
        self, project: Project, version: Version, environment: Environment,
    ) -> Deployment:
        """Run the full deployment.  Raises ``DeploymentFailure`` on upstream errors."""
        self.check_precondition(project, version)
        plan = self.plan(project, version, environment)
        cfg = self.config

        if len(plan.script) > MAX_SCRIPT_BYTES:
            raise DeploymentFailure(
                "script_rejected",
                f"worker script is {len(plan.script)} bytes (limit {MAX_SCRIPT_BYTES})",
                step="script upload",
            )

        logger.info(
            "[deploy] %s v%d -> %s (%d offloaded asset(s), %d byte script)",
            project.id, version.number, plan.script_name, len(plan.offloads), len(plan.script),
        )

        for path, (key, data) in plan.offloads.items():
            content_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
            await self._call(
                "asset upload",
                edge_client.put_object(
                    cfg.account_id, cfg.api_token, cfg.bucket, key, data,
                    content_type=content_type, api_base=cfg.api_base,
                ),
            )

        bindings = [
            {"type": "plain_text", "name": name, "text": value}
            for name, value in cfg.env_bindings
        ]
        bindings.append({"type": "plain_text", "name": "ENVIRONMENT", "text": environment.value})

        await self._call(
            "script upload",
            edge_client.upload_worker_script(
                cfg.account_id, cfg.api_token, plan.script_name, plan.script,
                main_module=WORKER_MODULE,
                compatibility_date=cfg.compatibility_date,
                api_base=cfg.api_base,
            ),
        )
        await self._call(
            "bindings",
            edge_client.set_script_bindings(
                cfg.account_id, cfg.api_token, plan.script_name, bindings, api_base=cfg.api_base,
            ),
        )
        if cfg.zone_id and cfg.base_domain:
            await self._call(
                "route binding",
                edge_client.upsert_route(
                    cfg.zone_id, cfg.api_token, f"{plan.hostname}/*", plan.script_name,
                    api_base=cfg.api_base,
                ),
            )
        else:
            await self._call(
                "route binding",
                edge_client.enable_workers_dev(
                    cfg.account_id, cfg.api_token, plan.script_name, api_base=cfg.api_base,
                ),
            )

        url = f"https://{plan.hostname}"
        live, status = await self.check_liveness(url)
        deployment = Deployment(
            version_id=version.id,
            environment=environment,
            script_name=plan.script_name,
            url=url,
            asset_manifest=plan.manifest,
            success=True,
            live=live,
            liveness_status=status,
        )
        logger.info("[deploy] %s live=%s status=%s", url, live, status)
        return deployment

    async def check_liveness(self, url: str) -> tuple[bool, int | None]:
        """Up to ``liveness_attempts`` GETs; any 2xx/3xx counts as live."""
        backoff = ExponentialBackoff(
            initial_s=self.config.liveness_initial_s,
            max_s=max(self.config.liveness_max_s, self.config.liveness_initial_s),
        )
        status: int | None = None
        for attempt in range(1, self.config.liveness_attempts + 1):
            try:
                status = await self._probe(url)
            except httpx.HTTPError as exc:
                logger.info("[deploy] probe %d/%d %s: %s",
                            attempt, self.config.liveness_attempts, url, type(exc).__name__)
                status = None
            else:
                if 200 <= status < 400:
                    return True, status
                logger.info("[deploy] probe %d/%d %s -> %d",
                            attempt, self.config.liveness_attempts, url, status)
            if attempt < self.config.liveness_attempts:
                await asyncio.sleep(backoff.delay(attempt))
        return False, status

    def select_rollback_target(self, project: Project) -> Version:
        """The newest version older than the current one with a successful deployment."""
        current = project.latest_version
        deployed_ids = {d.version_id for d in project.deployments if d.success}
        for version in reversed(project.versions):
            if current is not None and version.id == current.id:
                continue
            if version.id in deployed_ids:
                return version
        raise DeploymentPreconditionError(
            current.id if current else "-", "no previously deployed version to roll back to",
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _asset_url(self, key: str) -> str:
        base = self.config.asset_public_url.rstrip("/")
        return f"{base}/{key}" if base else key

    @staticmethod
    async def _call(step: str, awaitable: Awaitable):
        try:
            return await awaitable
        except EdgeAPIError as exc:
            category = categorize(exc.status_code, exc.body, exc.error_codes)
            raise DeploymentFailure(
                category, str(exc), status_code=exc.status_code, body=exc.body, step=step,
            ) from exc
        except httpx.HTTPError as exc:
            raise DeploymentFailure(
                "network_error", f"{type(exc).__name__}: {exc}", step=step,
            ) from exc


__all__ = [
    "ASSET_EXTENSIONS",
    "ASSET_OFFLOAD_THRESHOLD",
    "DeployPlan",
    "DeploymentConfig",
    "DeploymentService",
    "MAX_SCRIPT_BYTES",
    "asset_key",
    "categorize",
    "hostname_for",
    "render_worker",
    "script_name_for",
    "should_offload",
]
