"""Edge platform client -- Workers script upload, settings, routes, R2 objects."""

import json
import logging

import httpx

logger = logging.getLogger(__name__)

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4"
DEFAULT_COMPATIBILITY_DATE = "2024-01-01"
DEFAULT_COMPATIBILITY_FLAGS = ("nodejs_compat",)

# ── Shared HTTP client (connection pooling) ─────────────────────────────────

_client: httpx.AsyncClient | None = None


def _get_client() -> httpx.AsyncClient:
    """Return (or create) the shared httpx client for edge API calls."""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=60.0)
    return _client


async def close_client() -> None:
    """Close the shared HTTP client.  Called during app shutdown."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


class EdgeAPIError(Exception):
    """Non-2xx (or ``success: false``) response from the edge platform."""

    def __init__(self, status_code: int, body: str, *, operation: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.operation = operation
        super().__init__(f"{operation or 'edge request'} failed with {status_code}: {body[:300]}")

    @property
    def error_codes(self) -> list[int]:
        """Platform error codes from a ``{"errors": [{"code": ...}]}`` body."""
        try:
            errors = json.loads(self.body).get("errors") or []
        except (ValueError, AttributeError):
            return []
        return [e["code"] for e in errors if isinstance(e, dict) and "code" in e]


# ── Helpers ──────────────────────────────────────────────────────────────────


def _auth_headers(api_token: str) -> dict:
    return {"Authorization": f"Bearer {api_token}"}


def _check(response: httpx.Response, operation: str) -> dict:
    """Raise ``EdgeAPIError`` on failure; return the parsed JSON body."""
    if response.status_code >= 400:
        raise EdgeAPIError(response.status_code, response.text, operation=operation)
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {}
    if isinstance(data, dict) and data.get("success") is False:
        raise EdgeAPIError(response.status_code, response.text, operation=operation)
    return data if isinstance(data, dict) else {}


# ── Workers scripts ──────────────────────────────────────────────────────────


async def upload_worker_script(
    account_id: str,
    api_token: str,
    script_name: str,
    script: bytes,
    *,
    main_module: str = "worker.js",
    compatibility_date: str = DEFAULT_COMPATIBILITY_DATE,
    api_base: str = CLOUDFLARE_API_BASE,
) -> dict:
    """Create or replace a module worker (idempotent upsert by name).

    Plain-text bindings survive the upload; ``set_script_bindings`` owns them.
    """
    metadata = {
        "main_module": main_module,
        "compatibility_date": compatibility_date,
        "compatibility_flags": list(DEFAULT_COMPATIBILITY_FLAGS),
        "keep_bindings": ["plain_text"],
    }
    files = {
        "metadata": (None, json.dumps(metadata), "application/json"),
        main_module: (main_module, script, "application/javascript+module"),
    }
    client = _get_client()
    response = await client.put(
        f"{api_base}/accounts/{account_id}/workers/scripts/{script_name}",
        headers=_auth_headers(api_token),
        files=files,
    )
    data = _check(response, "script upload")
    logger.info("[edge] uploaded %s (%d bytes)", script_name, len(script))
    return data.get("result") or {}


async def set_script_bindings(
    account_id: str,
    api_token: str,
    script_name: str,
    bindings: list[dict],
    *,
    api_base: str = CLOUDFLARE_API_BASE,
) -> dict:
    """Replace the script's bindings (plain-text environment variables)."""
    client = _get_client()
    response = await client.patch(
        f"{api_base}/accounts/{account_id}/workers/scripts/{script_name}/settings",
        headers=_auth_headers(api_token),
        files={"settings": (None, json.dumps({"bindings": bindings}), "application/json")},
    )
    data = _check(response, "bindings")
    return data.get("result") or {}


async def enable_workers_dev(
    account_id: str,
    api_token: str,
    script_name: str,
    *,
    api_base: str = CLOUDFLARE_API_BASE,
) -> None:
    """Serve the script on its ``workers.dev`` subdomain."""
    client = _get_client()
    response = await client.post(
        f"{api_base}/accounts/{account_id}/workers/scripts/{script_name}/subdomain",
        headers=_auth_headers(api_token),
        json={"enabled": True},
    )
    _check(response, "workers.dev subdomain")


# ── Routes ───────────────────────────────────────────────────────────────────


async def upsert_route(
    zone_id: str,
    api_token: str,
    pattern: str,
    script_name: str,
    *,
    api_base: str = CLOUDFLARE_API_BASE,
) -> dict:
    """Bind *pattern* to *script_name*, updating an existing route in place."""
    client = _get_client()
    headers = _auth_headers(api_token)
    listing = _check(
        await client.get(f"{api_base}/zones/{zone_id}/workers/routes", headers=headers),
        "route lookup",
    )
    body = {"pattern": pattern, "script": script_name}
    existing = next(
        (r for r in listing.get("result") or [] if r.get("pattern") == pattern), None,
    )
    if existing is not None:
        response = await client.put(
            f"{api_base}/zones/{zone_id}/workers/routes/{existing['id']}",
            headers=headers,
            json=body,
        )
    else:
        response = await client.post(
            f"{api_base}/zones/{zone_id}/workers/routes", headers=headers, json=body,
        )
    data = _check(response, "route binding")
    return data.get("result") or {}


# ── Object storage ───────────────────────────────────────────────────────────


async def put_object(
    account_id: str,
    api_token: str,
    bucket: str,
    key: str,
    data: bytes,
    *,
    content_type: str = "application/octet-stream",
    api_base: str = CLOUDFLARE_API_BASE,
) -> None:
    """Store *data* under *key* (overwrites; keys are content-addressed)."""
    client = _get_client()
    response = await client.put(
        f"{api_base}/accounts/{account_id}/r2/buckets/{bucket}/objects/{key}",
        headers={**_auth_headers(api_token), "Content-Type": content_type},
        content=data,
    )
    _check(response, "object upload")


# ── Liveness ─────────────────────────────────────────────────────────────────


async def probe(url: str, *, timeout_s: float = 10.0) -> int:
    """Plain GET; returns the status code without following redirects."""
    client = _get_client()
    response = await client.get(url, timeout=timeout_s, follow_redirects=False)
    return response.status_code
