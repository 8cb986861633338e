"""LLM client -- one tool-calling request to the Anthropic Messages API.

``create_message`` returns the raw response body; turning it into a
``ModelTurn`` is the caller's job (see ``shipyard.turns``).  Transient
failures (timeouts, transport errors, 429/5xx/529) are retried with
exponential backoff, honouring ``retry-after`` when the API sends it.
"""

import asyncio
import logging

import httpx

logger = logging.getLogger(__name__)

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_API_VERSION = "2023-06-01"

MAX_RETRIES = 4
RETRY_BACKOFF_BASE = 2.0  # seconds: 2, 4, 8, 16
MAX_RETRY_WAIT_S = 90.0
MAX_RETRY_AFTER_S = 120.0
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 529})

_client: httpx.AsyncClient | None = None


def _get_client() -> httpx.AsyncClient:
    """Shared pooled client; model turns can take minutes."""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=300.0)
    return _client


async def close_client() -> None:
    """Close the shared client.  Called during app shutdown."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


class LLMAPIError(Exception):
    """Non-2xx (or unusable) response from the model provider."""

    def __init__(self, status_code: int, message: str, *, retry_after: str | None = None) -> None:
        self.status_code = status_code
        self.message = message
        self.retry_after = retry_after
        super().__init__(f"Anthropic API {status_code}: {message}")

    @property
    def retryable(self) -> bool:
        return self.status_code in _RETRYABLE_STATUS_CODES


def _compute_wait(retry_after: str | None, attempt: int, backoff_base: float) -> float:
    """Seconds before retry number *attempt* (0-based)."""
    if retry_after:
        try:
            return min(float(retry_after), MAX_RETRY_AFTER_S)
        except ValueError:
            logger.debug("Ignoring non-numeric retry-after %r", retry_after)
    return min(backoff_base ** (attempt + 1), MAX_RETRY_WAIT_S)


async def _retry_on_transient(
    coro_factory,
    *,
    max_retries: int = MAX_RETRIES,
    backoff_base: float = RETRY_BACKOFF_BASE,
):
    """Await ``coro_factory()`` until it succeeds or a non-transient error.

    ``coro_factory`` builds a fresh awaitable per attempt.
    """
    attempt = 0
    while True:
        try:
            return await coro_factory()
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            if attempt >= max_retries:
                raise
            reason, wait = type(exc).__name__, _compute_wait(None, attempt, backoff_base)
        except LLMAPIError as exc:
            if not exc.retryable or attempt >= max_retries:
                raise
            reason, wait = str(exc.status_code), _compute_wait(exc.retry_after, attempt, backoff_base)
        attempt += 1
        logger.warning(
            "[llm] %s (attempt %d/%d), retrying in %.1fs",
            reason, attempt, max_retries + 1, wait,
        )
        await asyncio.sleep(wait)


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    return response.text


async def create_message(
    api_key: str,
    model: str,
    system_prompt: str,
    messages: list[dict],
    tools: list[dict],
    max_tokens: int = 8192,
    *,
    max_retries: int = MAX_RETRIES,
    backoff_base: float = RETRY_BACKOFF_BASE,
) -> dict:
    """POST one Messages request offering *tools*; return the response body.

    The body must carry a ``content`` list (possibly empty: an empty turn
    is the caller's protocol decision, not a transport error).
    """
    body = {
        "model": model,
        "max_tokens": max_tokens,
        "system": system_prompt,
        "messages": messages,
        "tools": tools,
    }
    headers = {
        "x-api-key": api_key,
        "anthropic-version": ANTHROPIC_API_VERSION,
        "Content-Type": "application/json",
    }

    async def _call() -> dict:
        response = await _get_client().post(ANTHROPIC_MESSAGES_URL, headers=headers, json=body)
        if response.status_code >= 400:
            raise LLMAPIError(
                response.status_code,
                _error_message(response),
                retry_after=response.headers.get("retry-after"),
            )
        data = response.json()
        if not isinstance(data, dict) or not isinstance(data.get("content"), list):
            raise LLMAPIError(response.status_code, "response has no content list")
        return data

    return await _retry_on_transient(_call, max_retries=max_retries, backoff_base=backoff_base)
