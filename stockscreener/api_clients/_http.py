"""
Shared async HTTP plumbing for the remote sources.

Retry policy (idempotent GETs only):
  maxRetries = config.HTTP_MAX_RETRIES
  On 429 / 5xx / transport error: backoff = 2^attempt * 1000 + random(1000) ms
Mutations (POST / DELETE) are sent once; the caller owns rollback.

Every failure surfaces as SourceFetchError.
"""

import asyncio
import logging
import random
from contextlib import asynccontextmanager
from typing import Any

import httpx

from stockscreener import config
from stockscreener.services.errors import SourceFetchError

logger = logging.getLogger(__name__)


def _backoff_seconds(attempt: int) -> float:
    return ((2 ** attempt) * 1000 + random.random() * 1000) / 1000


def _retryable(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def _decode(resp: httpx.Response) -> Any:
    if resp.status_code == 204 or not resp.content:
        return None
    try:
        return resp.json()
    except ValueError as exc:
        raise SourceFetchError(f"invalid JSON from {resp.request.url}", resp.status_code) from exc


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    params: dict[str, Any] | None = None,
    json: Any = None,
    headers: dict[str, str] | None = None,
    max_retries: int | None = None,
) -> Any:
    """
    Send one request and decode the JSON body.
    GETs retry with exponential backoff; anything else gets a single attempt.
    """
    method = method.upper()
    attempts = max(1, max_retries if max_retries is not None else config.HTTP_MAX_RETRIES)
    if method != "GET":
        attempts = 1

    for attempt in range(1, attempts + 1):
        try:
            resp = await client.request(method, url, params=params, json=json, headers=headers)
        except httpx.TransportError as exc:
            logger.warning("[HTTP] %s %s attempt %d/%d failed: %s", method, url, attempt, attempts, exc)
            if attempt < attempts:
                await asyncio.sleep(_backoff_seconds(attempt))
                continue
            raise SourceFetchError(f"{method} {url} failed after {attempts} attempts: {exc}") from exc

        if resp.is_success:
            return _decode(resp)

        if _retryable(resp.status_code) and attempt < attempts:
            backoff = _backoff_seconds(attempt)
            logger.warning(
                "[HTTP][%d] %s %s backing off %.0fms (attempt %d/%d)",
                resp.status_code, method, url, backoff * 1000, attempt, attempts,
            )
            await asyncio.sleep(backoff)
            continue

        raise SourceFetchError(
            f"{method} {url} → HTTP {resp.status_code}: {resp.reason_phrase}", resp.status_code
        )

    raise SourceFetchError(f"{method} {url}: exhausted all attempts")


class ApiClient:
    """
    Base for the remote source clients.

    Pass an httpx.AsyncClient to share a connection pool (or a MockTransport in
    tests); otherwise a short-lived client is opened per call.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        self.base_url = (base_url or config.API_BASE_URL).rstrip("/")
        self.token = token
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT_SECONDS
        self._client = client

    @asynccontextmanager
    async def _session(self):
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
            yield client

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        async with self._session() as client:
            return await request_json(client, method, path, headers=self._headers(), **kwargs)
