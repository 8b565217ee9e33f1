"""
http.py – Async HTTP client built on *aiohttp* with base-URL resolution,
          per-instance default headers and back-off retries for reads.

Writes are never retried here: a failed write is reported to the caller,
who decides whether the next observation should try again.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Any, Dict, Mapping, Optional, Tuple

import aiohttp

logger = logging.getLogger(__name__)

RETRY_STATUS = (429, 500, 502, 503, 504)


class HttpClient:
    """
    Thin wrapper over *aiohttp.ClientSession* adding:

    * a base URL and global headers (API keys live in one place)
    * exponential back-off **with jitter** for GET on 429 / 5xx / network errors
    * async context-manager support
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        default_headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._external_session = session
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._own_session: Optional[aiohttp.ClientSession] = None
        self._default_headers: Dict[str, str] = dict(default_headers or {})

    # ---------------------------------------------- #
    # Async context-manager
    async def __aenter__(self) -> "HttpClient":  # noqa: D401
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        await self.close()

    # ---------------------------------------------- #
    # Session management
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._external_session:
            return self._external_session
        if self._own_session is None or self._own_session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._own_session = aiohttp.ClientSession(timeout=timeout)
        return self._own_session

    async def close(self) -> None:
        if self._own_session and not self._own_session.closed:
            await self._own_session.close()
            self._own_session = None

    # ---------------------------------------------- #
    # Internal helpers
    def url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _merge_headers(self, extra: Mapping[str, str] | None) -> Dict[str, str]:
        merged: Dict[str, str] = {**self._default_headers}
        if extra:
            merged.update(extra)
        return merged

    def _backoff(self, attempt: int) -> float:
        exponential = min(self._base_delay * 2 ** (attempt - 1), self._max_delay)
        return exponential + random.uniform(0, self._base_delay)

    async def _send(self, method: str, url: str, **kwargs) -> Tuple[int, str]:
        session = await self._ensure_session()
        async with session.request(method, url, **kwargs) as resp:
            return resp.status, await resp.text()

    async def request(self, method: str, path: str, **kwargs) -> Tuple[int, str]:
        """Perform a request and return ``(status, body)``.

        Only GET is retried; network errors on the last attempt propagate.
        """
        url = self.url(path)
        kwargs["headers"] = self._merge_headers(kwargs.pop("headers", None))
        attempts = self._max_retries if method.upper() == "GET" else 1

        for attempt in range(1, attempts + 1):
            try:
                status, body = await self._send(method, url, **kwargs)
                if status not in RETRY_STATUS or attempt == attempts:
                    return status, body
                reason = f"status {status}"
            except aiohttp.ClientError as e:
                if attempt == attempts:
                    logger.error("HTTP %s %s failed after %d attempt(s): %s", method, url, attempt, e)
                    raise
                reason = str(e).splitlines()[0] if str(e) else type(e).__name__
            except asyncio.TimeoutError:
                if attempt == attempts:
                    logger.error("HTTP %s %s timed out after %d attempt(s)", method, url, attempt)
                    raise
                reason = "timeout"

            sleep_seconds = self._backoff(attempt)
            logger.warning(
                "HTTP %s %s failed (attempt %d/%d – will retry in %.1fs): %s",
                method,
                url,
                attempt,
                attempts,
                sleep_seconds,
                reason,
            )
            await asyncio.sleep(sleep_seconds)

        raise RuntimeError("Unreachable retry loop")

    # ---------------------------------------------- #
    # Public helpers
    async def get_json(self, path: str, **kwargs) -> Tuple[int, Any]:
        status, body = await self.request("GET", path, **kwargs)
        if not 200 <= status < 300:
            return status, None
        return status, json.loads(body) if body else None

    async def post_json(self, path: str, data: Any, **kwargs) -> Tuple[int, str]:
        kwargs["json"] = data
        return await self.request("POST", path, **kwargs)

    # ---------------------------------------------- #
    # Mutators
    def set_default_header(self, key: str, value: str) -> None:
        self._default_headers[key] = value

    def update_default_headers(self, headers: Mapping[str, str]) -> None:
        self._default_headers.update(headers)
