"""Async Codeforces API client using httpx.

Endpoints:
- GET /user.info?handles=<handle>
- GET /user.rating?handle=<handle>
- GET /user.status?handle=<handle>[&from=N&count=M]
- GET /contest.list[?gym=true|false]

Every call is preceded by a fixed delay to stay under the public API's
rate limit. Responses use the ``{"status", "result", "comment"}`` envelope.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from cftracker.config import CodeforcesConfig
from cftracker.sync.differ import (
    RemoteContest,
    RemoteRatingChange,
    RemoteSubmission,
    RemoteUser,
)

log = structlog.get_logger(__name__)

_RETRYABLE_STATUS = (429, 502, 503, 504)


class CodeforcesAPIError(Exception):
    """Raised for any failed Codeforces API call."""


class CodeforcesNotFoundError(CodeforcesAPIError):
    """Raised when the requested handle (or its data) does not exist."""


class CodeforcesUnavailableError(CodeforcesAPIError):
    """Raised when the API stays unreachable or overloaded after retries."""


class CodeforcesClient:
    """Rate-limited async client for the public Codeforces API."""

    def __init__(
        self,
        config: CodeforcesConfig,
        *,
        api_delay_ms: int = 200,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._delay = api_delay_ms / 1000
        self._transport = _transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> CodeforcesClient:
        kw: dict = {
            "base_url": self._config.base_url.rstrip("/") + "/",
            "timeout": float(self._config.timeout_seconds),
            "headers": {
                "User-Agent": self._config.user_agent,
                "Accept": "application/json",
            },
        }
        if self._transport is not None:
            kw["transport"] = self._transport
        self._client = httpx.AsyncClient(**kw)
        return self

    async def __aexit__(self, *exc: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # -- request helper --

    async def _request(self, method: str, params: dict | None = None) -> Any:
        assert self._client is not None  # noqa: S101

        attempts = self._config.max_retries
        for attempt in range(attempts):
            await asyncio.sleep(self._delay)
            log.debug("codeforces_request", method=method, params=params, attempt=attempt)

            try:
                resp = await self._client.get(method, params=params)
            except httpx.TimeoutException as exc:
                if attempt >= attempts - 1:
                    raise CodeforcesUnavailableError(
                        "Request timeout - Codeforces API is slow to respond"
                    ) from exc
                await self._backoff(method, attempt, error=str(exc) or "timeout")
                continue
            except httpx.TransportError as exc:
                if attempt >= attempts - 1:
                    raise CodeforcesUnavailableError(
                        f"Cannot connect to Codeforces API: {exc}"
                    ) from exc
                await self._backoff(method, attempt, error=str(exc))
                continue

            if resp.status_code in _RETRYABLE_STATUS:
                if attempt >= attempts - 1:
                    raise CodeforcesUnavailableError(
                        f"Codeforces API is temporarily unavailable ({resp.status_code})"
                    )
                await self._backoff(method, attempt, status=resp.status_code)
                continue

            return self._unwrap(method, resp)

        raise CodeforcesUnavailableError(f"Max retries ({attempts}) exceeded")

    async def _backoff(self, method: str, attempt: int, **context: object) -> None:
        wait = 2**attempt
        log.warning("codeforces_retry", method=method, retry_in=wait, attempt=attempt, **context)
        await asyncio.sleep(wait)

    @staticmethod
    def _unwrap(method: str, resp: httpx.Response) -> Any:
        try:
            body = resp.json()
        except ValueError:
            if resp.status_code == 400:
                raise CodeforcesAPIError("Invalid request parameters") from None
            raise CodeforcesAPIError(
                f"Unexpected response from {method}: HTTP {resp.status_code}"
            ) from None

        if not isinstance(body, dict):
            raise CodeforcesAPIError(f"Unexpected response from {method}")

        if body.get("status") == "OK":
            return body.get("result")

        comment = body.get("comment") or (
            "Invalid request parameters" if resp.status_code == 400 else "Unknown error"
        )
        log.info("codeforces_failed", method=method, status=resp.status_code, comment=comment)
        if "not found" in comment.lower():
            raise CodeforcesNotFoundError(comment)
        raise CodeforcesAPIError(f"Codeforces API error: {comment}")

    # -- public API --

    async def get_user_info(self, handle: str) -> RemoteUser:
        """Fetch the profile of *handle*."""
        users = await self._request("user.info", {"handles": handle})
        if not users:
            raise CodeforcesNotFoundError(f"User '{handle}' not found")
        user = RemoteUser.from_api(users[0])
        log.debug("codeforces_user", handle=handle, rating=user.rating)
        return user

    async def get_rating_history(self, handle: str) -> list[RemoteRatingChange]:
        """Fetch the rated-contest history of *handle*; unrated users get ``[]``."""
        try:
            changes = await self._request("user.rating", {"handle": handle})
        except CodeforcesNotFoundError:
            log.info("codeforces_no_rating_history", handle=handle)
            return []
        return [RemoteRatingChange.from_api(c) for c in changes or []]

    async def get_submissions(
        self,
        handle: str,
        *,
        start: int | None = None,
        count: int | None = None,
    ) -> list[RemoteSubmission]:
        """Fetch submissions of *handle*, newest first.

        ``start`` is 1-based, mirroring the API's ``from`` parameter.
        """
        params: dict = {"handle": handle}
        if start is not None:
            params["from"] = start
        if count is not None:
            params["count"] = count
        try:
            subs = await self._request("user.status", params)
        except CodeforcesNotFoundError:
            log.info("codeforces_no_submissions", handle=handle)
            return []
        return [RemoteSubmission.from_api(s) for s in subs or []]

    async def get_contests(self, *, gym: bool = False) -> list[RemoteContest]:
        contests = await self._request("contest.list", {"gym": "true" if gym else "false"})
        return [RemoteContest.from_api(c) for c in contests or []]

    async def validate_handle(self, handle: str) -> bool:
        """Return True if *handle* exists on Codeforces."""
        try:
            await self.get_user_info(handle)
        except CodeforcesNotFoundError:
            return False
        return True
