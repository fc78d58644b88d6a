"""Expiring cache for third-party OAuth access tokens.

Fetchers that talk to APIs behind client-credentials OAuth (IGDB through
Twitch, for instance) take a :class:`TokenCache` as an explicit argument. The
cache lives as long as whoever constructed it, so each process or request
scope owns its own copy instead of sharing module-level state.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Awaitable, Callable

import httpx

from .contracts import CronkitError

UTC = timezone.utc
DEFAULT_REFRESH_MARGIN = timedelta(days=10)
# Used when the token endpoint omits expires_in.
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)
logger = logging.getLogger(__name__)


class TokenFetchError(CronkitError):
    """Raised when the token endpoint does not return a usable token."""


@dataclass(frozen=True, slots=True)
class CachedToken:
    value: str
    expires_at: datetime


class TokenCache:
    def __init__(
        self,
        fetcher: Callable[[], Awaitable[CachedToken]],
        *,
        refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
    ) -> None:
        self._fetcher = fetcher
        self.refresh_margin = refresh_margin
        self._token: CachedToken | None = None
        self._fetched_at: datetime | None = None
        self._lock = asyncio.Lock()

    async def get(self) -> str:
        """Return a valid token, fetching a new one when the cached one is stale."""

        token = self._token
        if token is not None and self._is_fresh(token):
            return token.value
        async with self._lock:
            # Another caller may have refreshed while we waited.
            token = self._token
            if token is not None and self._is_fresh(token):
                return token.value
            fetched_at = datetime.now(UTC)
            token = await self._fetcher()
            self._token = token
            self._fetched_at = fetched_at
            if not self._is_fresh(token):
                logger.warning(
                    "fetched access token is already inside its refresh window: expires_at=%s",
                    token.expires_at.isoformat(),
                )
            logger.info("access token refreshed: expires_at=%s", token.expires_at.isoformat())
            return token.value

    def invalidate(self) -> None:
        self._token = None
        self._fetched_at = None

    def _is_fresh(self, token: CachedToken) -> bool:
        return datetime.now(UTC) < token.expires_at - self._margin_for(token)

    def _margin_for(self, token: CachedToken) -> timedelta:
        # Never spend more than half of a token's lifetime in the refresh window.
        if self._fetched_at is None:
            return self.refresh_margin
        lifetime = max(token.expires_at - self._fetched_at, timedelta(0))
        return min(self.refresh_margin, lifetime / 2)


class ClientCredentialsFetcher:
    """Fetch tokens with the OAuth client-credentials grant using httpx."""

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        *,
        timeout: float = 30,
    ) -> None:
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"ClientCredentialsFetcher(token_url={self.token_url!r}, client_id={self.client_id!r})"

    async def __call__(self) -> CachedToken:
        params = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "client_credentials",
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(self.token_url, params=params)
        if resp.status_code >= 400:
            raise TokenFetchError(f"token endpoint returned {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise TokenFetchError("token endpoint returned a non-JSON body") from exc
        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            raise TokenFetchError("token response is missing access_token")
        expires_in = int(body.get("expires_in") or 0)
        lifetime = timedelta(seconds=expires_in) if expires_in > 0 else DEFAULT_TOKEN_LIFETIME
        return CachedToken(value=access_token, expires_at=datetime.now(UTC) + lifetime)
