"""
Zoom OAuth token provider

Obtains a server-to-server (account credentials) bearer token and caches it
until shortly before it expires. One instance is shared by the stream client,
the recordings API client and the event processor.
"""

from __future__ import annotations

import asyncio
import base64
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from reelsync.config import settings
from reelsync.errors import AuthError
from reelsync.utils.logging import get_logger

logger = get_logger(__name__, category="auth")

# A token is refreshed this many seconds before it actually expires
EXPIRY_MARGIN_SECONDS = 60


@dataclass(frozen=True)
class Credential:
    token: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at - EXPIRY_MARGIN_SECONDS


class ZoomTokenProvider:
    """Caches a Zoom access token and refreshes it on demand."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        account_id: Optional[str] = None,
        token_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.client_id = client_id or settings.zoom_client_id
        self.client_secret = client_secret or settings.zoom_client_secret
        self.account_id = account_id or settings.zoom_account_id
        self.token_url = token_url or settings.zoom_token_url
        self._clock = clock

        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.http_timeout_seconds, connect=10.0)
        )

        self._credential: Optional[Credential] = None
        # Serializes refreshes so concurrent callers share one token request
        self._refresh_lock = asyncio.Lock()

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    async def get_token(self) -> Credential:
        """Return a valid credential, refreshing it if needed.

        Raises:
            AuthError: the token endpoint is unreachable or returned no token
        """
        cached = self._credential
        if cached and cached.is_valid(self._clock()):
            logger.debug("Using cached Zoom access token")
            return cached

        async with self._refresh_lock:
            # Another caller may have refreshed while we waited for the lock
            cached = self._credential
            if cached and cached.is_valid(self._clock()):
                return cached
            self._credential = await self._request_token()
            return self._credential

    def invalidate(self) -> None:
        """Drop the cached token so the next call fetches a fresh one."""
        self._credential = None
        logger.info("Zoom access token invalidated")

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def _request_token(self) -> Credential:
        if not self.client_id or not self.client_secret or not self.account_id:
            raise AuthError(
                "Zoom credentials are not configured "
                "(ZOOM_CLIENT_ID, ZOOM_CLIENT_SECRET, ZOOM_ACCOUNT_ID)"
            )

        logger.info("Obtaining new Zoom access token")
        basic = base64.b64encode(
            f"{self.client_id}:{self.client_secret}".encode("utf-8")
        ).decode("ascii")

        try:
            response = await self.http_client.post(
                self.token_url,
                data={
                    "grant_type": "account_credentials",
                    "account_id": self.account_id,
                },
                headers={"Authorization": f"Basic {basic}"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Zoom token endpoint rejected the request: %s - %s",
                exc.response.status_code,
                exc.response.text[:200],
            )
            raise AuthError(
                f"Failed to obtain Zoom access token: HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Failed to obtain Zoom access token: %s", exc)
            raise AuthError(f"Failed to obtain Zoom access token: {exc}") from exc

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise AuthError("No access token returned from Zoom token endpoint")

        expires_in = float(data.get("expires_in") or 0)
        credential = Credential(token=token, expires_at=self._clock() + expires_in)
        logger.info(
            "Obtained Zoom access token (expires_in=%ss, token_type=%s)",
            int(expires_in),
            data.get("token_type"),
        )
        return credential
