"""OAuth2 client-credentials token source for the Defender ATP API."""

from __future__ import annotations

import asyncio
import logging
import time

import aiohttp

from .exceptions import AuthError

logger = logging.getLogger("mdatp-watch")

TOKEN_URL = "https://login.microsoftonline.com/{tenant_id}/oauth2/token"

# Refresh this long before the token actually expires
_EXPIRY_MARGIN_SECONDS = 60.0


class ClientCredentialsToken:
    """Fetches and caches an app-only access token.

    Usage:
        tokens = ClientCredentialsToken(client_id, secret, tenant_id, resource)
        token = await tokens.get_token(session)
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        tenant_id: str,
        resource: str,
        token_url: str = "",
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._resource = resource
        self._token_url = token_url or TOKEN_URL.format(tenant_id=tenant_id)
        self._token = ""
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    def invalidate(self) -> None:
        self._token = ""
        self._expires_at = 0.0

    async def get_token(self, session: aiohttp.ClientSession) -> str:
        async with self._lock:
            if self._token and time.monotonic() < self._expires_at:
                return self._token
            await self._refresh(session)
            return self._token

    async def _refresh(self, session: aiohttp.ClientSession) -> None:
        form = {
            "grant_type": "client_credentials",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "resource": self._resource,
        }
        try:
            async with session.post(self._token_url, data=form) as resp:
                body = await resp.json(content_type=None)
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise AuthError(f"token request failed: {e}") from e

        if status >= 400 or not isinstance(body, dict) or "access_token" not in body:
            detail = ""
            if isinstance(body, dict):
                detail = body.get("error_description") or body.get("error") or ""
            raise AuthError(f"token request rejected (HTTP {status}): {detail}".strip())

        try:
            expires_in = float(body.get("expires_in", 3600))
        except (TypeError, ValueError):
            expires_in = 3600.0
        self._token = body["access_token"]
        self._expires_at = time.monotonic() + max(0.0, expires_in - _EXPIRY_MARGIN_SECONDS)
        logger.debug(f"Access token refreshed, valid for {expires_in:.0f}s")
