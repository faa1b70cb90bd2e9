"""Microsoft Defender ATP alert client.

Implements the AlertSource interface the watcher queries, plus the
one-shot fetch endpoint used by the ``fetch`` command.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp
from pydantic import ValidationError

from .exceptions import AlertAPIError, AlertSourceError, AlertTransportError
from .models import Alert, AlertPage, AlertRequestParams
from .oauth import ClientCredentialsToken
from .watch.source import AlertSource

logger = logging.getLogger("mdatp-watch")

DEFAULT_BASE_URL = "https://api.securitycenter.windows.com"
DEFAULT_VERSION = "v1.0"
DEFAULT_USER_AGENT = "mdatp-watch"
DEFAULT_TIMEOUT = 30.0

ALERTS_ENDPOINT = "alerts"

# Guards against a server handing out nextLinks forever
_MAX_PAGES = 1000


def _api_error(status: int, body: str) -> AlertAPIError:
    """Build an AlertAPIError from an error response body."""
    try:
        data = json.loads(body)
    except ValueError:
        return AlertAPIError(status, message=body.strip()[:300])
    err = data.get("error") if isinstance(data, dict) else None
    if not isinstance(err, dict):
        return AlertAPIError(status, message=body.strip()[:300])
    return AlertAPIError(
        status,
        code=str(err.get("code") or ""),
        message=str(err.get("message") or ""),
        target=str(err.get("target") or ""),
    )


class DefenderClient(AlertSource):
    """Async client for the Defender ATP alerts API."""

    def __init__(
        self,
        token_provider: ClientCredentialsToken | None = None,
        base_url: str = DEFAULT_BASE_URL,
        version: str = DEFAULT_VERSION,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self._token_provider = token_provider
        self._base_url = base_url.rstrip("/")
        self._version = version
        self._timeout = timeout
        self._user_agent = user_agent
        self._session: aiohttp.ClientSession | None = None

    @property
    def version(self) -> str:
        return self._version

    @property
    def base_url(self) -> str:
        return self._base_url

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    def url(self, path: str) -> str:
        return f"{self._base_url}/api/{self._version}/{path.lstrip('/')}"

    async def _headers(self, session: aiohttp.ClientSession) -> dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": self._user_agent}
        if self._token_provider is not None:
            token = await self._token_provider.get_token(session)
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _get_json(self, url: str, params: Any = None) -> Any:
        session = self._get_session()
        headers = await self._headers(session)
        try:
            async with session.get(url, params=params, headers=headers) as resp:
                body = await resp.text()
                status = resp.status
        except aiohttp.ClientError as e:
            raise AlertTransportError(f"request to {url} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise AlertTransportError(f"request to {url} timed out") from e

        if not 200 <= status <= 299:
            if status == 401 and self._token_provider is not None:
                self._token_provider.invalidate()
            raise _api_error(status, body)
        try:
            return json.loads(body) if body else {}
        except ValueError as e:
            raise AlertTransportError(f"invalid JSON from {url}: {e}") from e

    def _parse_page(self, data: Any) -> AlertPage:
        try:
            return AlertPage.model_validate(data)
        except ValidationError as e:
            raise AlertSourceError(f"unexpected alerts response: {e}") from e

    async def list_alerts(self, filter_expression: str = "") -> list[Alert]:
        """List alerts matching an OData ``$filter``, following nextLink pages."""
        url = self.url(ALERTS_ENDPOINT)
        params: dict[str, str] | None = (
            {"$filter": filter_expression} if filter_expression else None
        )
        alerts: list[Alert] = []
        for _ in range(_MAX_PAGES):
            page = self._parse_page(await self._get_json(url, params))
            alerts.extend(page.value)
            if not page.next_link:
                return alerts
            logger.debug(f"Following nextLink after {len(alerts)} alerts")
            # nextLink already carries the query string
            url, params = page.next_link, None
        raise AlertSourceError(f"gave up after {_MAX_PAGES} result pages")

    async def fetch_alerts(self, params: AlertRequestParams) -> list[Alert]:
        """Fetch alerts using the since/until/ago style parameters."""
        query = params.to_query()
        page = self._parse_page(await self._get_json(self.url(ALERTS_ENDPOINT), query))
        return list(page.value)

    async def close(self) -> None:
        """Close the aiohttp session."""
        if self._session:
            await self._session.close()
            self._session = None
