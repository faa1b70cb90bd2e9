"""Tests for the Defender ATP client and its OAuth token source."""

import asyncio
import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import aiohttp
import pytest

from mdatp_watch.client import DefenderClient
from mdatp_watch.exceptions import (
    AlertAPIError,
    AlertSourceError,
    AlertTransportError,
    AuthError,
)
from mdatp_watch.models import AlertRequestParams
from mdatp_watch.oauth import ClientCredentialsToken


def _response(status: int = 200, body="") -> AsyncMock:
    resp = AsyncMock()
    resp.status = status
    text = body if isinstance(body, str) else json.dumps(body)
    resp.text = AsyncMock(return_value=text)
    return resp


class FakeSession:
    """Stands in for aiohttp.ClientSession; replays canned GET responses."""

    def __init__(self, responses=None, error: Exception | None = None) -> None:
        self.responses = list(responses or [])
        self.error = error
        self.requests: list[dict] = []
        self.closed = False

    @asynccontextmanager
    async def get(self, url, params=None, headers=None):
        self.requests.append({"url": url, "params": params, "headers": headers})
        if self.error is not None:
            raise self.error
        yield self.responses.pop(0)

    async def close(self):
        self.closed = True


def _client(session: FakeSession, **kwargs) -> DefenderClient:
    client = DefenderClient(**kwargs)
    client._session = session
    return client


class StaticToken(ClientCredentialsToken):
    def __init__(self, token: str = "tok-1") -> None:
        super().__init__("id", "secret", "tenant", "https://api.securitycenter.windows.com")
        self.token = token
        self.invalidated = 0

    async def get_token(self, session) -> str:
        return self.token

    def invalidate(self) -> None:
        self.invalidated += 1


class TestUrls:
    def test_default_url(self):
        client = DefenderClient()
        assert client.url("alerts") == "https://api.securitycenter.windows.com/api/v1.0/alerts"

    def test_custom_base_and_version(self):
        client = DefenderClient(base_url="https://example.test/", version="beta")
        assert client.url("/alerts") == "https://example.test/api/beta/alerts"


class TestListAlerts:
    @pytest.mark.asyncio
    async def test_sends_filter_and_parses_alerts(self):
        session = FakeSession([
            _response(200, {
                "@odata.context": "https://api.securitycenter.windows.com/api/$metadata#Alerts",
                "value": [
                    {"id": "da1", "title": "Suspicious PowerShell", "severity": "High"},
                    {"id": "da2", "title": "Malware detected", "rbacGroupName": "Servers"},
                ],
            })
        ])
        client = _client(session)

        alerts = await client.list_alerts("alertCreationTime gt 2024-03-10T11:00:00Z")

        assert [a.id for a in alerts] == ["da1", "da2"]
        assert alerts[0].severity == "High"
        # Unknown fields survive
        assert alerts[1].to_json_dict()["rbacGroupName"] == "Servers"
        request = session.requests[0]
        assert request["url"].endswith("/api/v1.0/alerts")
        assert request["params"] == {"$filter": "alertCreationTime gt 2024-03-10T11:00:00Z"}

    @pytest.mark.asyncio
    async def test_no_filter_sends_no_params(self):
        session = FakeSession([_response(200, {"value": []})])
        client = _client(session)
        assert await client.list_alerts() == []
        assert session.requests[0]["params"] is None

    @pytest.mark.asyncio
    async def test_follows_next_link(self):
        next_url = "https://api.securitycenter.windows.com/api/v1.0/alerts?$skiptoken=abc"
        session = FakeSession([
            _response(200, {"value": [{"id": "da1"}], "@odata.nextLink": next_url}),
            _response(200, {"value": [{"id": "da2"}]}),
        ])
        client = _client(session)

        alerts = await client.list_alerts("x")

        assert [a.id for a in alerts] == ["da1", "da2"]
        assert session.requests[1]["url"] == next_url
        assert session.requests[1]["params"] is None

    @pytest.mark.asyncio
    async def test_bearer_token_and_user_agent(self):
        session = FakeSession([_response(200, {"value": []})])
        client = _client(session, token_provider=StaticToken("tok-xyz"), user_agent="ua/1")
        await client.list_alerts("x")
        headers = session.requests[0]["headers"]
        assert headers["Authorization"] == "Bearer tok-xyz"
        assert headers["User-Agent"] == "ua/1"

    @pytest.mark.asyncio
    async def test_no_token_provider_no_auth_header(self):
        session = FakeSession([_response(200, {"value": []})])
        client = _client(session)
        await client.list_alerts("x")
        assert "Authorization" not in session.requests[0]["headers"]


class TestErrors:
    @pytest.mark.asyncio
    async def test_structured_api_error(self):
        body = {
            "error": {
                "code": "InvalidRequestBody",
                "message": "Request body is incorrect",
                "target": "43f4cb08-8fac-4b65-9db1-745c2ae65f3a",
            }
        }
        client = _client(FakeSession([_response(400, body)]))
        with pytest.raises(AlertAPIError) as exc_info:
            await client.list_alerts("x")
        err = exc_info.value
        assert err.status == 400
        assert err.code == "InvalidRequestBody"
        assert err.target == "43f4cb08-8fac-4b65-9db1-745c2ae65f3a"
        assert err.to_dict() == body

    @pytest.mark.asyncio
    async def test_unstructured_error_body(self):
        client = _client(FakeSession([_response(502, "<html>Bad Gateway</html>")]))
        with pytest.raises(AlertAPIError) as exc_info:
            await client.list_alerts("x")
        assert exc_info.value.status == 502
        assert exc_info.value.code == ""
        assert "Bad Gateway" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_unauthorized_invalidates_token(self):
        token = StaticToken()
        client = _client(FakeSession([_response(401, "")]), token_provider=token)
        with pytest.raises(AlertAPIError):
            await client.list_alerts("x")
        assert token.invalidated == 1

    @pytest.mark.asyncio
    async def test_connection_error(self):
        session = FakeSession(error=aiohttp.ClientConnectionError("refused"))
        client = _client(session)
        with pytest.raises(AlertTransportError, match="refused"):
            await client.list_alerts("x")

    @pytest.mark.asyncio
    async def test_timeout(self):
        client = _client(FakeSession(error=asyncio.TimeoutError()))
        with pytest.raises(AlertTransportError, match="timed out"):
            await client.list_alerts("x")

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        client = _client(FakeSession([_response(200, "{not json")]))
        with pytest.raises(AlertTransportError, match="invalid JSON"):
            await client.list_alerts("x")

    @pytest.mark.asyncio
    async def test_unexpected_shape(self):
        client = _client(FakeSession([_response(200, {"value": "nope"})]))
        with pytest.raises(AlertSourceError, match="unexpected alerts response"):
            await client.list_alerts("x")


class TestFetchAlerts:
    @pytest.mark.asyncio
    async def test_sends_query_params(self):
        session = FakeSession([_response(200, {"value": [{"id": "da1"}]})])
        client = _client(session)
        params = AlertRequestParams(ago="PT12H", limit=10, machine_groups=["a", "b"])

        alerts = await client.fetch_alerts(params)

        assert [a.id for a in alerts] == ["da1"]
        assert session.requests[0]["params"] == [
            ("ago", "PT12H"),
            ("limit", "10"),
            ("machinegroups", "a"),
            ("machinegroups", "b"),
        ]


class TestClose:
    @pytest.mark.asyncio
    async def test_close_releases_session(self):
        session = FakeSession()
        client = _client(session)
        await client.close()
        assert session.closed is True
        assert client._session is None

    @pytest.mark.asyncio
    async def test_close_without_session(self):
        client = DefenderClient()
        await client.close()


# ── OAuth ───────────────────────────────────────────────────


class TokenSession:
    def __init__(self, bodies, status: int = 200, error: Exception | None = None) -> None:
        self.bodies = list(bodies)
        self.status = status
        self.error = error
        self.posts: list[dict] = []

    @asynccontextmanager
    async def post(self, url, data=None):
        self.posts.append({"url": url, "data": data})
        if self.error is not None:
            raise self.error
        resp = AsyncMock()
        resp.status = self.status
        resp.json = AsyncMock(return_value=self.bodies.pop(0))
        yield resp


def _tokens() -> ClientCredentialsToken:
    return ClientCredentialsToken(
        "client-id", "s3cret", "tenant-1", "https://api.securitycenter.windows.com"
    )


class TestClientCredentialsToken:
    @pytest.mark.asyncio
    async def test_requests_token_with_client_credentials(self):
        session = TokenSession([{"access_token": "abc", "expires_in": "3599"}])
        token = await _tokens().get_token(session)

        assert token == "abc"
        post = session.posts[0]
        assert post["url"] == "https://login.microsoftonline.com/tenant-1/oauth2/token"
        assert post["data"]["grant_type"] == "client_credentials"
        assert post["data"]["client_id"] == "client-id"
        assert post["data"]["resource"] == "https://api.securitycenter.windows.com"

    @pytest.mark.asyncio
    async def test_token_is_cached(self):
        session = TokenSession([{"access_token": "abc", "expires_in": 3600}])
        tokens = _tokens()
        assert await tokens.get_token(session) == "abc"
        assert await tokens.get_token(session) == "abc"
        assert len(session.posts) == 1

    @pytest.mark.asyncio
    async def test_invalidate_forces_refresh(self):
        session = TokenSession([
            {"access_token": "abc", "expires_in": 3600},
            {"access_token": "def", "expires_in": 3600},
        ])
        tokens = _tokens()
        await tokens.get_token(session)
        tokens.invalidate()
        assert await tokens.get_token(session) == "def"

    @pytest.mark.asyncio
    async def test_rejected_request(self):
        session = TokenSession(
            [{"error": "invalid_client", "error_description": "AADSTS7000215: Invalid secret"}],
            status=401,
        )
        with pytest.raises(AuthError, match="AADSTS7000215"):
            await _tokens().get_token(session)

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        session = TokenSession([], error=aiohttp.ClientConnectionError("no route"))
        with pytest.raises(AuthError, match="no route"):
            await _tokens().get_token(session)

    def test_custom_token_url(self):
        tokens = ClientCredentialsToken("a", "b", "t", "r", token_url="https://login.test/token")
        assert tokens._token_url == "https://login.test/token"
