"""Unit tests for the Zoom token provider."""
import asyncio
import base64
from urllib.parse import parse_qs

import httpx
import pytest

from reelsync.errors import AuthError
from reelsync.ingest.auth import Credential, ZoomTokenProvider


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_provider(handler, clock=None, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    options = dict(
        client_id="cid",
        client_secret="secret",
        account_id="acct",
        token_url="https://zoom.test/oauth/token",
        http_client=client,
        clock=clock or FakeClock(),
    )
    options.update(kwargs)
    return ZoomTokenProvider(**options)


@pytest.mark.unit
class TestCredential:
    def test_valid_until_safety_margin(self):
        credential = Credential(token="t", expires_at=1000.0)
        assert credential.is_valid(939.0)
        assert not credential.is_valid(940.0)
        assert not credential.is_valid(1000.0)


@pytest.mark.unit
@pytest.mark.asyncio
class TestZoomTokenProvider:
    """Test token acquisition, caching and refresh."""

    async def test_requests_token_with_basic_auth(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={"access_token": "abc", "expires_in": 3600})

        provider = make_provider(handler)
        credential = await provider.get_token()

        assert credential.token == "abc"
        assert credential.expires_at == 1000.0 + 3600
        expected = base64.b64encode(b"cid:secret").decode()
        assert seen["auth"] == f"Basic {expected}"
        assert seen["form"] == {"grant_type": ["account_credentials"], "account_id": ["acct"]}

    async def test_cached_token_reused(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"access_token": f"tok{len(calls)}", "expires_in": 3600})

        clock = FakeClock()
        provider = make_provider(handler, clock=clock)

        first = await provider.get_token()
        clock.now += 3000  # still more than 60s before expiry
        second = await provider.get_token()

        assert first.token == second.token == "tok1"
        assert len(calls) == 1

    async def test_refreshes_inside_safety_margin(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"access_token": f"tok{len(calls)}", "expires_in": 3600})

        clock = FakeClock()
        provider = make_provider(handler, clock=clock)

        await provider.get_token()
        clock.now += 3541  # 59s left
        refreshed = await provider.get_token()

        assert refreshed.token == "tok2"
        assert len(calls) == 2

    async def test_concurrent_callers_share_one_refresh(self):
        calls = []

        async def handler(request):
            calls.append(request)
            await asyncio.sleep(0.01)
            return httpx.Response(200, json={"access_token": "shared", "expires_in": 3600})

        provider = make_provider(handler)
        results = await asyncio.gather(*(provider.get_token() for _ in range(5)))

        assert {r.token for r in results} == {"shared"}
        assert len(calls) == 1

    async def test_http_error_raises_auth_error(self):
        provider = make_provider(lambda request: httpx.Response(401, json={"reason": "bad"}))
        with pytest.raises(AuthError, match="HTTP 401"):
            await provider.get_token()

    async def test_missing_token_raises_auth_error(self):
        provider = make_provider(lambda request: httpx.Response(200, json={"expires_in": 3600}))
        with pytest.raises(AuthError, match="No access token"):
            await provider.get_token()

    async def test_unreachable_endpoint_raises_auth_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = make_provider(handler)
        with pytest.raises(AuthError):
            await provider.get_token()

    async def test_missing_configuration_raises_auth_error(self):
        provider = make_provider(lambda request: httpx.Response(500))
        provider.client_secret = None
        with pytest.raises(AuthError, match="not configured"):
            await provider.get_token()

    async def test_invalidate_forces_refresh(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"access_token": f"tok{len(calls)}", "expires_in": 3600})

        provider = make_provider(handler)
        await provider.get_token()
        provider.invalidate()
        credential = await provider.get_token()

        assert credential.token == "tok2"
