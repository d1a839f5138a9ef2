"""
Tests for the Graph client, driven through httpx.MockTransport.
"""

import httpx
import pytest

from m365_toolkit.config import CollectionConfig
from m365_toolkit.graph.client import GraphAPIError, GraphClient
from m365_toolkit.safety.guardian import SafetyGuardian, SafetyViolation

BASE = "https://graph.microsoft.com/v1.0"


class Recorder:
    """MockTransport handler that answers from a route table and logs requests."""

    def __init__(self, routes):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, f"{request.url.scheme}://{request.url.host}{request.url.path}")
        handler = self.routes.get(key)
        if handler is None:
            return httpx.Response(404, json={"error": {"message": "Resource not found"}})
        return handler(request) if callable(handler) else handler


def _client(recorder, **kwargs):
    return GraphClient("token", transport=httpx.MockTransport(recorder), **kwargs)


class TestPagination:
    """@odata.nextLink handling and query options."""

    @pytest.mark.asyncio
    async def test_follows_next_link(self):
        next_link = f"{BASE}/users?$skiptoken=abc"
        recorder = Recorder({
            ("GET", f"{BASE}/users"): lambda r: (
                httpx.Response(200, json={"value": [{"id": "u2"}]})
                if "$skiptoken" in r.url.params
                else httpx.Response(200, json={"value": [{"id": "u1"}], "@odata.nextLink": next_link})
            ),
        })
        async with _client(recorder) as graph:
            users = await graph.get_all_pages("users", select=["id", "displayName"])

        assert [u["id"] for u in users] == ["u1", "u2"]
        first, second = recorder.requests
        assert first.url.params["$select"] == "id,displayName"
        assert first.url.params["$top"] == "999"
        # The continuation link already carries its query options
        assert second.url.params["$skiptoken"] == "abc"
        assert "$top" not in second.url.params

    @pytest.mark.asyncio
    async def test_skip_top(self):
        recorder = Recorder({("GET", f"{BASE}/roles"): httpx.Response(200, json={"value": []})})
        async with _client(recorder) as graph:
            await graph.get_all_pages("roles", skip_top=True)
        assert "$top" not in recorder.requests[0].url.params

    @pytest.mark.asyncio
    async def test_page_cap(self):
        loop = f"{BASE}/users?$skiptoken=again"
        recorder = Recorder({
            ("GET", f"{BASE}/users"): httpx.Response(200, json={"value": [{"id": "x"}], "@odata.nextLink": loop}),
        })
        async with _client(recorder, config=CollectionConfig(max_pages=3)) as graph:
            users = await graph.get_all_pages("users")
        assert len(users) == 3
        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_beta_url(self):
        url = "https://graph.microsoft.com/beta/security/identities/sensors"
        recorder = Recorder({("GET", url): httpx.Response(200, json={"value": [{"id": "s1"}]})})
        async with _client(recorder) as graph:
            sensors = await graph.get_all_pages("security/identities/sensors", beta=True, skip_top=True)
        assert sensors == [{"id": "s1"}]


class TestErrors:
    """Non-success responses raise without retrying."""

    @pytest.mark.asyncio
    async def test_forbidden(self):
        recorder = Recorder({
            ("GET", f"{BASE}/users"): httpx.Response(
                403, json={"error": {"code": "Authorization_RequestDenied", "message": "Insufficient privileges"}}
            ),
        })
        async with _client(recorder) as graph:
            with pytest.raises(GraphAPIError) as exc:
                await graph.get("users")

        assert exc.value.status_code == 403
        assert exc.value.message == "Insufficient privileges"
        assert graph.get_stats() == {"total_requests": 1, "failed_requests": 1}

    @pytest.mark.asyncio
    async def test_throttling_is_not_retried(self):
        recorder = Recorder({
            ("GET", f"{BASE}/users"): httpx.Response(429, headers={"Retry-After": "7"}, json={}),
        })
        async with _client(recorder) as graph:
            with pytest.raises(GraphAPIError) as exc:
                await graph.get_all_pages("users")

        assert exc.value.status_code == 429
        assert "Retry-After: 7s" in str(exc.value)
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(boom) as graph:
            with pytest.raises(GraphAPIError) as exc:
                await graph.get("users")
        assert exc.value.status_code == 0

    @pytest.mark.asyncio
    async def test_requires_context_manager(self):
        graph = _client(Recorder({}))
        with pytest.raises(RuntimeError):
            await graph.get("users")


class TestWrites:
    """The guardian runs before any request leaves the client."""

    @pytest.mark.asyncio
    async def test_read_only_client_sends_nothing(self):
        recorder = Recorder({})
        async with _client(recorder) as graph:
            with pytest.raises(SafetyViolation):
                await graph.post("applications/obj-1/removePassword", {"keyId": "k"})
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_allowed_write(self):
        url = f"{BASE}/applications/obj-1/removePassword"
        recorder = Recorder({("POST", url): httpx.Response(204)})
        guardian = SafetyGuardian(allow_writes=True)
        async with _client(recorder, guardian=guardian) as graph:
            assert await graph.post("applications/obj-1/removePassword", {"keyId": "k"}) == {}

        assert b'"keyId"' in recorder.requests[0].content
        assert len(guardian.mutations) == 1


class TestGetText:
    """Report downloads follow the redirect and drop a UTF-8 BOM."""

    @pytest.mark.asyncio
    async def test_redirect_and_bom(self):
        report = f"{BASE}/reports/getOffice365ActiveUserDetail(period='D7')"
        blob = "https://reports.blob.example/report.csv"
        recorder = Recorder({
            ("GET", report): httpx.Response(302, headers={"Location": blob}),
            ("GET", blob): httpx.Response(200, content=b"\xef\xbb\xbfUser,Active\r\na,Yes\r\n"),
        })
        async with _client(recorder) as graph:
            text = await graph.get_text("reports/getOffice365ActiveUserDetail(period='D7')")

        assert text.startswith("User,Active")
        assert len(recorder.requests) == 2
