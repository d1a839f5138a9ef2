"""
Async Graph API client with pagination, write-guard enforcement and
report downloads. Requests are issued one at a time and never retried:
a failure surfaces as GraphAPIError and the caller decides what to do.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncGenerator, Optional

import httpx

from ..config import (
    GRAPH_BASE_URL,
    GRAPH_API_VERSION,
    GRAPH_BETA_VERSION,
    CONNECT_TIMEOUT_SECONDS,
    CollectionConfig,
    ToolkitError,
)
from ..safety.guardian import SafetyGuardian

logger = logging.getLogger("m365_toolkit.graph")


class GraphAPIError(ToolkitError):
    """Raised when Graph API returns a non-success status."""
    def __init__(self, status_code: int, message: str, url: str):
        self.status_code = status_code
        self.url = url
        self.message = message
        super().__init__(f"Graph API Error {status_code} for {url}: {message}")


class GraphClient:
    """
    Async Microsoft Graph API client.
    Features:
      - Guardian-validated requests (reads always, writes only when allowed)
      - Automatic pagination with @odata.nextLink
      - $select narrowing per request
      - v1.0 and beta endpoint support
      - Redirect-following text downloads for CSV usage reports
    """

    def __init__(
        self,
        access_token: str,
        guardian: Optional[SafetyGuardian] = None,
        config: Optional[CollectionConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.guardian = guardian or SafetyGuardian()
        self.config = config or CollectionConfig()
        self._transport = transport
        self._request_count = 0
        self._error_count = 0
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.timeout_seconds, connect=CONNECT_TIMEOUT_SECONDS),
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Accept": "application/json",
                "ConsistencyLevel": "eventual",  # Required for $count, $search
            },
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _build_url(self, endpoint: str, beta: bool = False) -> str:
        """Build full Graph URL from relative endpoint."""
        if endpoint.startswith("http"):
            return endpoint
        version = GRAPH_BETA_VERSION if beta else GRAPH_API_VERSION
        endpoint = endpoint.lstrip("/")
        return f"{GRAPH_BASE_URL}/{version}/{endpoint}"

    async def get(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
    ) -> dict:
        """Execute a single GET request and return the decoded JSON body."""
        url = self._build_url(endpoint, beta=beta)
        self.guardian.validate_request("GET", url)
        response = await self._execute("GET", url, params=params)
        return _json_body(response, url)

    async def get_all_pages(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        select: Optional[list[str]] = None,
        skip_top: bool = False,
    ) -> list[dict]:
        """
        Fetch all pages of a paginated endpoint into a list.
        Set skip_top=True for endpoints that don't support $top.
        """
        items = []
        async for item in self.get_all_pages_stream(
            endpoint, params, beta, select=select, skip_top=skip_top
        ):
            items.append(item)
        return items

    async def get_all_pages_stream(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        select: Optional[list[str]] = None,
        skip_top: bool = False,
    ) -> AsyncGenerator[dict, None]:
        """
        Stream all pages of a paginated endpoint as an async generator.
        Follows @odata.nextLink until exhausted or the page cap is hit.
        """
        params = dict(params or {})
        if select and "$select" not in params:
            params["$select"] = ",".join(select)
        if not skip_top and "$top" not in params:
            params["$top"] = str(self.config.page_size)

        url: Optional[str] = self._build_url(endpoint, beta=beta)
        request_params: Optional[dict] = params
        pages = 0

        while url and pages < self.config.max_pages:
            self.guardian.validate_request("GET", url)
            response = await self._execute("GET", url, params=request_params)
            data = _json_body(response, url)

            for item in data.get("value", []):
                yield item

            # nextLink already carries every query option
            url = data.get("@odata.nextLink")
            request_params = None
            pages += 1

        if url:
            logger.warning(
                f"Pagination safety cap reached ({self.config.max_pages} pages) "
                f"for endpoint: {endpoint}"
            )

    async def get_text(self, endpoint: str, beta: bool = False) -> str:
        """
        Download a text payload (usage report CSV).
        Graph answers with a 302 to a pre-authenticated blob URL.
        """
        url = self._build_url(endpoint, beta=beta)
        self.guardian.validate_request("GET", url)
        response = await self._execute("GET", url, follow_redirects=True)
        return response.content.decode("utf-8-sig")

    async def post(self, endpoint: str, json_body: dict, beta: bool = False) -> dict:
        """POST a JSON body. Only allow-listed endpoints pass the guardian."""
        url = self._build_url(endpoint, beta=beta)
        self.guardian.validate_request("POST", url, json_body)
        response = await self._execute("POST", url, json_body=json_body)
        return _json_body(response, url)

    async def patch(self, endpoint: str, json_body: dict, beta: bool = False) -> dict:
        """PATCH a JSON body. Only allow-listed endpoints pass the guardian."""
        url = self._build_url(endpoint, beta=beta)
        self.guardian.validate_request("PATCH", url, json_body)
        response = await self._execute("PATCH", url, json_body=json_body)
        return _json_body(response, url)

    async def _execute(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
        follow_redirects: bool = False,
    ) -> httpx.Response:
        """Execute one HTTP request; raise GraphAPIError on any failure."""
        if not self._client:
            raise RuntimeError("GraphClient not initialized. Use 'async with' context.")

        self._request_count += 1
        try:
            response = await self._client.request(
                method,
                url,
                params=params,
                json=json_body,
                follow_redirects=follow_redirects,
            )
        except httpx.TimeoutException:
            self._error_count += 1
            raise GraphAPIError(0, "Request timed out", url)
        except httpx.TransportError as e:
            self._error_count += 1
            raise GraphAPIError(0, f"Transport error: {e}", url)

        if response.is_success:
            return response

        self._error_count += 1
        message = _error_message(response)
        if response.status_code in (429, 503, 504):
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                message = f"{message} (Retry-After: {retry_after}s)"
            logger.warning(f"Throttled ({response.status_code}) on {url}")
        elif response.status_code == 404:
            logger.debug(f"404 Not Found: {url}")
        raise GraphAPIError(response.status_code, message, url)

    def get_stats(self) -> dict:
        """Return client statistics."""
        return {
            "total_requests": self._request_count,
            "failed_requests": self._error_count,
        }


def _json_body(response: httpx.Response, url: str) -> dict[str, Any]:
    if response.status_code == 204 or not response.content.strip():
        return {}
    try:
        return response.json()
    except ValueError:
        logger.debug(f"{response.status_code} response with non-JSON body from {url}")
        return {}


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    return response.reason_phrase
