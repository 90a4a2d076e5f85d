"""HTTP client for the platform backend.

Handlers never hold live entities: they re-fetch by id through this client
when they run. Tenant and trace headers come from the bound task scope.
"""

import logging
from typing import Any, Optional

import httpx

from alumni_worker.config import Settings, get_settings
from alumni_worker.queue.batch import FetchPage
from alumni_worker.queue.context import current_tenant, current_trace
from alumni_worker.queue.errors import BackendError

logger = logging.getLogger(__name__)


class BackendClient:
    """Thin async wrapper around the backend's REST API."""

    def __init__(self, settings: Optional[Settings] = None, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._settings = settings or get_settings()
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    async def _client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self._settings.backend_url,
                timeout=httpx.Timeout(self._settings.backend_timeout_seconds, connect=10.0),
                transport=self._transport,
            )
        return self._http

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._settings.service_token:
            headers["Authorization"] = f"Bearer {self._settings.service_token}"
        tenant_id = current_tenant.get()
        if tenant_id:
            headers["X-Tenant-ID"] = str(tenant_id)
        trace_id = current_trace.get()
        if trace_id:
            headers["X-Trace-ID"] = trace_id
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        client = await self._client()
        try:
            return await client.request(method, path, headers=self._headers(), **kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            raise BackendError(f"{method} {path} failed: {e}", request_sent=False) from e
        except httpx.HTTPError as e:
            raise BackendError(f"{method} {path} failed: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        return response.json()

    def _raise_for(self, method: str, path: str, response: httpx.Response) -> None:
        raise BackendError(
            f"Backend returned {response.status_code} for {method} {path}: {response.text[:500]}",
            status_code=response.status_code,
        )

    async def get_entity(self, path: str) -> Optional[dict]:
        """Fetch one entity; None if it no longer exists."""
        response = await self._request("GET", path)
        if response.status_code == 404:
            return None
        if not response.is_success:
            self._raise_for("GET", path, response)
        body = self._json(response)
        return body.get("data", body) if isinstance(body, dict) else body

    async def get_page(self, path: str, offset: int, limit: int, params: Optional[dict] = None) -> list:
        """Fetch one page of a collection endpoint."""
        return await self._get_list(path, {**(params or {}), "offset": offset, "limit": limit})

    async def _get_list(self, path: str, query: dict) -> list:
        response = await self._request("GET", path, params=query)
        if not response.is_success:
            self._raise_for("GET", path, response)
        body = self._json(response)
        if isinstance(body, dict):
            return list(body.get("data", []))
        return list(body)

    def page_fetcher(self, path: str, params: Optional[dict] = None) -> FetchPage:
        """Bind a collection endpoint as a ``fetch_page(offset, limit)`` callable."""

        async def fetch_page(offset: int, limit: int) -> list:
            return await self.get_page(path, offset, limit, params)

        return fetch_page

    def keyset_fetcher(self, path: str, params: Optional[dict] = None, *, start_after: Any = None,
                       key: str = "id") -> "KeysetPager":
        """Bind a collection endpoint that pages by ``after_id`` instead of offset."""
        return KeysetPager(self, path, params, start_after=start_after, key=key)

    async def post(self, path: str, payload: dict) -> dict:
        response = await self._request("POST", path, json=payload)
        if not response.is_success:
            self._raise_for("POST", path, response)
        return self._json(response)

    async def patch(self, path: str, payload: dict) -> dict:
        response = await self._request("PATCH", path, json=payload)
        if not response.is_success:
            self._raise_for("PATCH", path, response)
        return self._json(response)

    async def health(self) -> bool:
        try:
            response = await self._request("GET", "/api/health")
        except BackendError:
            return False
        return response.status_code == 200


class KeysetPager:
    """
    ``fetch_page(offset, limit)`` over an endpoint ordered by ``key``.

    Offset paging skips items when processing removes them from the filtered
    set (a charged donation is no longer due). Each page here is requested
    with ``after_id`` set to the last key of the page before it, so the
    offset handed in by the batch iterator only counts items already seen.
    """

    def __init__(self, backend: BackendClient, path: str, params: Optional[dict] = None, *,
                 start_after: Any = None, key: str = "id"):
        self.backend = backend
        self.path = path
        self.params = params or {}
        self.key = key
        self._after: dict[int, Any] = {0: start_after}

    @property
    def position(self) -> Any:
        """Key of the last item fetched; pass as ``start_after`` to resume."""
        return self._after[max(self._after)]

    async def __call__(self, offset: int, limit: int) -> list:
        after = self._after.get(offset, self.position)
        query = {**self.params, "limit": limit}
        if after is not None:
            query["after_id"] = after
        page = await self.backend._get_list(self.path, query)
        if page:
            self._after[offset + len(page[:limit])] = page[:limit][-1][self.key]
        return page
