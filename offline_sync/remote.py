"""
Offline Sync Engine - Remote API Client

Async HTTP client for the resource API the engine reconciles against:

    GET    /api/{type}/{id}   current server copy (404 -> absent)
    POST   /api/{type}        create
    PUT    /api/{type}/{id}   update
    DELETE /api/{type}/{id}   delete

Response bodies are opaque JSON; only the last-modified marker is
interpreted, and that happens in the conflict module.
"""

import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

from .config import SyncSettings
from .errors import ClientError, NetworkError, ServerError

logger = logging.getLogger(__name__)


class RemoteClient:
    """Client for the remote resource API."""

    def __init__(
        self,
        settings: SyncSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self.settings.api_base_url,
                timeout=httpx.Timeout(self.settings.api_timeout),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def _resource_path(self, resource_type: str, record_id: Optional[str] = None) -> str:
        path = f"{self.settings.api_prefix}/{quote(resource_type, safe='')}"
        if record_id is not None:
            path += f"/{quote(str(record_id), safe='')}"
        return path

    async def _send(
        self,
        method: str,
        url: str,
        not_found_ok: bool = False,
        **kwargs,
    ) -> Optional[httpx.Response]:
        """Send one request and map failures onto the error taxonomy."""
        client = await self._get_http_client()

        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Timeout on {method} {url}: {e}") from e
        except httpx.RequestError as e:
            raise NetworkError(f"Network error on {method} {url}: {e}") from e

        if response.status_code == 404 and not_found_ok:
            return None
        if response.status_code >= 500:
            raise ServerError(
                f"HTTP {response.status_code} on {method} {url}", response.status_code
            )
        if response.status_code >= 400:
            raise ClientError(
                f"HTTP {response.status_code} on {method} {url}: {response.text}",
                response.status_code,
            )
        return response

    @staticmethod
    def _body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    # === Resource operations ===

    async def fetch(self, resource_type: str, record_id: str) -> Optional[Any]:
        """Get the server's current copy, or None if it does not exist."""
        response = await self._send(
            "GET", self._resource_path(resource_type, record_id), not_found_ok=True
        )
        return None if response is None else self._body(response)

    async def create(self, resource_type: str, payload: Any) -> Any:
        response = await self._send("POST", self._resource_path(resource_type), json=payload)
        return self._body(response)

    async def update(self, resource_type: str, record_id: str, payload: Any) -> Any:
        response = await self._send(
            "PUT", self._resource_path(resource_type, record_id), json=payload
        )
        return self._body(response)

    async def delete(self, resource_type: str, record_id: str) -> None:
        await self._send("DELETE", self._resource_path(resource_type, record_id))

    async def request(
        self,
        method: str,
        url: str,
        body: Any = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        """Arbitrary call for custom-action tasks (absolute or API-relative URL)."""
        kwargs: dict[str, Any] = {"headers": headers or {}}
        if body is not None:
            kwargs["json"] = body
        response = await self._send(method.upper(), url, **kwargs)
        return self._body(response)

    async def health_check(self) -> bool:
        """Check the API is actually reachable, not merely interface-up."""
        try:
            client = await self._get_http_client()
            response = await client.head(
                self.settings.health_path,
                timeout=self.settings.probe_timeout,
            )
            return response.is_success
        except httpx.HTTPError as e:
            logger.debug(f"Health check failed: {e}")
            return False
