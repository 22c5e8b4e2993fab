import json
import logging
from typing import Any, Dict, Optional

import httpx

from config import settings
from biblioteca.errors import RequestFailed, TransportError

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGE = "Error en la petición"


class ApiClient:
    """HTTP client for the library REST API with pooled connections.

    Maps every outcome onto the client error taxonomy: non-2xx responses
    become ``RequestFailed`` carrying the backend's ``message`` and
    transport problems become ``TransportError``.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = (base_url or settings.api_base_url).rstrip("/")

        limits = httpx.Limits(
            max_keepalive_connections=10,
            max_connections=20,
            keepalive_expiry=30.0
        )

        read_timeout = timeout or settings.api_timeout
        timeout_config = httpx.Timeout(
            timeout=read_timeout,
            connect=settings.api_connect_timeout,
        )

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            limits=limits,
            timeout=timeout_config,
            follow_redirects=True,
            headers={"Content-Type": "application/json"},
            transport=transport
        )

    async def request(self, method: str, endpoint: str, params: Optional[Dict[str, Any]] = None,
                      payload: Any = None) -> Any:
        """Send a JSON request and return the decoded body."""
        response = await self._send(method, endpoint, params=params, json=payload)
        data = self._decode(response)

        if not response.is_success:
            message = None
            if isinstance(data, dict):
                message = data.get("message")
            logger.error(f"API Error: {method} {endpoint} -> {response.status_code} {message or ''}".rstrip())
            raise RequestFailed(message or DEFAULT_ERROR_MESSAGE, status_code=response.status_code)

        return data

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("GET", endpoint, params=params)

    async def post(self, endpoint: str, payload: Any = None) -> Any:
        return await self.request("POST", endpoint, payload=payload)

    async def put(self, endpoint: str, payload: Any = None) -> Any:
        return await self.request("PUT", endpoint, payload=payload)

    async def delete(self, endpoint: str) -> Any:
        return await self.request("DELETE", endpoint)

    async def get_bytes(self, endpoint: str) -> bytes:
        """GET a binary resource (report downloads)."""
        response = await self._send("GET", endpoint)
        if not response.is_success:
            logger.error(f"API Error: GET {endpoint} -> {response.status_code}")
            raise RequestFailed(DEFAULT_ERROR_MESSAGE, status_code=response.status_code)
        return response.content

    async def _send(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, endpoint, **kwargs)
        except httpx.RequestError as e:
            logger.error(f"API unreachable: {method} {endpoint}: {e}")
            raise TransportError(str(e) or type(e).__name__) from e

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except json.JSONDecodeError:
            logger.debug(f"Non-JSON response body ({response.status_code})")
            return None

    async def close(self):
        """Close the HTTP client"""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
