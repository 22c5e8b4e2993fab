"""Thin request/response wrappers, one per REST resource."""

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from biblioteca.services.http_client import ApiClient

logger = logging.getLogger(__name__)

# A list endpoint answers either with a bare array or with an object that
# holds the array under the resource name, e.g. {"libros": [...]}.
ListResponse = Union[List[Dict[str, Any]], Mapping[str, Any], None]


def normalize_list(data: ListResponse, field: str) -> List[Dict[str, Any]]:
    """Unwrap a list response into a plain list; malformed data reads as empty."""
    if isinstance(data, list):
        return data
    if isinstance(data, Mapping):
        items = data.get(field)
        if isinstance(items, list):
            return items
    if data is not None:
        logger.warning(f"Unexpected list response for '{field}': {type(data).__name__}")
    return []


def unwrap_record(data: Any, field: str) -> Any:
    """Return the record itself when the API wraps it, e.g. {"prestamo": {...}}."""
    if isinstance(data, Mapping) and isinstance(data.get(field), Mapping):
        return data[field]
    return data


def _clean_params(params: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not params:
        return None
    return {k: v for k, v in params.items() if v is not None and v != ""}


class ResourceGateway:
    """list/get/create/update/delete over one ``/api/<resource>`` collection."""

    def __init__(self, client: ApiClient, resource: str, record_field: Optional[str] = None):
        self.client = client
        self.resource = resource
        # Singular key used when the backend wraps a single record
        self.record_field = record_field

    @property
    def path(self) -> str:
        return f"/{self.resource}"

    async def list(self, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        data = await self.client.get(self.path, params=_clean_params(params))
        return normalize_list(data, self.resource)

    async def get(self, item_id: str) -> Any:
        data = await self.client.get(f"{self.path}/{item_id}")
        return self._unwrap(data)

    async def create(self, payload: Dict[str, Any]) -> Any:
        data = await self.client.post(self.path, payload)
        return self._unwrap(data)

    async def update(self, item_id: str, payload: Dict[str, Any]) -> Any:
        data = await self.client.put(f"{self.path}/{item_id}", payload)
        return self._unwrap(data)

    async def delete(self, item_id: str) -> Any:
        return await self.client.delete(f"{self.path}/{item_id}")

    def _unwrap(self, data: Any) -> Any:
        if self.record_field:
            return unwrap_record(data, self.record_field)
        return data


class AuthorGateway(ResourceGateway):
    def __init__(self, client: ApiClient):
        super().__init__(client, "autores", record_field="autor")


class BookGateway(ResourceGateway):
    def __init__(self, client: ApiClient):
        super().__init__(client, "libros", record_field="libro")

    async def available(self) -> List[Dict[str, Any]]:
        """Books with copies currently available for loan."""
        data = await self.client.get(f"{self.path}/disponibles")
        return normalize_list(data, self.resource)


class LoanGateway(ResourceGateway):
    def __init__(self, client: ApiClient):
        super().__init__(client, "prestamos", record_field="prestamo")


class ReturnGateway(ResourceGateway):
    def __init__(self, client: ApiClient):
        super().__init__(client, "devoluciones", record_field="devolucion")
