import itertools
from typing import Any, Dict, Optional, Tuple

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import Settings
from biblioteca.context import LibraryContext
from biblioteca.database import LocalStore

BASE_URL = "http://testserver/api"
RESOURCES = ("autores", "libros", "usuarios", "prestamos", "devoluciones")


class FakeBackend:
    """In-memory stand-in for the library REST API.

    ``fail(method, resource, times)`` makes the next ``times`` matching
    requests answer 500 (``times=-1`` fails forever).
    """

    def __init__(self, wrap_lists: bool = False):
        self.data: Dict[str, Dict[str, Dict[str, Any]]] = {r: {} for r in RESOURCES}
        self.failures: Dict[Tuple[str, str], int] = {}
        self.wrap_lists = wrap_lists
        self.calls = []
        self._ids = itertools.count(1)
        self.app = self._build_app()

    def fail(self, method: str, resource: str, times: int = -1) -> None:
        self.failures[(method, resource)] = times

    def heal(self) -> None:
        self.failures.clear()

    def seed(self, resource: str, record: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(record)
        record.setdefault("_id", f"{resource[:3]}{next(self._ids)}")
        self.data[resource][record["_id"]] = record
        return record

    def _should_fail(self, method: str, resource: str) -> bool:
        remaining = self.failures.get((method, resource))
        if not remaining:
            return False
        if remaining > 0:
            self.failures[(method, resource)] = remaining - 1
        return True

    def _list_body(self, resource: str, items):
        items = [self._public(i) for i in items]
        return {resource: items} if self.wrap_lists else items

    @staticmethod
    def _public(record: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in record.items() if k != "contrasena"}

    def _build_app(self) -> FastAPI:
        app = FastAPI()
        backend = self

        def error(status: int, message: str) -> JSONResponse:
            return JSONResponse(status_code=status, content={"message": message})

        def guard(method: str, resource: str) -> Optional[JSONResponse]:
            backend.calls.append((method, resource))
            if resource not in backend.data:
                return error(404, "Recurso no encontrado")
            if backend._should_fail(method, resource):
                return error(500, f"Fallo simulado en {method} {resource}")
            return None

        @app.post("/api/usuarios/login")
        async def login(request: Request):
            rejected = guard("LOGIN", "usuarios")
            if rejected:
                return rejected
            body = await request.json()
            for user in backend.data["usuarios"].values():
                if user.get("correo") == body.get("correo") and user.get("contrasena") == body.get("contrasena"):
                    return {"usuario": backend._public(user)}
            return error(401, "Credenciales inválidas")

        @app.get("/api/libros/disponibles")
        async def available_books():
            rejected = guard("GET", "libros")
            if rejected:
                return rejected
            books = [b for b in backend.data["libros"].values() if int(b.get("existencias") or 0) > 0]
            return backend._list_body("libros", books)

        @app.get("/api/{resource}")
        async def list_records(resource: str):
            rejected = guard("GET", resource)
            if rejected:
                return rejected
            return backend._list_body(resource, list(backend.data[resource].values()))

        @app.get("/api/{resource}/{item_id}")
        async def get_record(resource: str, item_id: str):
            rejected = guard("GET", resource)
            if rejected:
                return rejected
            record = backend.data[resource].get(item_id)
            if record is None:
                return error(404, "No encontrado")
            return backend._public(record)

        @app.post("/api/{resource}")
        async def create_record(resource: str, request: Request):
            rejected = guard("POST", resource)
            if rejected:
                return rejected
            body = await request.json()
            if resource == "usuarios" and any(
                u.get("correo") == body.get("correo") for u in backend.data["usuarios"].values()
            ):
                return error(400, "El correo ya está registrado")
            return JSONResponse(status_code=201, content=backend._public(backend.seed(resource, body)))

        @app.put("/api/{resource}/{item_id}")
        async def update_record(resource: str, item_id: str, request: Request):
            rejected = guard("PUT", resource)
            if rejected:
                return rejected
            record = backend.data[resource].get(item_id)
            if record is None:
                return error(404, "No encontrado")
            record.update(await request.json())
            return backend._public(record)

        @app.delete("/api/{resource}/{item_id}")
        async def delete_record(resource: str, item_id: str):
            rejected = guard("DELETE", resource)
            if rejected:
                return rejected
            if backend.data[resource].pop(item_id, None) is None:
                return error(404, "No encontrado")
            return {"message": "Eliminado"}

        return app


def _refuse(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("Connection refused", request=request)


def unreachable_transport() -> httpx.MockTransport:
    return httpx.MockTransport(_refuse)


@pytest.fixture
def test_settings(tmp_path):
    return Settings(local_store_file=str(tmp_path / "store.db"), loan_repair_retries=1, fine_per_day=0)


@pytest.fixture
def store(test_settings):
    return LocalStore(test_settings.local_store_file)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def make_context(store, test_settings, backend):
    """Build contexts that share one local store, like restarts of the same install."""
    def factory(online: bool = True, settings: Optional[Settings] = None) -> LibraryContext:
        transport = httpx.ASGITransport(app=backend.app) if online else unreachable_transport()
        return LibraryContext(settings=settings or test_settings, store=store,
                              transport=transport, base_url=BASE_URL)
    return factory
