import asyncio

import httpx
import pytest

from conftest import BASE_URL
from biblioteca.errors import RequestFailed
from biblioteca.services.http_client import ApiClient
from biblioteca.services.reports import ReportGateway, collect_dashboard


@pytest.fixture
def stocked(backend):
    backend.seed("usuarios", {"_id": "u1", "nombre": "Ana", "correo": "ana@example.com", "rol": "user"})
    backend.seed("usuarios", {"_id": "u2", "nombre": "Beto", "correo": "beto@example.com", "rol": "admin"})
    backend.seed("autores", {"_id": "a1", "nombre": "Borges"})
    backend.seed("libros", {"_id": "b1", "titulo": "Ficciones", "existencias": 4})
    backend.seed("libros", {"_id": "b2", "titulo": "El Aleph", "existencias": "2"})
    backend.seed("libros", {"_id": "b3", "titulo": "Sin dato", "existencias": None})
    backend.seed("prestamos", {"_id": "p1", "usuario": "u1", "libro": "b1", "estado": "activo"})
    backend.seed("prestamos", {"_id": "p2", "usuario": "u1", "libro": "b2", "estado": "devuelto"})
    return backend


def test_dashboard_counts(make_context, stocked):
    async def scenario():
        async with make_context() as ctx:
            return await collect_dashboard(ctx)

    assert asyncio.run(scenario()) == {
        "total_users": 2,
        "total_books": 3,
        "total_authors": 1,
        "active_loans": 1,
        "copies_in_stock": 6,
    }


def test_failing_source_counts_as_empty(make_context, stocked):
    stocked.fail("GET", "autores")
    stocked.fail("GET", "prestamos")

    async def scenario():
        async with make_context() as ctx:
            return await collect_dashboard(ctx)

    summary = asyncio.run(scenario())
    assert summary["total_authors"] == 0
    assert summary["active_loans"] == 0
    assert summary["total_books"] == 3


def test_dashboard_offline_reports_local_users_only(make_context):
    async def scenario():
        async with make_context(online=False) as ctx:
            await ctx.users.create({"nombre": "Luis", "correo": "luis@example.com", "contrasena": "secret1"})
            return await collect_dashboard(ctx)

    summary = asyncio.run(scenario())
    assert summary["total_users"] == 1
    assert summary["total_books"] == 0


def _report_client(handler):
    return ApiClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))


def test_download_returns_raw_bytes():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(200, content=b"%PDF-1.4 fake")

    async def scenario():
        async with _report_client(handler) as client:
            return await ReportGateway(client).download("prestamos", "pdf")

    assert asyncio.run(scenario()) == b"%PDF-1.4 fake"
    assert seen == ["/api/reportes/prestamos/pdf"]


@pytest.mark.parametrize("kind, fmt", [("multas", "pdf"), ("libros", "csv")])
def test_download_rejects_unknown_report(kind, fmt):
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    async def scenario():
        async with _report_client(handler) as client:
            await ReportGateway(client).download(kind, fmt)

    with pytest.raises(ValueError):
        asyncio.run(scenario())


def test_download_failure_raises_request_failed():
    async def scenario():
        async with _report_client(lambda request: httpx.Response(500)) as client:
            await ReportGateway(client).download("libros", "excel")

    with pytest.raises(RequestFailed) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.status_code == 500


def test_statistics_endpoints_pass_year():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json=[{"mes": 1, "total": 3}])

    async def scenario():
        async with _report_client(handler) as client:
            return await ReportGateway(client).loans_per_month(2024)

    assert asyncio.run(scenario()) == [{"mes": 1, "total": 3}]
    assert seen == ["http://testserver/api/reportes/prestamos-por-mes?year=2024"]
