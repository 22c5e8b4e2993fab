import asyncio
import logging
from typing import Any, Dict, List, TYPE_CHECKING

from biblioteca.models import LoanStatus
from biblioteca.services.http_client import ApiClient

if TYPE_CHECKING:
    from biblioteca.context import LibraryContext

logger = logging.getLogger(__name__)

REPORT_KINDS = ("prestamos", "devoluciones", "libros", "autores", "usuarios")
REPORT_FORMATS = ("pdf", "excel")


class ReportGateway:
    """Read-only statistics endpoints and binary report downloads."""

    def __init__(self, client: ApiClient):
        self.client = client

    async def general_statistics(self) -> Any:
        return await self.client.get("/reportes/estadisticas-generales")

    async def loans_per_month(self, year: int) -> Any:
        return await self.client.get("/reportes/prestamos-por-mes", params={"year": year})

    async def users_per_role(self) -> Any:
        return await self.client.get("/reportes/usuarios-por-rol")

    async def books_per_genre(self) -> Any:
        return await self.client.get("/reportes/libros-por-genero")

    async def overdue_loans(self) -> Any:
        return await self.client.get("/reportes/prestamos-vencidos")

    async def admin_dashboard(self) -> Any:
        return await self.client.get("/reportes/dashboard-admin")

    async def download(self, kind: str, fmt: str) -> bytes:
        """Fetch a generated report file, e.g. ``download("prestamos", "pdf")``."""
        if kind not in REPORT_KINDS:
            raise ValueError(f"Unknown report '{kind}'. Use one of: {', '.join(REPORT_KINDS)}")
        if fmt not in REPORT_FORMATS:
            raise ValueError(f"Unknown format '{fmt}'. Use pdf or excel")
        return await self.client.get_bytes(f"/reportes/{kind}/{fmt}")


def _settled(result: Any, source: str) -> List[Dict[str, Any]]:
    if isinstance(result, BaseException):
        logger.warning(f"Dashboard source '{source}' failed: {result}")
        return []
    return result


async def collect_dashboard(context: "LibraryContext") -> Dict[str, int]:
    """Summary counts for the dashboard; a failing source counts as empty."""
    users, books, authors, loans = await asyncio.gather(
        context.users.list(),
        context.books.list(),
        context.authors.list(),
        context.loans.list(),
        return_exceptions=True
    )
    users = _settled(users, "usuarios")
    books = _settled(books, "libros")
    authors = _settled(authors, "autores")
    loans = _settled(loans, "prestamos")

    stock = 0
    for book in books:
        if not isinstance(book, dict):
            continue
        try:
            stock += int(book.get("existencias") or 0)
        except (TypeError, ValueError):
            continue

    return {
        "total_users": len(users),
        "total_books": len(books),
        "total_authors": len(authors),
        "active_loans": sum(1 for loan in loans if isinstance(loan, dict) and loan.get("estado") == LoanStatus.ACTIVE.value),
        "copies_in_stock": stock,
    }
