import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import typer

from config import settings
from biblioteca.auth import is_admin
from biblioteca.context import LibraryContext
from biblioteca.errors import LibraryError
from biblioteca.models import BookCondition, LoanStatus
from biblioteca.services.reports import REPORT_FORMATS, REPORT_KINDS, collect_dashboard
from biblioteca.ui_helpers import print_record, print_records, print_stats_result, set_output_mode

APP_NAME = "Biblioteca CLI"
DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"]

logger = logging.getLogger(__name__)


def create_context() -> LibraryContext:
    """Build the context for one command; tests replace this factory."""
    return LibraryContext()


def run(handler: Callable[[LibraryContext], Awaitable[Any]]) -> Any:
    """Run an async command body inside a fresh context with the session restored."""
    async def runner():
        async with create_context() as ctx:
            ctx.session.initialize()
            return await handler(ctx)

    try:
        return asyncio.run(runner())
    except (LibraryError, ValueError) as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}")
        raise typer.Exit(code=1)


def require_admin(ctx: LibraryContext) -> None:
    if not is_admin(ctx.session):
        print("Admin access required.")
        raise typer.Exit(code=1)


def require_login(ctx: LibraryContext) -> None:
    if ctx.session.current is None:
        print("Not logged in. Use 'login' first.")
        raise typer.Exit(code=1)


def parse_fields(pairs: Optional[List[str]]) -> Dict[str, Any]:
    """Turn repeated ``-f key=value`` options into a payload dict."""
    fields: Dict[str, Any] = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ValueError(f"Expected key=value, got '{pair}'")
        key, raw = pair.split("=", 1)
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            value = raw
        fields[key.strip()] = value
    return fields


# --- Typer CLI Application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.WARNING))
    if output:
        set_output_mode(output)


# ------------------------- Session ------------------------- #
@app.command("login")
def cli_login(email: str, password: str = typer.Option(..., prompt=True, hide_input=True)):
    """Log in with email and password."""
    async def handler(ctx: LibraryContext):
        identity = await ctx.verifier.authenticate(email, password)
        print(f"Logged in as {identity.name or identity.email} ({identity.role.value})")
    run(handler)


@app.command("logout")
def cli_logout():
    """Close the current session."""
    async def handler(ctx: LibraryContext):
        ctx.session.logout()
        print("Logged out.")
    run(handler)


@app.command("whoami")
def cli_whoami():
    """Show the identity of the current session."""
    async def handler(ctx: LibraryContext):
        identity = ctx.session.current
        if identity is None:
            print("Not logged in.")
            return
        print(f"{identity.name} <{identity.email}> role={identity.role.value} id={identity.id}")
    run(handler)


@app.command("register")
def cli_register(
    name: str = typer.Option(..., "--name", help="First name"),
    email: str = typer.Option(..., "--email"),
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
    surname: Optional[str] = typer.Option(None, "--surname"),
    phone: Optional[str] = typer.Option(None, "--phone"),
):
    """Create a user account (stored locally when the API is unreachable)."""
    async def handler(ctx: LibraryContext):
        user = await ctx.verifier.register({
            "nombre": name, "apellido": surname, "correo": email,
            "telefono": phone, "contrasena": password,
        })
        user_id = user.get("_id") if isinstance(user, dict) else None
        print(f"Registered {email}" + (f" (id {user_id})" if user_id else ""))
    run(handler)


@app.command("profile")
def cli_profile(
    name: Optional[str] = typer.Option(None, "--name"),
    surname: Optional[str] = typer.Option(None, "--surname"),
    email: Optional[str] = typer.Option(None, "--email"),
    phone: Optional[str] = typer.Option(None, "--phone"),
):
    """Update the profile of the logged-in user."""
    changes = {"nombre": name, "apellido": surname, "correo": email, "telefono": phone}
    changes = {k: v.strip() for k, v in changes.items() if v is not None}

    async def handler(ctx: LibraryContext):
        if not changes:
            print("Nothing to update.")
            return
        identity = await ctx.session.update_identity(changes)
        print(f"Profile updated: {identity.name} <{identity.email}>")
    run(handler)


# ------------------------- Catalog and users ------------------------- #
def _crud_app(resource: str, gateway_name: str, admin_reads: bool = False) -> typer.Typer:
    """list/show/add/update/delete commands for one REST resource."""
    sub = typer.Typer(help=f"Manage {resource}")

    @sub.command("list")
    def cli_list(params: Optional[List[str]] = typer.Option(None, "--param", "-p", help="Filter key=value")):
        """List records."""
        async def handler(ctx: LibraryContext):
            query = parse_fields(params)
            if admin_reads:
                require_admin(ctx)
            records = await getattr(ctx, gateway_name).list(query)
            print_records(resource, records)
        run(handler)

    @sub.command("show")
    def cli_show(item_id: str):
        """Show one record."""
        async def handler(ctx: LibraryContext):
            if admin_reads:
                require_admin(ctx)
            record = await getattr(ctx, gateway_name).get(item_id)
            if not record:
                print(f"{item_id} not found.")
                raise typer.Exit(code=1)
            print_record(record)
        run(handler)

    @sub.command("add")
    def cli_add(fields: List[str] = typer.Option(..., "--field", "-f", help="key=value")):
        """Create a record (admin)."""
        async def handler(ctx: LibraryContext):
            payload = parse_fields(fields)
            require_admin(ctx)
            created = await getattr(ctx, gateway_name).create(payload)
            created_id = created.get("_id") if isinstance(created, dict) else None
            print(f"Created {created_id or 'record'}")
        run(handler)

    @sub.command("update")
    def cli_update(item_id: str, fields: List[str] = typer.Option(..., "--field", "-f", help="key=value")):
        """Update a record (admin)."""
        async def handler(ctx: LibraryContext):
            payload = parse_fields(fields)
            require_admin(ctx)
            await getattr(ctx, gateway_name).update(item_id, payload)
            print(f"Updated {item_id}")
        run(handler)

    @sub.command("delete")
    def cli_delete(item_id: str):
        """Delete a record (admin)."""
        async def handler(ctx: LibraryContext):
            require_admin(ctx)
            await getattr(ctx, gateway_name).delete(item_id)
            print(f"Deleted {item_id}")
        run(handler)

    return sub


authors_app = _crud_app("autores", "authors")
books_app = _crud_app("libros", "books")
users_app = _crud_app("usuarios", "users", admin_reads=True)


@books_app.command("available")
def cli_books_available():
    """List books with copies available for loan."""
    async def handler(ctx: LibraryContext):
        print_records("libros", await ctx.books.available(), empty_message="No books available.")
    run(handler)


app.add_typer(authors_app, name="authors")
app.add_typer(books_app, name="books")
app.add_typer(users_app, name="users")


# ------------------------- Loans ------------------------- #
loans_app = typer.Typer(help="Borrow books and manage loans")


@loans_app.command("list")
def cli_loans_list(active: bool = typer.Option(False, "--active", help="Only active loans")):
    """List loans; standard users only see their own."""
    async def handler(ctx: LibraryContext):
        require_login(ctx)
        borrower = None if is_admin(ctx.session) else ctx.session.current
        loans = await ctx.loan_manager.list_loans(active_only=active, borrower=borrower)
        print_records("prestamos", [loan.to_wire() for loan in loans], empty_message="No loans.")
    run(handler)


@loans_app.command("borrow")
def cli_borrow(
    borrower_id: str,
    book_id: str,
    due: Optional[datetime] = typer.Option(None, "--due", formats=DATE_FORMATS, help="Expected return date"),
    date: Optional[datetime] = typer.Option(None, "--date", formats=DATE_FORMATS, help="Loan date (default now)"),
):
    """Lend a book to a user (admin)."""
    async def handler(ctx: LibraryContext):
        require_admin(ctx)
        loan = await ctx.loan_manager.create_loan(borrower_id, book_id, loan_date=date, due_date=due)
        print(f"Loan {loan.id} created ({loan.status.value})")
    run(handler)


@loans_app.command("update")
def cli_loans_update(loan_id: str, fields: List[str] = typer.Option(..., "--field", "-f", help="key=value")):
    """Edit borrower, book or dates of a loan (admin)."""
    async def handler(ctx: LibraryContext):
        payload = parse_fields(fields)
        require_admin(ctx)
        await ctx.loan_manager.update_loan(loan_id, payload)
        print(f"Updated {loan_id}")
    run(handler)


@loans_app.command("delete")
def cli_loans_delete(loan_id: str):
    """Delete an active loan (admin)."""
    async def handler(ctx: LibraryContext):
        require_admin(ctx)
        await ctx.loan_manager.delete_loan(loan_id)
        print(f"Deleted {loan_id}")
    run(handler)


app.add_typer(loans_app, name="loans")


# ------------------------- Returns ------------------------- #
returns_app = typer.Typer(help="Register and manage book returns")


@returns_app.command("list")
def cli_returns_list():
    """List registered returns (admin)."""
    async def handler(ctx: LibraryContext):
        require_admin(ctx)
        returns = await ctx.loan_manager.list_returns()
        print_records("devoluciones", [r.to_wire() for r in returns], empty_message="No returns.")
    run(handler)


@returns_app.command("register")
def cli_returns_register(
    loan_id: str,
    date: Optional[datetime] = typer.Option(None, "--date", formats=DATE_FORMATS, help="Actual return date"),
    status: Optional[str] = typer.Option(None, "--status", help="devuelto | vencido (default: from dates)"),
    condition: str = typer.Option(BookCondition.GOOD.value, "--condition", help="bueno | regular | dañado | perdido"),
    notes: str = typer.Option("", "--notes"),
    fine: Optional[float] = typer.Option(None, "--fine"),
):
    """Register the return of a loan (admin)."""
    async def handler(ctx: LibraryContext):
        require_admin(ctx)
        record = await ctx.loan_manager.register_return(
            loan_id, returned_on=date, loan_status=status, condition=condition, notes=notes, fine=fine,
        )
        print(f"Return {record.id} registered ({record.status.value})")
    run(handler)


@returns_app.command("update")
def cli_returns_update(return_id: str, fields: List[str] = typer.Option(..., "--field", "-f", help="key=value")):
    """Edit a return in place (admin)."""
    async def handler(ctx: LibraryContext):
        payload = parse_fields(fields)
        require_admin(ctx)
        record = await ctx.loan_manager.update_return(return_id, payload)
        print(f"Updated {record.id} ({record.status.value})")
    run(handler)


@returns_app.command("delete")
def cli_returns_delete(return_id: str):
    """Delete a return and reactivate its loan (admin)."""
    async def handler(ctx: LibraryContext):
        require_admin(ctx)
        loan_id = await ctx.loan_manager.delete_return(return_id)
        if loan_id is None:
            print(f"Deleted {return_id}; it referenced no loan")
            return
        print(f"Deleted {return_id}; loan {loan_id} is {LoanStatus.ACTIVE.value} again")
    run(handler)


app.add_typer(returns_app, name="returns")


# ------------------------- Maintenance and reports ------------------------- #
@app.command("repair")
def cli_repair():
    """Retry loan updates that failed during a return transition (admin)."""
    async def handler(ctx: LibraryContext):
        require_admin(ctx)
        pending = len(ctx.loan_manager.pending_repairs())
        if not pending:
            print("No pending repairs.")
            return
        applied = await ctx.loan_manager.repair_pending()
        print(f"Applied {applied} of {pending} pending repairs")
    run(handler)


@app.command("stats")
def cli_stats():
    """Show dashboard statistics."""
    async def handler(ctx: LibraryContext):
        print_stats_result(await collect_dashboard(ctx))
    run(handler)


@app.command("report")
def cli_report(
    kind: str = typer.Argument(..., help=" | ".join(REPORT_KINDS)),
    fmt: str = typer.Argument("pdf", help=" | ".join(REPORT_FORMATS)),
    out: Optional[Path] = typer.Option(None, "--out", help="Destination file"),
):
    """Download a generated report (admin)."""
    async def handler(ctx: LibraryContext):
        require_admin(ctx)
        content = await ctx.reports.download(kind, fmt)
        extension = "pdf" if fmt == "pdf" else "xlsx"
        destination = out or Path(f"reporte_{kind}.{extension}")
        destination.write_bytes(content)
        print(f"Saved {len(content)} bytes to {destination}")
    run(handler)


if __name__ == "__main__":
    app()
