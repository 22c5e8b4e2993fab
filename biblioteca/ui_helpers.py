import os
import json
from typing import Any, Dict, List, Sequence, Tuple
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "BIBLIOTECA_CLI_OUTPUT"

_console = Console()

# (column title, wire field) pairs per resource
COLUMNS: Dict[str, List[Tuple[str, str]]] = {
    "autores": [("ID", "_id"), ("Name", "nombre"), ("Nationality", "nacionalidad")],
    "libros": [("ID", "_id"), ("Title", "titulo"), ("Author", "autor"), ("ISBN", "isbn"), ("Stock", "existencias")],
    "usuarios": [("ID", "_id"), ("Name", "nombre"), ("Email", "correo"), ("Role", "rol")],
    "prestamos": [("ID", "_id"), ("Borrower", "usuario"), ("Book", "libro"), ("Due", "fechaDevolucion"), ("Status", "estado")],
    "devoluciones": [("ID", "_id"), ("Loan", "prestamo"), ("Returned", "fechaDevolucionReal"), ("Status", "estado"), ("Condition", "condicionLibro"), ("Fine", "multa")],
}

# Embedded references are shown by their most readable field
_LABEL_FIELDS = ("titulo", "nombre", "correo", "_id")


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, dict):
        for field in _LABEL_FIELDS:
            if value.get(field):
                return str(value[field])
        return ""
    return str(value)


def print_records(resource: str, records: Sequence[Dict[str, Any]], empty_message: str = "No records found.") -> None:
    """Print records of a resource in the current output mode.
    - plain: one 'id - field - field' line per record
    - json: the records as a JSON array
    - rich: a Rich table
    """
    mode = get_output_mode()
    columns = COLUMNS.get(resource, [("ID", "_id")])

    if not records:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps(list(records), ensure_ascii=False, default=str))
    elif mode == "rich":
        table = Table(title=f"📚 {resource.title()}", show_lines=True, header_style="bold cyan")
        for title, _ in columns:
            table.add_column(title, style="magenta" if title == "ID" else "white")
        for record in records:
            table.add_row(*[_cell(record.get(field)) for _, field in columns])
        _console.print(table)
    else:
        for record in records:
            print(" - ".join(_cell(record.get(field)) for _, field in columns))


def print_record(record: Dict[str, Any]) -> None:
    """Print one record as key/value lines (or JSON)."""
    if get_output_mode() == "json":
        print(json.dumps(record, ensure_ascii=False, default=str))
        return
    for key, value in record.items():
        print(f"{key}: {_cell(value)}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print dashboard counts in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = {
        "total_users": "Total Users",
        "total_books": "Total Books",
        "total_authors": "Total Authors",
        "active_loans": "Active Loans",
        "copies_in_stock": "Copies In Stock",
    }

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{labels.get(k, k)}:[/] {v}" for k, v in stats.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, value in stats.items():
            print(f"{labels.get(key, key)}: {value}")
