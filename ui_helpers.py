import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from book import Book
from borrow import BorrowRecord

# Environment variable controlling CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_books(books: List[Book]) -> None:
    """Print books in the current output mode.
    - plain: 'ID - Title by Author [status]' lines, or 'No books in library.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    if not books:
        print("No books in library.")
        return

    mode = get_output_mode()
    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title")
        table.add_column("Author")
        table.add_column("Status")
        table.add_column("Borrows", justify="right")
        for b in books:
            table.add_row(b.id, b.title, b.author, b.status.value, str(b.borrow_count))
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author} [{b.status.value}]")


def print_borrows(records: List[BorrowRecord], empty_message: str = "No borrow records.") -> None:
    if not records:
        print(empty_message)
        return

    mode = get_output_mode()
    if mode == "json":
        print(json.dumps([r.to_dict() for r in records], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Borrows", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Book")
        table.add_column("Borrower")
        table.add_column("Due")
        table.add_column("Status")
        for r in records:
            table.add_row(r.id, r.book_id, r.borrower.email, r.due_date.strftime("%Y-%m-%d"), r.status.value)
        _console.print(table)
    else:
        for r in records:
            print(f"{r.id} - book {r.book_id} - {r.borrower.email} - due {r.due_date.strftime('%Y-%m-%d')} "
                  f"[{r.status.value}]")


def print_stats(stats: Dict[str, Any]) -> None:
    if not stats:
        print("No statistics available.")
        return

    mode = get_output_mode()
    by_status = stats.get("by_status", {})
    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        lines = [f"[bold]Total Books:[/] {stats.get('total_books', 0)}",
                 f"[bold]Total Borrows:[/] {stats.get('total_borrows', 0)}"]
        lines += [f"[bold]{status.title()}:[/] {count}" for status, count in by_status.items()]
        _console.print(Panel.fit("\n".join(lines), title="Stats", border_style="blue"))
    else:
        print(f"Total Books: {stats.get('total_books', 0)}")
        print(f"Total Borrows: {stats.get('total_borrows', 0)}")
        for status, count in by_status.items():
            print(f"{status.title()}: {count}")
