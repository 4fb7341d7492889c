import json
import logging
import os
import subprocess
import sys
import webbrowser
from functools import wraps
from typing import Dict, Optional

import typer
from rich.console import Console

import database
from borrowing import BorrowService, build_service
from config import settings
from errors import LibraryError, PartialStateError
from ui_helpers import get_output_mode, print_books, print_borrows, print_stats, set_output_mode

APP_NAME = "Library Circulation CLI"

logging.basicConfig(level=settings.log_level)
console = Console()
logger = logging.getLogger(__name__)

_state: Dict[str, str] = {"actor": "cli"}


class ServiceManager:
    """Lazily built borrow service, rebuilt whenever the database file changes."""
    _instance: Optional[BorrowService] = None
    _db_file_snapshot: Optional[str] = None

    @staticmethod
    def current_db_file() -> str:
        return os.environ.get("LIBRARY_DB_FILE") or database.DATABASE_FILE

    @classmethod
    def get_instance(cls) -> BorrowService:
        current_db = cls.current_db_file()
        if cls._instance is None or current_db != cls._db_file_snapshot:
            cls._instance = build_service(db_file=current_db)
            cls._db_file_snapshot = current_db
            logger.debug(f"Borrow service initialised on {current_db}")
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None
        cls._db_file_snapshot = None


def handle_errors(func):
    """Print library errors and exit with status 1 instead of a traceback."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except PartialStateError as e:
            print(f"Error: {e} Manual reconciliation required.")
            raise typer.Exit(code=1)
        except LibraryError as e:
            print(f"Error: {e}")
            raise typer.Exit(code=1)
    return wrapper


def _print_json_or(data, plain_lines):
    if get_output_mode() == "json":
        print(json.dumps(data, ensure_ascii=False, default=str))
    else:
        for line in plain_lines:
            print(line)


# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    actor: Optional[str] = typer.Option(None, "--actor", help="Name recorded in book change logs"),
):
    """Global CLI options (output mode, acting user)."""
    if output:
        set_output_mode(output)
    _state["actor"] = actor or "cli"


@app.command("list")
@handle_errors
def cli_list(status: Optional[str] = typer.Option(None, "--status", "-s", help="available | borrowed | unavailable | deleted")):
    """List books in the catalog."""
    print_books(ServiceManager.get_instance().library.list_books(status=status))


@app.command("search")
@handle_errors
def cli_search(query: str = typer.Argument(..., help="Title, author or ISBN fragment")):
    """Search the catalog."""
    books = ServiceManager.get_instance().library.search_books(query)
    if not books:
        print(f"No books matching '{query}'.")
        return
    print_books(books)


@app.command("add")
@handle_errors
def cli_add(
    isbn: Optional[str] = typer.Argument(None, help="ISBN to look up"),
    title: Optional[str] = typer.Option(None, "--title", help="Add manually with this title"),
    author: Optional[str] = typer.Option(None, "--author", help="Add manually with this author"),
    location: Optional[str] = typer.Option(None, "--location", help="Shelf location"),
):
    """Add a book by ISBN lookup, or manually with --title and --author."""
    lib = ServiceManager.get_instance().library
    if title or author:
        book = lib.add_book({"title": title, "author": author, "isbn": isbn, "location": location},
                            actor=_state["actor"])
    elif isbn:
        book = lib.add_book_by_isbn(isbn, actor=_state["actor"])
    else:
        print("Error: give an ISBN or --title and --author.")
        raise typer.Exit(code=1)
    print(f"Successfully added: {book.title} by {book.author} ({book.id})")


@app.command("show")
@handle_errors
def cli_show(book_id: str):
    """Show a single book."""
    book = ServiceManager.get_instance().library.require_book(book_id)
    _print_json_or(book.to_dict(), [
        "Book Found",
        f"ID: {book.id}",
        f"Title: {book.title}",
        f"Author: {book.author}",
        f"ISBN: {book.isbn or '-'}",
        f"Status: {book.status.value}",
        f"Borrow count: {book.borrow_count}",
        f"Rating: {book.average_rating}",
    ])


@app.command("status")
@handle_errors
def cli_status(book_id: str, status: str = typer.Argument(..., help="available | unavailable")):
    """Mark a book available or unavailable."""
    book = ServiceManager.get_instance().set_availability(book_id, status, actor=_state["actor"])
    print(f"Book {book.id} is now {book.status.value}.")


@app.command("delete")
@handle_errors
def cli_delete(book_id: str):
    """Soft-delete a book."""
    ServiceManager.get_instance().library.soft_delete(book_id, actor=_state["actor"])
    print(f"Book {book_id} has been deleted.")


@app.command("qr")
@handle_errors
def cli_qr(book_id: str):
    """Print the QR payload for a book."""
    qr = ServiceManager.get_instance().library.generate_qr(book_id, actor=_state["actor"])
    print(qr["payload"])


@app.command("scan")
@handle_errors
def cli_scan(payload: str = typer.Argument(..., help="Scanned QR payload")):
    """Show the book a scanned QR payload points to."""
    book = ServiceManager.get_instance().library.find_by_qr(payload)
    _print_json_or(book.to_dict(), [f"{book.id} - {book.title} by {book.author} [{book.status.value}]"])


@app.command("issue-otp")
@handle_errors
def cli_issue_otp(
    book_id: str,
    email: str = typer.Option(..., "--email", help="Borrower e-mail"),
    name: str = typer.Option(..., "--name", help="Borrower name"),
    phone: Optional[str] = typer.Option(None, "--phone", help="Borrower phone"),
):
    """Send a one-time borrow code to the borrower."""
    result = ServiceManager.get_instance().initiate_borrow(book_id, {"name": name, "email": email, "phone": phone})
    sent = [channel for channel, ok in result["delivery"].items() if ok]
    _print_json_or(result, [
        f"Code issued for {result['email']}; valid for {result['expires_in_minutes']} minutes.",
        f"Delivered via: {', '.join(sent) if sent else 'none (delivery disabled or failed)'}",
    ])


@app.command("borrow")
@handle_errors
def cli_borrow(
    book_id: str,
    email: str = typer.Option(..., "--email", help="Borrower e-mail"),
    name: str = typer.Option(..., "--name", help="Borrower name"),
    otp: str = typer.Option(..., "--otp", help="Code received by the borrower"),
    phone: Optional[str] = typer.Option(None, "--phone", help="Borrower phone"),
):
    """Check a book out after verifying the borrower's code."""
    result = ServiceManager.get_instance().borrow_with_otp(
        book_id, {"name": name, "email": email, "phone": phone}, otp, actor=_state["actor"]
    )
    due = result["due_date"].strftime("%Y-%m-%d")
    _print_json_or({**result, "due_date": database.format_ts(result["due_date"])}, [
        f"Borrowed: book {book_id} (borrow {result['borrow_id']}), due {due}",
    ])


@app.command("return")
@handle_errors
def cli_return(borrow_id: str):
    """Return a borrowed book."""
    record = ServiceManager.get_instance().complete_return(borrow_id, actor=_state["actor"])
    print(f"Returned: book {record.book_id} (borrow {record.id})")


@app.command("borrows")
@handle_errors
def cli_borrows(
    email: Optional[str] = typer.Option(None, "--email", help="Only this borrower's records"),
    active: bool = typer.Option(False, "--active", help="Only records not yet returned"),
):
    """List borrow records."""
    ledger = ServiceManager.get_instance().ledger
    if email:
        records = ledger.list_by_borrower_email(email)
        if active:
            records = [r for r in records if r.is_active]
    else:
        records = ledger.list_active() if active else ledger.list_all()
    print_borrows(records)


@app.command("overdue")
@handle_errors
def cli_overdue():
    """List overdue borrows."""
    print_borrows(ServiceManager.get_instance().list_overdue(), empty_message="No overdue books.")


@app.command("remind")
@handle_errors
def cli_remind(days: Optional[int] = typer.Option(None, "--days", help="Remind loans due within this many days")):
    """Send reminders for overdue and soon-due loans."""
    results = ServiceManager.get_instance().send_due_reminders(within_days=days)
    _print_json_or(results, [f"Reminders sent: {len(results)}"])


@app.command("stats")
@handle_errors
def cli_stats():
    """Show catalog statistics."""
    print_stats(ServiceManager.get_instance().library.get_statistics())


@app.command("report")
@handle_errors
def cli_report(time_range: str = typer.Option("month", "--range", help="week | month | year")):
    """Print the circulation report as JSON."""
    print(json.dumps(ServiceManager.get_instance().report(time_range=time_range), ensure_ascii=False, indent=2))


@app.command("serve")
def cli_serve(open_browser: bool = typer.Option(True, "--browser/--no-browser", help="Open the API docs")):
    """Start the HTTP API with Uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/"
    print(f"Starting web UI on {url}")
    if open_browser:
        try:
            webbrowser.open(f"{url}docs")
        except webbrowser.Error:
            console.print("[yellow]Could not open a web browser.[/]")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    try:
        subprocess.run(args, check=False)
    except KeyboardInterrupt:
        print("Server stopped.")


if __name__ == "__main__":
    app()
