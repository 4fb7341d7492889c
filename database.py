import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from dotenv import load_dotenv

from config import settings
from errors import DependencyError

# Make sure .env is loaded before the environment is read (database may be
# imported before config in some entry points).
load_dotenv()

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE (explicit override, used by tests)
# 2) LIBRARY_DATA_FILE (settings.data_file)
DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or settings.data_file


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database."""
    conn = sqlite3.connect(db_file or DATABASE_FILE, timeout=settings.store_timeout)
    conn.row_factory = sqlite3.Row
    # WAL lets readers proceed while a borrow is being written
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


@contextmanager
def connection(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Yield a connection that commits on success and rolls back on error.

    Any ``sqlite3.Error`` (locked database, missing file, disk I/O) surfaces
    as a ``DependencyError``; integrity errors are re-raised untouched so the
    stores can map them to conflicts.
    """
    try:
        conn = get_db_connection(db_file)
    except sqlite3.Error as exc:
        raise DependencyError(f"Store unreachable: {exc}") from exc
    try:
        yield conn
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        raise
    except sqlite3.Error as exc:
        conn.rollback()
        raise DependencyError(f"Store operation failed: {exc}") from exc
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


# ------------------------- Encoding helpers ------------------------- #
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC; aware ones are converted to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_utc(value).isoformat()


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return as_utc(datetime.fromisoformat(value))


def dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def loads(value: Optional[str], default: Any) -> Any:
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the collections (books, borrows, otps, users) if missing."""
    with connection(db_file) as conn:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT,
                publisher TEXT,
                published_date TEXT,
                description TEXT,
                page_count INTEGER,
                categories TEXT DEFAULT '[]',
                cover_url TEXT,
                location TEXT,
                status TEXT NOT NULL DEFAULT 'available',
                borrow_count INTEGER NOT NULL DEFAULT 0 CHECK(borrow_count >= 0),
                average_rating REAL NOT NULL DEFAULT 0,
                ratings TEXT DEFAULT '[]',
                added_date TEXT NOT NULL,
                logs TEXT DEFAULT '{}'
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS borrows (
                id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL,
                borrower_name TEXT NOT NULL,
                borrower_email TEXT NOT NULL,
                borrower_phone TEXT,
                borrower_uid TEXT,
                borrow_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL DEFAULT 'active'
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS otps (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL,
                phone TEXT,
                code TEXT NOT NULL,
                created_at TEXT NOT NULL,
                is_used INTEGER NOT NULL DEFAULT 0
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                uid TEXT PRIMARY KEY,
                email TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'borrower',
                phone TEXT,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_status ON books(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_isbn ON books(isbn)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrows_book_id ON borrows(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrows_status ON borrows(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrows_email ON borrows(borrower_email)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_otps_lookup ON otps(email, code, is_used)")
        # One active borrow per book, whatever the caller does
        cursor.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_borrows_one_active "
            "ON borrows(book_id) WHERE status = 'active'"
        )


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialise the database, creating tables if needed."""
    create_tables(db_file)
