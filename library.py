import json
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

import database
from book import Book, BookStatus
from database import connection, dumps, format_ts, initialize_database, loads, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from metadata import MetadataLookup
from validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)

QR_PAYLOAD_TYPE = "library_book"

# Descriptive fields an administrator may edit; status, counters and ratings
# only change through their dedicated operations.
EDITABLE_FIELDS = (
    "title", "author", "isbn", "publisher", "published_date", "description",
    "page_count", "categories", "cover_url", "location",
)


class Library:
    """Book catalog store: book records and their availability status."""

    def __init__(self, db_file: Optional[str] = None, metadata: Optional[MetadataLookup] = None) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        self.metadata = metadata or MetadataLookup()
        initialize_database(self.db_file)

    # ------------------------- Core operations ------------------------- #
    def add_book(self, data: Dict[str, Any], actor: Optional[str] = None) -> Book:
        """Insert a book. Status is always ``available`` and counters start at zero."""
        title = TextValidator.require(data, "title")
        author = TextValidator.require(data, "author")
        now = format_ts(utcnow())

        book = Book(
            id=uuid.uuid4().hex,
            title=title,
            author=author,
            isbn=ISBNValidator.normalize_isbn(data.get("isbn")) or None,
            status=BookStatus.AVAILABLE,
            borrow_count=0,
            average_rating=0.0,
            ratings=[],
            publisher=data.get("publisher"),
            published_date=data.get("published_date"),
            description=data.get("description"),
            page_count=data.get("page_count"),
            categories=list(data.get("categories") or []),
            cover_url=data.get("cover_url"),
            location=data.get("location"),
            added_date=now,
            logs={"created": {"by": actor or "system", "at": now}},
        )
        row = book.to_row()
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        with connection(self.db_file) as conn:
            conn.execute(f"INSERT INTO books ({columns}) VALUES ({placeholders})", tuple(row.values()))
        logger.info(f"Book added: {book.id} '{book.title}' by {actor or 'system'}")
        return book

    def add_book_by_isbn(self, isbn: str, actor: Optional[str] = None) -> Book:
        """Fetch metadata for ``isbn`` and add the resulting book."""
        isbn = ISBNValidator.normalize_isbn(isbn)
        if not isbn:
            raise ValidationError("ISBN cannot be empty.")
        if not ISBNValidator.is_valid_isbn(isbn):
            raise ValidationError("Invalid ISBN format.")

        found = self.metadata.lookup_isbn(isbn)
        if not found:
            raise NotFoundError(f"No metadata found for ISBN {isbn}.")
        data = found.to_book_data()
        data["isbn"] = isbn
        return self.add_book(data, actor=actor)

    def get_book(self, book_id: str) -> Optional[Book]:
        with connection(self.db_file) as conn:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def require_book(self, book_id: str) -> Book:
        book = self.get_book(book_id)
        if not book:
            raise NotFoundError(f"Book {book_id} not found.")
        return book

    def list_books(self, status: "Optional[str | BookStatus]" = None) -> List[Book]:
        """List books, optionally filtered by status. Soft-deleted books only show up when asked for."""
        with connection(self.db_file) as conn:
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM books WHERE status != ? ORDER BY title", (BookStatus.DELETED.value,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM books WHERE status = ? ORDER BY title", (self._parse_status(status).value,)
                ).fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def search_books(self, query: str) -> List[Book]:
        """Search non-deleted books by title, author or ISBN."""
        pattern = f"%{query.strip()}%"
        with connection(self.db_file) as conn:
            rows = conn.execute(
                "SELECT * FROM books WHERE status != ? AND (title LIKE ? OR author LIKE ? OR isbn LIKE ?) "
                "ORDER BY title",
                (BookStatus.DELETED.value, pattern, pattern, pattern),
            ).fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def update_book(self, book_id: str, actor: Optional[str] = None, **fields: Any) -> Book:
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        updates = {k: v for k, v in fields.items() if v is not None}
        if not updates:
            raise ValidationError("Nothing to update.")
        for key in ("title", "author"):
            if key in updates:
                updates[key] = TextValidator.require(updates, key)
        if "isbn" in updates:
            updates["isbn"] = ISBNValidator.normalize_isbn(updates["isbn"]) or None
        if "categories" in updates:
            updates["categories"] = dumps(list(updates["categories"]))

        assignments = ", ".join(f"{k} = ?" for k in updates)
        with connection(self.db_file) as conn:
            cursor = conn.execute(
                f"UPDATE books SET {assignments}, logs = {self._log_expr()} WHERE id = ?",
                (*updates.values(), *self._log_params("updated", actor), book_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Book {book_id} not found.")
        return self.require_book(book_id)

    # ------------------------- Status transitions ------------------------- #
    def set_status(self, book_id: str, status: "str | BookStatus", actor: Optional[str] = None) -> None:
        """Unconditionally write ``status``. The borrow service uses the CAS variant."""
        new = self._parse_status(status)
        with connection(self.db_file) as conn:
            cursor = conn.execute(
                f"UPDATE books SET status = ?, logs = {self._log_expr()} WHERE id = ?",
                (new.value, *self._log_params("status_changed", actor), book_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Book {book_id} not found.")
        logger.info(f"Book {book_id} status set to {new.value}")

    def compare_and_set_status(self, book_id: str, expected: "str | BookStatus", new: "str | BookStatus",
                               actor: Optional[str] = None) -> bool:
        """Write ``new`` only if the stored status is still ``expected``.

        SQLite serialises writers, so of two concurrent callers racing on the
        same book exactly one sees a changed row.
        """
        expected_status = self._parse_status(expected)
        new_status = self._parse_status(new)
        with connection(self.db_file) as conn:
            cursor = conn.execute(
                f"UPDATE books SET status = ?, logs = {self._log_expr()} WHERE id = ? AND status = ?",
                (new_status.value, *self._log_params("status_changed", actor), book_id, expected_status.value),
            )
            swapped = cursor.rowcount == 1
        if swapped:
            logger.info(f"Book {book_id} status {expected_status.value} -> {new_status.value}")
        return swapped

    def increment_borrow_count(self, book_id: str) -> None:
        with connection(self.db_file) as conn:
            cursor = conn.execute("UPDATE books SET borrow_count = borrow_count + 1 WHERE id = ?", (book_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"Book {book_id} not found.")

    def soft_delete(self, book_id: str, actor: Optional[str] = None) -> None:
        """Mark a book deleted. Borrowed books must be returned first."""
        with connection(self.db_file) as conn:
            cursor = conn.execute(
                f"UPDATE books SET status = ?, logs = {self._log_expr()} WHERE id = ? AND status != ?",
                (BookStatus.DELETED.value, *self._log_params("deleted", actor), book_id,
                 BookStatus.BORROWED.value),
            )
            changed = cursor.rowcount
        if changed == 0:
            book = self.require_book(book_id)
            raise ConflictError(f"Book {book.id} is currently {book.status.value} and cannot be deleted.")
        logger.info(f"Book {book_id} soft-deleted by {actor or 'system'}")

    # ------------------------- Ratings & rankings ------------------------- #
    def add_rating(self, book_id: str, user: str, rating: int) -> Book:
        if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be an integer between 1 and 5.")
        if not user or not str(user).strip():
            raise ValidationError("'user' is required.")

        with connection(self.db_file) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT ratings, status FROM books WHERE id = ?", (book_id,)).fetchone()
            if not row or row["status"] == BookStatus.DELETED.value:
                raise NotFoundError(f"Book {book_id} not found.")
            ratings = loads(row["ratings"], [])
            # One rating per user; a new rating replaces the previous one
            ratings = [r for r in ratings if r.get("user") != user]
            ratings.append({"user": user, "rating": rating, "at": format_ts(utcnow())})
            average = round(sum(r["rating"] for r in ratings) / len(ratings), 2)
            conn.execute(
                "UPDATE books SET ratings = ?, average_rating = ? WHERE id = ?",
                (dumps(ratings), average, book_id),
            )
        return self.require_book(book_id)

    def most_borrowed(self, limit: int = 10) -> List[Book]:
        books = self.list_books()
        return sorted(books, key=lambda b: b.borrow_count, reverse=True)[:limit]

    def highest_rated(self, limit: int = 10) -> List[Book]:
        books = self.list_books()
        return sorted(books, key=lambda b: b.average_rating, reverse=True)[:limit]

    # ------------------------- QR payloads ------------------------- #
    def generate_qr(self, book_id: str, actor: Optional[str] = None,
                    encoder: Optional[Callable[[str], str]] = None) -> Dict[str, Any]:
        """Build the scan payload for a book and record the generation.

        ``encoder`` turns the payload into an image data URL; rendering is
        left to whoever supplies it.
        """
        book = self.require_book(book_id)
        if book.status == BookStatus.DELETED:
            raise NotFoundError(f"Book {book_id} not found.")
        payload = json.dumps(
            {"id": book.id, "title": book.title, "author": book.author, "type": QR_PAYLOAD_TYPE},
            ensure_ascii=False,
        )
        image = encoder(payload) if encoder else None
        with connection(self.db_file) as conn:
            conn.execute(
                f"UPDATE books SET logs = {self._log_expr()} WHERE id = ?",
                (*self._log_params("qr_generated", actor), book_id),
            )
        return {"book_id": book.id, "payload": payload, "image": image}

    @staticmethod
    def parse_qr_payload(raw: str) -> str:
        """Return the book id carried by a scanned payload."""
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Not a library QR code.") from exc
        if not isinstance(data, dict) or data.get("type") != QR_PAYLOAD_TYPE or not data.get("id"):
            raise ValidationError("Not a library QR code.")
        return str(data["id"])

    def find_by_qr(self, raw: str) -> Book:
        """Resolve a scanned QR payload to a catalog book."""
        book_id = self.parse_qr_payload(raw)
        book = self.require_book(book_id)
        if book.status == BookStatus.DELETED:
            raise NotFoundError(f"Book {book_id} not found.")
        return book

    # ------------------------- Statistics ------------------------- #
    def get_statistics(self) -> Dict[str, Any]:
        with connection(self.db_file) as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS n FROM books GROUP BY status").fetchall()
            total_borrows = conn.execute("SELECT COALESCE(SUM(borrow_count), 0) FROM books").fetchone()[0]
        by_status = {status.value: 0 for status in BookStatus}
        for row in rows:
            by_status[row["status"]] = row["n"]
        return {
            "total_books": sum(n for s, n in by_status.items() if s != BookStatus.DELETED.value),
            "by_status": by_status,
            "total_borrows": total_borrows,
        }

    # ------------------------- Utilities ------------------------- #
    @staticmethod
    def _parse_status(status: "str | BookStatus") -> BookStatus:
        try:
            return BookStatus.parse(status)
        except ValueError as exc:
            raise ValidationError(f"Unknown book status: {status!r}") from exc

    @staticmethod
    def _log_expr() -> str:
        # json_set keeps the logs update inside the same single-statement write
        return "json_set(COALESCE(logs, '{}'), ?, json(?))"

    @staticmethod
    def _log_params(event: str, actor: Optional[str]) -> tuple:
        entry = {"by": actor or "system", "at": format_ts(utcnow())}
        return f"$.{event}", dumps(entry)


