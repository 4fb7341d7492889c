import logging
import sqlite3
import uuid
from datetime import datetime
from typing import List, Optional

import database
from borrow import BorrowRecord, BorrowStatus, Borrower, DEFAULT_LOAN_PERIOD_DAYS, compute_due_date
from database import as_utc, connection, format_ts, initialize_database, utcnow
from errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


class BorrowLedger:
    """Borrow records, one per checkout. Records are closed, never deleted."""

    def __init__(self, db_file: Optional[str] = None, loan_period_days: int = DEFAULT_LOAN_PERIOD_DAYS) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        self.loan_period_days = loan_period_days
        initialize_database(self.db_file)

    def create_borrow(self, book_id: str, borrower: Borrower, now: Optional[datetime] = None) -> BorrowRecord:
        borrow_date = as_utc(now) or utcnow()
        record = BorrowRecord(
            id=uuid.uuid4().hex,
            book_id=book_id,
            borrower=borrower,
            borrow_date=borrow_date,
            due_date=compute_due_date(borrow_date, self.loan_period_days),
            status=BorrowStatus.ACTIVE,
            return_date=None,
        )
        try:
            with connection(self.db_file) as conn:
                conn.execute(
                    """
                    INSERT INTO borrows (id, book_id, borrower_name, borrower_email, borrower_phone,
                                         borrower_uid, borrow_date, due_date, return_date, status)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, ?)
                    """,
                    (record.id, book_id, borrower.name, borrower.email, borrower.phone, borrower.uid,
                     format_ts(record.borrow_date), format_ts(record.due_date), record.status.value),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Book {book_id} already has an active borrow.") from exc
        logger.info(f"Borrow {record.id} opened for book {book_id}, due {format_ts(record.due_date)}")
        return record

    def get_borrow(self, borrow_id: str) -> Optional[BorrowRecord]:
        with connection(self.db_file) as conn:
            row = conn.execute("SELECT * FROM borrows WHERE id = ?", (borrow_id,)).fetchone()
        return BorrowRecord.from_row(dict(row)) if row else None

    def require_borrow(self, borrow_id: str) -> BorrowRecord:
        record = self.get_borrow(borrow_id)
        if not record:
            raise NotFoundError(f"Borrow record {borrow_id} not found.")
        return record

    def close_borrow(self, borrow_id: str, now: Optional[datetime] = None) -> BorrowRecord:
        """Mark an active record returned. A second close is a conflict, not a no-op."""
        return_date = as_utc(now) or utcnow()
        with connection(self.db_file) as conn:
            cursor = conn.execute(
                "UPDATE borrows SET status = ?, return_date = ? WHERE id = ? AND status = ?",
                (BorrowStatus.RETURNED.value, format_ts(return_date), borrow_id, BorrowStatus.ACTIVE.value),
            )
            closed = cursor.rowcount == 1
        if not closed:
            record = self.require_borrow(borrow_id)
            raise ConflictError(f"Borrow record {record.id} is already {record.status.value}.")
        logger.info(f"Borrow {borrow_id} closed")
        return self.require_borrow(borrow_id)

    # ------------------------- Queries ------------------------- #
    def list_all(self) -> List[BorrowRecord]:
        return self._select("SELECT * FROM borrows ORDER BY borrow_date DESC")

    def list_active(self) -> List[BorrowRecord]:
        return self._select("SELECT * FROM borrows WHERE status = ? ORDER BY due_date", (BorrowStatus.ACTIVE.value,))

    def list_by_borrower_email(self, email: str) -> List[BorrowRecord]:
        return self._select(
            "SELECT * FROM borrows WHERE borrower_email = ? ORDER BY borrow_date DESC",
            ((email or "").strip().lower(),),
        )

    def list_by_book(self, book_id: str) -> List[BorrowRecord]:
        return self._select("SELECT * FROM borrows WHERE book_id = ? ORDER BY borrow_date DESC", (book_id,))

    def list_overdue(self, now: Optional[datetime] = None) -> List[BorrowRecord]:
        """Active records whose due date is strictly before ``now``."""
        now = as_utc(now) or utcnow()
        return [r for r in self.list_active() if r.due_date < now]

    def list_due_between(self, start: datetime, end: datetime) -> List[BorrowRecord]:
        """Active records falling due in ``[start, end)``."""
        start, end = as_utc(start), as_utc(end)
        return [r for r in self.list_active() if start <= r.due_date < end]

    def _select(self, sql: str, params: tuple = ()) -> List[BorrowRecord]:
        with connection(self.db_file) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [BorrowRecord.from_row(dict(row)) for row in rows]
