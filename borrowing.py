"""Borrow/return orchestration over the catalog, the ledger and the OTP gate.

The service keeps no state of its own. A borrow is a three step sequence:

1. compare-and-set the book ``available -> borrowed``
2. open a ledger record with the computed due date
3. bump the book's ``borrow_count``

Losing the race in step 1 is a ``ConflictError``. Any failure after step 1
raises ``PartialStateError``; when step 2 fails the status write is undone
first and the error says whether that worked.
"""
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from book import BookStatus
from borrow import BorrowRecord, Borrower, compute_due_date, is_overdue
from config import settings
from database import as_utc, format_ts, utcnow
from errors import ConflictError, LibraryError, PartialStateError, ValidationError
from ledger import BorrowLedger
from library import Library
from notifications import (NotificationDispatcher, REMINDER_SUBJECT, reminder_email_body,
                           reminder_sms_body)
from otp_gate import OTPGate
from users import UserDirectory
from validators import validate_borrower

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "This book is no longer available."
REPORT_RANGES = {"week": 7, "month": 30, "year": 365}


class BorrowService:
    """Coordinates book status and borrow records for checkout and return."""

    def __init__(self, library: Library, ledger: BorrowLedger, otp_gate: OTPGate,
                 dispatcher: Optional[NotificationDispatcher] = None, users: Optional[UserDirectory] = None,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.library = library
        self.ledger = ledger
        self.otp_gate = otp_gate
        self.dispatcher = dispatcher or otp_gate.dispatcher
        self.users = users
        self.clock = clock

    @property
    def loan_period_days(self) -> int:
        return self.ledger.loan_period_days

    # ------------------------- Policy ------------------------- #
    def compute_due_date(self, borrow_date: datetime) -> datetime:
        return compute_due_date(borrow_date, self.loan_period_days)

    @staticmethod
    def is_overdue(record: BorrowRecord, now: datetime) -> bool:
        return is_overdue(record, now)

    # ------------------------- Checkout ------------------------- #
    def initiate_borrow(self, book_id: str, borrower: "Dict[str, Any] | Borrower") -> Dict[str, Any]:
        """Check the book can be borrowed, then issue and send a one-time code."""
        borrower = validate_borrower(borrower)
        self._require_borrowable(book_id)
        code = self.otp_gate.issue(borrower.email, borrower.phone)
        delivery = self.otp_gate.dispatch(code, email=borrower.email, phone=borrower.phone)
        return {
            "book_id": book_id,
            "email": borrower.email,
            "delivery": delivery,
            "expires_in_minutes": self.otp_gate.validity_minutes,
        }

    def borrow_with_otp(self, book_id: str, borrower: "Dict[str, Any] | Borrower", code: str,
                        actor: Optional[str] = None) -> Dict[str, Any]:
        borrower = validate_borrower(borrower)
        # Checked before redeeming so a doomed request does not burn the code
        self._require_borrowable(book_id)
        if not self.otp_gate.verify(borrower.email, code):
            raise ValidationError("Invalid or already used code.")
        return self.request_borrow(book_id, borrower, actor=actor)

    def request_borrow(self, book_id: str, borrower: "Dict[str, Any] | Borrower",
                       actor: Optional[str] = None) -> Dict[str, Any]:
        """Check a book out to ``borrower``. The OTP must already be verified."""
        borrower = validate_borrower(borrower)
        self._require_borrowable(book_id)

        if not self.library.compare_and_set_status(book_id, BookStatus.AVAILABLE, BookStatus.BORROWED, actor):
            logger.warning(f"Borrow of book {book_id} lost the race")
            raise ConflictError(UNAVAILABLE_MESSAGE)

        try:
            record = self.ledger.create_borrow(book_id, borrower, now=self.clock())
        except LibraryError as exc:
            compensated = self._release(book_id, actor)
            logger.error(f"Borrow of book {book_id} failed opening ledger record "
                         f"(status rolled back: {compensated}): {exc}")
            raise PartialStateError(
                f"Book {book_id} was marked borrowed but no borrow record was written.",
                book_id=book_id, step="create_borrow", compensated=compensated,
            ) from exc

        try:
            self.library.increment_borrow_count(book_id)
        except LibraryError as exc:
            logger.error(f"Borrow {record.id} recorded but borrow_count of book {book_id} not incremented: {exc}")
            raise PartialStateError(
                f"Borrow {record.id} recorded but the borrow count of book {book_id} was not updated.",
                book_id=book_id, borrow_id=record.id, step="increment_borrow_count",
            ) from exc

        logger.info(f"Book {book_id} borrowed by {borrower.email} (borrow {record.id})")
        return {"borrow_id": record.id, "book_id": book_id, "due_date": record.due_date}

    # ------------------------- Return ------------------------- #
    def complete_return(self, borrow_id: str, actor: Optional[str] = None) -> BorrowRecord:
        record = self.ledger.require_borrow(borrow_id)
        if not record.is_active:
            raise ConflictError(f"Borrow record {borrow_id} is already {record.status.value}.")

        # The ledger close is itself conditional, so only one concurrent return gets past here
        closed = self.ledger.close_borrow(borrow_id, now=self.clock())

        try:
            released = self.library.compare_and_set_status(
                record.book_id, BookStatus.BORROWED, BookStatus.AVAILABLE, actor
            )
        except LibraryError as exc:
            logger.error(f"Borrow {borrow_id} closed but book {record.book_id} not released: {exc}")
            raise PartialStateError(
                f"Borrow {borrow_id} closed but book {record.book_id} is still marked borrowed.",
                book_id=record.book_id, borrow_id=borrow_id, step="release_book",
            ) from exc
        if not released:
            logger.error(f"Borrow {borrow_id} closed but book {record.book_id} was not in borrowed state")
            raise PartialStateError(
                f"Borrow {borrow_id} closed but book {record.book_id} was not marked borrowed.",
                book_id=record.book_id, borrow_id=borrow_id, step="release_book",
            )

        logger.info(f"Borrow {borrow_id} returned; book {record.book_id} available")
        return closed

    # ------------------------- Administration ------------------------- #
    def set_availability(self, book_id: str, status: "str | BookStatus", actor: Optional[str] = None):
        """Toggle a book between available and unavailable."""
        try:
            target = BookStatus.parse(status)
        except ValueError as exc:
            raise ValidationError(f"Unknown book status: {status!r}") from exc
        if target not in (BookStatus.AVAILABLE, BookStatus.UNAVAILABLE):
            raise ValidationError("Status can only be set to 'available' or 'unavailable'.")

        book = self.library.require_book(book_id)
        if book.status == target:
            return book
        if book.status not in (BookStatus.AVAILABLE, BookStatus.UNAVAILABLE):
            raise ConflictError(f"Book {book_id} is {book.status.value}; its availability cannot be changed.")
        if not self.library.compare_and_set_status(book_id, book.status, target, actor):
            raise ConflictError(f"Book {book_id} changed status concurrently; try again.")
        return self.library.require_book(book_id)

    # ------------------------- Overdue & reminders ------------------------- #
    def list_overdue(self, now: Optional[datetime] = None) -> List[BorrowRecord]:
        return self.ledger.list_overdue(as_utc(now or self.clock()))

    def send_reminder(self, record: BorrowRecord) -> Dict[str, bool]:
        due = record.due_date.strftime("%Y-%m-%d")
        borrower = record.borrower
        delivery: Dict[str, bool] = {}
        try:
            if borrower.email:
                delivery["email"] = self.dispatcher.send_email(
                    borrower.email, REMINDER_SUBJECT, reminder_email_body(borrower.name, due)
                )
            if borrower.phone:
                delivery["sms"] = self.dispatcher.send_sms(borrower.phone, reminder_sms_body(due))
        except Exception as exc:  # reminders are best-effort
            logger.warning(f"Reminder for borrow {record.id} failed: {exc}")
        return delivery

    def send_due_reminders(self, now: Optional[datetime] = None,
                           within_days: Optional[int] = None) -> List[Dict[str, Any]]:
        """Remind every borrower whose book is overdue or falls due soon."""
        now = as_utc(now or self.clock())
        days = settings.reminder_days_before if within_days is None else within_days
        due_soon = self.ledger.list_due_between(now, now + timedelta(days=days))
        records = {r.id: r for r in self.ledger.list_overdue(now) + due_soon}
        results = []
        for record in records.values():
            results.append({
                "borrow_id": record.id,
                "email": record.borrower.email,
                "overdue": is_overdue(record, now),
                "delivery": self.send_reminder(record),
            })
        logger.info(f"Sent {len(results)} due-date reminder(s)")
        return results

    # ------------------------- Reporting ------------------------- #
    def report(self, now: Optional[datetime] = None, time_range: str = "month") -> Dict[str, Any]:
        if time_range not in REPORT_RANGES:
            raise ValidationError(f"Unknown range {time_range!r}; use week, month or year.")
        now = as_utc(now or self.clock())
        since = now - timedelta(days=REPORT_RANGES[time_range])

        stats = self.library.get_statistics()
        all_borrows = self.ledger.list_all()
        in_range = [b for b in all_borrows if b.borrow_date >= since]

        daily = Counter(b.borrow_date.strftime("%Y-%m-%d") for b in in_range)
        per_book = Counter(b.book_id for b in all_borrows)
        per_borrower = Counter(b.borrower.email for b in all_borrows)

        popular = []
        for book_id, count in per_book.most_common(5):
            book = self.library.get_book(book_id)
            popular.append({"book_id": book_id, "title": book.title if book else None, "borrows": count})

        overdue = []
        for record in self.ledger.list_overdue(now):
            book = self.library.get_book(record.book_id)
            overdue.append({
                "borrow_id": record.id,
                "book_id": record.book_id,
                "title": book.title if book else None,
                "borrower": record.borrower.to_dict(),
                "due_date": format_ts(record.due_date),
                "days_overdue": (now - record.due_date).days,
            })

        return {
            "range": time_range,
            "books": {
                "total": stats["total_books"],
                "available": stats["by_status"][BookStatus.AVAILABLE.value],
                "borrowed": stats["by_status"][BookStatus.BORROWED.value],
                "unavailable": stats["by_status"][BookStatus.UNAVAILABLE.value],
            },
            "borrows": {
                "total": len(in_range),
                "active": sum(1 for b in in_range if b.is_active),
                "returned": sum(1 for b in in_range if not b.is_active),
                "daily": dict(sorted(daily.items())),
            },
            "users": {
                "total_borrowers": self.users.count_by_role("borrower") if self.users else None,
                "active_borrowers": len({b.borrower.email for b in in_range}),
            },
            "popular_books": popular,
            "active_borrowers": [{"email": e, "borrows": n} for e, n in per_borrower.most_common(5)],
            "overdue": overdue,
        }

    # ------------------------- Helpers ------------------------- #
    def _require_borrowable(self, book_id: str) -> None:
        book = self.library.require_book(book_id)
        if book.status != BookStatus.AVAILABLE:
            raise ConflictError(UNAVAILABLE_MESSAGE)

    def _release(self, book_id: str, actor: Optional[str]) -> bool:
        try:
            return self.library.compare_and_set_status(book_id, BookStatus.BORROWED, BookStatus.AVAILABLE, actor)
        except LibraryError as exc:
            logger.error(f"Could not roll back status of book {book_id}: {exc}")
            return False


def build_service(db_file: Optional[str] = None, dispatcher: Optional[NotificationDispatcher] = None,
                  metadata=None) -> BorrowService:
    """Wire the stores and the gate against one database file using ``settings``."""
    dispatcher = dispatcher or NotificationDispatcher()
    library = Library(db_file=db_file, metadata=metadata)
    return BorrowService(
        library=library,
        ledger=BorrowLedger(db_file=library.db_file, loan_period_days=settings.loan_period_days),
        otp_gate=OTPGate(db_file=library.db_file, dispatcher=dispatcher),
        dispatcher=dispatcher,
        users=UserDirectory(db_file=library.db_file),
    )
