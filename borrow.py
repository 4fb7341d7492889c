from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from database import as_utc, format_ts, parse_ts

DEFAULT_LOAN_PERIOD_DAYS = 14


class BorrowStatus(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"


@dataclass(frozen=True)
class Borrower:
    """Borrower identity copied onto the borrow record at checkout time.

    The copy is never updated afterwards, so history stays stable when a user
    edits their profile.
    """
    name: str
    email: str
    phone: Optional[str] = None
    uid: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "email": self.email, "phone": self.phone, "uid": self.uid}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Borrower":
        return Borrower(
            name=(data.get("name") or "").strip(),
            email=(data.get("email") or "").strip().lower(),
            phone=(data.get("phone") or None),
            uid=data.get("uid"),
        )


@dataclass
class BorrowRecord:
    """One checkout transaction linking a book, a borrower and a due date."""
    id: str
    book_id: str
    borrower: Borrower
    borrow_date: datetime
    due_date: datetime
    status: BorrowStatus = BorrowStatus.ACTIVE
    return_date: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == BorrowStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "borrower": self.borrower.to_dict(),
            "borrow_date": format_ts(self.borrow_date),
            "due_date": format_ts(self.due_date),
            "return_date": format_ts(self.return_date),
            "status": self.status.value,
        }

    @staticmethod
    def from_row(row: Dict[str, Any]) -> "BorrowRecord":
        return BorrowRecord(
            id=row["id"],
            book_id=row["book_id"],
            borrower=Borrower(
                name=row["borrower_name"],
                email=row["borrower_email"],
                phone=row.get("borrower_phone"),
                uid=row.get("borrower_uid"),
            ),
            borrow_date=parse_ts(row["borrow_date"]),
            due_date=parse_ts(row["due_date"]),
            status=BorrowStatus(row["status"]),
            return_date=parse_ts(row.get("return_date")),
        )


def compute_due_date(borrow_date: datetime, loan_period_days: int = DEFAULT_LOAN_PERIOD_DAYS) -> datetime:
    """Due date is the borrow date plus the loan period, in whole 24h days."""
    return as_utc(borrow_date) + timedelta(days=loan_period_days)


def is_overdue(record: BorrowRecord, now: datetime) -> bool:
    return record.status == BorrowStatus.ACTIVE and as_utc(record.due_date) < as_utc(now)
