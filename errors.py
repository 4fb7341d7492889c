"""Error taxonomy shared by the stores, the OTP gate and the borrow service."""

from typing import Optional


class LibraryError(Exception):
    """Base class for every error raised by the circulation layer."""


class ValidationError(LibraryError):
    """Input has the wrong shape or is missing required fields."""


class NotFoundError(LibraryError):
    """A referenced book, borrow record or user does not exist."""


class ConflictError(LibraryError):
    """The entity is not in the state the requested transition expects."""


class DependencyError(LibraryError):
    """The store or an external API is unreachable or failing."""


class ExternalServiceError(DependencyError):
    """Book metadata API (Google Books / Open Library) unreachable."""


class PartialStateError(DependencyError):
    """A multi-step borrow/return stopped halfway.

    Book status and ledger state may disagree; the record must be reconciled
    by an operator. ``compensated`` tells whether the book status write was
    rolled back.
    """

    def __init__(self, message: str, *, book_id: Optional[str] = None, borrow_id: Optional[str] = None,
                 step: Optional[str] = None, compensated: bool = False) -> None:
        super().__init__(message)
        self.book_id = book_id
        self.borrow_id = borrow_id
        self.step = step
        self.compensated = compensated
