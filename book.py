from __future__ import annotations

from enum import Enum

from database import dumps, loads


class BookStatus(str, Enum):
    AVAILABLE = "available"
    BORROWED = "borrowed"
    UNAVAILABLE = "unavailable"
    DELETED = "deleted"

    @classmethod
    def parse(cls, value: "str | BookStatus") -> "BookStatus":
        return value if isinstance(value, cls) else cls(str(value).strip().lower())


class Book:
    """A single book in the catalog."""

    def __init__(self, id: str, title: str, author: str, isbn: str | None = None,
                 status: BookStatus | str = BookStatus.AVAILABLE, borrow_count: int = 0,
                 average_rating: float = 0.0, ratings: list | None = None,
                 # Descriptive metadata
                 publisher: str | None = None, published_date: str | None = None,
                 description: str | None = None, page_count: int | None = None,
                 categories: list | None = None, cover_url: str | None = None,
                 location: str | None = None, added_date: str | None = None,
                 logs: dict | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn
        self.status = BookStatus.parse(status)
        self.borrow_count = borrow_count or 0
        self.average_rating = average_rating or 0.0
        self.ratings = ratings or []

        self.publisher = publisher
        self.published_date = published_date
        self.description = description
        self.page_count = page_count
        self.categories = categories or []
        self.cover_url = cover_url
        self.location = location
        self.added_date = added_date
        self.logs = logs or {}

    def __str__(self) -> str:
        return f"{self.title} by {self.author} [{self.status.value}]"

    @property
    def is_borrowable(self) -> bool:
        return self.status == BookStatus.AVAILABLE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "status": self.status.value,
            "borrow_count": self.borrow_count,
            "average_rating": self.average_rating,
            "ratings": self.ratings,
            "publisher": self.publisher,
            "published_date": self.published_date,
            "description": self.description,
            "page_count": self.page_count,
            "categories": self.categories,
            "cover_url": self.cover_url,
            "location": self.location,
            "added_date": self.added_date,
            "logs": self.logs,
        }

    def to_row(self) -> dict:
        row = self.to_dict()
        row["categories"] = dumps(self.categories)
        row["ratings"] = dumps(self.ratings)
        row["logs"] = dumps(self.logs)
        return row

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # JSON text columns coming from SQLite are normalised to Python values
        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            isbn=data.get("isbn"),
            status=data.get("status") or BookStatus.AVAILABLE,
            borrow_count=data.get("borrow_count") or 0,
            average_rating=data.get("average_rating") or 0.0,
            ratings=_as_json(data.get("ratings"), []),
            publisher=data.get("publisher"),
            published_date=data.get("published_date"),
            description=data.get("description"),
            page_count=data.get("page_count"),
            categories=_as_json(data.get("categories"), []),
            cover_url=data.get("cover_url"),
            location=data.get("location"),
            added_date=data.get("added_date"),
            logs=_as_json(data.get("logs"), {}),
        )


def _as_json(value, default):
    if isinstance(value, str):
        return loads(value, default)
    return value if value is not None else default
