import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from config import settings
from errors import ExternalServiceError

logger = logging.getLogger(__name__)

GOOGLE_BOOKS_URL = "https://www.googleapis.com/books/v1/volumes"
OPEN_LIBRARY_URL = "https://openlibrary.org"


@dataclass
class BookMetadata:
    """Data shape every metadata source must return."""
    title: str
    authors: List[str] = field(default_factory=list)
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    published_date: Optional[str] = None
    description: Optional[str] = None
    page_count: Optional[int] = None
    categories: List[str] = field(default_factory=list)
    cover_url: Optional[str] = None
    source: str = "google_books"

    @property
    def author(self) -> str:
        return ", ".join(self.authors) if self.authors else "Unknown Author"

    def to_book_data(self) -> Dict[str, Any]:
        """Fields accepted by ``Library.add_book``."""
        return {
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "publisher": self.publisher,
            "published_date": self.published_date,
            "description": self.description,
            "page_count": self.page_count,
            "categories": list(self.categories),
            "cover_url": self.cover_url,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_book_data()
        data["authors"] = list(self.authors)
        data["source"] = self.source
        return data


class MetadataLookup:
    """Looks books up by ISBN or free text on Google Books, then Open Library."""

    def __init__(self, api_key: Optional[str] = None) -> None:
        self.api_key = api_key or settings.google_books_api_key
        self.google_enabled = settings.enable_google_books

    # ------------------------- Public API ------------------------- #
    def lookup_isbn(self, isbn: str) -> Optional[BookMetadata]:
        """Return metadata for ``isbn`` or None when no source knows it."""
        if self.google_enabled:
            found = self._google_by_isbn(isbn)
            if found:
                return found
        return self._open_library_by_isbn(isbn)

    def search(self, query: str, max_results: int = 10) -> List[BookMetadata]:
        if not query or not query.strip():
            return []
        params: Dict[str, Any] = {"q": query.strip(), "maxResults": min(max_results, 40)}
        data = self._get_json(GOOGLE_BOOKS_URL, params=params, timeout=settings.google_books_timeout)
        results = []
        for item in (data or {}).get("items", []) or []:
            parsed = self._parse_volume(item)
            if parsed:
                results.append(parsed)
        logger.info(f"Metadata search '{query}' returned {len(results)} result(s)")
        return results

    # ------------------------- Google Books ------------------------- #
    def _google_by_isbn(self, isbn: str) -> Optional[BookMetadata]:
        params: Dict[str, Any] = {"q": f"isbn:{isbn}", "maxResults": 1}
        data = self._get_json(GOOGLE_BOOKS_URL, params=params, timeout=settings.google_books_timeout)
        if not data or data.get("totalItems", 0) == 0:
            return None
        items = data.get("items") or []
        if not items:
            return None
        parsed = self._parse_volume(items[0])
        if parsed and not parsed.isbn:
            parsed.isbn = isbn
        return parsed

    @staticmethod
    def _parse_volume(item: Dict[str, Any]) -> Optional[BookMetadata]:
        info = item.get("volumeInfo", {}) or {}
        title = info.get("title")
        if not title:
            return None

        isbn = None
        for identifier in info.get("industryIdentifiers", []) or []:
            if identifier.get("type") in ("ISBN_13", "ISBN_10"):
                isbn = identifier.get("identifier")
                break

        # Prefer the highest resolution image available
        image_links = info.get("imageLinks", {}) or {}
        cover_url = None
        for key in ("extraLarge", "large", "medium", "small", "thumbnail", "smallThumbnail"):
            if image_links.get(key):
                cover_url = image_links[key]
                break

        return BookMetadata(
            title=title,
            authors=list(info.get("authors", []) or []),
            isbn=isbn,
            publisher=info.get("publisher"),
            published_date=info.get("publishedDate"),
            description=info.get("description"),
            page_count=info.get("pageCount"),
            categories=list(info.get("categories", []) or []),
            cover_url=cover_url,
            source="google_books",
        )

    # ------------------------- Open Library ------------------------- #
    def _open_library_by_isbn(self, isbn: str) -> Optional[BookMetadata]:
        url = f"{OPEN_LIBRARY_URL}/api/books?bibkeys=ISBN:{isbn}&format=json&jscmd=data"
        data = self._get_json(url, timeout=settings.openlibrary_timeout)
        book_json = (data or {}).get(f"ISBN:{isbn}")
        if not book_json or not book_json.get("title"):
            return None

        authors = []
        for item in book_json.get("authors", []) or []:
            if isinstance(item, dict) and item.get("name"):
                authors.append(item["name"])

        description = book_json.get("description")
        if isinstance(description, dict):
            description = description.get("value")

        return BookMetadata(
            title=book_json["title"],
            authors=authors,
            isbn=isbn,
            publisher=next((p.get("name") for p in book_json.get("publishers", []) or [] if p.get("name")), None),
            published_date=book_json.get("publish_date"),
            description=description,
            page_count=book_json.get("number_of_pages"),
            categories=[s.get("name") for s in (book_json.get("subjects") or [])[:10] if s.get("name")],
            cover_url=(book_json.get("cover") or {}).get("large"),
            source="open_library",
        )

    # ------------------------- HTTP helpers ------------------------- #
    def _get_json(self, url: str, timeout: float, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        if params is not None and self.api_key and url.startswith(GOOGLE_BOOKS_URL):
            params = dict(params, key=self.api_key)
        resp = self._http_get_with_retry(url, timeout=timeout, params=params)
        if resp.status_code == 200:
            return resp.json()
        if resp.status_code >= 500 or resp.status_code == 429:
            raise ExternalServiceError(f"Metadata service answered {resp.status_code} for {url}")
        logger.info(f"Metadata request to {url} returned {resp.status_code}")
        return None

    def _http_get_with_retry(self, url: str, timeout: float, params: Optional[Dict[str, Any]] = None,
                             retries: int = 3, backoff: float = 0.5) -> httpx.Response:
        """Retry transient network errors with exponential backoff.

        Raises ExternalServiceError once every attempt failed.
        """
        for attempt in range(retries):
            try:
                if params is None:
                    return httpx.get(url, timeout=timeout)
                return httpx.get(url, params=params, timeout=timeout)
            except httpx.RequestError as exc:
                if attempt < retries - 1:
                    time.sleep(backoff * (2 ** attempt))
                    continue
                logger.warning(f"Metadata service unreachable after {retries} attempts: {exc}")
                raise ExternalServiceError("Book metadata service unreachable") from exc
        raise ExternalServiceError("Book metadata service unreachable")
