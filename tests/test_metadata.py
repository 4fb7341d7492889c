import httpx
import pytest

from errors import ExternalServiceError
from metadata import GOOGLE_BOOKS_URL, MetadataLookup


class FakeResponse:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload or {}

    def json(self):
        return self._payload


GOOGLE_VOLUME = {
    "totalItems": 1,
    "items": [{
        "volumeInfo": {
            "title": "Clean Code",
            "authors": ["Robert C. Martin"],
            "publisher": "Prentice Hall",
            "publishedDate": "2008",
            "pageCount": 464,
            "categories": ["Computers"],
            "industryIdentifiers": [{"type": "ISBN_13", "identifier": "9780132350884"}],
            "imageLinks": {"thumbnail": "http://img/thumb", "large": "http://img/large"},
        }
    }],
}

OPEN_LIBRARY_BOOK = {
    "ISBN:0306406152": {
        "title": "Signals and Noise",
        "authors": [{"name": "A. Author"}, {"name": "B. Author"}],
        "publishers": [{"name": "Plenum"}],
        "publish_date": "1983",
        "number_of_pages": 120,
        "subjects": [{"name": "Physics"}],
        "cover": {"large": "http://covers/large.jpg"},
    }
}


@pytest.fixture
def lookup(monkeypatch):
    monkeypatch.setattr("metadata.time.sleep", lambda s: None)
    return MetadataLookup(api_key="k")


def test_lookup_prefers_google_books(lookup, monkeypatch):
    calls = []

    def fake_get(url, params=None, timeout=None):
        calls.append((url, params))
        return FakeResponse(200, GOOGLE_VOLUME)

    monkeypatch.setattr("metadata.httpx.get", fake_get)
    found = lookup.lookup_isbn("9780132350884")

    assert found.title == "Clean Code"
    assert found.author == "Robert C. Martin"
    assert found.cover_url == "http://img/large"
    assert found.source == "google_books"
    assert calls == [(GOOGLE_BOOKS_URL, {"q": "isbn:9780132350884", "maxResults": 1, "key": "k"})]


def test_lookup_falls_back_to_open_library(lookup, monkeypatch):
    def fake_get(url, params=None, timeout=None):
        if url == GOOGLE_BOOKS_URL:
            return FakeResponse(200, {"totalItems": 0})
        return FakeResponse(200, OPEN_LIBRARY_BOOK)

    monkeypatch.setattr("metadata.httpx.get", fake_get)
    found = lookup.lookup_isbn("0306406152")

    assert found.source == "open_library"
    assert found.author == "A. Author, B. Author"
    assert found.publisher == "Plenum"
    assert found.to_book_data()["page_count"] == 120


def test_lookup_unknown_isbn(lookup, monkeypatch):
    monkeypatch.setattr("metadata.httpx.get", lambda url, params=None, timeout=None: FakeResponse(404))
    assert lookup.lookup_isbn("0306406152") is None


def test_server_error_is_dependency_failure(lookup, monkeypatch):
    monkeypatch.setattr("metadata.httpx.get", lambda url, params=None, timeout=None: FakeResponse(503))
    with pytest.raises(ExternalServiceError):
        lookup.lookup_isbn("0306406152")


def test_network_errors_retried_then_raised(lookup, monkeypatch):
    attempts = []

    def fake_get(url, params=None, timeout=None):
        attempts.append(url)
        raise httpx.ConnectError("offline")

    monkeypatch.setattr("metadata.httpx.get", fake_get)
    with pytest.raises(ExternalServiceError):
        lookup.search("clean code")
    assert len(attempts) == 3


def test_search_parses_volumes(lookup, monkeypatch):
    monkeypatch.setattr("metadata.httpx.get", lambda url, params=None, timeout=None: FakeResponse(200, GOOGLE_VOLUME))
    results = lookup.search("clean code", max_results=5)
    assert [r.title for r in results] == ["Clean Code"]
    assert results[0].to_dict()["authors"] == ["Robert C. Martin"]


def test_blank_search_makes_no_request(lookup, monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("no request expected")
    monkeypatch.setattr("metadata.httpx.get", fail)
    assert lookup.search("  ") == []
