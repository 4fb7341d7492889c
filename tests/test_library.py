import json

import pytest

from book import BookStatus
from errors import ConflictError, NotFoundError, ValidationError
from library import Library
from metadata import BookMetadata


def test_add_book_starts_available(lib):
    book = lib.add_book({"title": "  Dune ", "author": "Frank Herbert"}, actor="admin")
    stored = lib.get_book(book.id)
    assert stored.title == "Dune"
    assert stored.status == BookStatus.AVAILABLE
    assert stored.borrow_count == 0
    assert stored.average_rating == 0.0
    assert stored.logs["created"]["by"] == "admin"


def test_add_book_ignores_caller_status(lib):
    book = lib.add_book({"title": "Emma", "author": "Jane Austen", "status": "borrowed", "borrow_count": 9})
    assert lib.get_book(book.id).status == BookStatus.AVAILABLE
    assert lib.get_book(book.id).borrow_count == 0


@pytest.mark.parametrize("data", [{"title": "No author"}, {"author": "No title"}, {"title": " ", "author": "X"}])
def test_add_book_requires_title_and_author(lib, data):
    with pytest.raises(ValidationError):
        lib.add_book(data)


def test_get_book_missing_returns_none(lib):
    assert lib.get_book("nope") is None
    with pytest.raises(NotFoundError):
        lib.require_book("nope")


def test_add_book_by_isbn_uses_metadata(lib, metadata):
    metadata.lookup_isbn.return_value = BookMetadata(title="Clean Code", authors=["Robert C. Martin"],
                                                     page_count=464)
    book = lib.add_book_by_isbn("978-0-13-235088-4", actor="admin")
    metadata.lookup_isbn.assert_called_once_with("9780132350884")
    assert book.title == "Clean Code"
    assert book.author == "Robert C. Martin"
    assert book.isbn == "9780132350884"
    assert book.page_count == 464


def test_add_book_by_isbn_rejects_bad_checksum(lib, metadata):
    with pytest.raises(ValidationError):
        lib.add_book_by_isbn("9780132350880")
    metadata.lookup_isbn.assert_not_called()


def test_add_book_by_isbn_not_found(lib, metadata):
    metadata.lookup_isbn.return_value = None
    with pytest.raises(NotFoundError):
        lib.add_book_by_isbn("0306406152")


def test_list_books_hides_deleted_unless_asked(lib):
    keep = lib.add_book({"title": "A", "author": "X"})
    gone = lib.add_book({"title": "B", "author": "Y"})
    lib.soft_delete(gone.id, actor="admin")

    assert [b.id for b in lib.list_books()] == [keep.id]
    assert [b.id for b in lib.list_books("deleted")] == [gone.id]
    assert lib.get_book(gone.id).logs["deleted"]["by"] == "admin"


def test_list_books_unknown_status(lib):
    with pytest.raises(ValidationError):
        lib.list_books("lost")


def test_search_books_matches_title_author_isbn(lib, book):
    assert [b.id for b in lib.search_books("dun")] == [book.id]
    assert [b.id for b in lib.search_books("Herbert")] == [book.id]
    assert [b.id for b in lib.search_books("0441172")] == [book.id]
    assert lib.search_books("tolkien") == []


def test_update_book_records_log(lib, book):
    updated = lib.update_book(book.id, actor="editor", location="Shelf 3", categories=["sci-fi"])
    assert updated.location == "Shelf 3"
    assert updated.categories == ["sci-fi"]
    assert updated.logs["updated"]["by"] == "editor"
    assert "created" in updated.logs


def test_update_book_rejects_status_field(lib, book):
    with pytest.raises(ValidationError):
        lib.update_book(book.id, status="borrowed")


def test_update_missing_book(lib):
    with pytest.raises(NotFoundError):
        lib.update_book("missing", title="X")


def test_compare_and_set_status(lib, book):
    assert lib.compare_and_set_status(book.id, "available", "borrowed", actor="svc") is True
    assert lib.compare_and_set_status(book.id, "available", "borrowed") is False
    stored = lib.get_book(book.id)
    assert stored.status == BookStatus.BORROWED
    assert stored.logs["status_changed"]["by"] == "svc"


def test_compare_and_set_missing_book_is_false(lib):
    assert lib.compare_and_set_status("missing", "available", "borrowed") is False


def test_set_status_unconditional(lib, book):
    lib.set_status(book.id, BookStatus.UNAVAILABLE)
    assert lib.get_book(book.id).status == BookStatus.UNAVAILABLE
    with pytest.raises(NotFoundError):
        lib.set_status("missing", "available")


def test_increment_borrow_count(lib, book):
    lib.increment_borrow_count(book.id)
    lib.increment_borrow_count(book.id)
    assert lib.get_book(book.id).borrow_count == 2
    with pytest.raises(NotFoundError):
        lib.increment_borrow_count("missing")


def test_soft_delete_borrowed_book_conflicts(lib, book):
    lib.compare_and_set_status(book.id, "available", "borrowed")
    with pytest.raises(ConflictError):
        lib.soft_delete(book.id)
    assert lib.get_book(book.id).status == BookStatus.BORROWED


def test_soft_delete_missing_book(lib):
    with pytest.raises(NotFoundError):
        lib.soft_delete("missing")


def test_ratings_average_and_replace(lib, book):
    lib.add_rating(book.id, "u1", 5)
    lib.add_rating(book.id, "u2", 2)
    assert lib.get_book(book.id).average_rating == 3.5

    rated = lib.add_rating(book.id, "u2", 4)
    assert rated.average_rating == 4.5
    assert len(rated.ratings) == 2


@pytest.mark.parametrize("value", [0, 6, 3.5, True])
def test_rating_out_of_range(lib, book, value):
    with pytest.raises(ValidationError):
        lib.add_rating(book.id, "u1", value)


def test_rankings(lib):
    a = lib.add_book({"title": "A", "author": "X"})
    b = lib.add_book({"title": "B", "author": "Y"})
    lib.increment_borrow_count(b.id)
    lib.add_rating(a.id, "u1", 5)
    lib.add_rating(b.id, "u1", 1)
    assert [x.id for x in lib.most_borrowed(1)] == [b.id]
    assert [x.id for x in lib.highest_rated(1)] == [a.id]


def test_generate_qr_payload_and_log(lib, book):
    qr = lib.generate_qr(book.id, actor="admin", encoder=lambda payload: f"data:{len(payload)}")
    data = json.loads(qr["payload"])
    assert data == {"id": book.id, "title": "Dune", "author": "Frank Herbert", "type": "library_book"}
    assert qr["image"].startswith("data:")
    assert Library.parse_qr_payload(qr["payload"]) == book.id
    assert lib.get_book(book.id).logs["qr_generated"]["by"] == "admin"


@pytest.mark.parametrize("raw", ["not json", "[]", json.dumps({"id": "1", "type": "other"})])
def test_parse_qr_payload_rejects_foreign_codes(raw):
    with pytest.raises(ValidationError):
        Library.parse_qr_payload(raw)


def test_find_by_qr(lib, book):
    qr = lib.generate_qr(book.id)
    assert lib.find_by_qr(qr["payload"]).id == book.id

    lib.soft_delete(book.id)
    with pytest.raises(NotFoundError):
        lib.find_by_qr(qr["payload"])
    with pytest.raises(ValidationError):
        lib.find_by_qr("not json")


def test_statistics(lib):
    a = lib.add_book({"title": "A", "author": "X"})
    b = lib.add_book({"title": "B", "author": "Y"})
    lib.add_book({"title": "C", "author": "Z"})
    lib.compare_and_set_status(a.id, "available", "borrowed")
    lib.increment_borrow_count(a.id)
    lib.soft_delete(b.id)

    stats = lib.get_statistics()
    assert stats["total_books"] == 2
    assert stats["by_status"]["borrowed"] == 1
    assert stats["by_status"]["available"] == 1
    assert stats["by_status"]["deleted"] == 1
    assert stats["total_borrows"] == 1
