import pytest

from errors import ConflictError, NotFoundError, ValidationError


def test_register_and_lookup(users):
    user = users.register({"uid": "u1", "name": "Ada", "email": "Ada@Example.com", "phone": "+905551112233"})
    assert user.email == "ada@example.com"
    assert users.require_user("u1").name == "Ada"
    assert users.get_user_by_email("ADA@example.com").uid == "u1"
    assert users.user_exists("ada@example.com")
    assert users.count_by_role("borrower") == 1


def test_register_generates_uid(users):
    user = users.register({"name": "Alan", "email": "alan@example.com", "role": "admin"})
    assert user.uid
    assert users.count_by_role("admin") == 1


def test_duplicate_email_conflicts(users):
    users.register({"name": "Ada", "email": "ada@example.com"})
    with pytest.raises(ConflictError):
        users.register({"name": "Other Ada", "email": "ada@example.com"})


def test_unknown_role_rejected(users):
    with pytest.raises(ValidationError):
        users.register({"name": "Eve", "email": "eve@example.com", "role": "root"})


def test_missing_user(users):
    assert users.get_user("nobody") is None
    with pytest.raises(NotFoundError):
        users.require_user("nobody")


def test_profile_as_borrower_snapshot(users):
    user = users.register({"uid": "u1", "name": "Ada", "email": "ada@example.com"})
    borrower = user.as_borrower()
    assert borrower.uid == "u1"
    assert borrower.email == "ada@example.com"
