import importlib
import re
from unittest.mock import MagicMock

import pytest

from borrowing import BorrowService
from ledger import BorrowLedger
from library import Library
from metadata import MetadataLookup
from notifications import NotificationDispatcher
from otp_gate import OTPGate
from users import UserDirectory


@pytest.fixture
def db_file(tmp_path):
    # Each test gets its own database file
    return str(tmp_path / "library_test.db")


@pytest.fixture
def dispatcher():
    mock = MagicMock(spec=NotificationDispatcher)
    mock.send_email.return_value = True
    mock.send_sms.return_value = True
    return mock


@pytest.fixture
def metadata():
    return MagicMock(spec=MetadataLookup)


@pytest.fixture
def lib(db_file, metadata):
    return Library(db_file=db_file, metadata=metadata)


@pytest.fixture
def ledger(db_file):
    return BorrowLedger(db_file=db_file, loan_period_days=14)


@pytest.fixture
def otp_gate(db_file, dispatcher):
    return OTPGate(db_file=db_file, dispatcher=dispatcher, validity_minutes=10, enforce_expiry=False)


@pytest.fixture
def users(db_file):
    return UserDirectory(db_file=db_file)


@pytest.fixture
def service(lib, ledger, otp_gate, dispatcher, users):
    return BorrowService(library=lib, ledger=ledger, otp_gate=otp_gate, dispatcher=dispatcher, users=users)


@pytest.fixture
def book(lib):
    return lib.add_book({"title": "Dune", "author": "Frank Herbert", "isbn": "9780441172719"}, actor="admin")


@pytest.fixture
def borrower():
    return {"name": "Ada Lovelace", "email": "ada@example.com", "phone": "+905551112233"}


@pytest.fixture
def sent_code(dispatcher):
    """Return the last one-time code handed to the e-mail channel."""
    def _code():
        body = dispatcher.send_email.call_args[0][2]
        return re.search(r"\b(\d{6})\b", body).group(1)
    return _code


@pytest.fixture
def api_module(tmp_path, monkeypatch):
    # api builds its service at import time, so reload it against a per-test DB
    monkeypatch.setenv("LIBRARY_DB_FILE", str(tmp_path / "api_test.db"))
    monkeypatch.setattr(OTPGate, "generate_code", staticmethod(lambda: "123456"))
    import api
    importlib.reload(api)
    return api


@pytest.fixture
def client(api_module):
    from fastapi.testclient import TestClient
    return TestClient(api_module.app)
