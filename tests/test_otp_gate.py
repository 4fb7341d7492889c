from datetime import datetime, timedelta, timezone

import pytest

from errors import ValidationError
from otp_gate import OTPGate

NOW = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)


def test_generate_code_is_six_digits():
    for _ in range(50):
        code = OTPGate.generate_code()
        assert len(code) == 6 and code.isdigit()


def test_generate_code_keeps_leading_zeros(monkeypatch):
    monkeypatch.setattr("otp_gate.secrets.randbelow", lambda n: 42)
    assert OTPGate.generate_code() == "000042"


def test_issue_persists_unused_code(otp_gate):
    code = otp_gate.issue("Ada@Example.com", now=NOW)
    records = otp_gate.records_for("ada@example.com")
    assert len(records) == 1
    assert records[0].code == code
    assert records[0].is_used is False
    assert records[0].created_at == NOW


def test_issue_rejects_bad_email(otp_gate):
    with pytest.raises(ValidationError):
        otp_gate.issue("not-an-email")


def test_verify_redeems_exactly_once(otp_gate):
    code = otp_gate.issue("ada@example.com")
    assert otp_gate.verify("ada@example.com", code) is True
    assert otp_gate.verify("ada@example.com", code) is False
    assert otp_gate.records_for("ada@example.com")[0].is_used is True


def test_verify_wrong_email_or_code(otp_gate, monkeypatch):
    monkeypatch.setattr(OTPGate, "generate_code", staticmethod(lambda: "111111"))
    otp_gate.issue("ada@example.com")
    assert otp_gate.verify("alan@example.com", "111111") is False
    assert otp_gate.verify("ada@example.com", "222222") is False
    assert otp_gate.verify("ada@example.com", "11111") is False
    assert otp_gate.verify("ada@example.com", None) is False
    assert otp_gate.verify("ada@example.com", "111111") is True


def test_older_unused_codes_stay_valid(otp_gate, monkeypatch):
    codes = iter(["111111", "222222"])
    monkeypatch.setattr(OTPGate, "generate_code", staticmethod(lambda: next(codes)))
    otp_gate.issue("ada@example.com")
    otp_gate.issue("ada@example.com")
    assert otp_gate.verify("ada@example.com", "111111") is True
    assert otp_gate.verify("ada@example.com", "222222") is True


def test_expiry_is_advisory_by_default(otp_gate):
    code = otp_gate.issue("ada@example.com", now=NOW)
    record = otp_gate.records_for("ada@example.com")[0]
    later = NOW + timedelta(minutes=11)
    assert otp_gate.is_expired(record, later)
    assert otp_gate.verify("ada@example.com", code, now=later) is True


def test_expiry_enforced_when_configured(db_file, dispatcher):
    gate = OTPGate(db_file=db_file, dispatcher=dispatcher, validity_minutes=10, enforce_expiry=True)
    code = gate.issue("ada@example.com", now=NOW)
    assert gate.verify("ada@example.com", code, now=NOW + timedelta(minutes=11)) is False
    assert gate.verify("ada@example.com", code, now=NOW + timedelta(minutes=5)) is True


def test_dispatch_sends_on_each_channel(otp_gate, dispatcher):
    result = otp_gate.dispatch("123456", email="ada@example.com", phone="+905551112233")
    assert result == {"email": True, "sms": True}
    recipient, subject, body = dispatcher.send_email.call_args[0]
    assert recipient == "ada@example.com"
    assert "123456" in body and "10 minutes" in body
    dispatcher.send_sms.assert_called_once()


def test_dispatch_failure_is_reported_not_raised(otp_gate, dispatcher):
    dispatcher.send_email.side_effect = RuntimeError("smtp down")
    result = otp_gate.dispatch("123456", email="ada@example.com")
    assert result == {"email": False}


def test_wrong_code_leaves_record_unused(otp_gate):
    code = otp_gate.issue("a@b.com")
    wrong = "000000" if code != "000000" else "111111"
    assert otp_gate.verify("a@b.com", wrong) is False
    assert otp_gate.records_for("a@b.com")[0].is_used is False
    assert otp_gate.verify("a@b.com", code) is True
    assert otp_gate.records_for("a@b.com")[0].is_used is True
    assert otp_gate.verify("a@b.com", code) is False


def test_naive_now_in_expiry_checks(db_file, dispatcher):
    gate = OTPGate(db_file=db_file, dispatcher=dispatcher, validity_minutes=10, enforce_expiry=True)
    code = gate.issue("ada@example.com", now=datetime(2024, 3, 1, 10, 0))
    record = gate.records_for("ada@example.com")[0]
    assert record.created_at == NOW
    assert gate.is_expired(record, datetime(2024, 3, 1, 10, 11))
    assert gate.verify("ada@example.com", code, now=datetime(2024, 3, 1, 10, 11)) is False
    assert gate.verify("ada@example.com", code, now=datetime(2024, 3, 1, 10, 5)) is True


def test_zero_validity_is_kept(db_file, dispatcher):
    gate = OTPGate(db_file=db_file, dispatcher=dispatcher, validity_minutes=0, enforce_expiry=True)
    assert gate.validity_minutes == 0
    code = gate.issue("ada@example.com", now=NOW)
    assert gate.verify("ada@example.com", code, now=NOW + timedelta(seconds=1)) is False
