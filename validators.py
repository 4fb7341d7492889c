import re
from typing import Any, Dict, Optional

from borrow import Borrower
from errors import ValidationError

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_RE = re.compile(r"^\+?[0-9]{6,15}$")
_CODE_RE = re.compile(r"^[0-9]{6}$")


class ISBNValidator:
    """ISBN-10 / ISBN-13 checks used when books are added by ISBN."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return re.sub(r"[^0-9Xx]", "", raw).upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            if not s[:9].isdigit():
                return False
            check = 10 if s[9] == "X" else (int(s[9]) if s[9].isdigit() else -1)
            if check < 0:
                return False
            total = sum(i * int(ch) for i, ch in enumerate(s[:9], 1))
            return (total + 10 * check) % 11 == 0
        if len(s) == 13 and s.isdigit():
            total = sum((1 if i % 2 == 0 else 3) * int(ch) for i, ch in enumerate(s[:12]))
            return (10 - total % 10) % 10 == int(s[12])
        return False


class TextValidator:

    @staticmethod
    def require(data: Dict[str, Any], field: str) -> str:
        value = data.get(field)
        if value is None or not str(value).strip():
            raise ValidationError(f"'{field}' is required.")
        return str(value).strip()


class ContactValidator:

    @staticmethod
    def normalize_email(email: Optional[str]) -> str:
        return (email or "").strip().lower()

    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        return bool(_EMAIL_RE.match(ContactValidator.normalize_email(email)))

    @staticmethod
    def normalize_phone(phone: Optional[str]) -> Optional[str]:
        if phone is None:
            return None
        cleaned = re.sub(r"[\s\-().]", "", phone)
        return cleaned or None

    @staticmethod
    def is_valid_phone(phone: Optional[str]) -> bool:
        normalized = ContactValidator.normalize_phone(phone)
        return normalized is not None and bool(_PHONE_RE.match(normalized))

    @staticmethod
    def require_email(email: Optional[str]) -> str:
        if not ContactValidator.is_valid_email(email):
            raise ValidationError(f"Invalid e-mail address: {email!r}")
        return ContactValidator.normalize_email(email)

    @staticmethod
    def optional_phone(phone: Optional[str]) -> Optional[str]:
        if phone is None or not str(phone).strip():
            return None
        if not ContactValidator.is_valid_phone(phone):
            raise ValidationError(f"Invalid phone number: {phone!r}")
        return ContactValidator.normalize_phone(phone)


def is_valid_code(code: Optional[str]) -> bool:
    return code is not None and bool(_CODE_RE.match(code.strip()))


def validate_borrower(data: "Dict[str, Any] | Borrower") -> Borrower:
    """Build the immutable borrower snapshot, rejecting incomplete identities."""
    if isinstance(data, Borrower):
        data = data.to_dict()
    name = TextValidator.require(data, "name")
    email = ContactValidator.require_email(data.get("email"))
    phone = ContactValidator.optional_phone(data.get("phone"))
    return Borrower(name=name, email=email, phone=phone, uid=data.get("uid"))
