import logging
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import database
from borrow import Borrower
from database import connection, format_ts, initialize_database, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from validators import ContactValidator, TextValidator

logger = logging.getLogger(__name__)

ROLES = ("borrower", "admin")


@dataclass
class User:
    uid: str
    email: str
    name: str
    role: str = "borrower"
    phone: Optional[str] = None
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uid": self.uid,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "phone": self.phone,
            "created_at": self.created_at,
        }

    def as_borrower(self) -> Borrower:
        """Snapshot of this profile for a borrow record."""
        return Borrower(name=self.name, email=self.email, phone=self.phone, uid=self.uid)


class UserDirectory:
    """Profiles keyed by the identity provider's user id."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        initialize_database(self.db_file)

    def register(self, data: Dict[str, Any]) -> User:
        user = User(
            uid=(data.get("uid") or uuid.uuid4().hex),
            email=ContactValidator.require_email(data.get("email")),
            name=TextValidator.require(data, "name"),
            role=(data.get("role") or "borrower"),
            phone=ContactValidator.optional_phone(data.get("phone")),
            created_at=format_ts(utcnow()),
        )
        if user.role not in ROLES:
            raise ValidationError(f"Unknown role: {user.role!r}")
        try:
            with connection(self.db_file) as conn:
                conn.execute(
                    "INSERT INTO users (uid, email, name, role, phone, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                    (user.uid, user.email, user.name, user.role, user.phone, user.created_at),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"A user with e-mail {user.email} or uid {user.uid} already exists.") from exc
        logger.info(f"User registered: {user.uid} ({user.role})")
        return user

    def get_user(self, uid: str) -> Optional[User]:
        with connection(self.db_file) as conn:
            row = conn.execute("SELECT * FROM users WHERE uid = ?", (uid,)).fetchone()
        return User(**dict(row)) if row else None

    def require_user(self, uid: str) -> User:
        user = self.get_user(uid)
        if not user:
            raise NotFoundError(f"User {uid} not found.")
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with connection(self.db_file) as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?", (ContactValidator.normalize_email(email),)
            ).fetchone()
        return User(**dict(row)) if row else None

    def user_exists(self, email: str) -> bool:
        return self.get_user_by_email(email) is not None

    def count_by_role(self, role: str) -> int:
        with connection(self.db_file) as conn:
            return conn.execute("SELECT COUNT(*) FROM users WHERE role = ?", (role,)).fetchone()[0]
