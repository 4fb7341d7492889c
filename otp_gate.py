import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import database
from config import settings
from database import as_utc, connection, format_ts, initialize_database, parse_ts, utcnow
from notifications import NotificationDispatcher, OTP_SUBJECT, otp_message
from validators import ContactValidator, is_valid_code

logger = logging.getLogger(__name__)

CODE_LENGTH = 6


@dataclass
class OTPRecord:
    id: str
    email: str
    phone: Optional[str]
    code: str
    created_at: datetime
    is_used: bool = False

    @staticmethod
    def from_row(row: dict) -> "OTPRecord":
        return OTPRecord(
            id=row["id"],
            email=row["email"],
            phone=row["phone"],
            code=row["code"],
            created_at=parse_ts(row["created_at"]),
            is_used=bool(row["is_used"]),
        )


class OTPGate:
    """One-time codes that authorise a borrow for a given e-mail address.

    A code moves from issued to verified exactly once. Expiry after
    ``validity_minutes`` is advisory unless ``enforce_expiry`` is set.
    """

    def __init__(self, db_file: Optional[str] = None, dispatcher: Optional[NotificationDispatcher] = None,
                 validity_minutes: Optional[int] = None, enforce_expiry: Optional[bool] = None) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.validity_minutes = settings.otp_validity_minutes if validity_minutes is None else validity_minutes
        self.enforce_expiry = settings.otp_enforce_expiry if enforce_expiry is None else enforce_expiry
        initialize_database(self.db_file)

    @staticmethod
    def generate_code() -> str:
        # Uniform over 000000-999999; leading zeros are part of the code
        return f"{secrets.randbelow(10 ** CODE_LENGTH):0{CODE_LENGTH}d}"

    def issue(self, email: str, phone: Optional[str] = None, now: Optional[datetime] = None) -> str:
        """Persist a fresh unused code. Earlier unused codes stay valid."""
        email = ContactValidator.require_email(email)
        phone = ContactValidator.optional_phone(phone)
        code = self.generate_code()
        with connection(self.db_file) as conn:
            conn.execute(
                "INSERT INTO otps (id, email, phone, code, created_at, is_used) VALUES (?, ?, ?, ?, ?, 0)",
                (uuid.uuid4().hex, email, phone, code, format_ts(as_utc(now) or utcnow())),
            )
        logger.info(f"OTP issued for {email}")
        return code

    def verify(self, email: str, code: str, now: Optional[datetime] = None) -> bool:
        """Redeem ``code`` for ``email``. Returns False rather than raising on a mismatch."""
        if not ContactValidator.is_valid_email(email) or not is_valid_code(code):
            return False
        email = ContactValidator.normalize_email(email)
        now = as_utc(now) or utcnow()

        for record in self._unused(email, code.strip()):
            if self.enforce_expiry and self.is_expired(record, now):
                continue
            with connection(self.db_file) as conn:
                cursor = conn.execute("UPDATE otps SET is_used = 1 WHERE id = ? AND is_used = 0", (record.id,))
                redeemed = cursor.rowcount == 1
            if redeemed:
                logger.info(f"OTP verified for {email}")
                return True
        logger.info(f"OTP verification failed for {email}")
        return False

    def is_expired(self, record: OTPRecord, now: Optional[datetime] = None) -> bool:
        return (as_utc(now) or utcnow()) - record.created_at > timedelta(minutes=self.validity_minutes)

    def dispatch(self, code: str, email: Optional[str] = None, phone: Optional[str] = None) -> Dict[str, bool]:
        """Send ``code`` by e-mail and/or SMS. Failures are logged, never raised."""
        body = otp_message(code, self.validity_minutes)
        results: Dict[str, bool] = {}
        if email:
            results["email"] = self._safe_send("email", lambda: self.dispatcher.send_email(email, OTP_SUBJECT, body))
        if phone:
            results["sms"] = self._safe_send("sms", lambda: self.dispatcher.send_sms(phone, body))
        return results

    def records_for(self, email: str) -> List[OTPRecord]:
        with connection(self.db_file) as conn:
            rows = conn.execute(
                "SELECT * FROM otps WHERE email = ? ORDER BY created_at", (ContactValidator.normalize_email(email),)
            ).fetchall()
        return [OTPRecord.from_row(dict(row)) for row in rows]

    def _unused(self, email: str, code: str) -> List[OTPRecord]:
        with connection(self.db_file) as conn:
            rows = conn.execute(
                "SELECT * FROM otps WHERE email = ? AND code = ? AND is_used = 0 ORDER BY created_at DESC",
                (email, code),
            ).fetchall()
        return [OTPRecord.from_row(dict(row)) for row in rows]

    @staticmethod
    def _safe_send(channel: str, send) -> bool:
        try:
            return bool(send())
        except Exception as exc:  # delivery must never break the borrow flow
            logger.warning(f"OTP dispatch over {channel} failed: {exc}")
            return False
