import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Store settings
    data_file: str = os.getenv("LIBRARY_DATA_FILE", "library.db")
    store_timeout: float = float(os.getenv("STORE_TIMEOUT", "5"))

    # Circulation policy
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    reminder_days_before: int = int(os.getenv("REMINDER_DAYS_BEFORE", "2"))

    # One-time codes
    otp_validity_minutes: int = int(os.getenv("OTP_VALIDITY_MINUTES", "10"))
    otp_enforce_expiry: bool = _flag("OTP_ENFORCE_EXPIRY", "False")

    # External metadata APIs
    openlibrary_timeout: float = float(os.getenv("OPENLIBRARY_TIMEOUT", "10"))
    google_books_api_key: Optional[str] = os.getenv("GOOGLE_BOOKS_API_KEY")
    google_books_timeout: float = float(os.getenv("GOOGLE_BOOKS_TIMEOUT", "10"))
    enable_google_books: bool = _flag("ENABLE_GOOGLE_BOOKS", "True")

    # E-mail settings
    smtp_host: str = os.getenv("SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = int(os.getenv("SMTP_PORT", "587"))
    smtp_username: Optional[str] = os.getenv("SMTP_USERNAME")
    smtp_password: Optional[str] = os.getenv("SMTP_PASSWORD")
    smtp_from_email: str = os.getenv("SMTP_FROM_EMAIL", "noreply@library.com")
    smtp_from_name: str = os.getenv("SMTP_FROM_NAME", "Library System")
    enable_email_notifications: bool = _flag("ENABLE_EMAIL_NOTIFICATIONS", "False")

    # SMS gateway settings
    sms_gateway_url: Optional[str] = os.getenv("SMS_GATEWAY_URL")
    sms_gateway_token: Optional[str] = os.getenv("SMS_GATEWAY_TOKEN")
    enable_sms_notifications: bool = _flag("ENABLE_SMS_NOTIFICATIONS", "False")
    notification_timeout: float = float(os.getenv("NOTIFICATION_TIMEOUT", "10"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Circulation")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _flag("DEBUG", "False")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
