from datetime import datetime, timezone
from typing import Optional
import bcrypt

MIN_PASSWORD_LENGTH = 8


def hash_password(password: str) -> str:
    """Hash a password with bcrypt, 10 rounds"""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("utf-8")


def utcnow() -> datetime:
    """Current UTC time, naive like the DateTime columns it is stored in"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def clean_text(text: Optional[str]) -> Optional[str]:
    """Strip surrounding whitespace, turning blank strings into None"""
    if text is None:
        return None
    text = text.strip()
    return text or None


def normalize_email(email: str) -> str:
    return email.strip().lower()
