"""
Input validators for account registration and login.
"""

from __future__ import annotations

import re
from typing import Optional

from utils.exceptions import ValidationError

MIN_PASSWORD_LENGTH = 8
# bcrypt only looks at the first 72 bytes and newer releases reject longer input
MAX_PASSWORD_BYTES = 72

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")


def normalize_email(email: str) -> str:
    """Trim and lower-case an email address; this is the identity key."""
    return email.strip().lower()


def validate_email(email: str) -> None:
    """
    Require exactly one ``@`` with a non-empty local part and domain.

    Raises ``ValidationError`` otherwise.
    """
    local, sep, domain = email.partition("@")
    if not sep or not local or not domain or "@" in domain:
        raise ValidationError("Please provide a valid email address")


def password_problem(password: str) -> Optional[str]:
    """Return a human-readable reason the password is too weak, or None."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return f"Password must be at most {MAX_PASSWORD_BYTES} bytes long"
    if not (_LOWER.search(password) and _UPPER.search(password) and _DIGIT.search(password)):
        return "Password must contain at least one lowercase, one uppercase, and one number"
    return None


def validate_password(password: str) -> None:
    problem = password_problem(password)
    if problem:
        raise ValidationError(problem)


def require_fields(**fields: Optional[str]) -> None:
    """Raise ``ValidationError`` naming every field that is missing or blank."""
    missing = [name for name, value in fields.items() if not value or not value.strip()]
    if missing:
        verb = "are" if len(missing) > 1 else "is"
        raise ValidationError(f"{' and '.join(missing)} {verb} required".capitalize())
