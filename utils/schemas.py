"""
Pydantic schemas for accounts, session claims and delegated tokens.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════════
# Accounts & sessions
# ═══════════════════════════════════════════════════════════════════════════════


class Account(BaseModel):
    """A local, password-authenticated identity."""

    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., ge=1)
    email: str
    password_hash: str
    created_at: datetime = Field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None


class SessionClaims(BaseModel):
    """Claims carried by a verified session token."""

    user_id: int
    email: str
    issued_at: int
    expires_at: int


# ═══════════════════════════════════════════════════════════════════════════════
# Delegated (third-party) tokens
# ═══════════════════════════════════════════════════════════════════════════════


class TokenPayload(BaseModel):
    """
    Token fields handed to the vault when a service connection completes
    or is refreshed.

    For ``patch_token`` only the fields explicitly set on the instance are
    merged; unset fields keep their stored value.
    """

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None

    @field_validator("expires_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class DelegatedToken(BaseModel):
    identity: str
    service: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None
    connected_at: datetime
    last_used_at: datetime
    last_refreshed_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True when an expiry is recorded and is not strictly in the future."""
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return bool(self.access_token) and not self.is_expired(now)


class VaultStats(BaseModel):
    identity_count: int = 0
    total_token_count: int = 0
    per_service_count: Dict[str, int] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════════════
# HTTP request / response bodies
# ═══════════════════════════════════════════════════════════════════════════════


class CredentialsRequest(BaseModel):
    # Optional so a missing field is reported as a 400, not a 422.
    email: Optional[str] = None
    password: Optional[str] = None


class UserSummary(BaseModel):
    id: int
    email: str


class AuthResponse(BaseModel):
    message: str
    token: str
    user: UserSummary


class TokenUpdateRequest(TokenPayload):
    """``TokenPayload`` plus a relative ``expires_in`` (seconds) convenience."""

    expires_in: Optional[int] = Field(None, ge=0)
