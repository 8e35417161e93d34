"""
SQLAlchemy ORM models for accounts and delegated tokens.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """Store naive UTC, hand back timezone-aware UTC on every backend."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class AccountRow(Base):
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, autoincrement=False)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    last_login_at = Column(UTCDateTime, nullable=True)


class IdSequence(Base):
    """Running high-water mark for ids; survives removal of the newest row."""

    __tablename__ = "id_sequences"

    name = Column(String(64), primary_key=True)
    high_water = Column(Integer, nullable=False, default=0)


class DelegatedTokenRow(Base):
    __tablename__ = "delegated_tokens"

    identity = Column(String(255), primary_key=True)
    service = Column(String(64), primary_key=True)
    access_token = Column(Text)
    refresh_token = Column(Text)
    expires_at = Column(UTCDateTime, index=True)
    scope = Column(Text)
    token_type = Column(String(32))
    connected_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    last_used_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    last_refreshed_at = Column(UTCDateTime)
