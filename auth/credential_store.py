"""
CredentialStore: durable record of local accounts.

All mutations are serialized behind a per-store ``asyncio.Lock`` and run
in a single transaction each, so concurrent registrations cannot both
pass the uniqueness check.  The ``accounts.email`` unique constraint is
the backstop for writers outside this process.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import AccountRow, IdSequence
from database.session import Database
from utils.exceptions import ConflictError, NotFoundError
from utils.schemas import Account
from utils.validators import normalize_email

logger = logging.getLogger(__name__)

ACCOUNT_SEQUENCE = "accounts"


class CredentialStore:
    def __init__(self, database: Database) -> None:
        self._db = database
        self._lock = asyncio.Lock()

    # ── Reads ───────────────────────────────────────────────────────────

    async def find_by_email(self, email: str) -> Optional[Account]:
        """Look up an account by (normalized) email."""
        normalized = normalize_email(email)

        async def _select(session: AsyncSession) -> Optional[Account]:
            result = await session.execute(
                select(AccountRow).where(AccountRow.email == normalized)
            )
            row = result.scalar_one_or_none()
            return Account.model_validate(row) if row is not None else None

        return await self._db.run(_select)

    async def find_by_id(self, account_id: int) -> Optional[Account]:
        async def _get(session: AsyncSession) -> Optional[Account]:
            row = await session.get(AccountRow, account_id)
            return Account.model_validate(row) if row is not None else None

        return await self._db.run(_get)

    # ── Mutations ───────────────────────────────────────────────────────

    @staticmethod
    async def _allocate_id(session: AsyncSession) -> int:
        seq = await session.get(IdSequence, ACCOUNT_SEQUENCE)
        if seq is None:
            # Bootstrap from whatever is already stored.
            result = await session.execute(select(func.max(AccountRow.id)))
            seq = IdSequence(name=ACCOUNT_SEQUENCE, high_water=result.scalar() or 0)
            session.add(seq)
        seq.high_water += 1
        return seq.high_water

    @staticmethod
    async def _ensure_email_free(session: AsyncSession, email: str) -> None:
        result = await session.execute(select(AccountRow.id).where(AccountRow.email == email))
        if result.scalar_one_or_none() is not None:
            raise ConflictError("Email already registered")

    async def next_id(self) -> int:
        """
        Allocate the next account id.

        The high-water mark is persisted, so an id is never handed out
        twice even if the account that used it is later removed or the
        insert that wanted it fails.
        """
        async with self._lock:
            return await self._db.run(self._allocate_id, commit=True)

    async def append(self, account: Account) -> Account:
        """Insert a new account.  Raises ``ConflictError`` on a duplicate email."""

        async def _insert(session: AsyncSession) -> None:
            await self._ensure_email_free(session, account.email)
            session.add(
                AccountRow(
                    id=account.id,
                    email=account.email,
                    password_hash=account.password_hash,
                    created_at=account.created_at,
                    last_login_at=account.last_login_at,
                )
            )
            await session.flush()

        async with self._lock:
            try:
                await self._db.run(_insert, commit=True)
            except IntegrityError as exc:
                raise ConflictError("Email already registered") from exc
        return account

    async def create(self, email: str, password_hash: str, created_at: Optional[datetime] = None) -> Account:
        """
        Allocate an id and insert the account in one transaction.

        Ids therefore follow commit order.  A rejected insert rolls back
        its allocation along with it.
        """

        async def _create(session: AsyncSession) -> Account:
            await self._ensure_email_free(session, email)
            account = Account(
                id=await self._allocate_id(session),
                email=email,
                password_hash=password_hash,
                created_at=created_at or datetime.now(timezone.utc),
            )
            session.add(
                AccountRow(
                    id=account.id,
                    email=account.email,
                    password_hash=account.password_hash,
                    created_at=account.created_at,
                )
            )
            await session.flush()
            return account

        async with self._lock:
            try:
                return await self._db.run(_create, commit=True)
            except IntegrityError as exc:
                raise ConflictError("Email already registered") from exc

    async def update(self, account: Account) -> Account:
        """Replace the stored account with the same id."""

        async def _replace(session: AsyncSession) -> None:
            row = await session.get(AccountRow, account.id)
            if row is None:
                raise NotFoundError(f"Account {account.id} not found")
            row.email = account.email
            row.password_hash = account.password_hash
            row.created_at = account.created_at
            row.last_login_at = account.last_login_at

        async with self._lock:
            try:
                await self._db.run(_replace, commit=True)
            except IntegrityError as exc:
                raise ConflictError("Email already registered") from exc
        return account
