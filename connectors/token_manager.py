"""
Token vault: store / read / revoke per-user delegated OAuth tokens.

This is the single interface integration handlers use to find out
whether a user + service pair has a usable token, and to fetch it.

Records are keyed by ``(identity, service)`` where the identity is the
user's normalized email.  There is at most one record per pair; an
identity with no remaining records simply has no rows.

The vault only stores what it is handed: exchanging refresh tokens with
the provider belongs to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.encryption import TokenCipher
from database.models import DelegatedTokenRow
from database.session import Database
from utils.exceptions import ConflictError, StorageError, ValidationError
from utils.schemas import DelegatedToken, TokenPayload, VaultStats
from utils.validators import normalize_email

logger = logging.getLogger(__name__)

_TokenKey = Tuple[str, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OAuthTokenVault:
    def __init__(
        self,
        database: Database,
        *,
        cipher: Optional[TokenCipher] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = database
        self._cipher = cipher or TokenCipher(None)
        self._clock = clock
        self._lock = asyncio.Lock()
        # last_used_at bumps waiting to be written, newest timestamp wins
        self._pending_touches: Dict[_TokenKey, datetime] = {}
        self._flush_task: Optional[asyncio.Task] = None

    # ── Helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def _key(identity: str, service: str) -> _TokenKey:
        normalized = normalize_email(identity or "")
        service = (service or "").strip()
        if not normalized or not service:
            raise ValidationError("identity and service are required")
        return normalized, service

    def _to_model(self, row: DelegatedTokenRow) -> DelegatedToken:
        return DelegatedToken(
            identity=row.identity,
            service=row.service,
            access_token=self._cipher.decrypt(row.access_token),
            refresh_token=self._cipher.decrypt(row.refresh_token),
            expires_at=row.expires_at,
            scope=row.scope,
            token_type=row.token_type,
            connected_at=row.connected_at,
            last_used_at=row.last_used_at,
            last_refreshed_at=row.last_refreshed_at,
        )

    async def _upsert(self, operation: Callable[[AsyncSession], Awaitable[DelegatedToken]]) -> DelegatedToken:
        try:
            return await self._db.run(operation, commit=True)
        except IntegrityError:
            # Another writer inserted the pair first; the second pass finds its row.
            logger.warning("Concurrent insert of a token record, retrying as an update")
        try:
            return await self._db.run(operation, commit=True)
        except IntegrityError as exc:
            raise ConflictError("Token record was modified concurrently") from exc

    # ── Writes ──────────────────────────────────────────────────────────

    async def store_token(self, identity: str, service: str, payload: TokenPayload) -> DelegatedToken:
        """
        Store the token a completed service connection produced.

        Replace semantics (see ``replace_token``): fields missing from
        ``payload`` are cleared, ``connected_at`` and ``last_used_at``
        are reset to now.
        """
        return await self.replace_token(identity, service, payload)

    async def replace_token(self, identity: str, service: str, payload: TokenPayload) -> DelegatedToken:
        """Overwrite the whole record for ``(identity, service)``."""
        key = self._key(identity, service)
        now = self._clock()

        async def _replace(session: AsyncSession) -> DelegatedToken:
            row = await session.get(DelegatedTokenRow, key)
            if row is None:
                row = DelegatedTokenRow(identity=key[0], service=key[1])
                session.add(row)
            row.access_token = self._cipher.encrypt(payload.access_token)
            row.refresh_token = self._cipher.encrypt(payload.refresh_token)
            row.expires_at = payload.expires_at
            row.scope = payload.scope
            row.token_type = payload.token_type
            row.connected_at = now
            row.last_used_at = now
            row.last_refreshed_at = None
            await session.flush()
            return self._to_model(row)

        async with self._lock:
            self._pending_touches.pop(key, None)
            token = await self._upsert(_replace)
        logger.info("Stored %s token for %s", key[1], key[0])
        return token

    async def patch_token(self, identity: str, service: str, payload: TokenPayload) -> DelegatedToken:
        """
        Merge ``payload`` into the existing record.

        Only fields explicitly set on ``payload`` change.  A new access
        token stamps ``last_refreshed_at``.  With no existing record this
        behaves like ``replace_token``.
        """
        key = self._key(identity, service)
        now = self._clock()
        changes = payload.model_dump(exclude_unset=True)

        async def _patch(session: AsyncSession) -> DelegatedToken:
            row = await session.get(DelegatedTokenRow, key)
            if row is None:
                row = DelegatedTokenRow(identity=key[0], service=key[1], connected_at=now)
                session.add(row)
            for field, value in changes.items():
                if field in ("access_token", "refresh_token"):
                    value = self._cipher.encrypt(value)
                setattr(row, field, value)
            if changes.get("access_token"):
                row.last_refreshed_at = now
            row.last_used_at = now
            await session.flush()
            return self._to_model(row)

        async with self._lock:
            self._pending_touches.pop(key, None)
            token = await self._upsert(_patch)
        logger.info("Updated %s token for %s (%s)", key[1], key[0], ", ".join(sorted(changes)) or "no fields")
        return token

    async def remove_token(self, identity: str, service: str) -> bool:
        """Delete the record.  Returns False if there was nothing to delete."""
        key = self._key(identity, service)

        async def _delete(session: AsyncSession) -> int:
            result = await session.execute(
                delete(DelegatedTokenRow).where(
                    DelegatedTokenRow.identity == key[0],
                    DelegatedTokenRow.service == key[1],
                )
            )
            return result.rowcount

        async with self._lock:
            self._pending_touches.pop(key, None)
            removed = await self._db.run(_delete, commit=True)
        if removed:
            logger.info("Removed %s token for %s", key[1], key[0])
        return bool(removed)

    async def cleanup_expired_tokens(self, now: Optional[datetime] = None) -> int:
        """
        Delete every record whose ``expires_at`` is strictly in the past.

        Runs as one transaction.  Returns the number of records removed.
        """
        cutoff = now or self._clock()

        async def _purge(session: AsyncSession) -> int:
            result = await session.execute(
                delete(DelegatedTokenRow).where(
                    DelegatedTokenRow.expires_at.is_not(None),
                    DelegatedTokenRow.expires_at < cutoff,
                )
            )
            return result.rowcount

        async with self._lock:
            cleaned = await self._db.run(_purge, commit=True)
        if cleaned:
            logger.info("Cleaned up %d expired tokens", cleaned)
        return cleaned

    # ── Reads ───────────────────────────────────────────────────────────

    async def get_token(self, identity: str, service: str) -> Optional[DelegatedToken]:
        """
        Return the stored token, or None if the service is not connected.

        Every read bumps ``last_used_at``.  The write is queued and
        flushed in the background so the read path does not wait on it.
        """
        key = self._key(identity, service)

        async def _select(session: AsyncSession) -> Optional[DelegatedToken]:
            row = await session.get(DelegatedTokenRow, key)
            return self._to_model(row) if row is not None else None

        token = await self._db.run(_select)
        if token is None:
            return None

        now = self._clock()
        self._record_touch(key, now)
        return token.model_copy(update={"last_used_at": now})

    async def has_valid_token(self, identity: str, service: str) -> bool:
        """True if a record exists, has an access token and has not expired."""
        token = await self.get_token(identity, service)
        if token is None or not token.access_token:
            return False
        if token.is_expired(self._clock()):
            logger.info("Token expired for %s:%s", token.identity, token.service)
            return False
        return True

    async def list_connected_services(self, identity: str) -> Set[str]:
        """Services with an access token on record (expiry is not checked)."""
        normalized = normalize_email(identity or "")

        async def _select(session: AsyncSession) -> Set[str]:
            result = await session.execute(
                select(DelegatedTokenRow.service).where(
                    DelegatedTokenRow.identity == normalized,
                    DelegatedTokenRow.access_token.is_not(None),
                )
            )
            return set(result.scalars().all())

        return await self._db.run(_select)

    async def describe_connections(self, identity: str) -> List[dict]:
        """Per-service summary for ``identity`` (no secrets exposed)."""
        normalized = normalize_email(identity or "")
        now = self._clock()

        async def _select(session: AsyncSession) -> List[DelegatedToken]:
            result = await session.execute(
                select(DelegatedTokenRow)
                .where(DelegatedTokenRow.identity == normalized)
                .order_by(DelegatedTokenRow.service)
            )
            return [self._to_model(row) for row in result.scalars().all()]

        tokens = await self._db.run(_select)
        return [
            {
                "service": t.service,
                "connected": bool(t.access_token),
                "valid": t.is_valid(now),
                "has_refresh_token": bool(t.refresh_token),
                "expires_at": t.expires_at.isoformat() if t.expires_at else None,
                "scope": t.scope,
                "token_type": t.token_type,
                "connected_at": t.connected_at.isoformat(),
                "last_used_at": t.last_used_at.isoformat(),
                "last_refreshed_at": t.last_refreshed_at.isoformat() if t.last_refreshed_at else None,
            }
            for t in tokens
        ]

    async def stats(self) -> VaultStats:
        async def _aggregate(session: AsyncSession) -> VaultStats:
            identities = await session.execute(
                select(func.count(func.distinct(DelegatedTokenRow.identity)))
            )
            per_service = await session.execute(
                select(DelegatedTokenRow.service, func.count())
                .group_by(DelegatedTokenRow.service)
            )
            counts = {service: count for service, count in per_service.all()}
            return VaultStats(
                identity_count=identities.scalar() or 0,
                total_token_count=sum(counts.values()),
                per_service_count=counts,
            )

        return await self._db.run(_aggregate)

    # ── last_used_at write-behind ───────────────────────────────────────

    def _record_touch(self, key: _TokenKey, when: datetime) -> None:
        previous = self._pending_touches.get(key)
        if previous is None or previous < when:
            self._pending_touches[key] = when
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._flush_in_background())

    async def _flush_in_background(self) -> None:
        try:
            # Touches queued while a flush was writing are picked up here.
            while self._pending_touches:
                await self.flush()
        except StorageError:
            logger.exception("Background last_used_at flush failed")

    async def flush(self) -> int:
        """Persist queued ``last_used_at`` bumps.  Returns rows updated."""
        async with self._lock:
            if not self._pending_touches:
                return 0
            pending, self._pending_touches = self._pending_touches, {}

            async def _apply(session: AsyncSession) -> int:
                updated = 0
                for key, when in pending.items():
                    row = await session.get(DelegatedTokenRow, key)
                    if row is not None and row.last_used_at < when:
                        row.last_used_at = when
                        updated += 1
                return updated

            try:
                return await self._db.run(_apply, commit=True)
            except StorageError:
                for key, when in pending.items():
                    newer = self._pending_touches.get(key)
                    if newer is None or newer < when:
                        self._pending_touches[key] = when
                raise

    async def close(self) -> None:
        """Wait for any in-flight flush, then write what is still queued."""
        if self._flush_task is not None and not self._flush_task.done():
            await self._flush_task
        await self.flush()
