"""
Tests for the account store and its storage lifecycle.
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import delete
from sqlalchemy.exc import OperationalError

from auth.credential_store import CredentialStore
from database.models import AccountRow
from database.session import Database, DatabaseState
from utils.exceptions import ConflictError, NotFoundError, StorageError
from utils.schemas import Account


def _account(account_id: int, email: str) -> Account:
    return Account(id=account_id, email=email, password_hash="hash")


class TestCredentialStore:
    @pytest.mark.asyncio
    async def test_empty_store_bootstraps(self, credential_store):
        assert await credential_store.find_by_email("nobody@example.com") is None
        assert await credential_store.next_id() == 1

    @pytest.mark.asyncio
    async def test_append_and_find(self, credential_store):
        await credential_store.append(_account(await credential_store.next_id(), "a@example.com"))
        found = await credential_store.find_by_email("  A@Example.com ")
        assert found is not None
        assert found.id == 1
        assert found.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_duplicate_email_conflicts(self, credential_store):
        await credential_store.append(_account(1, "a@example.com"))
        with pytest.raises(ConflictError):
            await credential_store.append(_account(2, "a@example.com"))

    @pytest.mark.asyncio
    async def test_next_id_is_monotonic(self, credential_store):
        ids = [await credential_store.next_id() for _ in range(5)]
        assert ids == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_next_id_not_reused_after_row_removed(self, credential_store, database):
        for email in ("a@example.com", "b@example.com"):
            await credential_store.append(_account(await credential_store.next_id(), email))

        async def _drop_newest(session):
            await session.execute(delete(AccountRow).where(AccountRow.id == 2))

        await database.run(_drop_newest, commit=True)
        assert await credential_store.next_id() == 3

    @pytest.mark.asyncio
    async def test_update_replaces_by_id(self, credential_store):
        await credential_store.append(_account(1, "a@example.com"))
        when = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        await credential_store.update(
            Account(id=1, email="a@example.com", password_hash="hash", last_login_at=when)
        )
        found = await credential_store.find_by_id(1)
        assert found.last_login_at == when

    @pytest.mark.asyncio
    async def test_update_unknown_id(self, credential_store):
        with pytest.raises(NotFoundError):
            await credential_store.update(_account(99, "x@example.com"))

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, database_url):
        db = Database(database_url)
        await db.open()
        store = CredentialStore(db)
        await store.append(_account(await store.next_id(), "a@example.com"))
        await db.close()

        db = Database(database_url)
        await db.open()
        store = CredentialStore(db)
        assert (await store.find_by_email("a@example.com")).id == 1
        assert await store.next_id() == 2
        await db.close()


class TestDatabaseLifecycle:
    @pytest.mark.asyncio
    async def test_states(self, database_url):
        db = Database(database_url)
        assert db.state is DatabaseState.CREATED
        await db.open()
        assert db.state is DatabaseState.READY
        await db.close()
        assert db.state is DatabaseState.CLOSED

    @pytest.mark.asyncio
    async def test_use_before_open_fails(self, database_url):
        store = CredentialStore(Database(database_url))
        with pytest.raises(StorageError, match="not open"):
            await store.find_by_email("a@example.com")

    @pytest.mark.asyncio
    async def test_use_after_close_fails(self, database):
        store = CredentialStore(database)
        await database.close()
        with pytest.raises(StorageError):
            await store.next_id()

    @pytest.mark.asyncio
    async def test_unreadable_store_fails_loudly(self, tmp_path):
        path = tmp_path / "corrupt.db"
        path.write_bytes(b"this is definitely not a sqlite database" * 100)
        db = Database(f"sqlite+aiosqlite:///{path}")
        with pytest.raises(StorageError, match="Could not open"):
            await db.open()
        assert db.state is DatabaseState.CREATED

    @pytest.mark.asyncio
    async def test_missing_directory_is_created(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "credentials.db"
        db = Database(f"sqlite+aiosqlite:///{path}")
        await db.open()
        assert path.parent.is_dir()
        await db.close()


class TestCreate:
    @pytest.mark.asyncio
    async def test_ids_follow_creation_order(self, credential_store):
        accounts = [await credential_store.create(f"user{i}@example.com", "hash") for i in range(3)]
        assert [a.id for a in accounts] == [1, 2, 3]
        assert (await credential_store.find_by_email("user2@example.com")).id == 3

    @pytest.mark.asyncio
    async def test_rejected_insert_consumes_no_id(self, credential_store):
        await credential_store.create("a@example.com", "hash")
        with pytest.raises(ConflictError):
            await credential_store.create("a@example.com", "hash")
        assert (await credential_store.create("b@example.com", "hash")).id == 2


def _operational_error() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("database is locked"))


class TestDatabaseRun:
    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, database):
        attempts = []

        async def _flaky(session):
            attempts.append(1)
            if len(attempts) < 3:
                raise _operational_error()
            return "done"

        assert await database.run(_flaky) == "done"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted_become_storage_error(self, database_url):
        db = Database(database_url, max_retries=2, backoff_seconds=0.01, backoff_multiplier=2.0)
        await db.open()
        attempts = []

        async def _always_locked(session):
            attempts.append(1)
            raise _operational_error()

        with patch("database.session.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(StorageError, match="Storage operation failed"):
                await db.run(_always_locked, commit=True)
        await db.close()

        assert len(attempts) == 3
        assert [c.args[0] for c in sleep.await_args_list] == pytest.approx([0.01, 0.02])

    @pytest.mark.asyncio
    async def test_timeout_becomes_storage_error(self, database_url):
        db = Database(database_url, timeout=0.05)
        await db.open()

        async def _stuck(session):
            await asyncio.sleep(5)

        with pytest.raises(StorageError, match="timed out"):
            await db.run(_stuck)
        await db.close()

    @pytest.mark.asyncio
    async def test_failed_commit_is_not_persisted(self, credential_store, database):
        async def _store_unavailable(self, operation, commit):
            raise _operational_error()

        with patch.object(Database, "_run_once", new=_store_unavailable):
            with pytest.raises(StorageError):
                await credential_store.create("a@example.com", "hash")
        assert await credential_store.find_by_email("a@example.com") is None
