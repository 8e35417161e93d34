"""
Async SQLAlchemy database handle with an explicit lifecycle.

A ``Database`` is constructed once by the application and handed to the
stores that need it.  It must be ``open()``-ed before use and
``close()``-d on shutdown::

    db = Database(config.database_url)
    await db.open()          # CREATED → READY (creates tables if missing)
    ...
    await db.close()         # READY → CLOSED

Every unit of work goes through :meth:`Database.run`, which opens a
fresh session, applies a timeout, retries transient failures with
exponential backoff and maps driver errors to ``StorageError``.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from database.models import Base
from utils.exceptions import CredentialCoreError, StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DatabaseState(str, enum.Enum):
    CREATED = "created"
    READY = "ready"
    CLOSED = "closed"


class Database:
    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        max_retries: int = 2,
        backoff_seconds: float = 0.1,
        backoff_multiplier: float = 2.0,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.backoff_multiplier = backoff_multiplier
        self.state = DatabaseState.CREATED
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def open(self) -> None:
        """
        Create the engine and any missing tables.

        A store that does not exist yet is created empty.  A store that
        exists but cannot be read (corrupt file, bad credentials, wrong
        schema) raises ``StorageError``.
        """
        if self.state is DatabaseState.READY:
            return
        if self.state is DatabaseState.CLOSED:
            raise StorageError("Database has been closed")

        self._engine = create_async_engine(self.url, echo=False, **self._engine_options())
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        try:
            async with self._engine.begin() as conn:
                await asyncio.wait_for(conn.run_sync(Base.metadata.create_all), self.timeout)
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            raise StorageError(f"Could not open credential store: {exc}") from exc

        self.state = DatabaseState.READY
        logger.info("Credential store ready (%s)", make_url(self.url).render_as_string(hide_password=True))

    async def close(self) -> None:
        if self.state is not DatabaseState.READY:
            self.state = DatabaseState.CLOSED
            return
        await self._engine.dispose()
        self._engine = None
        self._session_factory = None
        self.state = DatabaseState.CLOSED
        logger.info("Credential store closed")

    def _engine_options(self) -> dict:
        url = make_url(self.url)
        if url.get_backend_name() != "sqlite":
            return {"pool_size": 10, "max_overflow": 20, "pool_recycle": 3600}

        if url.database in (None, "", ":memory:"):
            # one shared connection, otherwise every connection sees its own empty DB
            return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}

        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        return {}

    # ── Units of work ───────────────────────────────────────────────────

    async def run(
        self,
        operation: Callable[[AsyncSession], Awaitable[T]],
        *,
        commit: bool = False,
    ) -> T:
        """
        Run ``operation`` in its own session (and transaction).

        ``IntegrityError`` and domain errors raised by ``operation``
        propagate unchanged so callers can translate them; everything
        else from the driver becomes ``StorageError``.
        """
        if self.state is not DatabaseState.READY:
            raise StorageError(f"Credential store is not open (state={self.state.value})")

        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(self._run_once(operation, commit), self.timeout)
            except (IntegrityError, CredentialCoreError):
                raise
            except OperationalError as exc:
                if attempt >= self.max_retries:
                    logger.error("Storage operation failed after %d attempt(s): %s", attempt + 1, exc)
                    raise StorageError(f"Storage operation failed: {exc}") from exc
                delay = self.backoff_seconds * (self.backoff_multiplier ** attempt)
                logger.warning("Transient storage error (attempt %d), retrying in %.2fs: %s", attempt + 1, delay, exc)
                attempt += 1
                await asyncio.sleep(delay)
            except asyncio.TimeoutError as exc:
                logger.error("Storage operation timed out after %.1fs", self.timeout)
                raise StorageError("Storage operation timed out") from exc
            except SQLAlchemyError as exc:
                logger.error("Storage operation failed: %s", exc)
                raise StorageError(f"Storage operation failed: {exc}") from exc

    async def _run_once(self, operation: Callable[[AsyncSession], Awaitable[Any]], commit: bool) -> Any:
        async with self._session_factory() as session:
            result = await operation(session)
            if commit:
                await session.commit()
            return result
