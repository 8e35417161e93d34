"""
ExpirationSweeper: periodic purge of expired delegated tokens.

The application lifespan starts one sweeper per process.  For cron-style
scheduling, ``python -m connectors.sweeper`` (or the ``credential-sweep``
console script) runs a single sweep and exits.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional

from connectors.token_manager import OAuthTokenVault
from utils.exceptions import StorageError

logger = logging.getLogger(__name__)


class ExpirationSweeper:
    def __init__(self, vault: OAuthTokenVault, *, interval_seconds: float = 300.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._vault = vault
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self.last_removed = 0
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        """Run one sweep.  Returns the number of tokens removed."""
        removed = await self._vault.cleanup_expired_tokens()
        self.runs += 1
        self.last_removed = removed
        logger.debug("Sweep #%d removed %d expired token(s)", self.runs, removed)
        return removed

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="expiration-sweeper")
        logger.info("Expiration sweeper started (every %.0fs)", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiration sweeper stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except StorageError:
                logger.exception("Expiration sweep failed; will retry next interval")
            except Exception:
                logger.exception("Unexpected error in expiration sweep; will retry next interval")


async def _sweep_once() -> int:
    from config.settings import load_settings
    from connectors.encryption import TokenCipher
    from database.session import Database

    config = load_settings()
    db = Database(
        config.database_url,
        timeout=config.storage_timeout_seconds,
        max_retries=config.storage_max_retries,
        backoff_seconds=config.storage_backoff_seconds,
        backoff_multiplier=config.storage_backoff_multiplier,
    )
    await db.open()
    try:
        vault = OAuthTokenVault(db, cipher=TokenCipher(config.token_encryption_key))
        return await ExpirationSweeper(vault).run_once()
    finally:
        await db.close()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
        stream=sys.stdout,
    )
    try:
        removed = asyncio.run(_sweep_once())
    except StorageError as exc:
        logger.error("Sweep failed: %s", exc)
        raise SystemExit(1) from exc
    logger.info("Sweep complete: %d expired token(s) removed", removed)


if __name__ == "__main__":
    main()
