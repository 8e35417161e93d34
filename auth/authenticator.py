"""
PasswordAuthenticator: register and log in local accounts.

bcrypt is deliberately slow, so hashing and checking run on a bounded
thread pool instead of the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor
from datetime import datetime, timezone
from typing import Optional

from auth.credential_store import CredentialStore
from auth.password import DEFAULT_ROUNDS, hash_password, verify_password
from utils.exceptions import AuthenticationError, ConflictError
from utils.schemas import Account
from utils.validators import normalize_email, require_fields, validate_email, validate_password

logger = logging.getLogger(__name__)

_INVALID_CREDENTIALS = "Invalid credentials"


class PasswordAuthenticator:
    def __init__(
        self,
        store: CredentialStore,
        *,
        rounds: int = DEFAULT_ROUNDS,
        executor: Optional[Executor] = None,
    ) -> None:
        self._store = store
        self._rounds = rounds
        self._executor = executor
        self._dummy_hash: Optional[str] = None

    async def _hash(self, password: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, hash_password, password, self._rounds)

    async def _verify(self, password: str, password_hash: str) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, verify_password, password, password_hash)

    async def register(self, email: Optional[str], password: Optional[str]) -> Account:
        """
        Validate and create a new account.

        Raises ``ValidationError`` for a bad email / weak password and
        ``ConflictError`` if the normalized email is already taken.
        """
        require_fields(email=email, password=password)
        normalized = normalize_email(email)
        validate_email(normalized)
        validate_password(password)

        # Cheap early exit; append() re-checks under the store lock.
        if await self._store.find_by_email(normalized) is not None:
            raise ConflictError("Email already registered")

        password_hash = await self._hash(password)
        account = await self._store.create(normalized, password_hash, datetime.now(timezone.utc))
        logger.info("Registered account %s (id=%d)", normalized, account.id)
        return account

    async def login(self, email: Optional[str], password: Optional[str]) -> Account:
        """
        Check credentials and record the login time.

        Unknown email and wrong password raise the same
        ``AuthenticationError``.
        """
        require_fields(email=email, password=password)
        normalized = normalize_email(email)

        account = await self._store.find_by_email(normalized)
        if account is None:
            # Spend the same bcrypt time so response timing doesn't reveal the miss.
            await self._verify(password, await self._get_dummy_hash())
            raise AuthenticationError(_INVALID_CREDENTIALS)

        if not await self._verify(password, account.password_hash):
            raise AuthenticationError(_INVALID_CREDENTIALS)

        account = account.model_copy(update={"last_login_at": datetime.now(timezone.utc)})
        await self._store.update(account)
        logger.info("Login: %s (id=%d)", account.email, account.id)
        return account

    async def _get_dummy_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = await self._hash("dummy-password-for-timing")
        return self._dummy_hash
