"""
Shared fixtures: a throwaway SQLite database per test, stores and services
built on it, and a cheap bcrypt work factor.
"""

import os

os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
import pytest_asyncio

from auth.authenticator import PasswordAuthenticator
from auth.credential_store import CredentialStore
from auth.jwt import SessionTokenIssuer
from connectors.token_manager import OAuthTokenVault
from database.session import Database

TEST_ROUNDS = 4  # bcrypt minimum; keeps tests fast


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'credentials.db'}"


@pytest_asyncio.fixture
async def database(database_url):
    db = Database(database_url, timeout=5.0, backoff_seconds=0.01)
    await db.open()
    yield db
    await db.close()


@pytest.fixture
def credential_store(database) -> CredentialStore:
    return CredentialStore(database)


@pytest.fixture
def authenticator(credential_store) -> PasswordAuthenticator:
    return PasswordAuthenticator(credential_store, rounds=TEST_ROUNDS)


@pytest.fixture
def issuer() -> SessionTokenIssuer:
    return SessionTokenIssuer("test-secret")


@pytest_asyncio.fixture
async def vault(database):
    v = OAuthTokenVault(database)
    yield v
    await v.close()
