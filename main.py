"""
Credential Core: application entry point.
"""

from __future__ import annotations

import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from api.auth import router as auth_router
from api.integrations import router as integrations_router
from api.middleware import register_middleware
from auth.authenticator import PasswordAuthenticator
from auth.credential_store import CredentialStore
from auth.jwt import SessionTokenIssuer
from config.settings import Settings, load_settings
from connectors.encryption import TokenCipher
from connectors.sweeper import ExpirationSweeper
from connectors.token_manager import OAuthTokenVault
from database.session import Database

logger = logging.getLogger(__name__)


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
        stream=sys.stdout,
    )
    for _noisy in ("aiosqlite", "sqlalchemy.engine", "httpx", "httpcore"):
        logging.getLogger(_noisy).setLevel(logging.WARNING)


def create_app(settings: Settings) -> FastAPI:
    # Fail at construction, not on the first request.
    issuer = SessionTokenIssuer(settings.jwt_secret, settings.jwt_expiry_seconds)
    cipher = TokenCipher(settings.token_encryption_key)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database = Database(
            settings.database_url,
            timeout=settings.storage_timeout_seconds,
            max_retries=settings.storage_max_retries,
            backoff_seconds=settings.storage_backoff_seconds,
            backoff_multiplier=settings.storage_backoff_multiplier,
        )
        await database.open()

        hash_pool = ThreadPoolExecutor(
            max_workers=settings.password_hash_workers,
            thread_name_prefix="bcrypt",
        )
        vault = OAuthTokenVault(database, cipher=cipher)
        sweeper = ExpirationSweeper(vault, interval_seconds=settings.sweeper_interval_seconds)

        app.state.database = database
        app.state.issuer = issuer
        app.state.authenticator = PasswordAuthenticator(
            CredentialStore(database),
            rounds=settings.bcrypt_rounds,
            executor=hash_pool,
        )
        app.state.vault = vault
        app.state.sweeper = sweeper

        # Purge tokens that expired while the service was down.
        removed = await sweeper.run_once()
        if removed:
            logger.info("Removed %d expired tokens from previous run", removed)
        sweeper.start()

        logger.info("Application ready to accept requests.")
        try:
            yield
        finally:
            await sweeper.stop()
            await vault.close()
            await database.close()
            hash_pool.shutdown(wait=True)

    app = FastAPI(
        title="Credential Core",
        version="1.0.0",
        description="Local accounts, session tokens and delegated OAuth token storage.",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    app.include_router(auth_router, prefix="/api/auth")
    app.include_router(integrations_router, prefix="/api/integrations")

    @app.get("/api/health", tags=["health"])
    async def health(request: Request) -> Dict[str, Any]:
        stats = await request.app.state.vault.stats()
        return {
            "status": "ok",
            "sweeper_running": request.app.state.sweeper.running,
            "vault": stats.model_dump(),
        }

    return app


def build_app(settings: Optional[Settings] = None) -> FastAPI:
    """Entry point for ``uvicorn --factory main:build_app``."""
    settings = settings or load_settings()
    configure_logging(settings.debug)
    return create_app(settings)


if __name__ == "__main__":
    config = load_settings()
    configure_logging(config.debug)
    uvicorn.run(
        "main:build_app",
        factory=True,
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
