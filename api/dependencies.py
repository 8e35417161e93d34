"""
FastAPI dependencies (shared across routes).

Core components are built once in the application lifespan and kept on
``app.state``; these helpers hand them to route handlers.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Header, Request

from auth.authenticator import PasswordAuthenticator
from auth.jwt import SessionTokenIssuer
from connectors.token_manager import OAuthTokenVault
from utils.exceptions import AuthenticationError
from utils.schemas import SessionClaims


def get_authenticator(request: Request) -> PasswordAuthenticator:
    return request.app.state.authenticator


def get_issuer(request: Request) -> SessionTokenIssuer:
    return request.app.state.issuer


def get_vault(request: Request) -> OAuthTokenVault:
    return request.app.state.vault


async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> SessionClaims:
    """
    Extract and verify the Bearer token from the Authorization header.
    Returns the session claims (user id + email).
    """
    if not authorization:
        raise AuthenticationError("Unauthorized: No token provided")
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise AuthenticationError("Unauthorized: No token provided")
    return get_issuer(request).verify(token.strip())
