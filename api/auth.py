"""
Auth API routes: register, login.

Route prefix: /api/auth
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from api.dependencies import get_authenticator, get_issuer
from auth.authenticator import PasswordAuthenticator
from auth.jwt import SessionTokenIssuer
from utils.schemas import Account, AuthResponse, CredentialsRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


def _auth_response(message: str, account: Account, issuer: SessionTokenIssuer) -> Dict[str, Any]:
    return {
        "message": message,
        "token": issuer.issue(account),
        "user": {"id": account.id, "email": account.email},
    }


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    req: CredentialsRequest,
    authenticator: PasswordAuthenticator = Depends(get_authenticator),
    issuer: SessionTokenIssuer = Depends(get_issuer),
) -> Dict[str, Any]:
    """Register a new user."""
    account = await authenticator.register(req.email, req.password)
    return _auth_response("Registration successful", account, issuer)


@router.post("/login", response_model=AuthResponse)
async def login(
    req: CredentialsRequest,
    authenticator: PasswordAuthenticator = Depends(get_authenticator),
    issuer: SessionTokenIssuer = Depends(get_issuer),
) -> Dict[str, Any]:
    """Login with email + password."""
    account = await authenticator.login(req.email, req.password)
    return _auth_response("Login successful", account, issuer)
