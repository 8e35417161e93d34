"""
Integration token routes: connection status, token store/patch, disconnect.

Route prefix: /api/integrations

The caller's identity is the email claim of their session token.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends

from api.dependencies import get_current_user, get_vault
from connectors.token_manager import OAuthTokenVault
from utils.exceptions import NotFoundError
from utils.schemas import DelegatedToken, SessionClaims, TokenPayload, TokenUpdateRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["integrations"])


def _to_payload(req: TokenUpdateRequest) -> TokenPayload:
    """Drop ``expires_in`` after folding it into ``expires_at``; keep which fields were sent."""
    data = req.model_dump(exclude_unset=True, exclude={"expires_in"})
    if req.expires_in is not None:
        data["expires_at"] = datetime.now(timezone.utc) + timedelta(seconds=req.expires_in)
    return TokenPayload(**data)


def _summary(token: DelegatedToken) -> Dict[str, Any]:
    return {
        "service": token.service,
        "connected": bool(token.access_token),
        "valid": token.is_valid(),
        "expires_at": token.expires_at.isoformat() if token.expires_at else None,
        "connected_at": token.connected_at.isoformat(),
    }


@router.get("")
async def list_integrations(
    user: SessionClaims = Depends(get_current_user),
    vault: OAuthTokenVault = Depends(get_vault),
) -> Dict[str, Any]:
    """Connected services and per-service details for the caller."""
    services = await vault.list_connected_services(user.email)
    return {
        "services": sorted(services),
        "connections": await vault.describe_connections(user.email),
    }


@router.get("/{service}/status")
async def integration_status(
    service: str,
    user: SessionClaims = Depends(get_current_user),
    vault: OAuthTokenVault = Depends(get_vault),
) -> Dict[str, Any]:
    token = await vault.get_token(user.email, service)
    return {
        "service": service,
        "connected": token is not None and bool(token.access_token),
        "valid": token is not None and token.is_valid(),
    }


@router.put("/{service}/token")
async def replace_integration_token(
    service: str,
    req: TokenUpdateRequest,
    user: SessionClaims = Depends(get_current_user),
    vault: OAuthTokenVault = Depends(get_vault),
) -> Dict[str, Any]:
    """Store the token for a freshly completed connection (replaces any previous one)."""
    token = await vault.replace_token(user.email, service, _to_payload(req))
    return _summary(token)


@router.patch("/{service}/token")
async def patch_integration_token(
    service: str,
    req: TokenUpdateRequest,
    user: SessionClaims = Depends(get_current_user),
    vault: OAuthTokenVault = Depends(get_vault),
) -> Dict[str, Any]:
    """Merge refreshed fields into the stored token."""
    token = await vault.patch_token(user.email, service, _to_payload(req))
    return _summary(token)


@router.delete("/{service}")
async def disconnect_integration(
    service: str,
    user: SessionClaims = Depends(get_current_user),
    vault: OAuthTokenVault = Depends(get_vault),
) -> Dict[str, Any]:
    if not await vault.remove_token(user.email, service):
        raise NotFoundError(f"Service '{service}' is not connected")
    return {"status": "disconnected", "service": service}
