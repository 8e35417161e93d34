"""
JWT-style session token creation and verification.

Tokens are compact JWS strings (``header.payload.signature``, base64url
without padding) signed with HMAC-SHA256.  The issuer is stateless: the
server keeps only the secret, never the tokens.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Callable

from utils.exceptions import AuthenticationError
from utils.schemas import Account, SessionClaims

DEFAULT_EXPIRY_SECONDS = 24 * 60 * 60

_HEADER = {"alg": "HS256", "typ": "JWT"}


def _b64encode(raw: bytes) -> str:
    return urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(segment: str) -> bytes:
    return urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


class SessionTokenIssuer:
    def __init__(
        self,
        secret: str,
        expiry_seconds: int = DEFAULT_EXPIRY_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("A non-empty signing secret is required")
        self._secret = secret.encode()
        self._expiry_seconds = expiry_seconds
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        return _b64encode(hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest())

    def issue(self, account: Account) -> str:
        """Create a signed token for ``account`` valid for the configured lifetime."""
        issued_at = int(self._clock())
        payload = {
            "userId": account.id,
            "email": account.email,
            "iat": issued_at,
            "exp": issued_at + self._expiry_seconds,
        }
        signing_input = (
            _b64encode(json.dumps(_HEADER, separators=(",", ":")).encode())
            + "."
            + _b64encode(json.dumps(payload, separators=(",", ":")).encode())
        )
        return signing_input + "." + self._sign(signing_input)

    def verify(self, token: str) -> SessionClaims:
        """
        Verify token and return its claims.

        Raises ``AuthenticationError`` on a malformed token, a bad
        signature, or when the current time is at or past ``exp``.
        """
        try:
            header_b64, payload_b64, signature = token.split(".")
            signing_input = f"{header_b64}.{payload_b64}"
            if not hmac.compare_digest(signature.encode(), self._sign(signing_input).encode()):
                raise AuthenticationError("Invalid token signature")
            header = json.loads(_b64decode(header_b64))
            if header.get("alg") != _HEADER["alg"]:
                raise AuthenticationError("Unsupported token algorithm")
            payload = json.loads(_b64decode(payload_b64))
            claims = SessionClaims(
                user_id=payload["userId"],
                email=payload["email"],
                issued_at=payload["iat"],
                expires_at=payload["exp"],
            )
        except AuthenticationError:
            raise
        except (AttributeError, ValueError, TypeError, KeyError) as exc:
            raise AuthenticationError("Malformed token") from exc

        if self._clock() >= claims.expires_at:
            raise AuthenticationError("Token expired")
        return claims
