"""
Tests for session token issuing / verification.
"""

import pytest

from auth.jwt import DEFAULT_EXPIRY_SECONDS, SessionTokenIssuer
from utils.exceptions import AuthenticationError
from utils.schemas import Account

NOW = 1_700_000_000


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _account() -> Account:
    return Account(id=7, email="alice@example.com", password_hash="x")


class TestIssueAndVerify:
    def test_round_trip_claims(self):
        clock = FakeClock()
        issuer = SessionTokenIssuer("secret", clock=clock)
        claims = issuer.verify(issuer.issue(_account()))
        assert claims.user_id == 7
        assert claims.email == "alice@example.com"
        assert claims.issued_at == NOW
        assert claims.expires_at == NOW + DEFAULT_EXPIRY_SECONDS

    def test_token_has_three_segments(self):
        token = SessionTokenIssuer("secret").issue(_account())
        assert token.count(".") == 2

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            SessionTokenIssuer("")


class TestExpiry:
    def test_valid_one_second_before_expiry(self):
        clock = FakeClock()
        issuer = SessionTokenIssuer("secret", clock=clock)
        token = issuer.issue(_account())
        clock.now = NOW + DEFAULT_EXPIRY_SECONDS - 1
        assert issuer.verify(token).user_id == 7

    def test_invalid_at_expiry(self):
        clock = FakeClock()
        issuer = SessionTokenIssuer("secret", clock=clock)
        token = issuer.issue(_account())
        clock.now = NOW + DEFAULT_EXPIRY_SECONDS
        with pytest.raises(AuthenticationError, match="expired"):
            issuer.verify(token)

    def test_invalid_after_expiry(self):
        clock = FakeClock()
        issuer = SessionTokenIssuer("secret", clock=clock)
        token = issuer.issue(_account())
        clock.now = NOW + DEFAULT_EXPIRY_SECONDS + 3600
        with pytest.raises(AuthenticationError):
            issuer.verify(token)


class TestTampering:
    def test_every_byte_flip_fails(self):
        issuer = SessionTokenIssuer("secret")
        token = issuer.issue(_account())
        for i, ch in enumerate(token):
            replacement = "A" if ch != "A" else "B"
            tampered = token[:i] + replacement + token[i + 1:]
            with pytest.raises(AuthenticationError):
                issuer.verify(tampered)

    def test_other_secret_rejected(self):
        token = SessionTokenIssuer("secret").issue(_account())
        with pytest.raises(AuthenticationError, match="signature"):
            SessionTokenIssuer("other-secret").verify(token)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "ünïcode.x.y"])
    def test_malformed(self, token):
        with pytest.raises(AuthenticationError):
            SessionTokenIssuer("secret").verify(token)
