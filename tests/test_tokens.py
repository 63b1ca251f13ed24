"""Tests for HS256 access/refresh token signing."""

import base64
import json
from datetime import timedelta

import pytest

from tasktrack.service.errors import ConfigurationError, InvalidTokenError
from tasktrack.service.tokens import ACCESS, REFRESH, TokenSigner
from tasktrack.storage.models import Identity

SECRET = "unit-test-signing-secret-0123456789-0123456789-0123456789-abcdef"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def signer(clock):
    return TokenSigner(
        SECRET,
        issuer="tasktrack",
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
        clock=clock,
    )


@pytest.fixture
def identity():
    return Identity.new("alice@example.com", "alice", "hash", "Alice", "Anders")


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestConstruction:
    @pytest.mark.parametrize("secret", [None, "", "short-secret"])
    def test_weak_secret_fails_closed(self, secret):
        """A missing or short secret refuses to construct instead of using a random key."""
        with pytest.raises(ConfigurationError):
            TokenSigner(
                secret,
                issuer="tasktrack",
                access_ttl=timedelta(minutes=15),
                refresh_ttl=timedelta(days=1),
            )

    def test_refresh_ttl_must_exceed_access_ttl(self):
        with pytest.raises(ConfigurationError):
            TokenSigner(
                SECRET,
                issuer="tasktrack",
                access_ttl=timedelta(minutes=15),
                refresh_ttl=timedelta(minutes=15),
            )

    def test_same_secret_validates_across_instances(self, signer, identity, clock):
        """Two processes sharing a secret accept each other's tokens."""
        other = TokenSigner(
            SECRET,
            issuer="tasktrack",
            access_ttl=timedelta(minutes=15),
            refresh_ttl=timedelta(days=7),
            clock=clock,
        )
        token = signer.issue_access_token(identity)
        assert other.validate(token, identity.email)


class TestValidate:
    def test_valid_immediately_after_issue(self, signer, identity):
        token = signer.issue_access_token(identity)
        assert signer.validate(token, identity.email) is True
        assert signer.subject_of(token) == identity.email

    def test_invalid_after_expiry(self, signer, identity, clock):
        """Validity is a function of the clock alone: past exp, the token is dead."""
        token = signer.issue_access_token(identity)
        clock.advance(15 * 60)
        assert signer.validate(token, identity.email) is False
        assert signer.is_expired(token) is True

    def test_invalid_for_other_subject(self, signer, identity):
        token = signer.issue_access_token(identity)
        assert signer.validate(token, "mallory@example.com") is False

    def test_refresh_token_is_not_an_access_token(self, signer, identity):
        token = signer.issue_refresh_token(identity)
        assert signer.validate(token, identity.email) is False
        assert signer.validate(token, identity.email, token_type=REFRESH) is True

    def test_tampered_signature_is_rejected(self, signer, identity):
        token = signer.issue_access_token(identity)
        header, payload, sig = token.split(".")
        flipped = ("A" if sig[0] != "A" else "B") + sig[1:]
        assert signer.validate(f"{header}.{payload}.{flipped}", identity.email) is False

    def test_alg_none_is_rejected(self, signer, identity, clock):
        payload = {
            "iss": "tasktrack",
            "sub": identity.email,
            "token_type": ACCESS,
            "exp": int(clock()) + 600,
        }
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64(payload)}."
        assert signer.validate(forged, identity.email) is False

    def test_foreign_issuer_is_rejected(self, identity, clock):
        foreign = TokenSigner(
            SECRET,
            issuer="someone-else",
            access_ttl=timedelta(minutes=15),
            refresh_ttl=timedelta(days=7),
            clock=clock,
        )
        ours = TokenSigner(
            SECRET,
            issuer="tasktrack",
            access_ttl=timedelta(minutes=15),
            refresh_ttl=timedelta(days=7),
            clock=clock,
        )
        assert ours.validate(foreign.issue_access_token(identity), identity.email) is False

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!.??.##"])
    def test_garbage_never_raises(self, signer, identity, garbage):
        assert signer.validate(garbage, identity.email) is False


class TestSubjectOf:
    def test_subject_of_expired_token_still_decodes(self, signer, identity, clock):
        token = signer.issue_access_token(identity)
        clock.advance(3600)
        assert signer.subject_of(token) == identity.email

    def test_subject_of_malformed_token_raises(self, signer):
        with pytest.raises(InvalidTokenError):
            signer.subject_of("not-a-token")

    def test_expires_at_matches_ttl(self, signer, identity, clock):
        token = signer.issue_access_token(identity)
        assert signer.expires_at(token).timestamp() == int(clock()) + 15 * 60

    def test_tokens_are_unique_per_issue(self, signer, identity):
        assert signer.issue_refresh_token(identity) != signer.issue_refresh_token(identity)
