from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from tasktrack.config import MIN_JWT_SECRET_LENGTH
from tasktrack.logging import get_logger
from tasktrack.service.errors import ConfigurationError, InvalidTokenError, TokenExpiredError
from tasktrack.storage.models import Identity

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenSigner:
    """HS256 JWT issuance and validation.

    Tokens are stateless: a token is good until its ``exp`` passes, and the
    only way to revoke early is to rotate the secret.
    """

    algorithm = "HS256"

    def __init__(
        self,
        secret: Optional[str],
        *,
        issuer: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret or len(secret) < MIN_JWT_SECRET_LENGTH:
            raise ConfigurationError(
                f"JWT_SECRET must be set and at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        if refresh_ttl <= access_ttl:
            raise ConfigurationError("refresh token TTL must exceed access token TTL")
        self._key = hmac.new(
            secret.encode(), b"tasktrack/token-signing", hashlib.sha256
        ).digest()
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": self.algorithm, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str, *, verify_exp: bool = True) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError("Malformed token") from None

        try:
            header = json.loads(_decode_segment(header_b64))
        except ValueError:
            raise InvalidTokenError("Malformed token header") from None
        # Reject anything not signed with our algorithm, including "none"
        if not isinstance(header, dict) or header.get("alg") != self.algorithm:
            logger.warning("jwt_invalid_algorithm")
            raise InvalidTokenError("Unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError("Invalid token signature")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except ValueError:
            raise InvalidTokenError("Malformed token payload") from None
        if not isinstance(payload, dict) or payload.get("iss") != self.issuer:
            raise InvalidTokenError("Invalid token issuer")
        try:
            exp = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("Token has no expiry") from None
        if verify_exp and exp <= self._clock():
            raise TokenExpiredError("Token has expired")
        return payload

    def _issue(self, identity: Identity, token_type: str, ttl: timedelta) -> str:
        now = int(self._clock())
        payload = {
            "iss": self.issuer,
            "sub": identity.email,
            "uid": identity.id,
            "token_type": token_type,
            "jti": secrets.token_urlsafe(16),
            "iat": now,
            "exp": now + int(ttl.total_seconds()),
        }
        return self._encode(payload)

    def issue_access_token(self, identity: Identity) -> str:
        return self._issue(identity, ACCESS, self.access_ttl)

    def issue_refresh_token(self, identity: Identity) -> str:
        return self._issue(identity, REFRESH, self.refresh_ttl)

    def validate(
        self, token: str, expected_subject: str, *, token_type: str = ACCESS
    ) -> bool:
        """Signature, subject and expiry check. Never raises."""
        try:
            payload = self._decode(token)
        except (InvalidTokenError, TokenExpiredError):
            return False
        if payload.get("token_type") != token_type:
            return False
        return payload.get("sub") == expected_subject

    def subject_of(self, token: str) -> str:
        """Subject of a correctly signed token, expired or not."""
        subject = self._decode(token, verify_exp=False).get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError("Token has no subject")
        return subject

    def is_expired(self, token: str) -> bool:
        payload = self._decode(token, verify_exp=False)
        return float(payload["exp"]) <= self._clock()

    def expires_at(self, token: str) -> datetime:
        payload = self._decode(token, verify_exp=False)
        return datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
