from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional, Tuple, Union

from fastapi import Request

from tasktrack.logging import get_logger
from tasktrack.service.errors import AuthenticationRequiredError, InvalidTokenError
from tasktrack.service.tokens import TokenSigner

logger = get_logger(__name__)

_BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class IdentityContext:
    """Read-only principal attached to a request after bearer validation."""

    subject: str
    user_id: str
    authorities: Tuple[str, ...] = ("ROLE_USER",)


class _Anonymous:
    __slots__ = ()

    def __repr__(self) -> str:
        return "ANONYMOUS"

    def __bool__(self) -> bool:
        return False


ANONYMOUS = _Anonymous()


def resolve_identity(state: Any) -> Union[IdentityContext, _Anonymous]:
    identity = getattr(state, "identity", None)
    if isinstance(identity, IdentityContext):
        return identity
    return ANONYMOUS


class RequestAuthenticator:
    """Resolves a bearer token into an ``IdentityContext`` once per request.

    Failures never reject the request here. A bad, expired or orphaned token
    leaves the request anonymous and the protected route answers 401.
    """

    def __init__(self, signer: TokenSigner, store, public_paths: Iterable[str]) -> None:
        self.signer = signer
        self.store = store
        self.public_paths = tuple(public_paths)

    def is_public(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.public_paths)

    @staticmethod
    def _bearer_token(authorization: Optional[str]) -> Optional[str]:
        if not authorization or not authorization.startswith(_BEARER_PREFIX):
            return None
        token = authorization[len(_BEARER_PREFIX):].strip()
        return token or None

    def authenticate(
        self,
        path: str,
        authorization: Optional[str],
        current: Optional[IdentityContext] = None,
    ) -> Optional[IdentityContext]:
        if self.is_public(path):
            return None
        token = self._bearer_token(authorization)
        if token is None:
            return None
        try:
            subject = self.signer.subject_of(token)
            if current is not None:
                return current
            identity = self.store.get_identity_by_email(subject)
            if identity is None:
                raise InvalidTokenError("Token subject no longer exists")
            if not self.signer.validate(token, identity.email):
                logger.info("bearer_token_rejected", path=path, user_id=identity.id)
                return None
            return IdentityContext(subject=identity.email, user_id=identity.id)
        except Exception as exc:
            logger.warning(
                "bearer_authentication_failed",
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None


def get_principal(request: Request) -> IdentityContext:
    identity = resolve_identity(request.state)
    if not identity:
        raise AuthenticationRequiredError("Authentication required")
    return identity
