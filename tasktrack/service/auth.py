from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol, Tuple

from tasktrack.config import Settings
from tasktrack.logging import get_logger
from tasktrack.service.codes import SingleUseCodeIssuer
from tasktrack.service.errors import (
    AccountLockedError,
    AlreadyExistsError,
    EmailDeliveryError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    NotVerifiedError,
    ServerError,
    TokenExpiredError,
    ValidationFailedError,
)
from tasktrack.service.lockout import LockoutPolicy
from tasktrack.service.passwords import PasswordHasher
from tasktrack.service.tokens import TokenSigner
from tasktrack.storage.errors import ConstraintViolation
from tasktrack.storage.models import Identity

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
_CODE_ALLOCATION_ATTEMPTS = 10


class IdentityStore(Protocol):
    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def get_identity_by_handle(self, handle: str) -> Optional[Identity]: ...

    def get_identity_by_verification_code(self, code: str) -> Optional[Identity]: ...

    def get_identity_by_reset_code(self, code: str) -> Optional[Identity]: ...

    def get_identity_by_refresh_token(self, token: str) -> Optional[Identity]: ...

    def create_identity(self, identity: Identity) -> Identity: ...

    def mutate_identity(
        self, identity_id: str, mutator: Callable[[Identity], Identity]
    ) -> Optional[Identity]: ...

    def delete_identity(self, identity_id: str) -> bool: ...


class MailDispatcher(Protocol):
    def send_email_verification(self, to_email: str, code: str, first_name: str) -> bool: ...

    def send_password_reset(self, to_email: str, code: str, first_name: str) -> bool: ...

    def send_password_changed(self, to_email: str, first_name: str) -> bool: ...

    def send_account_locked(
        self, to_email: str, first_name: str, lockout_minutes: int
    ) -> bool: ...

    def send_welcome(self, to_email: str, first_name: str) -> bool: ...


@dataclass(frozen=True)
class AuthResult:
    access_token: str
    refresh_token: str
    identity: Identity
    expires_at: datetime


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Registration, login, lockout, token rotation and single-use code flows.

    This service is the only writer of the credential, lockout, refresh and
    code fields on an identity. Every write goes through
    ``store.mutate_identity`` so concurrent requests cannot lose updates.
    """

    def __init__(
        self,
        store: IdentityStore,
        signer: TokenSigner,
        mailer: MailDispatcher,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        codes: Optional[SingleUseCodeIssuer] = None,
    ) -> None:
        self.store = store
        self.signer = signer
        self.mailer = mailer
        self.settings = settings
        self.hasher = hasher or PasswordHasher()
        self.codes = codes or SingleUseCodeIssuer()
        self.lockout = LockoutPolicy(
            settings.max_login_attempts,
            timedelta(minutes=settings.lockout_duration_minutes),
        )
        self.verification_ttl = timedelta(hours=settings.verification_code_ttl_hours)
        self.reset_ttl = timedelta(hours=settings.reset_code_ttl_hours)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # registration and verification
    def register(
        self,
        email: str,
        handle: str,
        password: str,
        first_name: str,
        last_name: str,
    ) -> Identity:
        email = normalize_email(email)
        handle = handle.strip()
        if self.store.get_identity_by_email(email) is not None:
            raise AlreadyExistsError("User with this email already exists")
        if self.store.get_identity_by_handle(handle) is not None:
            raise AlreadyExistsError("Username is already taken")

        now = self._now()
        code, expiry = self._allocate_code(
            self.store.get_identity_by_verification_code, self.verification_ttl, now
        )
        identity = Identity.new(
            email,
            handle,
            self.hasher.hash(password),
            first_name.strip(),
            last_name.strip(),
            now=now,
        ).evolve(now, verification_code=code, verification_expiry=expiry)
        try:
            self.store.create_identity(identity)
        except ConstraintViolation as exc:
            message = (
                "Username is already taken"
                if exc.field == "handle"
                else "User with this email already exists"
            )
            raise AlreadyExistsError(message) from exc

        if not self._deliver(
            "verification", self.mailer.send_email_verification, email, code, identity.first_name
        ):
            # Roll back so the address can register again.
            self.store.delete_identity(identity.id)
            logger.warning("registration_rolled_back", user_id=identity.id)
            raise EmailDeliveryError("Failed to send verification email")
        logger.info("registration_completed", user_id=identity.id, email_hash=_email_hash(email))
        return identity

    def verify_email(self, code: str) -> Identity:
        now = self._now()
        identity = (
            self.store.get_identity_by_verification_code(code)
            if self.codes.looks_like_code(code)
            else None
        )
        if identity is None:
            logger.warning("email_verification_invalid_code")
            raise InvalidTokenError("Invalid verification code")
        if identity.verification_expiry is None or identity.verification_expiry <= now:
            raise TokenExpiredError("Email verification code has expired")

        def _apply(current: Identity) -> Identity:
            if not self.codes.is_valid(
                current.verification_code, current.verification_expiry, code, now
            ):
                raise InvalidTokenError("Invalid verification code")
            return current.evolve(
                now,
                email_verified=True,
                verification_code=None,
                verification_expiry=None,
            )

        updated = self.store.mutate_identity(identity.id, _apply)
        if updated is None:
            raise InvalidTokenError("Invalid verification code")
        logger.info("email_verified", user_id=updated.id)
        self._notify("welcome", self.mailer.send_welcome, updated.email, updated.first_name)
        return updated

    def resend_verification(self, email: str) -> Identity:
        email = normalize_email(email)
        identity = self.store.get_identity_by_email(email)
        if identity is None:
            raise NotFoundError("User not found with this email")
        if identity.email_verified:
            raise ValidationFailedError("Email is already verified")

        now = self._now()
        code, expiry = self._allocate_code(
            self.store.get_identity_by_verification_code, self.verification_ttl, now
        )
        updated = self._require(
            self.store.mutate_identity(
                identity.id,
                lambda current: current.evolve(
                    now, verification_code=code, verification_expiry=expiry
                ),
            )
        )
        if not self._deliver(
            "verification",
            self.mailer.send_email_verification,
            updated.email,
            code,
            updated.first_name,
        ):
            raise EmailDeliveryError("Failed to send verification email")
        logger.info("email_verification_resent", user_id=updated.id)
        return updated

    # login and sessions
    def login(self, email: str, password: str) -> AuthResult:
        email = normalize_email(email)
        now = self._now()
        identity = self.store.get_identity_by_email(email)
        if identity is None:
            logger.info("login_failed", reason="unknown_email", email_hash=_email_hash(email))
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        if self.lockout.is_locked(identity.locked_until, now):
            logger.info("login_rejected_locked", user_id=identity.id)
            raise AccountLockedError(
                "Account is locked due to multiple failed login attempts",
                details={"lockedUntil": identity.locked_until.isoformat()},
            )
        if not self.hasher.verify(identity.credential_hash, password):
            self._record_failure(identity.id, now)
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        if not identity.email_verified:
            raise NotVerifiedError("Please verify your email address before logging in")

        access_token = self.signer.issue_access_token(identity)
        refresh_token = self.signer.issue_refresh_token(identity)
        cleared = self.lockout.on_success()

        def _apply(current: Identity) -> Identity:
            return current.evolve(
                now,
                refresh_token=refresh_token,
                refresh_expiry=now + self.signer.refresh_ttl,
                failure_count=cleared.failure_count,
                locked_until=cleared.locked_until,
            )

        updated = self.store.mutate_identity(identity.id, _apply)
        if updated is None:
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        logger.info("login_succeeded", user_id=updated.id)
        return AuthResult(
            access_token=access_token,
            refresh_token=refresh_token,
            identity=updated,
            expires_at=self.signer.expires_at(access_token),
        )

    def _record_failure(self, identity_id: str, now: datetime) -> None:
        def _apply(current: Identity) -> Identity:
            state = self.lockout.on_failure(current.failure_count, now)
            return current.evolve(
                now, failure_count=state.failure_count, locked_until=state.locked_until
            )

        updated = self.store.mutate_identity(identity_id, _apply)
        if updated is None:
            return
        logger.info(
            "login_failed",
            reason="bad_password",
            user_id=updated.id,
            failure_count=updated.failure_count,
        )
        if updated.locked_until is not None:
            logger.warning(
                "account_locked",
                user_id=updated.id,
                locked_until=updated.locked_until.isoformat(),
            )
            self._notify(
                "account_locked",
                self.mailer.send_account_locked,
                updated.email,
                updated.first_name,
                self.settings.lockout_duration_minutes,
            )

    def refresh_token(self, token: str) -> AuthResult:
        now = self._now()
        identity = self.store.get_identity_by_refresh_token(token)
        if identity is None:
            raise InvalidTokenError("Invalid refresh token")
        if identity.refresh_expiry is None or identity.refresh_expiry <= now:
            raise TokenExpiredError("Refresh token has expired")

        access_token = self.signer.issue_access_token(identity)
        new_refresh = self.signer.issue_refresh_token(identity)

        def _rotate(current: Identity) -> Identity:
            # A concurrent refresh may already have spent this token.
            if current.refresh_token != token:
                raise InvalidTokenError("Invalid refresh token")
            return current.evolve(
                now,
                refresh_token=new_refresh,
                refresh_expiry=now + self.signer.refresh_ttl,
            )

        updated = self.store.mutate_identity(identity.id, _rotate)
        if updated is None:
            raise InvalidTokenError("Invalid refresh token")
        logger.info("tokens_refreshed", user_id=updated.id)
        return AuthResult(
            access_token=access_token,
            refresh_token=new_refresh,
            identity=updated,
            expires_at=self.signer.expires_at(access_token),
        )

    def logout(self, token: str) -> None:
        identity = self.store.get_identity_by_refresh_token(token)
        if identity is None:
            logger.debug("logout_unknown_token")
            return
        now = self._now()

        def _clear(current: Identity) -> Identity:
            if current.refresh_token != token:
                return current
            return current.evolve(now, refresh_token=None, refresh_expiry=None)

        self.store.mutate_identity(identity.id, _clear)
        logger.info("logout_completed", user_id=identity.id)

    # password reset and change
    def forgot_password(self, email: str) -> Identity:
        email = normalize_email(email)
        identity = self.store.get_identity_by_email(email)
        if identity is None:
            raise NotFoundError("User not found with this email")

        now = self._now()
        code, expiry = self._allocate_code(
            self.store.get_identity_by_reset_code, self.reset_ttl, now
        )
        updated = self._require(
            self.store.mutate_identity(
                identity.id,
                lambda current: current.evolve(now, reset_code=code, reset_expiry=expiry),
            )
        )
        logger.info("password_reset_requested", email_hash=_email_hash(email))
        if not self._deliver(
            "password_reset",
            self.mailer.send_password_reset,
            updated.email,
            code,
            updated.first_name,
        ):
            raise EmailDeliveryError("Failed to send password reset email")
        return updated

    def reset_password(self, code: str, new_password: str) -> Identity:
        now = self._now()
        identity = (
            self.store.get_identity_by_reset_code(code)
            if self.codes.looks_like_code(code)
            else None
        )
        if identity is None:
            logger.warning("password_reset_invalid_code")
            raise InvalidTokenError("Invalid or expired reset code")
        if identity.reset_expiry is None or identity.reset_expiry <= now:
            raise TokenExpiredError("Password reset code has expired")

        new_hash = self.hasher.hash(new_password)

        def _apply(current: Identity) -> Identity:
            if not self.codes.is_valid(current.reset_code, current.reset_expiry, code, now):
                raise InvalidTokenError("Invalid or expired reset code")
            return current.evolve(
                now,
                credential_hash=new_hash,
                reset_code=None,
                reset_expiry=None,
                refresh_token=None,
                refresh_expiry=None,
            )

        updated = self.store.mutate_identity(identity.id, _apply)
        if updated is None:
            raise InvalidTokenError("Invalid or expired reset code")
        logger.info("password_reset_completed", user_id=updated.id)
        self._notify(
            "password_changed",
            self.mailer.send_password_changed,
            updated.email,
            updated.first_name,
        )
        return updated

    def change_password(
        self, identity_id: str, current_password: str, new_password: str
    ) -> Identity:
        identity = self.store.get_identity(identity_id)
        if identity is None:
            raise NotFoundError("User not found")
        if not self.hasher.verify(identity.credential_hash, current_password):
            raise ValidationFailedError("Current password is incorrect")
        if current_password == new_password:
            raise ValidationFailedError(
                "New password must be different from the current password"
            )
        now = self._now()
        new_hash = self.hasher.hash(new_password)
        updated = self._require(
            self.store.mutate_identity(
                identity_id,
                lambda current: current.evolve(
                    now, credential_hash=new_hash, refresh_token=None, refresh_expiry=None
                ),
            )
        )
        logger.info("password_changed", user_id=updated.id)
        self._notify(
            "password_changed",
            self.mailer.send_password_changed,
            updated.email,
            updated.first_name,
        )
        return updated

    # helpers
    def _allocate_code(
        self,
        lookup: Callable[[str], Optional[Identity]],
        ttl: timedelta,
        now: datetime,
    ) -> Tuple[str, datetime]:
        """Draw a code no other identity currently holds; lookups are by code alone."""
        for _ in range(_CODE_ALLOCATION_ATTEMPTS):
            code, expiry = self.codes.issue(now, ttl)
            if lookup(code) is None:
                return code, expiry
        logger.error("code_allocation_exhausted", attempts=_CODE_ALLOCATION_ATTEMPTS)
        raise ServerError("Could not allocate a single-use code")

    @staticmethod
    def _require(identity: Optional[Identity]) -> Identity:
        if identity is None:
            raise NotFoundError("User not found")
        return identity

    def _deliver(self, kind: str, send: Callable[..., bool], *args) -> bool:
        """Required mail; a raised exception counts as a failed delivery."""
        try:
            return bool(send(*args))
        except Exception as exc:
            logger.error(
                "email_delivery_raised",
                kind=kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    def _notify(self, kind: str, send: Callable[..., bool], *args) -> None:
        """Best-effort notice; a failure is logged and never reaches the caller."""
        try:
            delivered = send(*args)
        except Exception as exc:
            logger.warning(
                "email_notification_failed",
                kind=kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not delivered:
            logger.warning("email_notification_failed", kind=kind)
