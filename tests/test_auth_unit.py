"""Unit tests for the auth service.

Tests for:
- Registration and email verification codes
- Login, failure counting and lockout
- Refresh token rotation and logout
- Password reset and password change
- Best-effort notices vs mandatory code mails
"""

from datetime import datetime, timedelta, timezone

import pytest
from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type

from tasktrack.config import Settings
from tasktrack.service.auth import AuthService
from tasktrack.service.codes import SingleUseCodeIssuer
from tasktrack.service.errors import (
    AccountLockedError,
    AlreadyExistsError,
    EmailDeliveryError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    NotVerifiedError,
    TokenExpiredError,
    ValidationFailedError,
)
from tasktrack.service.passwords import PasswordHasher
from tasktrack.service.tokens import TokenSigner
from tasktrack.storage.memory import MemoryStore

SECRET = "unit-test-signing-secret-0123456789-0123456789-0123456789-abcdef"
PASSWORD = "pw12345678"


class RecordingMailer:
    """Captures outgoing mail; kinds in ``failing`` report failure, kinds in ``raising`` raise."""

    def __init__(self):
        self.sent = []
        self.failing = set()
        self.raising = {}

    def _record(self, kind, to_email, **payload):
        if kind in self.raising:
            raise self.raising[kind]
        self.sent.append({"kind": kind, "to": to_email, **payload})
        return kind not in self.failing

    def send_email_verification(self, to_email, code, first_name):
        return self._record("verification", to_email, code=code)

    def send_password_reset(self, to_email, code, first_name):
        return self._record("reset", to_email, code=code)

    def send_password_changed(self, to_email, first_name):
        return self._record("password_changed", to_email)

    def send_account_locked(self, to_email, first_name, lockout_minutes):
        return self._record("account_locked", to_email, minutes=lockout_minutes)

    def send_welcome(self, to_email, first_name):
        return self._record("welcome", to_email)

    def of_kind(self, kind):
        return [m for m in self.sent if m["kind"] == kind]

    def last_code(self, kind):
        return self.of_kind(kind)[-1]["code"]


class Clock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class ScriptedCodes(SingleUseCodeIssuer):
    """Hands out predetermined codes in order."""

    def __init__(self, codes):
        super().__init__()
        self._codes = list(codes)

    def issue(self, now, ttl):
        return self._codes.pop(0), now + ttl


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=SECRET,
        max_login_attempts=5,
        lockout_duration_minutes=30,
        verification_code_ttl_hours=24,
        reset_code_ttl_hours=1,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def signer():
    return TokenSigner(
        SECRET,
        issuer="tasktrack",
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
    )


@pytest.fixture
def hasher():
    # Minimal argon2 cost keeps the suite fast
    return PasswordHasher(Argon2Hasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID))


@pytest.fixture
def service(store, signer, mailer, settings, hasher, clock, monkeypatch):
    svc = AuthService(store, signer, mailer, settings, hasher=hasher)
    monkeypatch.setattr(svc, "_now", clock)
    return svc


def _register(service, email="a@x.com", handle="alice"):
    return service.register(email, handle, PASSWORD, "A", "A")


def _register_verified(service, mailer, email="a@x.com", handle="alice"):
    _register(service, email, handle)
    return service.verify_email(mailer.last_code("verification"))


class TestRegister:
    def test_creates_unverified_identity_with_code(self, service, store, mailer):
        """Registration stores an unverified identity holding a 6-digit code."""
        identity = _register(service)

        stored = store.get_identity(identity.id)
        assert stored.email_verified is False
        assert len(stored.verification_code) == 6 and stored.verification_code.isdigit()
        assert stored.verification_expiry == service._now() + timedelta(hours=24)
        assert stored.credential_hash != PASSWORD
        assert mailer.last_code("verification") == stored.verification_code

    def test_email_is_normalized(self, service, store):
        _register(service, email="  Alice@X.COM ")
        assert store.get_identity_by_email("alice@x.com") is not None

    def test_duplicate_email_rejected(self, service):
        _register(service)
        with pytest.raises(AlreadyExistsError) as exc:
            _register(service, handle="other")
        assert exc.value.message == "User with this email already exists"

    def test_duplicate_handle_rejected(self, service):
        _register(service)
        with pytest.raises(AlreadyExistsError) as exc:
            _register(service, email="b@x.com")
        assert exc.value.message == "Username is already taken"

    def test_mail_failure_rolls_back_identity(self, service, store, mailer):
        """A failed first mail deletes the new identity so the user can retry."""
        mailer.failing.add("verification")
        with pytest.raises(EmailDeliveryError):
            _register(service)
        assert store.get_identity_by_email("a@x.com") is None

        mailer.failing.clear()
        assert _register(service).email == "a@x.com"

    def test_raising_mailer_rolls_back_identity(self, service, store, mailer):
        """A dispatcher that raises counts as a failed delivery."""
        mailer.raising["verification"] = ConnectionResetError("peer reset")
        with pytest.raises(EmailDeliveryError) as exc:
            _register(service)
        assert exc.value.message == "Failed to send verification email"
        assert store.get_identity_by_email("a@x.com") is None

        mailer.raising.clear()
        assert _register(service).email == "a@x.com"

    def test_code_held_by_another_identity_is_redrawn(
        self, store, signer, mailer, settings, hasher
    ):
        svc = AuthService(
            store,
            signer,
            mailer,
            settings,
            hasher=hasher,
            codes=ScriptedCodes(["111111", "111111", "222222"]),
        )
        first = svc.register("a@x.com", "alice", PASSWORD, "A", "A")
        second = svc.register("b@x.com", "bob", PASSWORD, "B", "B")

        assert store.get_identity(first.id).verification_code == "111111"
        assert store.get_identity(second.id).verification_code == "222222"


class TestVerifyEmail:
    def test_wrong_code_is_invalid_token(self, service, mailer):
        _register(service)
        code = mailer.last_code("verification")
        wrong = "000000" if code != "000000" else "111111"
        with pytest.raises(InvalidTokenError):
            service.verify_email(wrong)

    def test_malformed_code_is_invalid_token(self, service):
        _register(service)
        with pytest.raises(InvalidTokenError):
            service.verify_email("abc")

    def test_correct_code_verifies_and_clears(self, service, store, mailer):
        identity = _register(service)
        service.verify_email(mailer.last_code("verification"))

        stored = store.get_identity(identity.id)
        assert stored.email_verified is True
        assert stored.verification_code is None
        assert stored.verification_expiry is None
        assert mailer.of_kind("welcome")

    def test_code_is_single_use(self, service, mailer):
        """A consumed code never validates a second time."""
        _register(service)
        code = mailer.last_code("verification")
        service.verify_email(code)
        with pytest.raises(InvalidTokenError):
            service.verify_email(code)

    def test_expired_code(self, service, mailer, clock):
        _register(service)
        clock.advance(hours=24)
        with pytest.raises(TokenExpiredError):
            service.verify_email(mailer.last_code("verification"))

    def test_failed_welcome_does_not_fail_verification(self, service, store, mailer):
        mailer.failing.add("welcome")
        identity = _register(service)
        service.verify_email(mailer.last_code("verification"))
        assert store.get_identity(identity.id).email_verified is True


class TestResendVerification:
    def test_unknown_email_not_found(self, service):
        with pytest.raises(NotFoundError):
            service.resend_verification("ghost@x.com")

    def test_already_verified_is_rejected(self, service, mailer):
        _register_verified(service, mailer)
        with pytest.raises(ValidationFailedError) as exc:
            service.resend_verification("a@x.com")
        assert exc.value.message == "Email is already verified"

    def test_new_code_replaces_old(self, store, signer, mailer, settings, hasher):
        svc = AuthService(
            store,
            signer,
            mailer,
            settings,
            hasher=hasher,
            codes=ScriptedCodes(["111111", "222222"]),
        )
        svc.register("a@x.com", "alice", PASSWORD, "A", "A")
        svc.resend_verification("a@x.com")

        with pytest.raises(InvalidTokenError):
            svc.verify_email("111111")
        assert svc.verify_email("222222").email_verified is True

    def test_mail_failure_is_reported(self, service, mailer):
        _register(service)
        mailer.failing.add("verification")
        with pytest.raises(EmailDeliveryError):
            service.resend_verification("a@x.com")

    def test_raising_mailer_is_reported(self, service, mailer):
        _register(service)
        mailer.raising["verification"] = RuntimeError("smtp client crashed")
        with pytest.raises(EmailDeliveryError):
            service.resend_verification("a@x.com")


class TestLogin:
    def test_success_issues_and_stores_tokens(self, service, store, signer, mailer):
        identity = _register_verified(service, mailer)
        result = service.login("a@x.com", PASSWORD)

        assert signer.validate(result.access_token, "a@x.com")
        stored = store.get_identity(identity.id)
        assert stored.refresh_token == result.refresh_token
        assert stored.refresh_expiry == service._now() + timedelta(days=7)
        assert result.expires_at == signer.expires_at(result.access_token)

    def test_unknown_email_and_wrong_password_are_indistinguishable(self, service, mailer):
        _register_verified(service, mailer)
        with pytest.raises(InvalidCredentialsError) as unknown:
            service.login("ghost@x.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            service.login("a@x.com", "wrong-password")
        assert unknown.value.message == wrong.value.message == "Invalid email or password"

    def test_unverified_checked_after_password(self, service):
        """An unverified account only learns it is unverified with the right password."""
        _register(service)
        with pytest.raises(InvalidCredentialsError):
            service.login("a@x.com", "wrong-password")
        with pytest.raises(NotVerifiedError):
            service.login("a@x.com", PASSWORD)

    def test_failure_count_persists(self, service, store, mailer):
        identity = _register_verified(service, mailer)
        for _ in range(2):
            with pytest.raises(InvalidCredentialsError):
                service.login("a@x.com", "wrong-password")
        assert store.get_identity(identity.id).failure_count == 2

    def test_success_resets_failures(self, service, store, mailer):
        identity = _register_verified(service, mailer)
        with pytest.raises(InvalidCredentialsError):
            service.login("a@x.com", "wrong-password")
        service.login("a@x.com", PASSWORD)

        stored = store.get_identity(identity.id)
        assert stored.failure_count == 0
        assert stored.locked_until is None

    def test_threshold_failures_lock_account(self, service, store, mailer, clock):
        identity = _register_verified(service, mailer)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                service.login("a@x.com", "wrong-password")

        stored = store.get_identity(identity.id)
        assert stored.locked_until == clock.now + timedelta(minutes=30)
        assert len(mailer.of_kind("account_locked")) == 1

        with pytest.raises(AccountLockedError):
            service.login("a@x.com", PASSWORD)

    def test_lock_lapses_after_deadline(self, service, mailer, clock):
        _register_verified(service, mailer)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                service.login("a@x.com", "wrong-password")
        clock.advance(minutes=30)
        assert service.login("a@x.com", PASSWORD).access_token

    def test_failure_after_lapse_relocks(self, service, mailer, clock):
        """The counter survives an expired lock, so one more failure locks again."""
        _register_verified(service, mailer)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                service.login("a@x.com", "wrong-password")
        clock.advance(minutes=31)
        with pytest.raises(InvalidCredentialsError):
            service.login("a@x.com", "wrong-password")
        with pytest.raises(AccountLockedError):
            service.login("a@x.com", PASSWORD)

    def test_failed_lock_notice_is_swallowed(self, service, mailer):
        mailer.failing.add("account_locked")
        _register_verified(service, mailer)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                service.login("a@x.com", "wrong-password")
        with pytest.raises(AccountLockedError):
            service.login("a@x.com", PASSWORD)


class TestRefreshToken:
    def test_rotation_returns_new_pair(self, service, store, mailer):
        identity = _register_verified(service, mailer)
        first = service.login("a@x.com", PASSWORD)
        second = service.refresh_token(first.refresh_token)

        assert second.refresh_token != first.refresh_token
        assert store.get_identity(identity.id).refresh_token == second.refresh_token

    def test_old_value_fails_after_rotation(self, service, mailer):
        """Refreshing twice with the same value succeeds once and then fails."""
        _register_verified(service, mailer)
        first = service.login("a@x.com", PASSWORD)
        service.refresh_token(first.refresh_token)
        with pytest.raises(InvalidTokenError):
            service.refresh_token(first.refresh_token)

    def test_unknown_token(self, service):
        with pytest.raises(InvalidTokenError):
            service.refresh_token("never-issued")

    def test_expired_token(self, service, mailer, clock):
        _register_verified(service, mailer)
        result = service.login("a@x.com", PASSWORD)
        clock.advance(days=7)
        with pytest.raises(TokenExpiredError):
            service.refresh_token(result.refresh_token)

    def test_refresh_does_not_touch_lockout_counters(self, service, store, mailer):
        identity = _register_verified(service, mailer)
        result = service.login("a@x.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError):
            service.login("a@x.com", "wrong-password")
        service.refresh_token(result.refresh_token)
        assert store.get_identity(identity.id).failure_count == 1


class TestLogout:
    def test_unknown_token_is_a_noop(self, service, store, mailer, monkeypatch):
        """Logout with an unknown value succeeds and writes nothing."""
        _register_verified(service, mailer)
        writes = []
        original = store.mutate_identity
        monkeypatch.setattr(
            store,
            "mutate_identity",
            lambda *args, **kwargs: writes.append(args) or original(*args, **kwargs),
        )
        service.logout("never-issued")
        assert writes == []

    def test_known_token_is_cleared(self, service, store, mailer):
        identity = _register_verified(service, mailer)
        result = service.login("a@x.com", PASSWORD)
        service.logout(result.refresh_token)

        stored = store.get_identity(identity.id)
        assert stored.refresh_token is None
        assert stored.refresh_expiry is None
        with pytest.raises(InvalidTokenError):
            service.refresh_token(result.refresh_token)

    def test_logout_is_idempotent(self, service, mailer):
        _register_verified(service, mailer)
        result = service.login("a@x.com", PASSWORD)
        service.logout(result.refresh_token)
        service.logout(result.refresh_token)


class TestPasswordReset:
    def test_forgot_unknown_email(self, service):
        with pytest.raises(NotFoundError) as exc:
            service.forgot_password("ghost@x.com")
        assert exc.value.message == "User not found with this email"

    def test_forgot_stores_and_mails_code(self, service, store, mailer):
        identity = _register_verified(service, mailer)
        service.forgot_password("a@x.com")
        stored = store.get_identity(identity.id)
        assert stored.reset_code == mailer.last_code("reset")
        assert stored.reset_expiry == service._now() + timedelta(hours=1)

    def test_forgot_mail_failure(self, service, mailer):
        _register_verified(service, mailer)
        mailer.failing.add("reset")
        with pytest.raises(EmailDeliveryError):
            service.forgot_password("a@x.com")

    def test_forgot_raising_mailer(self, service, mailer):
        _register_verified(service, mailer)
        mailer.raising["reset"] = TimeoutError("smtp timed out")
        with pytest.raises(EmailDeliveryError) as exc:
            service.forgot_password("a@x.com")
        assert exc.value.message == "Failed to send password reset email"

    def test_reset_replaces_password_and_clears_state(self, service, store, mailer):
        identity = _register_verified(service, mailer)
        session = service.login("a@x.com", PASSWORD)
        service.forgot_password("a@x.com")
        code = mailer.last_code("reset")

        service.reset_password(code, "brand-new-password")

        stored = store.get_identity(identity.id)
        assert stored.reset_code is None and stored.reset_expiry is None
        assert stored.refresh_token is None
        assert mailer.of_kind("password_changed")
        with pytest.raises(InvalidCredentialsError):
            service.login("a@x.com", PASSWORD)
        assert service.login("a@x.com", "brand-new-password").access_token
        with pytest.raises(InvalidTokenError):
            service.refresh_token(session.refresh_token)
        with pytest.raises(InvalidTokenError):
            service.reset_password(code, "another-password")

    def test_reset_with_unknown_code(self, service, mailer):
        _register_verified(service, mailer)
        with pytest.raises(InvalidTokenError) as exc:
            service.reset_password("999999", "brand-new-password")
        assert exc.value.message == "Invalid or expired reset code"

    def test_reset_with_expired_code(self, service, mailer, clock):
        _register_verified(service, mailer)
        service.forgot_password("a@x.com")
        clock.advance(hours=1, seconds=1)
        with pytest.raises(TokenExpiredError):
            service.reset_password(mailer.last_code("reset"), "brand-new-password")


class TestChangePassword:
    def test_wrong_current_password(self, service, mailer):
        identity = _register_verified(service, mailer)
        with pytest.raises(ValidationFailedError) as exc:
            service.change_password(identity.id, "not-it-at-all", "brand-new-password")
        assert exc.value.message == "Current password is incorrect"

    def test_change_revokes_refresh_and_notifies(self, service, store, mailer):
        identity = _register_verified(service, mailer)
        session = service.login("a@x.com", PASSWORD)
        service.change_password(identity.id, PASSWORD, "brand-new-password")

        assert store.get_identity(identity.id).refresh_token is None
        assert mailer.of_kind("password_changed")
        with pytest.raises(InvalidTokenError):
            service.refresh_token(session.refresh_token)

    def test_unknown_identity(self, service):
        with pytest.raises(NotFoundError):
            service.change_password("missing", PASSWORD, "brand-new-password")


class TestEndToEnd:
    def test_register_verify_login_lockout(self, service, store, signer, mailer, clock):
        """register -> verify -> login -> five bad passwords -> locked even with the right one."""
        _register(service, "a@x.com", "alice")
        stored = store.get_identity_by_email("a@x.com")
        assert stored.email_verified is False
        code = stored.verification_code
        assert len(code) == 6 and code.isdigit()

        wrong = "000000" if code != "000000" else "111111"
        with pytest.raises(InvalidTokenError):
            service.verify_email(wrong)

        service.verify_email(code)
        stored = store.get_identity_by_email("a@x.com")
        assert stored.email_verified is True
        assert stored.verification_code is None

        result = service.login("a@x.com", PASSWORD)
        assert signer.validate(result.access_token, "a@x.com")
        assert result.refresh_token

        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                service.login("a@x.com", "wrong-password")
        locked_until = store.get_identity_by_email("a@x.com").locked_until
        assert locked_until == clock.now + timedelta(minutes=30)

        with pytest.raises(AccountLockedError):
            service.login("a@x.com", PASSWORD)

        clock.advance(minutes=30)
        assert service.login("a@x.com", PASSWORD).access_token
