from __future__ import annotations

from typing import Optional

from tasktrack.logging import get_logger
from tasktrack.service.auth import AuthService
from tasktrack.service.errors import AlreadyExistsError, NotFoundError, ValidationFailedError
from tasktrack.storage.errors import ConstraintViolation
from tasktrack.storage.models import Identity

logger = get_logger(__name__)


class ProfileService:
    """Self-service view and edits of the signed-in user's own record."""

    def __init__(self, store, auth: AuthService) -> None:
        self.store = store
        self.auth = auth

    def get_profile(self, user_id: str) -> Identity:
        identity = self.store.get_identity(user_id)
        if identity is None:
            raise NotFoundError("User not found")
        return identity

    def update_profile(
        self,
        user_id: str,
        *,
        handle: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Identity:
        changes = {}
        if handle is not None:
            handle = handle.strip()
            holder = self.store.get_identity_by_handle(handle)
            if holder is not None and holder.id != user_id:
                raise AlreadyExistsError("Username is already taken")
            changes["handle"] = handle
        for name, value in (("first_name", first_name), ("last_name", last_name)):
            if value is None:
                continue
            if not value.strip():
                raise ValidationFailedError(
                    "Validation failed", details={name: "must not be blank"}
                )
            changes[name] = value.strip()

        if not changes:
            return self.get_profile(user_id)
        try:
            updated = self.store.mutate_identity(
                user_id, lambda current: current.evolve(**changes)
            )
        except ConstraintViolation as exc:
            raise AlreadyExistsError("Username is already taken") from exc
        if updated is None:
            raise NotFoundError("User not found")
        logger.info("profile_updated", user_id=user_id, fields=sorted(changes))
        return updated

    def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> Identity:
        return self.auth.change_password(user_id, current_password, new_password)

    def delete_account(self, user_id: str) -> None:
        if not self.store.delete_identity(user_id):
            raise NotFoundError("User not found")
        logger.info("account_deleted", user_id=user_id)
