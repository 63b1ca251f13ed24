from __future__ import annotations

import json
import threading
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from tasktrack.logging import get_logger
from tasktrack.storage.errors import ConstraintViolation
from tasktrack.storage.models import Identity, Task

_IDENTITY_DATETIME_FIELDS = (
    "verification_expiry",
    "reset_expiry",
    "refresh_expiry",
    "locked_until",
    "created_at",
    "updated_at",
)
_TASK_DATETIME_FIELDS = ("created_at", "updated_at")


class MemoryStore:
    """In-process identity and task store with a JSON snapshot on disk."""

    def __init__(self, fs_root: str = "/tmp/tasktrack") -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.tasks: Dict[str, Task] = {}
        # RLock so mutators may call back into lookups
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        if not self._state_path().parent.is_dir():
            raise FileNotFoundError(self._state_path().parent)

    # identities
    def _find_identity(self, predicate: Callable[[Identity], bool]) -> Optional[Identity]:
        with self._data_lock:
            return next((i for i in self.identities.values() if predicate(i)), None)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            return self.identities.get(identity_id)

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        return self._find_identity(lambda i: i.email == email)

    def get_identity_by_handle(self, handle: str) -> Optional[Identity]:
        return self._find_identity(lambda i: i.handle == handle)

    def get_identity_by_verification_code(self, code: str) -> Optional[Identity]:
        return self._find_identity(lambda i: i.verification_code == code)

    def get_identity_by_reset_code(self, code: str) -> Optional[Identity]:
        return self._find_identity(lambda i: i.reset_code == code)

    def get_identity_by_refresh_token(self, token: str) -> Optional[Identity]:
        return self._find_identity(lambda i: i.refresh_token == token)

    def _check_unique(self, identity: Identity) -> None:
        for existing in self.identities.values():
            if existing.id == identity.id:
                continue
            if existing.email == identity.email:
                raise ConstraintViolation("email")
            if existing.handle == identity.handle:
                raise ConstraintViolation("handle")

    def create_identity(self, identity: Identity) -> Identity:
        with self._data_lock:
            if identity.id in self.identities:
                raise ConstraintViolation("id")
            self._check_unique(identity)
            self.identities[identity.id] = identity
            self._persist_state()
            return identity

    def mutate_identity(
        self, identity_id: str, mutator: Callable[[Identity], Identity]
    ) -> Optional[Identity]:
        """Apply ``mutator`` to the current snapshot and store the result atomically.

        Exceptions raised by the mutator propagate and leave the record untouched.
        """
        with self._data_lock:
            current = self.identities.get(identity_id)
            if current is None:
                return None
            updated = mutator(current)
            if updated is current:
                return current
            self._check_unique(updated)
            self.identities[identity_id] = updated
            self._persist_state()
            return updated

    def delete_identity(self, identity_id: str) -> bool:
        with self._data_lock:
            if self.identities.pop(identity_id, None) is None:
                return False
            for task_id, task in list(self.tasks.items()):
                if task.user_id == identity_id:
                    self.tasks.pop(task_id, None)
            self._persist_state()
            return True

    # tasks
    def create_task(self, task: Task) -> Task:
        with self._data_lock:
            self.tasks[task.id] = task
            self._persist_state()
            return task

    def get_task(self, task_id: str, user_id: str) -> Optional[Task]:
        with self._data_lock:
            task = self.tasks.get(task_id)
            if task is None or task.user_id != user_id:
                return None
            return task

    def list_tasks(
        self,
        user_id: str,
        *,
        completed: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> List[Task]:
        needle = search.lower() if search else None
        with self._data_lock:
            results = [t for t in self.tasks.values() if t.user_id == user_id]
        if completed is not None:
            results = [t for t in results if t.completed == completed]
        if needle:
            results = [
                t
                for t in results
                if needle in t.title.lower()
                or (t.description and needle in t.description.lower())
            ]
        return sorted(results, key=lambda t: t.created_at, reverse=True)

    def save_task(self, task: Task) -> Task:
        with self._data_lock:
            existing = self.tasks.get(task.id)
            if existing is not None and existing.user_id != task.user_id:
                raise ConstraintViolation("id", "task belongs to another user")
            self.tasks[task.id] = task
            self._persist_state()
            return task

    def delete_task(self, task_id: str, user_id: str) -> bool:
        with self._data_lock:
            task = self.tasks.get(task_id)
            if task is None or task.user_id != user_id:
                return False
            self.tasks.pop(task_id, None)
            self._persist_state()
            return True

    # persistence
    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_identity(self, identity: Identity) -> dict:
        data = asdict(identity)
        for name in _IDENTITY_DATETIME_FIELDS:
            data[name] = self._serialize_datetime(data[name])
        return data

    def _deserialize_identity(self, data: dict) -> Identity:
        values: Dict[str, Any] = dict(data)
        for name in _IDENTITY_DATETIME_FIELDS:
            values[name] = self._deserialize_datetime(values.get(name))
        values["failure_count"] = int(values.get("failure_count", 0))
        values["email_verified"] = bool(values.get("email_verified", False))
        return Identity(**values)

    def _serialize_task(self, task: Task) -> dict:
        data = asdict(task)
        for name in _TASK_DATETIME_FIELDS:
            data[name] = self._serialize_datetime(data[name])
        return data

    def _deserialize_task(self, data: dict) -> Task:
        values: Dict[str, Any] = dict(data)
        for name in _TASK_DATETIME_FIELDS:
            values[name] = self._deserialize_datetime(values.get(name))
        values["completed"] = bool(values.get("completed", False))
        return Task(**values)

    def _persist_state(self) -> None:
        state = {
            "identities": [
                self._serialize_identity(i) for i in self.identities.values()
            ],
            "tasks": [self._serialize_task(t) for t in self.tasks.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {
            i["id"]: self._deserialize_identity(i) for i in data.get("identities", [])
        }
        self.tasks = {t["id"]: self._deserialize_task(t) for t in data.get("tasks", [])}
        self.logger.info(
            "memory_store_loaded",
            identities=len(self.identities),
            tasks=len(self.tasks),
        )
        return True
