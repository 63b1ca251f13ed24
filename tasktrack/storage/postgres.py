from __future__ import annotations

from dataclasses import fields
from typing import Any, Callable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tasktrack.logging import get_logger
from tasktrack.storage.errors import ConstraintViolation
from tasktrack.storage.models import Identity, Task

_IDENTITY_COLUMNS = [f.name for f in fields(Identity)]
_TASK_COLUMNS = [f.name for f in fields(Task)]

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        handle TEXT NOT NULL UNIQUE,
        credential_hash TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        verification_code TEXT,
        verification_expiry TIMESTAMPTZ,
        reset_code TEXT,
        reset_expiry TIMESTAMPTZ,
        refresh_token TEXT,
        refresh_expiry TIMESTAMPTZ,
        failure_count INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS app_user_verification_code_idx ON app_user (verification_code)",
    "CREATE INDEX IF NOT EXISTS app_user_reset_code_idx ON app_user (reset_code)",
    "CREATE INDEX IF NOT EXISTS app_user_refresh_token_idx ON app_user (refresh_token)",
    """
    CREATE TABLE IF NOT EXISTS task (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user (id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        description TEXT,
        completed BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS task_user_id_idx ON task (user_id)",
)


def _escape_like(value: str) -> str:
    """Make ``%`` and ``_`` match literally, like MemoryStore's substring search."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _constraint_field(exc: errors.UniqueViolation) -> str:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    return "handle" if "handle" in constraint else "email"


class PostgresStore:
    """Postgres-backed identity and task store."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # identities
    @staticmethod
    def _identity_from_row(row: Optional[dict[str, Any]]) -> Optional[Identity]:
        if not row:
            return None
        values = {name: row.get(name) for name in _IDENTITY_COLUMNS}
        values["id"] = str(values["id"])
        values["failure_count"] = values.get("failure_count") or 0
        return Identity(**values)

    def _fetch_identity(self, column: str, value: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {column} = %s", (value,)
            ).fetchone()
        return self._identity_from_row(row)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        return self._fetch_identity("id", identity_id)

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        return self._fetch_identity("email", email)

    def get_identity_by_handle(self, handle: str) -> Optional[Identity]:
        return self._fetch_identity("handle", handle)

    def get_identity_by_verification_code(self, code: str) -> Optional[Identity]:
        return self._fetch_identity("verification_code", code)

    def get_identity_by_reset_code(self, code: str) -> Optional[Identity]:
        return self._fetch_identity("reset_code", code)

    def get_identity_by_refresh_token(self, token: str) -> Optional[Identity]:
        return self._fetch_identity("refresh_token", token)

    def create_identity(self, identity: Identity) -> Identity:
        placeholders = ", ".join(["%s"] * len(_IDENTITY_COLUMNS))
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO app_user ({', '.join(_IDENTITY_COLUMNS)}) VALUES ({placeholders})",
                    tuple(getattr(identity, name) for name in _IDENTITY_COLUMNS),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(_constraint_field(exc)) from exc
        return identity

    def _write_identity(self, conn, identity: Identity) -> None:
        columns = [name for name in _IDENTITY_COLUMNS if name != "id"]
        assignments = ", ".join(f"{name} = %s" for name in columns)
        conn.execute(
            f"UPDATE app_user SET {assignments} WHERE id = %s",
            (*[getattr(identity, name) for name in columns], identity.id),
        )

    def mutate_identity(
        self, identity_id: str, mutator: Callable[[Identity], Identity]
    ) -> Optional[Identity]:
        """Row-locked read-modify-write; the mutator runs inside the transaction."""
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        "SELECT * FROM app_user WHERE id = %s FOR UPDATE", (identity_id,)
                    ).fetchone()
                    current = self._identity_from_row(row)
                    if current is None:
                        return None
                    updated = mutator(current)
                    if updated is not current:
                        self._write_identity(conn, updated)
                    return updated
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(_constraint_field(exc)) from exc

    def delete_identity(self, identity_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (identity_id,))
            return result.rowcount > 0

    # tasks
    @staticmethod
    def _task_from_row(row: Optional[dict[str, Any]]) -> Optional[Task]:
        if not row:
            return None
        values = {name: row.get(name) for name in _TASK_COLUMNS}
        values["id"] = str(values["id"])
        values["user_id"] = str(values["user_id"])
        return Task(**values)

    def create_task(self, task: Task) -> Task:
        placeholders = ", ".join(["%s"] * len(_TASK_COLUMNS))
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO task ({', '.join(_TASK_COLUMNS)}) VALUES ({placeholders})",
                tuple(getattr(task, name) for name in _TASK_COLUMNS),
            )
        return task

    def get_task(self, task_id: str, user_id: str) -> Optional[Task]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM task WHERE id = %s AND user_id = %s", (task_id, user_id)
            ).fetchone()
        return self._task_from_row(row)

    def list_tasks(
        self,
        user_id: str,
        *,
        completed: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> List[Task]:
        clauses = ["user_id = %s"]
        params: list[Any] = [user_id]
        if completed is not None:
            clauses.append("completed = %s")
            params.append(completed)
        if search:
            pattern = f"%{_escape_like(search)}%"
            clauses.append(
                "(title ILIKE %s ESCAPE '\\' OR description ILIKE %s ESCAPE '\\')"
            )
            params.extend([pattern, pattern])
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM task WHERE {' AND '.join(clauses)} ORDER BY created_at DESC",
                tuple(params),
            ).fetchall()
        return [self._task_from_row(row) for row in rows]

    def save_task(self, task: Task) -> Task:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE task SET title = %s, description = %s, completed = %s, updated_at = %s
                WHERE id = %s AND user_id = %s
                """,
                (
                    task.title,
                    task.description,
                    task.completed,
                    task.updated_at,
                    task.id,
                    task.user_id,
                ),
            )
        return task

    def delete_task(self, task_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM task WHERE id = %s AND user_id = %s", (task_id, user_id)
            )
            return result.rowcount > 0
