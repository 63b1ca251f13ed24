from __future__ import annotations

from typing import List, Optional

from tasktrack.logging import get_logger
from tasktrack.service.errors import NotFoundError, ValidationFailedError
from tasktrack.storage.models import Task

logger = get_logger(__name__)

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 2000

_UNSET = object()


def _clean_title(title: str) -> str:
    title = (title or "").strip()
    if not title:
        raise ValidationFailedError("Title is required", details={"title": "must not be blank"})
    if len(title) > TITLE_MAX_LENGTH:
        raise ValidationFailedError(
            "Title is too long",
            details={"title": f"must be at most {TITLE_MAX_LENGTH} characters"},
        )
    return title


def _clean_description(description: Optional[str]) -> Optional[str]:
    if description is None:
        return None
    if len(description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationFailedError(
            "Description is too long",
            details={"description": f"must be at most {DESCRIPTION_MAX_LENGTH} characters"},
        )
    return description


class TaskService:
    """Task CRUD scoped to the owning user.

    A task owned by someone else is reported exactly like a missing one.
    """

    def __init__(self, store) -> None:
        self.store = store

    def list_tasks(
        self,
        user_id: str,
        *,
        completed: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> List[Task]:
        search = search.strip() if search else None
        return self.store.list_tasks(user_id, completed=completed, search=search or None)

    def get_task(self, user_id: str, task_id: str) -> Task:
        task = self.store.get_task(task_id, user_id)
        if task is None:
            raise NotFoundError("Task not found")
        return task

    def create_task(
        self, user_id: str, title: str, description: Optional[str] = None
    ) -> Task:
        task = Task.new(user_id, _clean_title(title), _clean_description(description))
        self.store.create_task(task)
        logger.info("task_created", user_id=user_id, task_id=task.id)
        return task

    def update_task(
        self,
        user_id: str,
        task_id: str,
        *,
        title: Optional[str] = None,
        description=_UNSET,
        completed: Optional[bool] = None,
    ) -> Task:
        """Partial update; ``description=None`` clears it, omitting it keeps it."""
        task = self.get_task(user_id, task_id)
        changes = {}
        if title is not None:
            changes["title"] = _clean_title(title)
        if description is not _UNSET:
            changes["description"] = _clean_description(description)
        if completed is not None:
            changes["completed"] = completed
        if not changes:
            return task
        updated = self.store.save_task(task.evolve(**changes))
        logger.info("task_updated", user_id=user_id, task_id=task_id, fields=sorted(changes))
        return updated

    def toggle_completion(self, user_id: str, task_id: str) -> Task:
        task = self.get_task(user_id, task_id)
        updated = self.store.save_task(task.evolve(completed=not task.completed))
        logger.info(
            "task_completion_toggled",
            user_id=user_id,
            task_id=task_id,
            completed=updated.completed,
        )
        return updated

    def delete_task(self, user_id: str, task_id: str) -> None:
        if not self.store.delete_task(task_id, user_id):
            raise NotFoundError("Task not found")
        logger.info("task_deleted", user_id=user_id, task_id=task_id)
