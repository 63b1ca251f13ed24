from __future__ import annotations

from typing import Optional


class ConstraintViolation(Exception):
    """A write collided with a unique column (``email`` or ``handle``)."""

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        self.message = message or f"{field} already exists"
        super().__init__(self.message)

    @property
    def detail(self) -> dict[str, str]:
        return {"field": self.field}


__all__ = ["ConstraintViolation"]
