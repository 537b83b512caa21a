"""Outbox entries for mutations awaiting remote confirmation."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


CREATE_TASK = "CREATE_TASK"
UPDATE_TASK = "UPDATE_TASK"
DELETE_TASK = "DELETE_TASK"
CREATE_FOLDER = "CREATE_FOLDER"
UPDATE_FOLDER = "UPDATE_FOLDER"
DELETE_FOLDER_ONLY = "DELETE_FOLDER_ONLY"
DELETE_FOLDER_WITH_TASKS = "DELETE_FOLDER_WITH_TASKS"

VALID_OPS = {
    CREATE_TASK,
    UPDATE_TASK,
    DELETE_TASK,
    CREATE_FOLDER,
    UPDATE_FOLDER,
    DELETE_FOLDER_ONLY,
    DELETE_FOLDER_WITH_TASKS,
}
CREATE_OPS = {CREATE_TASK, CREATE_FOLDER}
UPDATE_OPS = {UPDATE_TASK, UPDATE_FOLDER}
DELETE_OPS = {DELETE_TASK, DELETE_FOLDER_ONLY, DELETE_FOLDER_WITH_TASKS}


def entity_type_of(operation: str) -> str:
    return "task" if operation.endswith("_TASK") else "folder"


class QueueItem(SQLModel):
    id: str
    operation: str
    entity_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime = Field(default_factory=utc_now)
    retry_count: int = 0
    max_retries: int = 3
    last_error: Optional[str] = None

    @property
    def entity_type(self) -> str:
        return entity_type_of(self.operation)

    @property
    def parked(self) -> bool:
        return self.retry_count >= self.max_retries

    @property
    def is_create(self) -> bool:
        return self.operation in CREATE_OPS

    @property
    def is_update(self) -> bool:
        return self.operation in UPDATE_OPS

    @property
    def is_delete(self) -> bool:
        return self.operation in DELETE_OPS


__all__ = [
    "CREATE_FOLDER",
    "CREATE_OPS",
    "CREATE_TASK",
    "DELETE_FOLDER_ONLY",
    "DELETE_FOLDER_WITH_TASKS",
    "DELETE_OPS",
    "DELETE_TASK",
    "QueueItem",
    "UPDATE_FOLDER",
    "UPDATE_OPS",
    "UPDATE_TASK",
    "VALID_OPS",
    "entity_type_of",
]
