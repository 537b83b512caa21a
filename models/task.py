from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional

from sqlmodel import Field, SQLModel

from core.priorities import DEFAULT_PRIORITY, DEFAULT_STATUS
from datetime_utils import utc_now
from models.sync_state import SyncState


class StatusChange(SQLModel):
    status: str
    at: datetime = Field(default_factory=utc_now)


class Task(SQLModel):
    ENTITY_TYPE: ClassVar[str] = "task"

    id: str
    title: str
    description: str = ""
    status: str = DEFAULT_STATUS          # pending / in-progress / completed
    priority: str = DEFAULT_PRIORITY      # low / medium / high
    due_date: Optional[datetime] = None
    folder_id: str
    owner_id: str
    deleted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    status_history: List[StatusChange] = Field(default_factory=list)
    priority_history: List[str] = Field(default_factory=list)
    # opaque remote metadata (AI/email provenance), passed through untouched
    meta: Dict[str, Any] = Field(default_factory=dict)
    sync_state: SyncState = Field(default_factory=SyncState)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def domain_fields(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"sync_state"})


__all__ = ["StatusChange", "Task"]
