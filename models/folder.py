from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar, Dict, Optional

from sqlmodel import Field, SQLModel

from datetime_utils import utc_now
from models.sync_state import SyncState


DEFAULT_ICON = "📁"


class Folder(SQLModel):
    ENTITY_TYPE: ClassVar[str] = "folder"

    id: str
    name: str
    icon: str = DEFAULT_ICON
    owner_id: str
    deleted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    sync_state: SyncState = Field(default_factory=SyncState)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def domain_fields(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"sync_state"})


__all__ = ["DEFAULT_ICON", "Folder"]
