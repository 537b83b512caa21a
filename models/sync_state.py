"""Per-entity synchronization bookkeeping."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class SyncState(SQLModel):
    """Where a replica record stands relative to the remote system of record."""

    created: bool = Field(default=False, description="Created locally, never confirmed")
    modified: bool = Field(default=False, description="Changed locally since last confirmation")
    synced: bool = Field(default=False, description="Matches the remote copy")
    last_sync_at: Optional[datetime] = None

    @classmethod
    def local_new(cls) -> "SyncState":
        return cls(created=True, modified=False, synced=False)

    @classmethod
    def confirmed(cls, at: datetime) -> "SyncState":
        return cls(created=False, modified=False, synced=True, last_sync_at=at)


__all__ = ["SyncState"]
