"""SQLModel table backing the durable replica area."""

from __future__ import annotations

from datetime import datetime

from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class ReplicaBlob(SQLModel, table=True):
    __tablename__ = "replica_blob"

    namespace: str = Field(primary_key=True)
    key: str = Field(primary_key=True)
    payload: str = Field(description="Whole-document JSON text")
    updated_at: datetime = Field(default_factory=utc_now)


__all__ = ["ReplicaBlob"]
