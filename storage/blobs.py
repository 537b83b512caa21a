"""Durable key -> JSON document area used by the replica and the outbox."""
from __future__ import annotations

import copy
import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from sqlmodel import Session, select

from core.settings import STORAGE
from datetime_utils import utc_now
from models.replica_blob import ReplicaBlob


# Keys of the persisted layout.
TASKS_KEY = "tasks"
FOLDERS_KEY = "folders"
QUEUE_KEY = "syncQueue"
LAST_SYNC_KEY = "lastSync"
USER_KEY = "userId"


def _serialise(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _deserialise(payload: Optional[str]) -> Any:
    if not payload:
        return None
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        return None


class BlobStore(ABC):
    """Get/set of opaque JSON-serialisable documents per key."""

    namespace: str

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def set_many(self, values: Mapping[str, Any]) -> None:
        """Write every entry of ``values`` or none of them."""

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    @abstractmethod
    def delete_all(self) -> None:
        ...

    @abstractmethod
    def keys(self) -> Iterable[str]:
        ...


class SqlBlobStore(BlobStore):
    """Blob area stored in the ``replica_blob`` table through SQLModel."""

    def __init__(self, session_factory: Callable[[], Session], namespace: str = STORAGE.namespace):
        self._session_factory = session_factory
        self.namespace = namespace

    def get(self, key: str, default: Any = None) -> Any:
        with self._session_factory() as session:
            row = session.get(ReplicaBlob, (self.namespace, key))
            value = _deserialise(row.payload if row else None)
        return default if value is None else value

    def set_many(self, values: Mapping[str, Any]) -> None:
        # serialise everything before opening the transaction
        payloads = {key: _serialise(value) for key, value in values.items()}
        now = utc_now()
        with self._session_factory() as session:
            for key, payload in payloads.items():
                row = session.get(ReplicaBlob, (self.namespace, key))
                if row is None:
                    row = ReplicaBlob(namespace=self.namespace, key=key, payload=payload, updated_at=now)
                else:
                    row.payload = payload
                    row.updated_at = now
                session.add(row)
            session.commit()

    def delete_all(self) -> None:
        with self._session_factory() as session:
            rows = session.exec(select(ReplicaBlob).where(ReplicaBlob.namespace == self.namespace)).all()
            for row in rows:
                session.delete(row)
            session.commit()

    def keys(self) -> Iterable[str]:
        with self._session_factory() as session:
            rows = session.exec(select(ReplicaBlob.key).where(ReplicaBlob.namespace == self.namespace)).all()
        return sorted(rows)


class MemoryBlobStore(BlobStore):
    """Process-local blob area; documents round-trip through JSON like the SQL one."""

    def __init__(self, namespace: str = STORAGE.namespace):
        self.namespace = namespace
        self._data: Dict[str, str] = {}
        self.fail_writes = False

    def get(self, key: str, default: Any = None) -> Any:
        value = _deserialise(self._data.get(key))
        return default if value is None else value

    def set_many(self, values: Mapping[str, Any]) -> None:
        if self.fail_writes:
            raise OSError("blob area is not writable")
        staged = dict(self._data)
        for key, value in values.items():
            staged[key] = _serialise(value)
        self._data = staged

    def delete_all(self) -> None:
        self._data = {}

    def keys(self) -> Iterable[str]:
        return sorted(self._data)

    def snapshot(self) -> Dict[str, Any]:
        return {key: copy.deepcopy(self.get(key)) for key in self._data}


__all__ = [
    "BlobStore",
    "FOLDERS_KEY",
    "LAST_SYNC_KEY",
    "MemoryBlobStore",
    "QUEUE_KEY",
    "SqlBlobStore",
    "TASKS_KEY",
    "USER_KEY",
]
