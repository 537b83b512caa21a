"""Local replica of the active user's tasks and folders."""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from core.errors import NotFoundError, ValidationError
from core.logs import ensure_logger
from core.priorities import DEFAULT_PRIORITY, DEFAULT_STATUS
from core.settings import SYNC
from datetime_utils import not_before, parse_timestamp, to_rfc3339_utc, utc_now
from models.folder import Folder
from models.sync_state import SyncState
from models.task import StatusChange, Task
from storage.blobs import FOLDERS_KEY, LAST_SYNC_KEY, TASKS_KEY, USER_KEY
from storage.unit_of_work import UnitOfWork


Entity = Union[Task, Folder]

TASK = "task"
FOLDER = "folder"
ENTITY_TYPES = (TASK, FOLDER)

_MODELS = {TASK: Task, FOLDER: Folder}
_KEYS = {TASK: TASKS_KEY, FOLDER: FOLDERS_KEY}

# Fields callers may not set through create/update.
_BOOKKEEPING = {"owner_id", "sync_state", "updated_at"}


def _load_map(raw: Any, model) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    if not isinstance(raw, dict):
        return result
    for entity_id, data in raw.items():
        if not isinstance(data, dict):
            continue
        entity = model.model_validate(data)
        result[entity.id] = entity
    return result


class ReplicaStore:
    """Per-type id -> entity maps, persisted as whole JSON documents.

    Every mutation is copy-on-write inside ``UnitOfWork.atomic``: either the
    documents are written and the new maps become visible, or nothing changes.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        user_id: str,
        *,
        id_prefix: str = SYNC.local_id_prefix,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not user_id:
            raise ValidationError("user id is required")
        self._uow = uow
        self.user_id = user_id
        self.id_prefix = id_prefix
        self._clock = clock
        self.logger = ensure_logger("store")
        blobs = uow.blobs
        self._maps: Dict[str, Dict[str, Any]] = {
            TASK: _load_map(blobs.get(TASKS_KEY, {}), Task),
            FOLDER: _load_map(blobs.get(FOLDERS_KEY, {}), Folder),
        }
        last = blobs.get(LAST_SYNC_KEY, {}) or {}
        self._last_sync: Optional[datetime] = parse_timestamp(last.get("timestamp"))

    def atomic(self):
        """Group store and queue mutations into one durable write."""
        return self._uow.atomic()

    # ------------------------------------------------------------------
    # ids
    def new_local_id(self) -> str:
        return f"{self.id_prefix}{uuid.uuid4().hex}"

    def is_local_id(self, entity_id: str) -> bool:
        return str(entity_id).startswith(self.id_prefix)

    # ------------------------------------------------------------------
    # reads
    def get_all(self, entity_type: str) -> List[Entity]:
        return [
            entity.model_copy(deep=True)
            for entity in self._map(entity_type).values()
            if entity.owner_id == self.user_id and not entity.is_deleted
        ]

    def get_by_id(self, entity_type: str, entity_id: str, *, include_deleted: bool = False) -> Entity:
        entity = self._map(entity_type).get(entity_id)
        if entity is None or entity.owner_id != self.user_id:
            raise NotFoundError(entity_type, entity_id)
        if entity.is_deleted and not include_deleted:
            raise NotFoundError(entity_type, entity_id)
        return entity.model_copy(deep=True)

    def find(self, entity_type: str, entity_id: str) -> Optional[Entity]:
        """Like ``get_by_id`` but tombstones included and ``None`` instead of raising."""
        entity = self._map(entity_type).get(entity_id)
        return entity.model_copy(deep=True) if entity is not None else None

    def records(self, entity_type: str) -> Dict[str, Entity]:
        """Every record of the type, tombstones and unsynced ones included."""
        return {key: value.model_copy(deep=True) for key, value in self._map(entity_type).items()}

    def local_ids(self, entity_type: str) -> List[str]:
        """Ids the remote system has not confirmed yet."""
        return [key for key in self._map(entity_type) if self.is_local_id(key)]

    def tasks_by_folder(self, folder_id: str) -> List[Task]:
        return [task for task in self.get_all(TASK) if task.folder_id == folder_id]

    def folders_with_tasks(self) -> List[Tuple[Folder, List[Task]]]:
        tasks = self.get_all(TASK)
        return [
            (folder, [task for task in tasks if task.folder_id == folder.id])
            for folder in self.get_all(FOLDER)
        ]

    def last_sync(self) -> Optional[datetime]:
        return self._last_sync

    # ------------------------------------------------------------------
    # writes
    def create(self, entity_type: str, data: Dict[str, Any]) -> Entity:
        model = _MODELS[self._check_type(entity_type)]
        values = {key: value for key, value in data.items() if key not in _BOOKKEEPING}
        now = self._clock()

        supplied_id = values.pop("id", None)
        if supplied_id:
            if supplied_id in self._map(entity_type):
                raise ValidationError(f"{entity_type} {supplied_id} already exists")
            entity_id = str(supplied_id)
            sync_state = SyncState.model_validate(data.get("sync_state") or {})
        else:
            entity_id = self.new_local_id()
            sync_state = SyncState.local_new()

        values.setdefault("created_at", now)
        if entity_type == TASK:
            status = values.get("status") or DEFAULT_STATUS
            priority = values.get("priority") or DEFAULT_PRIORITY
            values.setdefault("status_history", [StatusChange(status=status, at=now)])
            values.setdefault("priority_history", [priority])

        entity = model.model_validate(
            {
                **values,
                "id": entity_id,
                "owner_id": self.user_id,
                "updated_at": not_before(parse_timestamp(values.get("created_at")), now),
                "sync_state": sync_state,
            }
        )
        with self._uow.atomic():
            self._replace(entity_type, {**self._map(entity_type), entity.id: entity})
        self.logger.debug("Created %s %s", entity_type, entity.id)
        return entity.model_copy(deep=True)

    def update(self, entity_type: str, entity_id: str, changes: Dict[str, Any]) -> Entity:
        current = self.get_by_id(entity_type, entity_id)
        entity = current.model_copy(deep=True)
        now = not_before(entity.updated_at, self._clock())

        for key, value in changes.items():
            if key in _BOOKKEEPING or key in {"id", "created_at", "deleted_at"}:
                continue
            if not hasattr(entity, key):
                raise ValidationError(f"unknown {entity_type} field: {key}")
            if entity_type == TASK and key == "status" and value != entity.status:
                entity.status_history = [*entity.status_history, StatusChange(status=value, at=now)]
            if entity_type == TASK and key == "priority" and value != entity.priority:
                entity.priority_history = [*entity.priority_history, value]
            setattr(entity, key, value)

        entity.updated_at = now
        entity.sync_state = entity.sync_state.model_copy(update={"modified": True, "synced": False})
        with self._uow.atomic():
            self._replace(entity_type, {**self._map(entity_type), entity.id: entity})
        return entity.model_copy(deep=True)

    def delete(self, entity_type: str, entity_id: str, *, cascade: bool = False) -> Tuple[Entity, List[Task]]:
        """Soft delete. Returns the tombstone and the child tasks deleted with it."""

        entity = self.get_by_id(entity_type, entity_id).model_copy(deep=True)
        children: List[Task] = []
        if entity_type == FOLDER:
            children = self.tasks_by_folder(entity_id)
            if children and not cascade:
                raise ValidationError(
                    f"folder {entity_id} still holds {len(children)} task(s); delete them with the folder or move them"
                )

        with self._uow.atomic():
            removed: List[Task] = []
            for child in children:
                tombstone, _ = self.delete(TASK, child.id)
                removed.append(tombstone)
            self._tombstone(entity)
            self._replace(entity_type, {**self._map(entity_type), entity.id: entity})
        return entity.model_copy(deep=True), removed

    def mark_synced(
        self,
        entity_type: str,
        entity_id: str,
        server_record: Optional[Entity] = None,
        *,
        pending: bool = False,
    ) -> Entity:
        """Record remote confirmation; migrate the id when the server assigned a new one.

        ``pending`` means more queued mutations for the entity are outstanding:
        only the id migration happens and the local fields stay authoritative.
        """

        current = self._map(entity_type).get(entity_id)
        if current is None:
            raise NotFoundError(entity_type, entity_id)
        new_id = server_record.id if server_record is not None else entity_id
        now = self._clock()

        if pending:
            entity = current.model_copy(deep=True)
            entity.id = new_id
            entity.sync_state = entity.sync_state.model_copy(update={"created": False})
        elif server_record is not None:
            entity = server_record.model_copy(deep=True)
            entity.owner_id = current.owner_id
            entity.updated_at = not_before(current.updated_at, entity.updated_at)
            if current.deleted_at is not None:
                entity.deleted_at = current.deleted_at
            entity.sync_state = SyncState.confirmed(now)
        else:
            entity = current.model_copy(deep=True)
            entity.sync_state = SyncState.confirmed(now)

        with self._uow.atomic():
            updated = dict(self._map(entity_type))
            if new_id != entity_id:
                updated.pop(entity_id, None)
                self.logger.info("Migrating %s id %s -> %s", entity_type, entity_id, new_id)
            updated[new_id] = entity
            self._replace(entity_type, updated)
            if entity_type == FOLDER and new_id != entity_id:
                self._rewrite_folder_refs(entity_id, new_id)
        return entity.model_copy(deep=True)

    def apply_snapshot(self, tasks: Dict[str, Task], folders: Dict[str, Folder]) -> None:
        with self._uow.atomic():
            self._replace(TASK, dict(tasks))
            self._replace(FOLDER, dict(folders))

    def purge(self, entity_type: str, entity_id: str) -> bool:
        """Physically drop a record (confirmed tombstone or cancelled local entity)."""
        current = self._map(entity_type)
        if entity_id not in current:
            return False
        with self._uow.atomic():
            self._replace(entity_type, {key: value for key, value in current.items() if key != entity_id})
        self.logger.debug("Purged %s %s", entity_type, entity_id)
        return True

    def set_last_sync(self, moment: Optional[datetime] = None) -> datetime:
        previous = self._last_sync
        value = not_before(previous, moment or self._clock())

        def _rollback() -> None:
            self._last_sync = previous

        with self._uow.atomic():
            self._last_sync = value
            self._uow.stage(LAST_SYNC_KEY, lambda: {"timestamp": to_rfc3339_utc(self._last_sync)}, _rollback)
        return value

    def export(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            TASKS_KEY: self._dump(TASK),
            FOLDERS_KEY: self._dump(FOLDER),
            LAST_SYNC_KEY: {"timestamp": to_rfc3339_utc(self._last_sync)},
        }

    def persist_user(self) -> None:
        with self._uow.atomic():
            self._uow.stage(USER_KEY, lambda: self.user_id, lambda: None)

    def clear(self) -> None:
        previous = self._last_sync

        def _rollback() -> None:
            self._last_sync = previous

        with self._uow.atomic():
            self._replace(TASK, {})
            self._replace(FOLDER, {})
            self._last_sync = None
            self._uow.stage(LAST_SYNC_KEY, lambda: {"timestamp": None}, _rollback)

    # ------------------------------------------------------------------
    # helpers
    def _check_type(self, entity_type: str) -> str:
        if entity_type not in ENTITY_TYPES:
            raise ValidationError(f"unknown entity type: {entity_type}")
        return entity_type

    def _map(self, entity_type: str) -> Dict[str, Any]:
        return self._maps[self._check_type(entity_type)]

    def _dump(self, entity_type: str) -> Dict[str, Any]:
        return {key: value.model_dump(mode="json") for key, value in self._maps[entity_type].items()}

    def _replace(self, entity_type: str, new_map: Dict[str, Any]) -> None:
        previous = self._maps[entity_type]

        def _rollback() -> None:
            self._maps[entity_type] = previous

        self._maps[entity_type] = new_map
        self._uow.stage(_KEYS[entity_type], lambda: self._dump(entity_type), _rollback)

    def _tombstone(self, entity: Entity) -> None:
        moment = not_before(entity.updated_at, self._clock())
        if entity.deleted_at is None:
            entity.deleted_at = moment
        entity.updated_at = moment
        entity.sync_state = entity.sync_state.model_copy(update={"modified": True, "synced": False})

    def _rewrite_folder_refs(self, old_id: str, new_id: str) -> int:
        tasks = self._maps[TASK]
        rewritten = {}
        for key, task in tasks.items():
            if task.folder_id == old_id:
                moved = task.model_copy(deep=True)
                moved.folder_id = new_id
                rewritten[key] = moved
        if rewritten:
            self._replace(TASK, {**tasks, **rewritten})
            self.logger.info("Rewrote folder reference %s -> %s on %d task(s)", old_id, new_id, len(rewritten))
        return len(rewritten)


__all__ = ["ENTITY_TYPES", "Entity", "FOLDER", "ReplicaStore", "TASK"]
