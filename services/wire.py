"""Translation between replica models and the remote API's JSON records."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from core.errors import RemoteError
from core.priorities import (
    DEFAULT_PRIORITY,
    DEFAULT_STATUS,
    STATUS_TO_REMOTE,
    normalize_priority,
    normalize_status,
)
from datetime_utils import parse_timestamp, to_rfc3339_utc, utc_now
from models.folder import DEFAULT_ICON, Folder
from models.sync_state import SyncState
from models.task import StatusChange, Task


_HISTORY_FIELDS = {
    "pending": "pendingTimestamps",
    "in-progress": "inProgressTimestamps",
    "completed": "completedTimestamps",
}


def _remote_id(data: Dict[str, Any]) -> str:
    value = data.get("_id") or data.get("id")
    if not value:
        raise RemoteError(200, "record without an id", response_data=data)
    return str(value)


def _timestamps(values: Optional[Iterable[Any]]) -> List[Any]:
    result = []
    for value in values or []:
        parsed = parse_timestamp(value)
        if parsed is not None:
            result.append(parsed)
    return result


# ----------------------------------------------------------------------
# tasks
def task_to_wire(task: Task) -> Dict[str, Any]:
    """Body for POST/PUT: the entity without local bookkeeping or its local id."""

    history: Dict[str, List[str]] = {field: [] for field in _HISTORY_FIELDS.values()}
    for change in task.status_history:
        field = _HISTORY_FIELDS.get(change.status)
        if field:
            history[field].append(to_rfc3339_utc(change.at))

    body: Dict[str, Any] = {
        "title": task.title,
        "description": task.description or "",
        "currentStatus": STATUS_TO_REMOTE.get(task.status, STATUS_TO_REMOTE[DEFAULT_STATUS]),
        "priority": task.priority,
        "dueDate": to_rfc3339_utc(task.due_date),
        "folder": task.folder_id,
        "priorityHistory": list(task.priority_history),
        "createdAt": to_rfc3339_utc(task.created_at),
        **history,
    }
    if task.meta:
        body["metadata"] = dict(task.meta)
    return body


def task_patch_to_wire(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Body for a PUT carrying only the changed fields."""

    body: Dict[str, Any] = {}
    for key, value in changes.items():
        if key == "title":
            body["title"] = value
        elif key == "description":
            body["description"] = value or ""
        elif key == "status":
            body["currentStatus"] = STATUS_TO_REMOTE.get(normalize_status(value) or DEFAULT_STATUS)
        elif key == "priority":
            body["priority"] = value
        elif key == "due_date":
            body["dueDate"] = to_rfc3339_utc(parse_timestamp(value))
        elif key == "folder_id":
            body["folder"] = value
    return body


def task_from_wire(data: Dict[str, Any], owner_id: str) -> Task:
    history: List[StatusChange] = []
    for status, field in _HISTORY_FIELDS.items():
        history.extend(StatusChange(status=status, at=at) for at in _timestamps(data.get(field)))
    history.sort(key=lambda change: change.at)

    created = parse_timestamp(data.get("createdAt")) or utc_now()
    updated = parse_timestamp(data.get("updatedAt")) or created
    folder = data.get("folder")
    if isinstance(folder, dict):
        folder = folder.get("_id") or folder.get("id")

    return Task(
        id=_remote_id(data),
        title=str(data.get("title") or ""),
        description=str(data.get("description") or ""),
        status=normalize_status(data.get("currentStatus") or data.get("status")) or DEFAULT_STATUS,
        priority=normalize_priority(data.get("priority")) or DEFAULT_PRIORITY,
        due_date=parse_timestamp(data.get("dueDate")),
        folder_id=str(folder or ""),
        owner_id=owner_id,
        deleted_at=parse_timestamp(data.get("deletedAt")),
        created_at=created,
        updated_at=updated,
        status_history=history,
        priority_history=[str(value) for value in data.get("priorityHistory") or []],
        meta=dict(data.get("metadata") or {}),
        sync_state=SyncState(),
    )


# ----------------------------------------------------------------------
# folders
def folder_to_wire(folder: Folder) -> Dict[str, Any]:
    return {
        "name": folder.name,
        "icon": folder.icon or DEFAULT_ICON,
        "createdAt": to_rfc3339_utc(folder.created_at),
    }


def folder_patch_to_wire(changes: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in changes.items() if key in {"name", "icon"}}


def folder_from_wire(data: Dict[str, Any], owner_id: str) -> Folder:
    created = parse_timestamp(data.get("createdAt")) or utc_now()
    return Folder(
        id=_remote_id(data),
        name=str(data.get("name") or ""),
        icon=str(data.get("icon") or DEFAULT_ICON),
        owner_id=owner_id,
        deleted_at=parse_timestamp(data.get("deletedAt")),
        created_at=created,
        updated_at=parse_timestamp(data.get("updatedAt")) or created,
        sync_state=SyncState(),
    )


def unwrap_folders(payload: Any) -> List[Dict[str, Any]]:
    """``GET /api/folders`` answers either a list or ``{"folders": [...]}``."""

    if isinstance(payload, dict):
        payload = payload.get("folders") or []
    if not isinstance(payload, list):
        raise RemoteError(200, "unexpected folders payload", response_data={"raw": payload})
    return [entry for entry in payload if isinstance(entry, dict)]


__all__ = [
    "folder_from_wire",
    "folder_patch_to_wire",
    "folder_to_wire",
    "task_from_wire",
    "task_patch_to_wire",
    "task_to_wire",
    "unwrap_folders",
]
