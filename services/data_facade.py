"""Public entry point: optimistic local writes plus outbox entries."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from core.errors import ChronifyError, SessionClosedError, ValidationError
from core.logs import ensure_logger
from core.priorities import PRIORITIES, STATUSES, toggled_status
from core.settings import SYNC
from models.patches import FolderDraft, FolderPatch, TaskDraft, TaskPatch, parse_input
from models.queue_item import (
    CREATE_FOLDER,
    CREATE_TASK,
    DELETE_FOLDER_ONLY,
    DELETE_FOLDER_WITH_TASKS,
    DELETE_TASK,
    UPDATE_FOLDER,
    UPDATE_TASK,
)
from services.connectivity import ConnectivityMonitor
from services.events import (
    CONNECTIVITY_CHANGED,
    ENTITY_CREATED,
    ENTITY_DELETED,
    ENTITY_UPDATED,
    SYNC_STATUS_CHANGED,
    ChangeEvent,
    EventChannel,
)
from services.operation_queue import OperationQueue
from services.replica_store import FOLDER, TASK, Entity, ReplicaStore
from services.synchronizer import TRIGGER_MANUAL, Synchronizer


RECENT_ACTIVITY_LIMIT = 10


@dataclass
class Result:
    """Uniform answer of every facade call."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    offline: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "data": self.data, "error": self.error, "offline": self.offline}


def _snapshot(entity: Entity) -> Dict[str, Any]:
    return entity.model_dump(mode="json", exclude={"sync_state"})


class DataFacade:
    def __init__(
        self,
        store: ReplicaStore,
        queue: OperationQueue,
        synchronizer: Synchronizer,
        monitor: ConnectivityMonitor,
        *,
        cancel_unconfirmed_deletes: bool = SYNC.cancel_unconfirmed_deletes,
    ) -> None:
        self.store = store
        self.queue = queue
        self.synchronizer = synchronizer
        self.monitor = monitor
        self.cancel_unconfirmed_deletes = cancel_unconfirmed_deletes
        self.events: EventChannel[Any] = EventChannel("facade")
        self.logger = ensure_logger("facade")
        self._closed = False
        self._relays = [
            synchronizer.events.subscribe(SYNC_STATUS_CHANGED, self._relay(SYNC_STATUS_CHANGED)),
            monitor.subscribe(self._relay(CONNECTIVITY_CHANGED)),
        ]

    # ------------------------------------------------------------------
    # plumbing
    @property
    def offline(self) -> bool:
        return not self.monitor.online

    def subscribe(self, event: str, callback: Callable[[Any], None]) -> Callable[[], None]:
        self._ensure_open()
        return self.events.subscribe(event, callback)

    def close(self) -> None:
        self._closed = True
        for unsubscribe in self._relays:
            unsubscribe()
        self._relays = []
        self.events.clear()

    def _relay(self, event: str) -> Callable[[Any], None]:
        def _forward(payload: Any) -> None:
            self.events.emit(event, payload)

        return _forward

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionClosedError("session is closed")

    def _run(self, action: str, fn: Callable[[], Any], *, write: bool = False) -> Result:
        self._ensure_open()
        try:
            data = fn()
        except ChronifyError as exc:
            self.logger.warning("%s rejected: %s", action, exc)
            return Result(False, error=str(exc), offline=self.offline)
        except OSError as exc:
            self.logger.exception("%s failed to persist", action)
            return Result(False, error=f"storage failure: {exc}", offline=self.offline)
        return Result(True, data=data, offline=self.offline if write else False)

    def _emit(self, kind: str, entity_type: str, entity: Entity, cascade: List[str] = ()) -> None:
        self.events.emit(
            kind,
            ChangeEvent(
                kind=kind,
                entity_type=entity_type,
                entity_id=entity.id,
                entity=entity,
                cascade=tuple(cascade),
                offline=self.offline,
            ),
        )

    def _require_folder(self, folder_id: str) -> None:
        folder = self.store.find(FOLDER, folder_id)
        if folder is None or folder.is_deleted or folder.owner_id != self.store.user_id:
            raise ValidationError(f"folder {folder_id} does not exist")

    def _cancel_out(self, entity_type: str, entity_id: str) -> bool:
        """Drop a never-confirmed entity and its queued items instead of queueing a delete."""
        if not (self.cancel_unconfirmed_deletes and self.store.is_local_id(entity_id)):
            return False
        items = self.queue.pending_for(entity_id)
        if any(self.queue.is_in_flight(item.id) for item in items):
            return False
        self.queue.discard_entity(entity_id)
        if entity_type == FOLDER:
            self.queue.drop_folder_moves(entity_id)
        self.store.purge(entity_type, entity_id)
        return True

    # ------------------------------------------------------------------
    # task reads
    def get_tasks(self) -> Result:
        return self._run("get_tasks", lambda: self.store.get_all(TASK))

    def get_tasks_by_folder(self, folder_id: str) -> Result:
        return self._run("get_tasks_by_folder", lambda: self.store.tasks_by_folder(folder_id))

    def get_task(self, task_id: str) -> Result:
        return self._run("get_task", lambda: self.store.get_by_id(TASK, task_id))

    def search_tasks(self, query: str) -> Result:
        needle = (query or "").strip().lower()

        def _search():
            tasks = self.store.get_all(TASK)
            if not needle:
                return tasks
            return [
                task
                for task in tasks
                if needle in task.title.lower() or needle in (task.description or "").lower()
            ]

        return self._run("search_tasks", _search)

    # ------------------------------------------------------------------
    # task writes
    def create_task(self, data: Mapping[str, Any]) -> Result:
        def _create():
            draft = parse_input(TaskDraft, data)
            self._require_folder(draft.folder_id)
            with self.store.atomic():
                task = self.store.create(TASK, draft.model_dump())
                self.queue.enqueue(CREATE_TASK, task.id, _snapshot(task))
            self.logger.debug("Task %s created in folder %s", task.id, task.folder_id)
            self._emit(ENTITY_CREATED, TASK, task)
            return task

        return self._run("create_task", _create, write=True)

    def update_task(self, task_id: str, data: Mapping[str, Any]) -> Result:
        def _update():
            patch = parse_input(TaskPatch, data)
            changes = patch.changes()
            if not changes:
                return self.store.get_by_id(TASK, task_id)
            if "folder_id" in changes:
                self._require_folder(changes["folder_id"])
            with self.store.atomic():
                task = self.store.update(TASK, task_id, changes)
                self.queue.enqueue(UPDATE_TASK, task.id, patch.model_dump(mode="json", exclude_unset=True))
            self._emit(ENTITY_UPDATED, TASK, task)
            return task

        return self._run("update_task", _update, write=True)

    def delete_task(self, task_id: str) -> Result:
        def _delete():
            task = self.store.get_by_id(TASK, task_id)
            with self.store.atomic():
                if not self._cancel_out(TASK, task_id):
                    task, _ = self.store.delete(TASK, task_id)
                    self.queue.enqueue(DELETE_TASK, task_id, {"id": task_id})
            self._emit(ENTITY_DELETED, TASK, task)
            return task

        return self._run("delete_task", _delete, write=True)

    def toggle_task_status(self, task_id: str) -> Result:
        current = self.get_task(task_id)
        if not current.success:
            return current
        return self.update_task(task_id, {"status": toggled_status(current.data.status)})

    def change_task_priority(self, task_id: str, priority: str) -> Result:
        return self.update_task(task_id, {"priority": priority})

    # ------------------------------------------------------------------
    # folders
    def get_folders(self) -> Result:
        return self._run("get_folders", lambda: self.store.get_all(FOLDER))

    def get_folder(self, folder_id: str) -> Result:
        return self._run("get_folder", lambda: self.store.get_by_id(FOLDER, folder_id))

    def get_folders_with_tasks(self) -> Result:
        return self._run(
            "get_folders_with_tasks",
            lambda: [{"folder": folder, "tasks": tasks} for folder, tasks in self.store.folders_with_tasks()],
        )

    def create_folder(self, data: Mapping[str, Any]) -> Result:
        def _create():
            draft = parse_input(FolderDraft, data)
            with self.store.atomic():
                folder = self.store.create(FOLDER, draft.model_dump())
                self.queue.enqueue(CREATE_FOLDER, folder.id, _snapshot(folder))
            self._emit(ENTITY_CREATED, FOLDER, folder)
            return folder

        return self._run("create_folder", _create, write=True)

    def update_folder(self, folder_id: str, data: Mapping[str, Any]) -> Result:
        def _update():
            patch = parse_input(FolderPatch, data)
            changes = patch.changes()
            if not changes:
                return self.store.get_by_id(FOLDER, folder_id)
            with self.store.atomic():
                folder = self.store.update(FOLDER, folder_id, changes)
                self.queue.enqueue(UPDATE_FOLDER, folder.id, patch.model_dump(mode="json", exclude_unset=True))
            self._emit(ENTITY_UPDATED, FOLDER, folder)
            return folder

        return self._run("update_folder", _update, write=True)

    def delete_folder(self, folder_id: str, cascade: bool = False) -> Result:
        """Soft-delete a folder; ``cascade`` takes its active tasks along.

        A cascade enqueues one DELETE_TASK per child followed by a single
        DELETE_FOLDER_WITH_TASKS. Without it the folder must be empty.
        """

        def _delete():
            folder = self.store.get_by_id(FOLDER, folder_id)
            children = self.store.tasks_by_folder(folder_id)
            if children and not cascade:
                raise ValidationError(
                    f"folder {folder_id} still holds {len(children)} task(s); pass cascade=True or move them"
                )
            removed: List[Entity] = []
            with self.store.atomic():
                for child in children:
                    if self._cancel_out(TASK, child.id):
                        removed.append(child)
                        continue
                    tombstone, _ = self.store.delete(TASK, child.id)
                    self.queue.enqueue(DELETE_TASK, child.id, {"id": child.id})
                    removed.append(tombstone)
                if not self._cancel_out(FOLDER, folder_id):
                    folder, _ = self.store.delete(FOLDER, folder_id)
                    operation = DELETE_FOLDER_WITH_TASKS if cascade else DELETE_FOLDER_ONLY
                    self.queue.enqueue(operation, folder_id, {"id": folder_id})
            for child in removed:
                self._emit(ENTITY_DELETED, TASK, child)
            self._emit(ENTITY_DELETED, FOLDER, folder, cascade=[child.id for child in removed])
            return {"folder": folder, "tasks": removed}

        return self._run("delete_folder", _delete, write=True)

    # ------------------------------------------------------------------
    # utilities
    def get_statistics(self) -> Result:
        def _stats():
            tasks = self.store.get_all(TASK)
            folders = self.store.get_all(FOLDER)
            by_status = {status: 0 for status in STATUSES}
            by_priority = {priority: 0 for priority in PRIORITIES}
            for task in tasks:
                by_status[task.status] = by_status.get(task.status, 0) + 1
                by_priority[task.priority] = by_priority.get(task.priority, 0) + 1
            recent = sorted(tasks, key=lambda task: task.updated_at, reverse=True)[:RECENT_ACTIVITY_LIMIT]
            return {
                "totalTasks": len(tasks),
                "completedTasks": by_status["completed"],
                "pendingTasks": by_status["pending"],
                "inProgressTasks": by_status["in-progress"],
                "totalFolders": len(folders),
                "tasksByStatus": by_status,
                "tasksByPriority": by_priority,
                "tasksByFolder": {
                    folder.id: {
                        "name": folder.name,
                        "count": sum(1 for task in tasks if task.folder_id == folder.id),
                    }
                    for folder in folders
                },
                "recentActivity": recent,
            }

        return self._run("get_statistics", _stats)

    def export_data(self) -> Result:
        def _export():
            data = self.store.export()
            data["syncQueue"] = [item.model_dump(mode="json") for item in self.queue.list()]
            return data

        return self._run("export_data", _export)

    def get_sync_status(self) -> Result:
        return self._run("get_sync_status", self.synchronizer.status)

    async def force_sync(self) -> Result:
        self._ensure_open()
        result = await self.synchronizer.run_pass(TRIGGER_MANUAL)
        error = result.error or (f"sync skipped: {result.skipped}" if result.skipped else None)
        return Result(result.success, data=result, error=error, offline=self.offline)

    # ------------------------------------------------------------------
    # parked outbox items
    def list_parked(self) -> Result:
        return self._run("list_parked", self.queue.parked)

    def acknowledge_parked(self, item_id: str) -> Result:
        return self._run("acknowledge_parked", lambda: self.queue.acknowledge(item_id))

    def requeue_parked(self, item_id: str) -> Result:
        def _requeue():
            item = self.queue.get(item_id)
            if not item.parked:
                raise ValidationError(f"queue item {item_id} is not parked")
            return self.queue.requeue(item_id)

        return self._run("requeue_parked", _requeue)


__all__ = ["DataFacade", "RECENT_ACTIVITY_LIMIT", "Result"]
