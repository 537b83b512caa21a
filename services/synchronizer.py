from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Tuple

from core.errors import NetworkError, NotFoundError, TRANSIENT_ERRORS
from core.logs import ensure_logger
from core.settings import SYNC
from datetime_utils import not_before, utc_now
from models.queue_item import DELETE_FOLDER_WITH_TASKS, QueueItem
from models.sync_state import SyncState
from services.connectivity import ConnectivityMonitor
from services.events import SYNC_STATUS_CHANGED, EventChannel, SyncStatusEvent
from services.operation_queue import OperationQueue
from services.remote_client import RemoteClient
from services.replica_store import FOLDER, TASK, Entity, ReplicaStore


IDLE = "idle"
FETCHING = "fetching"
MERGING = "merging"
REPLAYING = "replaying"

TRIGGER_TIMER = "timer"
TRIGGER_CONNECTIVITY = "connectivity-restored"
TRIGGER_MANUAL = "manual"
TRIGGER_EXTERNAL = "reconcile-now"
TRIGGER_LOGIN = "login"

# Triggers allowed to probe the network while offline-by-observed-failure.
PROBE_TRIGGERS = {TRIGGER_TIMER, TRIGGER_MANUAL, TRIGGER_EXTERNAL}


@dataclass
class SyncResult:
    trigger: str
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    success: bool = False
    skipped: Optional[str] = None
    error: Optional[str] = None
    succeeded: int = 0
    failed: int = 0
    parked: int = 0
    deferred: int = 0
    merged_tasks: int = 0
    merged_folders: int = 0
    id_migrations: Dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "trigger": self.trigger,
            "success": self.success,
            "skipped": self.skipped,
            "error": self.error,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "parked": self.parked,
            "deferred": self.deferred,
            "mergedTasks": self.merged_tasks,
            "mergedFolders": self.merged_folders,
            "idMigrations": dict(self.id_migrations),
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
        }


def _unchanged(existing: Entity, record: Entity) -> bool:
    mine = existing.domain_fields()
    theirs = record.domain_fields()
    mine.pop("updated_at", None)
    theirs.pop("updated_at", None)
    return mine == theirs and existing.updated_at >= record.updated_at


def merge_records(remote: Iterable[Entity], local: Dict[str, Entity], now: datetime) -> Dict[str, Entity]:
    """Local-unsynced wins.

    Remote records come in tagged synced; a local record whose
    ``sync_state.synced`` is False overrides the remote one with the same id.
    Synced local records are replaced by the fetched copy, except that an
    identical fetched copy keeps the local object untouched.
    """

    merged: Dict[str, Entity] = {}
    for record in remote:
        existing = local.get(record.id)
        if existing is not None and existing.sync_state.synced and _unchanged(existing, record):
            merged[record.id] = existing
            continue
        fresh = record.model_copy(deep=True)
        if existing is not None:
            fresh.updated_at = not_before(existing.updated_at, fresh.updated_at)
        fresh.sync_state = SyncState.confirmed(now)
        merged[record.id] = fresh

    for entity_id, entity in local.items():
        if not entity.sync_state.synced:
            merged[entity_id] = entity
    return merged


class Synchronizer:
    """Fetch -> merge -> replay, one pass at a time."""

    def __init__(
        self,
        store: ReplicaStore,
        queue: OperationQueue,
        remote: RemoteClient,
        monitor: ConnectivityMonitor,
        *,
        call_timeout: float = SYNC.request_timeout_sec,
    ) -> None:
        self.store = store
        self.queue = queue
        self.remote = remote
        self.monitor = monitor
        self.call_timeout = call_timeout
        self.events: EventChannel[SyncStatusEvent] = EventChannel("sync", (SYNC_STATUS_CHANGED,))
        self.logger = ensure_logger("sync")
        self._phase = IDLE
        self._closed = False
        self._done: Optional[asyncio.Future] = None
        self.last_result: Optional[SyncResult] = None

    # ------------------------------------------------------------------
    # Public API
    @property
    def phase(self) -> str:
        return self._phase

    @property
    def in_progress(self) -> bool:
        return self._phase != IDLE

    def close(self) -> None:
        self._closed = True

    async def wait_idle(self) -> None:
        """Wait for the pass in progress, if any, to return to IDLE."""
        if self._done is not None and not self._done.done():
            await asyncio.shield(self._done)

    async def reconcile_now(self) -> SyncResult:
        return await self.run_pass(TRIGGER_EXTERNAL)

    async def run_pass(self, trigger: str = TRIGGER_MANUAL) -> SyncResult:
        result = SyncResult(trigger=trigger)
        reason = self._skip_reason(trigger)
        if reason:
            self.logger.debug("Sync pass (%s) skipped: %s", trigger, reason)
            result.skipped = reason
            result.finished_at = utc_now()
            return result

        self._done = asyncio.get_running_loop().create_future()
        self.logger.info("Sync pass started (%s), queue=%d", trigger, self.queue.count())
        try:
            await self._execute(result)
        except Exception as exc:
            self.logger.exception("Sync pass crashed")
            result.error = str(exc) or exc.__class__.__name__
        finally:
            self._phase = IDLE
            if not self._done.done():
                self._done.set_result(None)
        return self._finish(result)

    async def _execute(self, result: SyncResult) -> None:
        self._set_phase(FETCHING)
        try:
            tasks, folders = await self._call(self.remote.fetch_snapshot())
        except TRANSIENT_ERRORS as exc:
            self._observe_failure(exc)
            self.logger.warning("Fetch failed, queue left untouched: %s", exc)
            result.error = str(exc)
            return
        self.monitor.report_success()
        if self._closed:
            result.error = "session closed"
            return

        self._set_phase(MERGING)
        self._merge(tasks, folders, result)

        self._set_phase(REPLAYING)
        await self._replay(result)

        if self._closed:
            result.error = "session closed"
            return
        self.store.set_last_sync()
        result.success = True

    def status(self) -> dict:
        return {
            "isOnline": self.monitor.online,
            "isSyncing": self.in_progress,
            "phase": self._phase,
            "queueSize": self.queue.count(),
            "parkedCount": len(self.queue.parked()),
            "hasUnsyncedChanges": self.queue.count() > 0,
            "lastSync": self.store.last_sync(),
            "lastResult": self.last_result.as_dict() if self.last_result else None,
        }

    # ------------------------------------------------------------------
    # Pass helpers
    def _skip_reason(self, trigger: str) -> Optional[str]:
        if self._closed:
            return "closed"
        if self.in_progress:
            return "busy"
        if not self.monitor.online and not (trigger in PROBE_TRIGGERS and self.monitor.probe_allowed):
            return "offline"
        return None

    def _set_phase(self, phase: str) -> None:
        self._phase = phase
        self.events.emit(SYNC_STATUS_CHANGED, SyncStatusEvent(kind="phase", phase=phase))

    def _finish(self, result: SyncResult) -> SyncResult:
        if result.finished_at is not None:
            return result
        result.finished_at = utc_now()
        result.parked = len(self.queue.parked())
        self.last_result = result
        kind = "completed" if result.success else "failed"
        self.logger.info(
            "Sync pass %s (%s): ok=%d failed=%d parked=%d deferred=%d%s",
            kind,
            result.trigger,
            result.succeeded,
            result.failed,
            result.parked,
            result.deferred,
            f" error={result.error}" if result.error else "",
        )
        self.events.emit(SYNC_STATUS_CHANGED, SyncStatusEvent(kind=kind, result=result, phase=IDLE))
        return result

    async def _call(self, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.call_timeout)
        except asyncio.TimeoutError as exc:
            raise NetworkError(f"remote call timed out after {self.call_timeout}s") from exc

    def _observe_failure(self, exc: BaseException) -> None:
        if isinstance(exc, NetworkError):
            self.monitor.report_failure()

    # ------------------------------------------------------------------
    # MERGE
    def _merge(self, tasks: List[Entity], folders: List[Entity], result: SyncResult) -> None:
        now = utc_now()
        merged_folders = merge_records(folders, self.store.records(FOLDER), now)
        merged_tasks = merge_records(tasks, self.store.records(TASK), now)
        self.store.apply_snapshot(merged_tasks, merged_folders)
        result.merged_tasks = len(tasks)
        result.merged_folders = len(folders)

    # ------------------------------------------------------------------
    # REPLAY
    async def _replay(self, result: SyncResult) -> None:
        snapshot = self.queue.list()
        if not snapshot:
            return

        pipelines: Dict[Tuple[str, str], List[QueueItem]] = {}
        for item in snapshot:
            pipelines.setdefault((item.entity_type, item.entity_id), []).append(item)

        folder_heads: Dict[str, List[QueueItem]] = {}
        folder_tails: Dict[str, List[QueueItem]] = {}
        task_pipelines: List[List[QueueItem]] = []
        for (entity_type, entity_id), items in pipelines.items():
            if entity_type == TASK:
                task_pipelines.append(items)
                continue
            cut = next((index for index, item in enumerate(items) if item.is_delete), len(items))
            if items[:cut]:
                folder_heads[entity_id] = items[:cut]
            if items[cut:]:
                folder_tails[entity_id] = items[cut:]

        self.queue.begin(item.id for item in snapshot)
        try:
            # folders first so tasks can reference confirmed ids, folder deletes last
            stopped = set()
            if folder_heads and not self._closed:
                outcomes = await asyncio.gather(
                    *(self._run_pipeline(items, result) for items in folder_heads.values())
                )
                stopped = {entity_id for entity_id, done in zip(folder_heads, outcomes) if not done}
            if task_pipelines and not self._closed:
                await asyncio.gather(*(self._run_pipeline(items, result) for items in task_pipelines))
            tails = []
            for entity_id, items in folder_tails.items():
                if entity_id in stopped:
                    # a folder delete never overtakes its own unfinished create/update
                    result.deferred += len(items)
                else:
                    tails.append(items)
            if tails and not self._closed:
                await asyncio.gather(*(self._run_pipeline(items, result) for items in tails))
        finally:
            for item in snapshot:
                self.queue.finish(item.id)

    async def _run_pipeline(self, items: List[QueueItem], result: SyncResult) -> bool:
        for index, original in enumerate(items):
            remaining = len(items) - index - 1
            if self._closed:
                return False
            item = self._current(original.id)
            if item is None:
                continue
            if item.parked:
                result.deferred += remaining
                return False
            if self._waits_for_folder(item):
                self.logger.debug("Deferring %s for %s: folder not confirmed yet", item.operation, item.entity_id)
                result.deferred += remaining + 1
                return False
            if not await self._replay_item(item, result):
                result.deferred += remaining
                return False
        return True

    def _current(self, item_id: str) -> Optional[QueueItem]:
        try:
            return self.queue.get(item_id)
        except NotFoundError:
            return None

    def _waits_for_folder(self, item: QueueItem) -> bool:
        """A task item waits only while its folder still has a create queued."""
        if item.entity_type != TASK or item.is_delete:
            return False
        task = self.store.find(TASK, item.entity_id)
        if item.is_update and not (task is not None and self.store.is_local_id(task.id)):
            folder_id = item.payload.get("folder_id")
        else:
            folder_id = task.folder_id if task is not None else None
        return bool(folder_id) and self.store.is_local_id(folder_id) and self.queue.has_queued_create(folder_id)

    async def _replay_item(self, item: QueueItem, result: SyncResult) -> bool:
        try:
            if item.is_create:
                await self._replay_create(item, result)
            elif item.is_update:
                await self._replay_update(item, result)
            else:
                await self._replay_delete(item)
        except TRANSIENT_ERRORS as exc:
            self._observe_failure(exc)
            self.logger.warning("Replay %s for %s failed: %s", item.operation, item.entity_id, exc)
            self._charge(item, str(exc))
            result.failed += 1
            return False
        except Exception as exc:  # pragma: no cover
            self.logger.exception("Replay %s for %s crashed", item.operation, item.entity_id)
            self._charge(item, str(exc) or exc.__class__.__name__)
            result.failed += 1
            return False
        result.succeeded += 1
        return True

    def _charge(self, item: QueueItem, error: str) -> None:
        if self._current(item.id) is not None:
            self.queue.increment_retry(item.id, error)

    async def _replay_create(self, item: QueueItem, result: SyncResult) -> None:
        entity = self.store.find(item.entity_type, item.entity_id)
        if entity is None or not self.store.is_local_id(entity.id):
            # purged, or confirmed by an earlier delivery: nothing left to create
            self.queue.remove(item.id)
            return
        if item.entity_type == TASK:
            record = await self._call(self.remote.create_task(entity))
        else:
            record = await self._call(self.remote.create_folder(entity))
        self._confirm(item, record, result)

    async def _replay_update(self, item: QueueItem, result: SyncResult) -> None:
        entity = self.store.find(item.entity_type, item.entity_id)
        if entity is None:
            self.queue.remove(item.id)
            return
        if self.store.is_local_id(entity.id):
            # its create was acknowledged away; the server has never seen it
            self.logger.info("Converting %s to a create for unconfirmed %s", item.operation, entity.id)
            await self._replay_create(item, result)
            return
        if item.entity_type == TASK:
            record = await self._call(self.remote.update_task(entity.id, item.payload))
        else:
            record = await self._call(self.remote.update_folder(entity.id, item.payload))
        self._confirm(item, record, result)

    async def _replay_delete(self, item: QueueItem) -> None:
        entity_id = item.entity_id
        if self.store.is_local_id(entity_id) and not self.queue.has_queued_create(entity_id):
            self.logger.info("Dropping %s for %s: never reached the server", item.operation, entity_id)
        elif item.entity_type == TASK:
            await self._call(self.remote.delete_task(entity_id))
        else:
            await self._call(
                self.remote.delete_folder(entity_id, with_tasks=item.operation == DELETE_FOLDER_WITH_TASKS)
            )
        with self.store.atomic():
            self.queue.remove(item.id)
            if not self.queue.pending_for(entity_id):
                self.store.purge(item.entity_type, entity_id)

    def _confirm(self, item: QueueItem, record: Optional[Entity], result: SyncResult) -> None:
        old_id = item.entity_id
        with self.store.atomic():
            self.queue.remove(item.id)
            if self.store.find(item.entity_type, old_id) is None:
                return
            pending = bool(self.queue.pending_for(old_id))
            self.store.mark_synced(item.entity_type, old_id, record, pending=pending)
            if record is not None and record.id != old_id:
                self.queue.remap_entity(old_id, record.id)
                result.id_migrations[old_id] = record.id


__all__ = [
    "FETCHING",
    "IDLE",
    "MERGING",
    "PROBE_TRIGGERS",
    "REPLAYING",
    "SyncResult",
    "Synchronizer",
    "TRIGGER_CONNECTIVITY",
    "TRIGGER_EXTERNAL",
    "TRIGGER_LOGIN",
    "TRIGGER_MANUAL",
    "TRIGGER_TIMER",
    "merge_records",
]
