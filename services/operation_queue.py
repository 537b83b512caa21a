from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from core.errors import NotFoundError, ValidationError
from core.logs import ensure_logger
from core.settings import SYNC
from datetime_utils import utc_now
from models.queue_item import (
    UPDATE_OPS,
    UPDATE_TASK,
    VALID_OPS,
    QueueItem,
    entity_type_of,
)
from storage.blobs import QUEUE_KEY
from storage.unit_of_work import UnitOfWork


class OperationQueue:
    """Durable, ordered outbox of mutations not yet confirmed remotely.

    Items leave the queue only through ``remove`` (remote success, or a local
    cancel-out) or ``acknowledge`` (operator discards a parked item). Failed
    items are charged a retry and parked once ``max_retries`` is reached.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        *,
        max_retries: int = SYNC.max_retries,
        squash_updates: bool = SYNC.squash_updates,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._uow = uow
        self.max_retries = max_retries
        self.squash_updates = squash_updates
        self._clock = clock
        self.logger = ensure_logger("queue")
        raw = uow.blobs.get(QUEUE_KEY, []) or []
        self._items: List[QueueItem] = [QueueItem.model_validate(entry) for entry in raw if isinstance(entry, dict)]
        self._in_flight: Set[str] = set()

    # ------------------------------------------------------------------
    # reads
    def list(self) -> List[QueueItem]:
        return [item.model_copy(deep=True) for item in self._items]

    def get(self, item_id: str) -> QueueItem:
        for item in self._items:
            if item.id == item_id:
                return item.model_copy(deep=True)
        raise NotFoundError("queue item", item_id)

    def count(self) -> int:
        return len(self._items)

    def parked(self) -> List[QueueItem]:
        return [item.model_copy(deep=True) for item in self._items if item.parked]

    def pending_for(self, entity_id: str, *, exclude: Iterable[str] = ()) -> List[QueueItem]:
        skip = set(exclude)
        return [
            item.model_copy(deep=True)
            for item in self._items
            if item.entity_id == entity_id and item.id not in skip
        ]

    def has_queued_create(self, entity_id: str) -> bool:
        return any(item.entity_id == entity_id and item.is_create for item in self._items)

    def is_in_flight(self, item_id: str) -> bool:
        return item_id in self._in_flight

    # ------------------------------------------------------------------
    # writes
    def enqueue(self, operation: str, entity_id: str, payload: Optional[Dict[str, Any]] = None) -> QueueItem:
        if operation not in VALID_OPS:
            raise ValidationError(f"Unsupported operation: {operation}")
        payload = dict(payload or {})

        if self.squash_updates and operation in UPDATE_OPS:
            squashed = self._squash(operation, entity_id, payload)
            if squashed is not None:
                return squashed

        item = QueueItem(
            id=uuid.uuid4().hex,
            operation=operation,
            entity_id=entity_id,
            payload=payload,
            enqueued_at=self._clock(),
            max_retries=self.max_retries,
        )
        with self._uow.atomic():
            self._replace([*self._items, item])
        self.logger.debug("Enqueued %s for %s", operation, entity_id)
        return item.model_copy(deep=True)

    def remove(self, item_id: str) -> bool:
        if not any(item.id == item_id for item in self._items):
            return False
        with self._uow.atomic():
            self._replace([item for item in self._items if item.id != item_id])
        self._in_flight.discard(item_id)
        return True

    def discard_entity(self, entity_id: str) -> List[QueueItem]:
        """Drop every queued item of one entity (cancel-out of a never-confirmed create)."""
        dropped = [item for item in self._items if item.entity_id == entity_id]
        if dropped:
            with self._uow.atomic():
                self._replace([item for item in self._items if item.entity_id != entity_id])
            self.logger.info("Cancelled %d queued item(s) for unconfirmed %s", len(dropped), entity_id)
        return dropped

    def drop_folder_moves(self, folder_id: str) -> int:
        """Strip moves into a cancelled folder from queued task updates.

        An update left with nothing to send is dropped. In-flight items are
        left alone.
        """
        kept: List[QueueItem] = []
        changed = 0
        for item in self._items:
            if (
                item.operation == UPDATE_TASK
                and item.payload.get("folder_id") == folder_id
                and item.id not in self._in_flight
            ):
                changed += 1
                payload = {key: value for key, value in item.payload.items() if key != "folder_id"}
                if not payload:
                    continue
                item = item.model_copy(deep=True)
                item.payload = payload
            kept.append(item)
        if changed:
            with self._uow.atomic():
                self._replace(kept)
            self.logger.info("Dropped %d queued move(s) into cancelled folder %s", changed, folder_id)
        return changed

    def increment_retry(self, item_id: str, error: Optional[str] = None) -> QueueItem:
        def _bump(item: QueueItem) -> QueueItem:
            bumped = item.model_copy(deep=True)
            bumped.retry_count = min(bumped.retry_count + 1, bumped.max_retries)
            if error:
                bumped.last_error = error[:1000]
            return bumped

        item = self._update(item_id, _bump)
        if item.parked:
            self.logger.warning(
                "Parked %s for %s after %d attempts: %s",
                item.operation,
                item.entity_id,
                item.retry_count,
                item.last_error,
            )
        return item

    def acknowledge(self, item_id: str) -> QueueItem:
        """Operator discards a parked item; the mutation is dropped on purpose."""
        item = self.get(item_id)
        if not item.parked:
            raise ValidationError(f"queue item {item_id} is not parked")
        self.remove(item_id)
        self.logger.warning("Acknowledged parked %s for %s", item.operation, item.entity_id)
        return item

    def requeue(self, item_id: str) -> QueueItem:
        """Give a parked item a fresh round of attempts."""

        def _reset(item: QueueItem) -> QueueItem:
            fresh = item.model_copy(deep=True)
            fresh.retry_count = 0
            return fresh

        return self._update(item_id, _reset)

    def remap_entity(self, old_id: str, new_id: str) -> int:
        """Point queued items (and task folder references) at a server-assigned id."""
        changed = 0
        remapped: List[QueueItem] = []
        for item in self._items:
            updated = item
            if item.entity_id == old_id:
                updated = item.model_copy(deep=True)
                updated.entity_id = new_id
                if updated.payload.get("id") == old_id:
                    updated.payload["id"] = new_id
            if entity_type_of(item.operation) == "task" and updated.payload.get("folder_id") == old_id:
                if updated is item:
                    updated = item.model_copy(deep=True)
                updated.payload["folder_id"] = new_id
            if updated is not item:
                changed += 1
            remapped.append(updated)
        if changed:
            with self._uow.atomic():
                self._replace(remapped)
            self.logger.info("Remapped %d queued item(s) %s -> %s", changed, old_id, new_id)
        return changed

    def begin(self, item_ids: Iterable[str]) -> None:
        self._in_flight.update(item_ids)

    def finish(self, item_id: str) -> None:
        self._in_flight.discard(item_id)

    def clear(self) -> None:
        with self._uow.atomic():
            self._replace([])
        self._in_flight.clear()

    # ------------------------------------------------------------------
    # helpers
    def _squash(self, operation: str, entity_id: str, payload: Dict[str, Any]) -> Optional[QueueItem]:
        last = None
        for item in reversed(self._items):
            if item.entity_id == entity_id:
                last = item
                break
        if (
            last is None
            or last.operation != operation
            or last.retry_count
            or last.id in self._in_flight
        ):
            return None

        def _merge(item: QueueItem) -> QueueItem:
            merged = item.model_copy(deep=True)
            merged.payload = {**merged.payload, **payload}
            return merged

        self.logger.debug("Squashed %s for %s into %s", operation, entity_id, last.id)
        return self._update(last.id, _merge)

    def _update(self, item_id: str, change: Callable[[QueueItem], QueueItem]) -> QueueItem:
        for index, item in enumerate(self._items):
            if item.id == item_id:
                updated = change(item)
                items = list(self._items)
                items[index] = updated
                with self._uow.atomic():
                    self._replace(items)
                return updated.model_copy(deep=True)
        raise NotFoundError("queue item", item_id)

    def _replace(self, items: List[QueueItem]) -> None:
        previous = self._items

        def _rollback() -> None:
            self._items = previous

        self._items = items
        self._uow.stage(
            QUEUE_KEY,
            lambda: [entry.model_dump(mode="json") for entry in self._items],
            _rollback,
        )


__all__ = ["OperationQueue"]
