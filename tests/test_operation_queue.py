import pytest

from core.errors import NotFoundError, ValidationError
from models.queue_item import CREATE_FOLDER, CREATE_TASK, DELETE_TASK, UPDATE_FOLDER, UPDATE_TASK
from services.operation_queue import OperationQueue
from storage.blobs import QUEUE_KEY
from storage.unit_of_work import UnitOfWork


@pytest.fixture
def queue(blobs):
    return OperationQueue(UnitOfWork(blobs))


def test_enqueue_keeps_order_and_starts_fresh(queue):
    first = queue.enqueue(CREATE_FOLDER, "offline_a", {"name": "Work"})
    second = queue.enqueue(CREATE_TASK, "offline_b", {"folder_id": "offline_a"})

    assert [item.id for item in queue.list()] == [first.id, second.id]
    assert first.retry_count == 0
    assert first.max_retries == 3
    assert queue.count() == 2
    assert [item.id for item in queue.pending_for("offline_a")] == [first.id]
    assert queue.has_queued_create("offline_b")


def test_enqueue_rejects_unknown_operation(queue):
    with pytest.raises(ValidationError):
        queue.enqueue("RENAME_TASK", "T1", {})
    assert queue.count() == 0


def test_retries_cap_and_park_without_dropping(queue):
    item = queue.enqueue(DELETE_TASK, "T1", {"id": "T1"})

    for attempt in range(5):
        updated = queue.increment_retry(item.id, f"boom {attempt}")

    assert updated.retry_count == 3
    assert updated.parked
    assert updated.last_error == "boom 4"
    assert [parked.id for parked in queue.parked()] == [item.id]
    assert queue.count() == 1


def test_acknowledge_only_discards_parked_items(queue):
    item = queue.enqueue(DELETE_TASK, "T1", {"id": "T1"})

    with pytest.raises(ValidationError):
        queue.acknowledge(item.id)

    for _ in range(3):
        queue.increment_retry(item.id, "gone")
    queue.acknowledge(item.id)

    assert queue.count() == 0
    with pytest.raises(NotFoundError):
        queue.get(item.id)


def test_requeue_gives_a_fresh_round(queue):
    item = queue.enqueue(UPDATE_TASK, "T1", {"title": "x"})
    for _ in range(3):
        queue.increment_retry(item.id, "down")

    fresh = queue.requeue(item.id)

    assert fresh.retry_count == 0
    assert not fresh.parked
    assert queue.parked() == []


def test_updates_squash_into_the_untouched_tail(queue):
    first = queue.enqueue(UPDATE_TASK, "T1", {"status": "completed", "title": "Report"})
    second = queue.enqueue(UPDATE_TASK, "T1", {"status": "pending"})

    assert second.id == first.id
    assert queue.count() == 1
    assert queue.get(first.id).payload == {"status": "pending", "title": "Report"}


def test_no_squash_for_attempted_or_in_flight_items(queue):
    attempted = queue.enqueue(UPDATE_FOLDER, "F1", {"name": "A"})
    queue.increment_retry(attempted.id, "timeout")
    queue.enqueue(UPDATE_FOLDER, "F1", {"name": "B"})
    assert queue.count() == 2

    in_flight = queue.enqueue(UPDATE_FOLDER, "F2", {"name": "C"})
    queue.begin([in_flight.id])
    queue.enqueue(UPDATE_FOLDER, "F2", {"name": "D"})
    queue.finish(in_flight.id)

    assert queue.count() == 4
    assert not queue.is_in_flight(in_flight.id)


def test_squash_can_be_switched_off(blobs):
    queue = OperationQueue(UnitOfWork(blobs), squash_updates=False)
    queue.enqueue(UPDATE_TASK, "T1", {"title": "a"})
    queue.enqueue(UPDATE_TASK, "T1", {"title": "b"})
    assert queue.count() == 2


def test_remap_entity_rewrites_ids_and_folder_references(queue):
    queue.enqueue(UPDATE_FOLDER, "offline_f", {"id": "offline_f", "name": "Work"})
    queue.enqueue(CREATE_TASK, "offline_t", {"id": "offline_t", "folder_id": "offline_f"})
    queue.enqueue(UPDATE_TASK, "T7", {"folder_id": "offline_f"})

    changed = queue.remap_entity("offline_f", "F1")

    items = queue.list()
    assert changed == 3
    assert items[0].entity_id == "F1" and items[0].payload["id"] == "F1"
    assert items[1].entity_id == "offline_t" and items[1].payload["folder_id"] == "F1"
    assert items[2].payload["folder_id"] == "F1"


def test_discard_entity_drops_every_item_of_that_entity(queue):
    queue.enqueue(CREATE_FOLDER, "offline_f", {})
    queue.enqueue(UPDATE_FOLDER, "offline_f", {"name": "x"})
    keep = queue.enqueue(CREATE_FOLDER, "offline_g", {})

    dropped = queue.discard_entity("offline_f")

    assert len(dropped) == 2
    assert [item.id for item in queue.list()] == [keep.id]


def test_queue_is_durable(blobs):
    queue = OperationQueue(UnitOfWork(blobs))
    item = queue.enqueue(CREATE_FOLDER, "offline_f", {"name": "Work"})
    queue.increment_retry(item.id, "offline")

    reloaded = OperationQueue(UnitOfWork(blobs))

    assert [entry.id for entry in reloaded.list()] == [item.id]
    assert reloaded.get(item.id).retry_count == 1
    assert blobs.get(QUEUE_KEY)[0]["operation"] == CREATE_FOLDER


def test_failed_write_keeps_previous_queue(blobs):
    queue = OperationQueue(UnitOfWork(blobs))
    queue.enqueue(CREATE_FOLDER, "offline_f", {})

    blobs.fail_writes = True
    with pytest.raises(OSError):
        queue.enqueue(CREATE_FOLDER, "offline_g", {})

    assert queue.count() == 1
    assert len(blobs.get(QUEUE_KEY)) == 1


def test_drop_folder_moves_strips_moves_into_a_cancelled_folder(queue):
    move_only = queue.enqueue(UPDATE_TASK, "T1", {"folder_id": "offline_f"})
    queue.increment_retry(move_only.id, "down")
    mixed = queue.enqueue(UPDATE_TASK, "T2", {"folder_id": "offline_f", "title": "x"})
    other = queue.enqueue(UPDATE_TASK, "T3", {"folder_id": "F9"})

    changed = queue.drop_folder_moves("offline_f")

    assert changed == 2
    assert [item.id for item in queue.list()] == [mixed.id, other.id]
    assert queue.get(mixed.id).payload == {"title": "x"}
    assert queue.get(other.id).payload == {"folder_id": "F9"}


def test_drop_folder_moves_leaves_in_flight_items(queue):
    item = queue.enqueue(UPDATE_TASK, "T1", {"folder_id": "offline_f"})
    queue.begin([item.id])

    assert queue.drop_folder_moves("offline_f") == 0
    assert queue.get(item.id).payload == {"folder_id": "offline_f"}
