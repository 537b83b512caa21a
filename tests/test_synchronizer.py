import asyncio
from datetime import timedelta

import pytest

from conftest import USER
from core.errors import NetworkError, RemoteError
from datetime_utils import utc_now
from models import Folder, SyncState
from models.queue_item import CREATE_FOLDER, DELETE_FOLDER_WITH_TASKS, DELETE_TASK
from services.events import SYNC_STATUS_CHANGED
from services.replica_store import FOLDER, TASK
from services.session import SyncSession
from services.synchronizer import IDLE, TRIGGER_MANUAL, TRIGGER_TIMER, merge_records


async def _hydrate(session):
    result = await session.synchronizer.run_pass(TRIGGER_MANUAL)
    assert result.success, result.error
    return result


async def _reconnect(session):
    """Flip connectivity back on and wait for the pass it triggers."""
    session.monitor.set_online(True)
    await session.scheduler.stop()
    return session.synchronizer.last_result


# ----------------------------------------------------------------------
# scenarios
@pytest.mark.asyncio
async def test_offline_folder_and_task_are_created_in_order(session, facade, remote):
    session.monitor.set_online(False)
    folder = facade.create_folder({"name": "Work"}).data
    task = facade.create_task({"title": "Report", "folder_id": folder.id}).data
    assert folder.id.startswith("offline_") and task.folder_id == folder.id
    assert session.queue.count() == 2

    result = await _reconnect(session)

    assert result.success
    assert result.succeeded == 2
    assert result.id_migrations == {folder.id: "F1", task.id: "T1"}
    assert [op for op, _ in remote.ops() if op != "fetch"] == ["create_folder", "create_task"]
    assert remote.tasks["T1"].folder_id == "F1"
    assert session.store.get_by_id(TASK, "T1").folder_id == "F1"
    assert session.store.get_by_id(FOLDER, "F1").sync_state.synced
    assert session.store.local_ids(TASK) == []
    assert session.queue.count() == 0


@pytest.mark.asyncio
async def test_final_status_wins_after_offline_toggles(session, facade, remote):
    remote.seed_folder("F1", "Inbox")
    remote.seed_task("T1", "Report", "F1")
    await _hydrate(session)

    session.monitor.set_online(False)
    facade.toggle_task_status("T1")
    facade.toggle_task_status("T1")
    assert session.queue.count() == 1
    assert session.queue.list()[0].payload == {"status": "pending"}

    await _reconnect(session)

    assert remote.tasks["T1"].status == "pending"
    local = session.store.get_by_id(TASK, "T1")
    assert local.status == "pending"
    assert local.sync_state.synced


@pytest.mark.asyncio
async def test_cascade_delete_replays_each_item_independently(session, facade, remote):
    remote.seed_folder("F1", "Work")
    for index in range(3):
        remote.seed_task(f"T{index}", f"task {index}", "F1")
    await _hydrate(session)

    facade.delete_folder("F1", cascade=True)
    operations = [item.operation for item in session.queue.list()]
    assert operations.count(DELETE_TASK) == 3
    assert operations.count(DELETE_FOLDER_WITH_TASKS) == 1
    assert operations[-1] == DELETE_FOLDER_WITH_TASKS

    result = await session.synchronizer.run_pass(TRIGGER_MANUAL)

    assert result.succeeded == 4
    assert remote.tasks == {} and remote.folders == {}
    assert session.store.records(TASK) == {}
    assert session.store.records(FOLDER) == {}
    assert session.queue.count() == 0


@pytest.mark.asyncio
async def test_fetch_failure_leaves_queue_for_next_tick(session, facade, remote):
    facade.create_folder({"name": "One"})
    facade.create_folder({"name": "Two"})
    before = session.store.records(FOLDER)
    remote.fail("fetch", NetworkError("connection refused"))

    first = await session.synchronizer.run_pass(TRIGGER_MANUAL)

    assert not first.success
    assert "connection refused" in first.error
    assert [item.retry_count for item in session.queue.list()] == [0, 0]
    assert session.store.records(FOLDER) == before
    assert not session.monitor.online
    assert session.monitor.probe_allowed

    second = await session.synchronizer.run_pass(TRIGGER_TIMER)

    assert second.success
    assert second.succeeded == 2
    assert session.queue.count() == 0
    assert session.monitor.online
    assert sorted(remote.folders) == ["F1", "F2"]


# ----------------------------------------------------------------------
# merge
def _folder(folder_id, name, synced):
    state = SyncState.confirmed(utc_now()) if synced else SyncState(modified=True)
    return Folder(id=folder_id, name=name, owner_id=USER, sync_state=state)


def test_merge_local_unsynced_wins():
    remote = [_folder("F1", "server", synced=False)]
    local = {"F1": _folder("F1", "mine", synced=False)}

    merged = merge_records(remote, local, utc_now())

    assert merged["F1"] is local["F1"]


def test_merge_synced_local_is_replaced_by_remote():
    remote = [_folder("F1", "server", synced=False)]
    local = {"F1": _folder("F1", "stale", synced=True)}

    merged = merge_records(remote, local, utc_now())

    assert merged["F1"].name == "server"
    assert merged["F1"].sync_state.synced


def test_merge_drops_synced_records_missing_remotely_and_keeps_local_ones():
    local = {
        "F1": _folder("F1", "deleted on server", synced=True),
        "offline_x": _folder("offline_x", "new", synced=False),
    }

    merged = merge_records([], local, utc_now())

    assert list(merged) == ["offline_x"]


def test_merge_never_moves_updated_at_backwards():
    local = {"F1": _folder("F1", "old", synced=True)}
    older = _folder("F1", "new", synced=False)
    older.updated_at = local["F1"].updated_at - timedelta(days=1)

    merged = merge_records([older], local, utc_now())

    assert merged["F1"].name == "new"
    assert merged["F1"].updated_at == local["F1"].updated_at


@pytest.mark.asyncio
async def test_merge_keeps_edit_made_while_fetch_was_in_flight(session, facade, remote):
    remote.seed_folder("F1", "Server name")
    await _hydrate(session)
    entered, gate = remote.hold("fetch")

    running = asyncio.ensure_future(session.synchronizer.run_pass(TRIGGER_MANUAL))
    await entered.wait()
    facade.update_folder("F1", {"name": "Local name"})
    gate.set()
    await running

    assert session.store.get_by_id(FOLDER, "F1").name == "Local name"
    assert remote.folders["F1"].name == "Local name"


# ----------------------------------------------------------------------
# properties
@pytest.mark.asyncio
async def test_idle_pass_changes_nothing(session, facade, remote):
    remote.seed_folder("F1", "Inbox")
    remote.seed_task("T1", "Report", "F1")
    await _hydrate(session)
    before_tasks = session.store.records(TASK)
    before_folders = session.store.records(FOLDER)
    remote.calls.clear()

    result = await session.synchronizer.run_pass(TRIGGER_MANUAL)

    assert result.success and result.succeeded == 0
    assert remote.ops() == [("fetch", "")]
    assert session.store.records(TASK) == before_tasks
    assert session.store.records(FOLDER) == before_folders


@pytest.mark.asyncio
async def test_replaying_a_confirmed_create_is_a_no_op(session, remote):
    remote.seed_folder("F1", "Inbox")
    await _hydrate(session)
    session.queue.enqueue(CREATE_FOLDER, "F1", {"id": "F1"})

    result = await session.synchronizer.run_pass(TRIGGER_MANUAL)

    assert result.success
    assert remote.ops("create_folder") == []
    assert session.queue.count() == 0
    assert list(remote.folders) == ["F1"]


@pytest.mark.asyncio
async def test_create_always_precedes_update_of_same_entity(session, facade, remote):
    session.monitor.set_online(False)
    work = facade.create_folder({"name": "Work"}).data
    facade.create_folder({"name": "Home"})
    facade.update_folder(work.id, {"name": "Office"})
    session.monitor.set_online(True)

    result = await session.synchronizer.run_pass(TRIGGER_MANUAL)

    assert result.succeeded == 3
    server_id = result.id_migrations[work.id]
    calls = remote.ops()
    assert calls.index(("create_folder", work.id)) < calls.index(("update_folder", server_id))
    assert remote.folders[server_id].name == "Office"
    assert session.store.get_by_id(FOLDER, server_id).name == "Office"


@pytest.mark.asyncio
async def test_one_failure_does_not_block_other_entities(session, facade, remote):
    facade.create_folder({"name": "One"})
    facade.create_folder({"name": "Two"})
    remote.fail("create_folder", RemoteError(500, "boom"))

    result = await session.synchronizer.run_pass(TRIGGER_MANUAL)

    assert result.success
    assert (result.succeeded, result.failed) == (1, 1)
    assert len(remote.folders) == 1
    [left] = session.queue.list()
    assert left.retry_count == 1
    assert "boom" in left.last_error
    assert session.monitor.online


@pytest.mark.asyncio
async def test_task_waits_for_its_folder_create(session, facade, remote):
    folder = facade.create_folder({"name": "Work"}).data
    task = facade.create_task({"title": "Report", "folder_id": folder.id}).data
    remote.fail("create_folder", RemoteError(503, "busy"))

    first = await session.synchronizer.run_pass(TRIGGER_MANUAL)

    assert (first.failed, first.deferred) == (1, 1)
    assert remote.ops("create_task") == []
    assert session.store.get_by_id(TASK, task.id).folder_id == folder.id

    second = await session.synchronizer.run_pass(TRIGGER_MANUAL)

    assert second.succeeded == 2
    assert remote.tasks["T1"].folder_id == "F1"


@pytest.mark.asyncio
async def test_exhausted_item_is_parked_until_requeued(session, facade, remote):
    facade.create_folder({"name": "Cursed"})
    remote.fail("create_folder", RemoteError(500, "boom"), times=3)

    for _ in range(3):
        await session.synchronizer.run_pass(TRIGGER_MANUAL)
    parked = await session.synchronizer.run_pass(TRIGGER_MANUAL)

    assert parked.parked == 1
    assert len(remote.ops("create_folder")) == 3
    [item] = facade.list_parked().data
    assert item.retry_count == 3

    assert facade.requeue_parked(item.id).success
    result = await session.synchronizer.run_pass(TRIGGER_MANUAL)

    assert result.succeeded == 1
    assert session.queue.count() == 0
    assert list(remote.folders) == ["F1"]


@pytest.mark.asyncio
async def test_edit_during_in_flight_update_is_not_lost(session, facade, remote):
    remote.seed_folder("F1", "Inbox")
    await _hydrate(session)
    facade.update_folder("F1", {"name": "A"})
    entered, gate = remote.hold("update_folder")

    running = asyncio.ensure_future(session.synchronizer.run_pass(TRIGGER_MANUAL))
    await entered.wait()
    facade.update_folder("F1", {"name": "B"})
    assert session.queue.count() == 2
    gate.set()
    await running

    local = session.store.get_by_id(FOLDER, "F1")
    assert local.name == "B"
    assert not local.sync_state.synced
    assert session.queue.count() == 1

    await session.synchronizer.run_pass(TRIGGER_MANUAL)

    assert remote.folders["F1"].name == "B"
    assert session.store.get_by_id(FOLDER, "F1").sync_state.synced


@pytest.mark.asyncio
async def test_task_created_while_folder_create_in_flight(session, facade, remote):
    folder = facade.create_folder({"name": "Work"}).data
    entered, gate = remote.hold("create_folder")

    running = asyncio.ensure_future(session.synchronizer.run_pass(TRIGGER_MANUAL))
    await entered.wait()
    task = facade.create_task({"title": "Report", "folder_id": folder.id}).data
    gate.set()
    await running

    assert session.store.get_by_id(TASK, task.id).folder_id == "F1"
    assert session.queue.list()[0].payload["folder_id"] == "F1"

    await session.synchronizer.run_pass(TRIGGER_MANUAL)

    assert remote.tasks["T1"].folder_id == "F1"


# ----------------------------------------------------------------------
# guard
@pytest.mark.asyncio
async def test_second_trigger_during_pass_is_ignored(session, remote):
    entered, gate = remote.hold("fetch")

    running = asyncio.ensure_future(session.synchronizer.run_pass(TRIGGER_MANUAL))
    await entered.wait()
    skipped = await session.synchronizer.run_pass(TRIGGER_TIMER)
    gate.set()
    finished = await running

    assert skipped.skipped == "busy"
    assert finished.success
    assert len(remote.ops("fetch")) == 1
    assert session.synchronizer.phase == IDLE


@pytest.mark.asyncio
async def test_offline_pass_is_skipped_silently(session, remote):
    events = []
    session.synchronizer.events.subscribe(SYNC_STATUS_CHANGED, events.append)
    session.monitor.set_online(False)

    result = await session.synchronizer.run_pass(TRIGGER_MANUAL)

    assert result.skipped == "offline"
    assert remote.calls == []
    assert events == []


@pytest.mark.asyncio
async def test_closed_synchronizer_does_nothing(session, remote):
    session.synchronizer.close()
    result = await session.synchronizer.run_pass(TRIGGER_MANUAL)
    assert result.skipped == "closed"
    assert remote.calls == []


@pytest.mark.asyncio
async def test_status_events_report_phases_and_outcome(session, facade, remote):
    seen = []
    facade.subscribe(SYNC_STATUS_CHANGED, lambda event: seen.append((event.kind, event.phase)))
    facade.create_folder({"name": "Work"})

    await session.synchronizer.run_pass(TRIGGER_MANUAL)

    assert seen == [
        ("phase", "fetching"),
        ("phase", "merging"),
        ("phase", "replaying"),
        ("completed", IDLE),
    ]
    status = facade.get_sync_status().data
    assert status["queueSize"] == 0
    assert status["lastSync"] is not None
    assert status["lastResult"]["succeeded"] == 1


# ----------------------------------------------------------------------
# ordering and delivery guarantees
@pytest.mark.asyncio
async def test_move_into_cancelled_folder_does_not_stall_the_outbox(session, facade, remote):
    remote.seed_folder("F1", "Inbox")
    remote.seed_task("T1", "Report", "F1")
    await _hydrate(session)

    session.monitor.set_online(False)
    scratch = facade.create_folder({"name": "Scratch"}).data
    facade.update_task("T1", {"folder_id": scratch.id})
    facade.delete_folder(scratch.id, cascade=True)
    assert [item.operation for item in session.queue.list()] == [DELETE_TASK]

    result = await _reconnect(session)

    assert result.success
    assert result.deferred == 0
    assert remote.ops("delete_task") == [("delete_task", "T1")]
    assert "T1" not in remote.tasks
    assert session.queue.count() == 0


@pytest.mark.asyncio
async def test_move_to_folder_without_queued_create_is_not_deferred(session, remote):
    remote.seed_folder("F1", "Inbox")
    remote.seed_task("T1", "Report", "F1")
    await _hydrate(session)
    session.queue.enqueue("UPDATE_TASK", "T1", {"folder_id": "offline_gone"})

    result = await session.synchronizer.run_pass(TRIGGER_MANUAL)

    assert result.deferred == 0
    assert remote.ops("update_task") == [("update_task", "T1")]


@pytest.mark.asyncio
async def test_folder_delete_waits_for_its_failed_create(session, facade, remote):
    facade.cancel_unconfirmed_deletes = False
    folder = facade.create_folder({"name": "Scratch"}).data
    facade.delete_folder(folder.id)
    remote.fail("create_folder", RemoteError(500, "boom"))

    first = await session.synchronizer.run_pass(TRIGGER_MANUAL)

    assert (first.failed, first.deferred) == (1, 1)
    assert remote.ops("delete_folder_only") == []
    create, delete = session.queue.list()
    assert (create.retry_count, delete.retry_count) == (1, 0)
    assert delete.entity_id == folder.id

    second = await session.synchronizer.run_pass(TRIGGER_MANUAL)

    assert second.succeeded == 2
    assert remote.ops("delete_folder_only") == [("delete_folder_only", "F1")]
    assert remote.folders == {}
    assert session.queue.count() == 0


@pytest.mark.asyncio
async def test_hung_remote_call_times_out_and_is_charged(session, facade, remote):
    facade.create_folder({"name": "Work"})
    remote.hold("create_folder")
    session.synchronizer.call_timeout = 0.05

    result = await session.synchronizer.run_pass(TRIGGER_MANUAL)

    assert result.failed == 1
    assert session.synchronizer.phase == IDLE
    [item] = session.queue.list()
    assert item.retry_count == 1
    assert "timed out" in item.last_error
    assert not session.monitor.online
    assert session.monitor.probe_allowed


@pytest.mark.asyncio
async def test_closing_mid_pass_keeps_the_confirmed_create(session, blobs, remote):
    session.facade.create_folder({"name": "Work"})
    entered, gate = remote.hold("create_folder")

    running = asyncio.ensure_future(session.synchronizer.run_pass(TRIGGER_MANUAL))
    await entered.wait()
    closing = asyncio.ensure_future(session.close(clear=False))
    await asyncio.sleep(0)
    gate.set()
    await closing
    interrupted = await running

    assert interrupted.error == "session closed"

    reopened = SyncSession.open(USER, blobs=blobs, remote=remote)
    assert reopened.queue.count() == 0
    result = await reopened.synchronizer.run_pass(TRIGGER_MANUAL)

    assert result.success
    assert len(remote.ops("create_folder")) == 1
    assert list(remote.folders) == ["F1"]
    assert [folder.id for folder in reopened.store.get_all(FOLDER)] == ["F1"]
