import asyncio
import itertools
import os
import sys
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

# keep engine logs out of the real user data dir
os.environ.setdefault("CHRONIFY_DATA_DIR", tempfile.mkdtemp(prefix="chronify-tests-"))

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from core.errors import RemoteError
from datetime_utils import parse_timestamp, utc_now
from models import Folder, SyncState, Task
from services.session import SyncSession
from storage.blobs import MemoryBlobStore


USER = "user-1"


class FakeRemote:
    """In-memory stand-in for :class:`RemoteClient` with failure injection."""

    def __init__(self, user_id: str = USER):
        self.user_id = user_id
        self.tasks: Dict[str, Task] = {}
        self.folders: Dict[str, Folder] = {}
        self.calls: List[Tuple[str, str]] = []
        self.closed = False
        self._failures: Dict[str, List[Exception]] = {}
        self._gates: Dict[str, asyncio.Event] = {}
        self._entered: Dict[str, asyncio.Event] = {}
        self._task_ids = itertools.count(1)
        self._folder_ids = itertools.count(1)

    # -- test helpers ---------------------------------------------------
    def fail(self, op: str, exc: Exception, times: int = 1) -> None:
        self._failures.setdefault(op, []).extend([exc] * times)

    def hold(self, op: str) -> Tuple[asyncio.Event, asyncio.Event]:
        """Block ``op`` until the returned gate is set; ``entered`` fires on arrival."""
        self._gates[op] = asyncio.Event()
        self._entered[op] = asyncio.Event()
        return self._entered[op], self._gates[op]

    def seed_folder(self, folder_id: str, name: str) -> Folder:
        folder = Folder(id=folder_id, name=name, owner_id=self.user_id)
        self.folders[folder_id] = folder
        return folder

    def seed_task(self, task_id: str, title: str, folder_id: str, **fields) -> Task:
        task = Task(id=task_id, title=title, folder_id=folder_id, owner_id=self.user_id, **fields)
        self.tasks[task_id] = task
        return task

    def ops(self, name: Optional[str] = None) -> List[Tuple[str, str]]:
        return [call for call in self.calls if name is None or call[0] == name]

    async def _enter(self, op: str, entity_id: str = "") -> None:
        self.calls.append((op, entity_id))
        if op in self._gates:
            self._entered[op].set()
            await self._gates[op].wait()
        pending = self._failures.get(op)
        if pending:
            raise pending.pop(0)

    # -- RemoteClient surface -------------------------------------------
    async def fetch_snapshot(self):
        await self._enter("fetch")
        return (
            [task.model_copy(deep=True) for task in self.tasks.values()],
            [folder.model_copy(deep=True) for folder in self.folders.values()],
        )

    async def create_task(self, task: Task) -> Task:
        await self._enter("create_task", task.id)
        if task.folder_id not in self.folders:
            raise RemoteError(400, f"folder {task.folder_id} does not exist")
        record = task.model_copy(deep=True)
        record.id = f"T{next(self._task_ids)}"
        record.sync_state = SyncState()
        self.tasks[record.id] = record
        return record.model_copy(deep=True)

    async def update_task(self, task_id: str, changes: dict) -> Task:
        await self._enter("update_task", task_id)
        if task_id not in self.tasks:
            raise RemoteError(404, "task not found")
        record = self.tasks[task_id]
        for key, value in changes.items():
            if key == "due_date":
                value = parse_timestamp(value)
            setattr(record, key, value)
        record.updated_at = utc_now()
        return record.model_copy(deep=True)

    async def delete_task(self, task_id: str) -> None:
        await self._enter("delete_task", task_id)
        if task_id not in self.tasks:
            raise RemoteError(404, "task not found")
        del self.tasks[task_id]

    async def create_folder(self, folder: Folder) -> Folder:
        await self._enter("create_folder", folder.id)
        record = folder.model_copy(deep=True)
        record.id = f"F{next(self._folder_ids)}"
        record.sync_state = SyncState()
        self.folders[record.id] = record
        return record.model_copy(deep=True)

    async def update_folder(self, folder_id: str, changes: dict) -> Folder:
        await self._enter("update_folder", folder_id)
        if folder_id not in self.folders:
            raise RemoteError(404, "folder not found")
        record = self.folders[folder_id]
        for key, value in changes.items():
            setattr(record, key, value)
        record.updated_at = utc_now()
        return record.model_copy(deep=True)

    async def delete_folder(self, folder_id: str, *, with_tasks: bool) -> None:
        await self._enter("delete_folder_with_tasks" if with_tasks else "delete_folder_only", folder_id)
        if folder_id not in self.folders:
            raise RemoteError(404, "folder not found")
        if with_tasks:
            self.tasks = {key: task for key, task in self.tasks.items() if task.folder_id != folder_id}
        del self.folders[folder_id]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def blobs():
    return MemoryBlobStore()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def session(blobs, remote):
    return SyncSession.open(USER, blobs=blobs, remote=remote)


@pytest.fixture
def facade(session):
    return session.facade


def confirmed_state() -> dict:
    return SyncState.confirmed(utc_now()).model_dump()
