"""Per-user engine context, built on login and torn down on logout."""
from __future__ import annotations

from typing import Optional

from core.errors import SessionClosedError, ValidationError
from core.logs import ensure_logger
from core.settings import STORAGE, SYNC
from services.connectivity import ConnectivityMonitor
from services.data_facade import DataFacade
from services.operation_queue import OperationQueue
from services.remote_client import RemoteClient
from services.replica_store import ReplicaStore
from services.scheduler import SyncScheduler
from services.synchronizer import TRIGGER_LOGIN, SyncResult, Synchronizer
from storage.blobs import USER_KEY, BlobStore, SqlBlobStore
from storage.db import create_replica_engine, init_db, session_factory
from storage.unit_of_work import UnitOfWork


def open_blob_store(db_path=None, namespace: str = STORAGE.namespace) -> SqlBlobStore:
    engine = create_replica_engine(db_path)
    init_db(engine)
    return SqlBlobStore(session_factory(engine), namespace)


class SyncSession:
    """Owns the one store, queue, monitor, synchronizer, scheduler and facade of a user.

    Use ``SyncSession.open`` on login. ``close`` stops every trigger, waits
    for a running pass, and (by default) wipes the blob area so the next user
    starts from an empty replica.
    """

    def __init__(
        self,
        user_id: str,
        *,
        blobs: BlobStore,
        store: ReplicaStore,
        queue: OperationQueue,
        remote: RemoteClient,
        monitor: ConnectivityMonitor,
        synchronizer: Synchronizer,
        scheduler: SyncScheduler,
        facade: DataFacade,
    ) -> None:
        self.user_id = user_id
        self.blobs = blobs
        self.store = store
        self.queue = queue
        self.remote = remote
        self.monitor = monitor
        self.synchronizer = synchronizer
        self.scheduler = scheduler
        self._facade = facade
        self._closed = False
        self._unsubscribe_restored = monitor.on_restored(scheduler.on_connectivity_restored)
        self.logger = ensure_logger("session")

    @classmethod
    def open(
        cls,
        user_id: str,
        *,
        api_base_url: str = SYNC.api_base_url,
        token: Optional[str] = None,
        blobs: Optional[BlobStore] = None,
        remote: Optional[RemoteClient] = None,
        online: bool = True,
        interval: float = SYNC.interval_sec,
    ) -> "SyncSession":
        if not user_id:
            raise ValidationError("user id is required")
        logger = ensure_logger("session")
        blobs = blobs if blobs is not None else open_blob_store()

        previous = blobs.get(USER_KEY)
        if previous and previous != user_id:
            logger.info("User switched from %s to %s, clearing local replica", previous, user_id)
            blobs.delete_all()

        uow = UnitOfWork(blobs)
        store = ReplicaStore(uow, user_id)
        queue = OperationQueue(uow)
        store.persist_user()

        monitor = ConnectivityMonitor(online)
        remote = remote if remote is not None else RemoteClient(user_id, api_base_url, token=token)
        synchronizer = Synchronizer(store, queue, remote, monitor)
        scheduler = SyncScheduler(synchronizer, interval=interval)
        facade = DataFacade(store, queue, synchronizer, monitor)
        logger.info("Session opened for %s (queue=%d)", user_id, queue.count())
        return cls(
            user_id,
            blobs=blobs,
            store=store,
            queue=queue,
            remote=remote,
            monitor=monitor,
            synchronizer=synchronizer,
            scheduler=scheduler,
            facade=facade,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def facade(self) -> DataFacade:
        if self._closed:
            raise SessionClosedError("session is closed")
        return self._facade

    async def start(self, *, initial_sync: bool = True) -> Optional[SyncResult]:
        """Start the periodic timer; optionally pull the server snapshot right away."""
        if self._closed:
            raise SessionClosedError("session is closed")
        self.scheduler.start()
        if initial_sync and self.monitor.online:
            return await self.synchronizer.run_pass(TRIGGER_LOGIN)
        return None

    async def reconcile_now(self) -> SyncResult:
        """Hook for background facilities; same as a timer tick."""
        if self._closed:
            raise SessionClosedError("session is closed")
        return await self.synchronizer.reconcile_now()

    async def close(self, *, clear: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        self._unsubscribe_restored()
        self._facade.close()
        self.synchronizer.close()
        await self.scheduler.stop()
        await self.synchronizer.wait_idle()
        self.monitor.close()
        await self.remote.close()
        if clear:
            self.blobs.delete_all()
        self.logger.info("Session closed for %s (cleared=%s)", self.user_id, clear)

    async def __aenter__(self) -> "SyncSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close(clear=False)


__all__ = ["SyncSession", "open_blob_store"]
