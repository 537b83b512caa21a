"""Data models of the Chronify sync engine."""
from .sync_state import SyncState
from .task import StatusChange, Task
from .folder import Folder
from .queue_item import QueueItem
from .replica_blob import ReplicaBlob

__all__ = ["Folder", "QueueItem", "ReplicaBlob", "StatusChange", "SyncState", "Task"]
