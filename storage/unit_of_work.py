"""Atomic write-through of in-memory replica documents to the blob area."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List

from storage.blobs import BlobStore


class UnitOfWork:
    """Collects document writes and flushes them in one ``set_many`` call.

    Owners mutate their in-memory state copy-on-write, then ``stage`` the key
    together with a dump callable and a rollback callable. Blocks nest; the
    outermost block commits. Any exception, in a nested block or in the final
    write, runs every registered rollback so memory matches storage again.
    """

    def __init__(self, blobs: BlobStore):
        self.blobs = blobs
        self._depth = 0
        self._dumps: Dict[str, Callable[[], Any]] = {}
        self._rollbacks: List[Callable[[], None]] = []

    @property
    def active(self) -> bool:
        return self._depth > 0

    def stage(self, key: str, dump: Callable[[], Any], rollback: Callable[[], None]) -> None:
        if not self._depth:
            raise RuntimeError("stage() called outside of atomic()")
        self._dumps[key] = dump
        self._rollbacks.append(rollback)

    @contextmanager
    def atomic(self) -> Iterator["UnitOfWork"]:
        self._depth += 1
        try:
            yield self
        except BaseException:
            self._depth -= 1
            self._abort()
            raise
        self._depth -= 1
        if self._depth:
            return
        dumps, self._dumps = self._dumps, {}
        if not dumps:
            self._rollbacks = []
            return
        try:
            self.blobs.set_many({key: dump() for key, dump in dumps.items()})
        except BaseException:
            self._abort()
            raise
        self._rollbacks = []

    def _abort(self) -> None:
        rollbacks, self._rollbacks = self._rollbacks, []
        self._dumps = {}
        for rollback in reversed(rollbacks):
            rollback()


__all__ = ["UnitOfWork"]
