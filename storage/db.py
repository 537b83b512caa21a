# chronify/storage/db.py
from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from core.settings import STORAGE

# Ensure SQLModel metadata is populated
import models.replica_blob  # noqa: F401


REPLICA_TABLES = [models.replica_blob.ReplicaBlob.__table__]


def create_replica_engine(db_path: Optional[Path] = None, *, echo: Optional[bool] = None) -> Engine:
    """Engine for the replica database; ``":memory:"`` gives a private in-memory DB."""

    echo = STORAGE.echo_sql if echo is None else echo
    if db_path is not None and str(db_path) == ":memory:":
        return create_engine(
            "sqlite://",
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    path = Path(db_path or STORAGE.db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(f"sqlite:///{path.as_posix()}", echo=echo)


def init_db(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine, tables=REPLICA_TABLES)


def session_factory(engine: Engine) -> Callable[[], Session]:
    def factory() -> Session:
        return Session(engine)

    return factory


__all__ = ["REPLICA_TABLES", "create_replica_engine", "init_db", "session_factory"]
