"""SQLite engine setup and timestamp helpers shared by the stores."""

import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from . import models  # noqa: F401  (registers tables on SQLModel.metadata)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current UTC timestamp."""
    return datetime.now(tz=timezone.utc)


def open_engine(db_path: Path) -> Engine:
    """Create an engine for db_path and make sure the schema exists.

    The server process and every worker process open the same file, so the
    connection uses WAL journaling and a generous busy timeout.

    Args:
        db_path: SQLite database file (parent directories are created)

    Returns:
        SQLAlchemy engine
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    event.listen(engine, "connect", _configure_sqlite)
    SQLModel.metadata.create_all(engine)
    logger.debug("Opened database %s", db_path)
    return engine


def _configure_sqlite(dbapi_connection: sqlite3.Connection, _: object) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def as_utc(value: datetime) -> datetime:
    """Timezone-aware UTC timestamp; naive values (as SQLite returns them) are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
