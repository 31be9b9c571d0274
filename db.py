# db.py
import os

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

import models  # noqa: F401  (table registration)


def _ensure_sqlite_parent(db_url: str) -> None:
    prefix = "sqlite:///"
    if db_url.startswith(prefix) and db_url != "sqlite:///:memory:":
        parent = os.path.dirname(os.path.abspath(db_url[len(prefix):]))
        os.makedirs(parent, exist_ok=True)


def make_engine(db_url: str) -> Engine:
    """Create the engine and the tables. SQLite runs in WAL mode with FK checks on."""
    if db_url.startswith("sqlite"):
        _ensure_sqlite_parent(db_url)
        engine = create_engine(db_url, connect_args={"check_same_thread": False})

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    else:
        engine = create_engine(db_url, pool_pre_ping=True)

    SQLModel.metadata.create_all(engine)
    return engine
