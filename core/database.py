"""
core/database.py -- One SQLAlchemy Engine per process, shared by every repository.

The engine (and its connection pool) is created once in the API lifespan or CLI
entry point and passed explicitly to UserStore and SessionStore. Nothing in the
codebase holds a module-level connection.

Timeouts:
  SQLite -- the driver's busy timeout (seconds a writer waits for a lock).
  Others -- pool_timeout (seconds to wait for a free pooled connection).
  Either way a timeout surfaces as sqlalchemy OperationalError/TimeoutError,
  which the stores translate into PersistenceError. Nothing here retries.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'authcore.db'}"


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_db_engine(db_url: str = "", timeout: float = 5.0) -> Engine:
    """Build the process-wide Engine for db_url (defaults to the local SQLite file)."""
    db_url = db_url or DEFAULT_DB_URL
    connect_args: dict = {}
    engine_kwargs: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
    else:
        engine_kwargs["pool_timeout"] = timeout
        engine_kwargs["pool_pre_ping"] = True
    engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine
