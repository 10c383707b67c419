"""
auth/db.py -- Engine construction shared by the auth repositories.

UserStore, AuthorizationCodeStore and TokenStore each own an engine built
here, so SQLite gets the same connection settings everywhere:

  check_same_thread=False -- FastAPI runs sync handlers on a thread pool.
  timeout                 -- how long a writer waits for the SQLite write
                             lock before failing. The compare-and-set UPDATEs
                             in the stores rely on this to serialize racing
                             writers instead of erroring.
  WAL journal mode        -- readers do not block on writers.

Layer rule: no imports from api/, events/, or core/.
"""

from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

_SQLITE_BUSY_TIMEOUT_SECONDS = 15


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = _SQLITE_BUSY_TIMEOUT_SECONDS
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine
