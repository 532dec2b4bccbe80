"""SQLite engine and session factory shared by the API, MCP server and stores."""
from __future__ import annotations

import logging
import threading
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from spearfish.models import Base

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None
_current_db_path: Path | None = None

DATA_DIR = Path(__file__).parent / "data"
BUSY_TIMEOUT_MS = 5000


def _configure_sqlite(dbapi_conn, _record) -> None:
    # research workers and request handlers write concurrently
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_db(db_path: str | Path | None = None) -> Engine:
    """(Re)open the database at *db_path*, creating tables as needed."""
    global _engine, _SessionLocal, _current_db_path
    with _lock:
        if _engine is not None:
            _engine.dispose()
        db_path = Path(db_path) if db_path is not None else DATA_DIR / "spearfish.db"
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
        event.listen(_engine, "connect", _configure_sqlite)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _current_db_path = db_path
        log.info("Database ready at %s", db_path)
        return _engine


def session_factory() -> sessionmaker:
    """Return the active ``sessionmaker`` (stores open their own transactions)."""
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        return _SessionLocal


def current_db_path() -> Path | None:
    return _current_db_path
