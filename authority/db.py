from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event, inspect as sa_inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from authority.models import Base

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal = None

DATA_DIR = Path(__file__).parent / "data"


def database_url(db_path: str | Path | None = None) -> str:
    """Resolve the store URL: explicit path, then AUTHORITY_DATABASE_URL, then the bundled SQLite file."""
    if db_path is not None:
        return f"sqlite:///{Path(db_path)}"
    url = os.environ.get("AUTHORITY_DATABASE_URL", "").strip()
    if url:
        return url
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{DATA_DIR / 'authority.db'}"


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
        event.listen(engine, "connect", _sqlite_pragmas)
    else:
        engine = create_engine(url, pool_pre_ping=True)
    return engine


def _sqlite_pragmas(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        url = database_url(db_path)
        _engine = make_engine(url)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _migrate_existing_db(_engine)
        log.info("Store ready at %s", _engine.url.render_as_string(hide_password=True))


def _migrate_existing_db(engine: Engine) -> None:
    """Add columns that may be missing in older databases."""
    inspector = sa_inspect(engine)
    if not inspector.has_table("bets"):
        return
    columns = {col["name"] for col in inspector.get_columns("bets")}
    if "closed_at" not in columns:
        with engine.begin() as conn:
            conn.execute(text("ALTER TABLE bets ADD COLUMN closed_at TIMESTAMP"))
    if "measured_outcome_result" not in columns:
        with engine.begin() as conn:
            conn.execute(text(
                "ALTER TABLE bets ADD COLUMN measured_outcome_result TEXT DEFAULT ''"
            ))


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
