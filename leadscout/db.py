from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator

from sqlalchemy import create_engine, inspect as sa_inspect, text
from sqlalchemy.orm import Session, sessionmaker

from leadscout.config import get_settings
from leadscout.models import Base

_lock = threading.Lock()
_engine = None
_SessionLocal = None
_current_db_path: Path | None = None

# Columns added after the first release of the raw results table
_RAW_RESULT_COLUMNS = {
    "claimed_by": "VARCHAR(64)",
    "claimed_until": "DATETIME",
}


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal, _current_db_path
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            db_path = get_settings().db_path
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{db_path}"
        _engine = create_engine(url, connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _current_db_path = db_path
        _migrate_existing_db(_engine)


def _migrate_existing_db(engine) -> None:
    """Add columns that may be missing in older databases."""
    inspector = sa_inspect(engine)
    if not inspector.has_table("apollo_search_results"):
        return
    columns = {col["name"] for col in inspector.get_columns("apollo_search_results")}
    missing = {name: ddl for name, ddl in _RAW_RESULT_COLUMNS.items() if name not in columns}
    if not missing:
        return
    with engine.begin() as conn:
        for name, ddl in missing.items():
            conn.execute(text(f"ALTER TABLE apollo_search_results ADD COLUMN {name} {ddl}"))


def get_session_factory() -> sessionmaker:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        return _SessionLocal


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (CLI, engines, scripts)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator(factory: Callable[[], Session] | None = None) -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    session = factory() if factory is not None else get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def current_db_path() -> Path | None:
    return _current_db_path
