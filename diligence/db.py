from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from diligence.models import Base, CriteriaCategoryRow

_lock = threading.Lock()
_engine = None
_SessionLocal = None

DATA_DIR = Path(__file__).parent / "data"


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            db_path = DATA_DIR / "diligence.db"
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        factory = _SessionLocal
    with factory() as session:
        seed_default_criteria(session)


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (MCP server, scripts, etc.)::

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


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    with session_scope() as session:
        yield session


def seed_default_criteria(session: Session) -> None:
    """Insert the default scoring rubric if the criteria table is empty."""
    if session.execute(select(CriteriaCategoryRow.id).limit(1)).first() is not None:
        return
    from diligence.scorer import DEFAULT_CRITERIA
    for order, cat in enumerate(DEFAULT_CRITERIA.categories):
        session.add(CriteriaCategoryRow(
            name=cat.name, weight=cat.weight, sort_order=order,
            criteria_json=json.dumps([c.model_dump() for c in cat.criteria]),
        ))
    session.commit()
