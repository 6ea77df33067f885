"""
Database access for the maintenance scripts.

Scripts run without the Flask app, but they build engines and sessions the
same way the app does (SQLite busy timeout, Postgres pool settings).
"""
from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from app.trialdocs.db import build_engine, make_sessionmaker

DEFAULT_DATABASE_URL = "sqlite:///trialdocs.db"


def resolve_database_url(database_url: str | None = None) -> str:
    return (database_url or os.environ.get("DATABASE_URL") or DEFAULT_DATABASE_URL).strip()


@contextmanager
def script_session(db_url: str) -> Generator[Session, None, None]:
    """One unit of work on a short-lived engine; commits on success."""
    engine = build_engine(db_url, lock_timeout_seconds=float(os.environ.get("DB_LOCK_TIMEOUT_SECONDS") or 10.0))
    s: Session = make_sessionmaker(engine)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
