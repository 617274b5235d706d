"""
Database wiring — SQLAlchemy engine, session factory and request sessions.

DATABASE_URL selects the backend (default: SQLite file under data/).
Uniqueness guarantees (one payment per tx hash, one user per wallet) live in
the schema, so any backend with real unique indexes works.
"""

import os
import logging
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger("plum.db")

DEFAULT_DATABASE_URL = "sqlite:///data/plum.db"

Base = declarative_base()


def create_db_engine(database_url: str = "") -> Engine:
    url = database_url or os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
    if url.startswith("sqlite"):
        db_path = url.split("///", 1)[-1]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=1800,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


def init_db(engine: Engine) -> None:
    """Create missing tables. Safe to call on every boot."""
    from plum_platform import models  # noqa: F401  (registers tables)

    Base.metadata.create_all(engine)
    logger.info(f"Database ready: {engine.url.render_as_string(hide_password=True)}")


def make_get_db(session_factory: sessionmaker):
    """FastAPI dependency yielding one session per request."""

    def get_db():
        db = session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    return get_db
