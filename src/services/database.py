"""Database engine construction, sessions and migrations."""

from __future__ import annotations

import logging
from contextlib import closing
from pathlib import Path
from typing import Callable, TypeVar

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config import DatabaseConfig
from models import Base

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]
T = TypeVar("T")

_ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def create_db_engine(config: DatabaseConfig) -> Engine:
    """Create a synchronous engine for the configured database URL."""
    kwargs: dict[str, object] = {"echo": config.echo, "future": True}
    if _is_sqlite(config.url):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    else:
        kwargs["pool_pre_ping"] = config.pool_pre_ping
    engine = create_engine(config.url, **kwargs)
    if _is_sqlite(config.url):
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_session_factory(engine: Engine) -> sessionmaker:
    """Return a session factory bound to the engine."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def run_in_session(session_factory: SessionFactory, handler: Callable[[Session], T]) -> T:
    """Run handler in a managed session, committing on success.

    Any exception rolls the session back and propagates to the caller.
    """
    with closing(session_factory()) as session:
        session.expire_on_commit = False
        try:
            result = handler(session)
            session.commit()
            return result
        except Exception:
            session.rollback()
            raise


def init_schema(engine: Engine) -> None:
    """Create all tables directly from the ORM metadata (SQLite/dev use)."""
    Base.metadata.create_all(engine)
    logger.info("Database schema created via metadata")


def run_migrations(config: DatabaseConfig) -> None:
    """Apply Alembic migrations up to head."""
    alembic_cfg = Config(str(_ALEMBIC_INI))
    alembic_cfg.set_main_option("script_location", str(_ALEMBIC_INI.parent / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", config.url)
    command.upgrade(alembic_cfg, "head")
    logger.info("Database migrations applied")


def check_connection(engine: Engine) -> bool:
    """Check if database connection is working."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as exc:
        logger.error("Database connection check failed: %s", exc)
        return False
