"""Unit tests for database session helpers."""

from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from config import DatabaseConfig
from models import AgentEvent
from services import database


def _event(entity_id: str) -> AgentEvent:
    return AgentEvent(
        entity_type="action",
        entity_id=entity_id,
        owner="user",
        event_type="action_created",
    )


def test_run_in_session_commits_on_success(sqlite_session_factory: sessionmaker) -> None:
    """run_in_session commits the handler's work and returns its result."""
    result = database.run_in_session(
        sqlite_session_factory,
        lambda session: session.add(_event("a-1")) or "done",
    )

    assert result == "done"
    with sqlite_session_factory() as session:
        assert session.scalars(select(AgentEvent.entity_id)).all() == ["a-1"]


def test_run_in_session_rolls_back_on_error(sqlite_session_factory: sessionmaker) -> None:
    """run_in_session rolls back when the handler raises."""

    def handler(session):
        session.add(_event("a-2"))
        session.flush()
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        database.run_in_session(sqlite_session_factory, handler)

    with sqlite_session_factory() as session:
        assert session.scalars(select(AgentEvent)).all() == []


def test_check_connection(db_engine) -> None:
    """check_connection reports a reachable database."""
    assert database.check_connection(db_engine) is True


def test_sqlite_engine_enforces_foreign_keys(tmp_path) -> None:
    """SQLite engines enable foreign key enforcement on connect."""
    engine = database.create_db_engine(DatabaseConfig(url=f"sqlite:///{tmp_path / 'fk.db'}"))
    try:
        with engine.connect() as conn:
            assert conn.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1
    finally:
        engine.dispose()
