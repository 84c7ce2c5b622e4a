"""Pytest configuration for the SEO agent test suite."""

from __future__ import annotations

import os
from pathlib import Path
import sys
from typing import Generator

import pytest


def _ensure_test_env() -> None:
    """Seed environment variables so settings never reach real services."""
    os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
    os.environ.setdefault("CELERY_BROKER_URL", "memory://")
    os.environ.setdefault("LOG_JSON", "false")


_ensure_test_env()

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))
sys.path.insert(0, str(ROOT / "test"))

from sqlalchemy.orm import sessionmaker  # noqa: E402

from agent.handlers import HandlerRegistry  # noqa: E402
from agent.lifecycle import ActionLifecycleManager  # noqa: E402
from agent.probes import ProbeRegistry  # noqa: E402
from agent.queue import QueueManager  # noqa: E402
from agent.runs import RunStore  # noqa: E402
from agent.runtime import AgentRuntime, build_runtime  # noqa: E402
from config import DatabaseConfig, QueueConfig, Settings  # noqa: E402
from helpers.agent_factories import FakeClock  # noqa: E402
from services.database import create_db_engine, create_session_factory, init_schema  # noqa: E402


@pytest.fixture
def clock() -> FakeClock:
    """Provide a controllable UTC clock."""
    return FakeClock()


@pytest.fixture
def db_engine(tmp_path: Path):
    """Provide a SQLite engine backed by a temp file with the schema created."""
    engine = create_db_engine(DatabaseConfig(url=f"sqlite:///{tmp_path / 'agent.db'}"))
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sqlite_session_factory(db_engine) -> sessionmaker:
    """Provide a session factory bound to the temp database."""
    return create_session_factory(db_engine)


@pytest.fixture
def queue_config() -> QueueConfig:
    """Queue settings with a short exponential backoff."""
    return QueueConfig(max_attempts=3, backoff_strategy="exponential", backoff_base_seconds=2.0)


@pytest.fixture
def queue(sqlite_session_factory: sessionmaker, queue_config: QueueConfig, clock: FakeClock) -> QueueManager:
    """Provide a queue manager on the temp database."""
    return QueueManager(sqlite_session_factory, config=queue_config, clock=clock)


@pytest.fixture
def lifecycle(
    sqlite_session_factory: sessionmaker,
    queue: QueueManager,
    clock: FakeClock,
) -> ActionLifecycleManager:
    """Provide an action lifecycle manager wired to the queue fixture."""
    return ActionLifecycleManager(sqlite_session_factory, queue, clock=clock)


@pytest.fixture
def runs(sqlite_session_factory: sessionmaker, clock: FakeClock) -> RunStore:
    """Provide a run store on the temp database."""
    return RunStore(sqlite_session_factory, clock=clock)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at a temp database with sweep delays disabled."""
    return Settings(
        database={"url": f"sqlite:///{tmp_path / 'runtime.db'}"},
        verification={"sweep_delay_seconds": 0},
        http={"cron_secret": "cron-secret"},
        log_json=False,
    )


@pytest.fixture
def runtime(settings: Settings, clock: FakeClock) -> Generator[AgentRuntime, None, None]:
    """Provide a fully wired runtime with an empty handler registry and run-outcome probes."""
    engine = create_db_engine(settings.database)
    init_schema(engine)
    built = build_runtime(
        settings,
        engine=engine,
        handlers=HandlerRegistry(),
        probes=ProbeRegistry(),
        clock=clock,
    )
    yield built
    built.close()
