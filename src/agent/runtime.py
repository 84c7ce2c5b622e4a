"""Explicit wiring of every agent component for one process."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from agent.background import BackgroundTaskRunner
from agent.event_log import EventLog
from agent.executor import Worker, WorkerPool
from agent.handlers import HandlerRegistry
from agent.ideas import IdeaBacklog
from agent.lifecycle import ActionLifecycleManager
from agent.probes import ProbeRegistry, build_default_probes
from agent.queue import QueueManager, QueueNotifier
from agent.runs import RunStore
from agent.verification import VerificationEngine
from config import Settings
from services.database import create_db_engine, create_session_factory
from time_utils import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass
class AgentRuntime:
    """Container holding the components built for a process."""

    settings: Settings
    engine: Engine
    session_factory: Callable[[], Session]
    event_log: EventLog
    ideas: IdeaBacklog
    queue: QueueManager
    lifecycle: ActionLifecycleManager
    runs: RunStore
    handlers: HandlerRegistry
    probes: ProbeRegistry
    verification: VerificationEngine
    background: BackgroundTaskRunner

    def build_worker(self, worker_id: str, *, immediate_verification: bool = False) -> Worker:
        """Return a worker bound to this runtime's components."""
        return Worker(
            queue=self.queue,
            lifecycle=self.lifecycle,
            runs=self.runs,
            handlers=self.handlers,
            verification=self.verification,
            worker_id=worker_id,
            background=self.background if immediate_verification else None,
        )

    def build_worker_pool(self) -> WorkerPool:
        """Return a pool sized from worker settings."""
        return WorkerPool(
            self.build_worker,
            concurrency=self.settings.worker.concurrency,
            poll_interval_seconds=self.settings.queue.poll_interval_seconds,
            id_prefix=self.settings.worker.id_prefix,
        )

    def close(self) -> None:
        """Stop background work and release database connections."""
        self.background.shutdown(wait=True)
        self.queue.close()


def build_runtime(
    settings: Settings,
    *,
    engine: Engine | None = None,
    handlers: HandlerRegistry | None = None,
    probes: ProbeRegistry | None = None,
    notifier: QueueNotifier | None = None,
    clock: Clock = utc_now,
) -> AgentRuntime:
    """Construct every component once, sharing one engine and session factory."""
    db_engine = engine or create_db_engine(settings.database)
    probe_registry = probes or build_default_probes()
    session_factory = create_session_factory(db_engine)
    queue = QueueManager(
        session_factory,
        config=settings.queue,
        clock=clock,
        notifier=notifier,
        engine=db_engine,
    )
    runtime = AgentRuntime(
        settings=settings,
        engine=db_engine,
        session_factory=session_factory,
        event_log=EventLog(session_factory),
        ideas=IdeaBacklog(session_factory, clock=clock),
        queue=queue,
        lifecycle=ActionLifecycleManager(session_factory, queue, clock=clock),
        runs=RunStore(session_factory, clock=clock),
        handlers=handlers or HandlerRegistry(),
        probes=probe_registry,
        verification=VerificationEngine(
            session_factory,
            probe_registry,
            config=settings.verification,
            clock=clock,
        ),
        background=BackgroundTaskRunner(
            max_workers=settings.background.max_workers,
            max_pending=settings.background.max_pending,
        ),
    )
    logger.info("Agent runtime built: database=%s", db_engine.url.render_as_string(hide_password=True))
    return runtime
