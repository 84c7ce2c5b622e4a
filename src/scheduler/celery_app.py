"""Celery entry point for queue draining, lease recovery and verification sweeps."""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from celery import Celery
from celery.signals import worker_process_init, worker_process_shutdown

from agent.runtime import AgentRuntime, build_runtime
from config import Settings, load_settings
from observability import configure_logging

LOGGER = logging.getLogger(__name__)

PROCESS_JOBS_TASK = "agent.process_jobs"
VERIFICATION_SWEEP_TASK = "agent.verification_sweep"
RECOVER_LEASES_TASK = "agent.recover_leases"
CLEAN_JOBS_TASK = "agent.clean_jobs"


def create_celery_app(settings: Settings) -> Celery:
    """Create the Celery app and its beat schedule from settings."""
    app = Celery("seo_agent")
    app.conf.broker_url = settings.celery.broker_url
    app.conf.result_backend = settings.celery.result_backend
    app.conf.task_default_queue = "agent-actions"
    app.conf.task_serializer = "json"
    app.conf.result_serializer = "json"
    app.conf.accept_content = ["json"]
    app.conf.enable_utc = True
    app.conf.timezone = "UTC"
    app.conf.task_always_eager = settings.celery.task_always_eager
    app.conf.beat_schedule = {
        PROCESS_JOBS_TASK: {
            "task": PROCESS_JOBS_TASK,
            "schedule": float(settings.queue.poll_interval_seconds),
        },
        VERIFICATION_SWEEP_TASK: {
            "task": VERIFICATION_SWEEP_TASK,
            "schedule": float(settings.verification.sweep_interval_seconds),
            "options": {"queue": "verification"},
        },
        RECOVER_LEASES_TASK: {
            "task": RECOVER_LEASES_TASK,
            "schedule": float(settings.queue.lease_seconds),
        },
        CLEAN_JOBS_TASK: {
            "task": CLEAN_JOBS_TASK,
            "schedule": float(settings.queue.retention_seconds),
        },
    }
    return app


def build_queue_notifier(app: Celery):
    """Return a notifier that kicks a drain task when a job becomes visible."""

    def notify(job_id: str, available_at: datetime) -> None:
        app.send_task(PROCESS_JOBS_TASK, kwargs={"max_jobs": 1}, eta=available_at)
        LOGGER.debug("Drain task sent: job_id=%s eta=%s", job_id, available_at)

    return notify


def process_pending_jobs(
    runtime: AgentRuntime,
    *,
    worker_id: str,
    max_jobs: int | None = None,
) -> dict[str, Any]:
    """Drain due jobs with a single worker and summarize the outcomes."""
    worker = runtime.build_worker(worker_id)
    try:
        outcomes = worker.drain(max_jobs=max_jobs)
    finally:
        worker.close()
    summary: dict[str, int] = {}
    for outcome in outcomes:
        summary[outcome.status] = summary.get(outcome.status, 0) + 1
    return {"processed": len(outcomes), "outcomes": summary}


def run_verification_sweep(
    runtime: AgentRuntime,
    *,
    owner: str | None = None,
    site_url: str | None = None,
    force: bool = False,
) -> dict[str, Any]:
    """Run one verification sweep and return its report."""
    report = runtime.verification.sweep(owner=owner, site_url=site_url, force=force)
    return report.to_dict()


def recover_expired_leases(runtime: AgentRuntime, *, worker_id: str) -> dict[str, Any]:
    """Return jobs abandoned by crashed workers to the retry path."""
    worker = runtime.build_worker(worker_id)
    try:
        outcomes = worker.recover_expired_leases()
    finally:
        worker.close()
    return {"recovered": len(outcomes), "job_ids": [outcome.job_id for outcome in outcomes]}


_settings = load_settings()
celery_app = create_celery_app(_settings)
_runtime: AgentRuntime | None = None


def _get_runtime() -> AgentRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(_settings, notifier=build_queue_notifier(celery_app))
    return _runtime


@worker_process_init.connect
def _init_worker_process(**_kwargs: Any) -> None:
    configure_logging(
        level=_settings.log_level,
        json_output=_settings.log_json,
        service="seo-agent-worker",
        environment=_settings.environment,
    )
    _get_runtime()


@worker_process_shutdown.connect
def _shutdown_worker_process(**_kwargs: Any) -> None:
    global _runtime
    if _runtime is not None:
        _runtime.close()
        _runtime = None


@celery_app.task(name=PROCESS_JOBS_TASK, bind=True)
def process_jobs_task(self, max_jobs: int | None = None) -> dict[str, Any]:
    """Celery task wrapper for draining the execution queue."""
    return process_pending_jobs(
        _get_runtime(),
        worker_id=f"celery-{self.request.hostname or 'local'}",
        max_jobs=max_jobs,
    )


@celery_app.task(name=VERIFICATION_SWEEP_TASK)
def verification_sweep_task(
    owner: str | None = None,
    site_url: str | None = None,
    force: bool = False,
) -> dict[str, Any]:
    """Celery task wrapper for the verification sweep."""
    return run_verification_sweep(_get_runtime(), owner=owner, site_url=site_url, force=force)


@celery_app.task(name=RECOVER_LEASES_TASK, bind=True)
def recover_leases_task(self) -> dict[str, Any]:
    """Celery task wrapper for expired lease recovery."""
    return recover_expired_leases(
        _get_runtime(),
        worker_id=f"celery-{self.request.hostname or 'local'}",
    )


@celery_app.task(name=CLEAN_JOBS_TASK)
def clean_jobs_task() -> dict[str, Any]:
    """Celery task wrapper for deleting finished jobs past retention."""
    return {"deleted": _get_runtime().queue.clean()}
