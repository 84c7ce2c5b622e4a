"""Worker that claims queued jobs and executes their actions.

One ``Worker.process`` call handles one delivery of a job: claim the action
(``queued -> running``), open a run, validate the payload, invoke the handler
under the policy's time budget, close the run, then either complete the action
and schedule verification, or hand the failure to the queue which decides
between a backoff retry and the dead lane.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
import logging
import threading
from typing import Callable

from sqlalchemy.exc import IntegrityError

from agent.background import BackgroundTaskRunner
from agent.errors import (
    HandlerExecutionError,
    InvalidStateError,
    NotFoundError,
    QueueSubmissionError,
    ValidationError,
)
from agent.handlers import ExecutionContext, HandlerRegistry, HandlerResult
from agent.lifecycle import ActionLifecycleManager
from agent.payloads import parse_payload
from agent.policy import ExecutionPolicy, load_policy
from agent.queue import ClaimedJob, QueueManager
from agent.runs import RunStore
from agent.verification import VerificationEngine
from observability import log_context

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkOutcome:
    """What happened to one job delivery."""

    job_id: str
    action_id: str
    status: str
    run_id: str | None = None
    error: str | None = None


class Worker:
    """Executes claimed jobs one at a time."""

    def __init__(
        self,
        *,
        queue: QueueManager,
        lifecycle: ActionLifecycleManager,
        runs: RunStore,
        handlers: HandlerRegistry,
        verification: VerificationEngine,
        worker_id: str = "worker-1",
        handler_pool: ThreadPoolExecutor | None = None,
        background: BackgroundTaskRunner | None = None,
    ) -> None:
        """Initialize the worker with its collaborators.

        ``handler_pool`` runs handler calls so they can be bounded by the
        policy timeout; a private single-thread pool is used when omitted.
        """
        self._queue = queue
        self._lifecycle = lifecycle
        self._runs = runs
        self._handlers = handlers
        self._verification = verification
        self._worker_id = worker_id
        self._owns_pool = handler_pool is None
        self._handler_pool = handler_pool or ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=f"{worker_id}-handler",
        )
        self._background = background

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def run_once(self) -> WorkOutcome | None:
        """Claim and process a single job, or return None when the queue is idle."""
        job = self._queue.dequeue(self._worker_id)
        if job is None:
            return None
        return self.process(job)

    def drain(self, max_jobs: int | None = None) -> list[WorkOutcome]:
        """Process jobs until the queue is idle or max_jobs is reached."""
        outcomes: list[WorkOutcome] = []
        while max_jobs is None or len(outcomes) < max_jobs:
            outcome = self.run_once()
            if outcome is None:
                break
            outcomes.append(outcome)
        return outcomes

    def process(self, job: ClaimedJob) -> WorkOutcome:
        """Execute one claimed job delivery."""
        with log_context(
            {"job_id": job.job_id, "action_id": job.action_id, "worker_id": self._worker_id}
        ):
            return self._process(job)

    def recover_expired_leases(self) -> list[WorkOutcome]:
        """Fail runs orphaned by crashed workers and route their jobs to retry."""
        outcomes: list[WorkOutcome] = []
        for job in self._queue.list_expired_leases():
            with log_context({"job_id": job.job_id, "action_id": job.action_id}):
                logger.warning("Recovering expired job lease: job_id=%s", job.job_id)
                run = self._runs.active_run_for_job(job.job_id)
                error = "worker lease expired before the attempt finished"
                if run is not None:
                    self._runs.finish_run(run.id, owner=job.owner, succeeded=False, error=error)
                outcomes.append(
                    self._handle_failure(
                        job,
                        run.id if run is not None else None,
                        HandlerExecutionError(error, retryable=True),
                    )
                )
        return outcomes

    def close(self) -> None:
        if self._owns_pool:
            self._handler_pool.shutdown(wait=False, cancel_futures=True)

    def _process(self, job: ClaimedJob) -> WorkOutcome:
        try:
            action = self._lifecycle.mark_running(
                job.action_id,
                job.owner,
                queue_generation=job.attempt_generation,
                run_context={"job_id": job.job_id, "attempt": job.attempt, "worker_id": self._worker_id},
            )
        except (InvalidStateError, NotFoundError) as exc:
            logger.info("Job already claimed or withdrawn, discarding: job_id=%s reason=%s", job.job_id, exc)
            self._queue.discard(job.job_id, str(exc))
            return WorkOutcome(job.job_id, job.action_id, "duplicate", error=str(exc))

        try:
            run = self._runs.start_run(
                action.id,
                owner=job.owner,
                job_id=job.job_id,
                attempt_generation=job.attempt_generation,
                attempt=job.attempt,
            )
        except IntegrityError:
            logger.warning("Another run of this action is still open: job_id=%s", job.job_id)
            return self._handle_failure(
                job,
                None,
                HandlerExecutionError("another run of this action is still open", retryable=True),
            )

        policy = load_policy(action.policy, action.action_type)
        try:
            result = self._execute_handler(job, action.site_url, action.action_type, run.id, policy)
        except ValidationError as exc:
            error = HandlerExecutionError(str(exc), retryable=False)
            return self._fail_run(job, run.id, error)
        except HandlerExecutionError as exc:
            return self._fail_run(job, run.id, exc)
        except Exception as exc:
            logger.exception("Handler raised unexpectedly: job_id=%s", job.job_id)
            return self._fail_run(job, run.id, HandlerExecutionError(str(exc) or type(exc).__name__))

        try:
            self._runs.finish_run(run.id, owner=job.owner, succeeded=True, outcome=result.to_outcome())
            self._lifecycle.mark_completed(action.id, job.owner, run_id=run.id)
        except InvalidStateError as exc:
            return self._lost_claim(job, run.id, exc)
        self._queue.complete(job.job_id)
        logger.info("Action completed: action_id=%s run_id=%s", action.id, run.id)
        if not policy.skip_verification:
            self._schedule_verification(action.id, run.id)
        return WorkOutcome(job.job_id, job.action_id, "completed", run_id=run.id)

    def _execute_handler(
        self,
        job: ClaimedJob,
        site_url: str,
        action_type: str,
        run_id: str,
        policy: ExecutionPolicy,
    ) -> HandlerResult:
        payload = parse_payload(action_type, job.payload)
        handler = self._handlers.resolve(action_type, policy)
        context = ExecutionContext(
            action_id=job.action_id,
            owner=job.owner,
            site_url=site_url,
            action_type=action_type,
            payload=payload,
            policy=policy,
            run_id=run_id,
            job_id=job.job_id,
            attempt=job.attempt,
            idempotency_key=job.idempotency_key,
        )
        future = self._handler_pool.submit(handler.execute, context)
        try:
            result = future.result(timeout=policy.timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            self._replace_stuck_pool()
            raise HandlerExecutionError(
                f"Handler timed out after {policy.timeout_ms} ms",
                retryable=True,
                timed_out=True,
            ) from exc
        if not isinstance(result, HandlerResult):
            raise HandlerExecutionError(
                f"Handler for {action_type} returned {type(result).__name__}, expected HandlerResult",
                retryable=False,
            )
        if result.pages_processed > policy.max_pages:
            raise HandlerExecutionError(
                f"Handler processed {result.pages_processed} pages, policy allows {policy.max_pages}",
                retryable=False,
            )
        if result.patches_applied > policy.max_patches:
            raise HandlerExecutionError(
                f"Handler applied {result.patches_applied} patches, policy allows {policy.max_patches}",
                retryable=False,
            )
        return result

    def _fail_run(self, job: ClaimedJob, run_id: str, error: HandlerExecutionError) -> WorkOutcome:
        try:
            self._runs.finish_run(
                run_id,
                owner=job.owner,
                succeeded=False,
                error=str(error),
                outcome={"timed_out": error.timed_out, "retryable": error.retryable},
            )
        except InvalidStateError as exc:
            return self._lost_claim(job, run_id, exc)
        return self._handle_failure(job, run_id, error)

    def _lost_claim(self, job: ClaimedJob, run_id: str, exc: InvalidStateError) -> WorkOutcome:
        # Lease recovery or an operator moved the action on while the handler ran.
        logger.warning(
            "Claim lost before the attempt was recorded: action_id=%s run_id=%s reason=%s",
            job.action_id,
            run_id,
            exc,
        )
        if not self._queue.discard(job.job_id, str(exc), claimed_by=self._worker_id):
            logger.info("Job already handed back to the queue: job_id=%s", job.job_id)
        return WorkOutcome(job.job_id, job.action_id, "lost_claim", run_id=run_id, error=str(exc))

    def _handle_failure(
        self,
        job: ClaimedJob,
        run_id: str | None,
        error: HandlerExecutionError,
    ) -> WorkOutcome:
        message = str(error)
        decision = self._queue.fail(job.job_id, message, retryable=error.retryable)
        if decision.will_retry:
            try:
                self._lifecycle.requeue_for_retry(
                    job.action_id,
                    job.owner,
                    error=message,
                    retry_at=decision.retry_at,
                )
            except InvalidStateError as exc:
                logger.warning("Action not running, leaving state as is: action_id=%s reason=%s", job.action_id, exc)
            logger.warning(
                "Action attempt failed, retry scheduled: action_id=%s attempt=%s error=%s",
                job.action_id,
                decision.attempts_made,
                message,
            )
            return WorkOutcome(job.job_id, job.action_id, "retry_scheduled", run_id=run_id, error=message)
        try:
            self._lifecycle.mark_failed(job.action_id, job.owner, error=message, run_id=run_id)
        except InvalidStateError as exc:
            logger.warning("Action not running, cannot mark failed: action_id=%s reason=%s", job.action_id, exc)
        logger.error(
            "Action failed: action_id=%s attempts=%s error=%s",
            job.action_id,
            decision.attempts_made,
            message,
        )
        return WorkOutcome(job.job_id, job.action_id, "failed", run_id=run_id, error=message)

    def _replace_stuck_pool(self) -> None:
        # The timed-out handler thread keeps running; later jobs get a fresh pool.
        if not self._owns_pool:
            return
        self._handler_pool.shutdown(wait=False, cancel_futures=True)
        self._handler_pool = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=f"{self._worker_id}-handler",
        )

    def _schedule_verification(self, action_id: str, run_id: str) -> None:
        try:
            self._verification.schedule_verification(action_id, run_id)
        except Exception:
            logger.exception("Failed to schedule verification: action_id=%s run_id=%s", action_id, run_id)
            return
        if self._background is None:
            return
        try:
            self._background.submit(
                "verification",
                self._verification.verify_action,
                action_id,
                run_id,
            )
        except QueueSubmissionError as exc:
            # The sweep picks the row up once it is due.
            logger.warning("Immediate verification not started: action_id=%s reason=%s", action_id, exc)


class WorkerPool:
    """Run several workers on threads, polling the queue until stopped."""

    def __init__(
        self,
        worker_factory: Callable[[str], Worker],
        *,
        concurrency: int,
        poll_interval_seconds: float,
        id_prefix: str = "worker",
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1.")
        self._workers = [worker_factory(f"{id_prefix}-{index + 1}") for index in range(concurrency)]
        self._poll_interval = poll_interval_seconds
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        """Start one polling thread per worker."""
        self._stop.clear()
        for worker in self._workers:
            thread = threading.Thread(
                target=self._loop,
                args=(worker,),
                name=worker.worker_id,
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("Worker pool started: concurrency=%s", len(self._workers))

    def stop(self, timeout: float | None = None) -> None:
        """Signal workers to stop and wait for their current job to finish."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads.clear()
        for worker in self._workers:
            worker.close()
        logger.info("Worker pool stopped")

    def wait(self) -> None:
        """Block until the pool is stopped."""
        self._stop.wait()

    def _loop(self, worker: Worker) -> None:
        while not self._stop.is_set():
            try:
                outcome = worker.run_once()
            except Exception:
                logger.exception("Worker loop iteration failed: worker_id=%s", worker.worker_id)
                outcome = None
            if outcome is None:
                self._stop.wait(self._poll_interval)
