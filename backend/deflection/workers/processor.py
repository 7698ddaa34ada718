"""Deflection job processor.

Lifecycle:
    pending -> processing -> completed
                          -> retrying -> (scheduled_at passes) -> processing ...
                          -> failed

One dispatcher thread polls the job store, claims a batch with guarded
updates and fans it out onto a thread pool bounded by ``batch_size``. Each
job succeeds or fails on its own; the dispatcher waits for the whole batch
before polling again.
"""

import random
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import timedelta
from typing import Optional

import structlog
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from deflection.config import settings
from deflection.database import utcnow
from deflection.errors import InputValidationError, SettingsMissingError, classify_error
from deflection.metrics import (
    ERRORS, JOB_DURATION, JOBS_CLAIMED, JOBS_COMPLETED, JOBS_ENQUEUED, JOBS_FAILED,
    JOBS_REQUEUED, JOBS_RETRIED,
)
from deflection.models.job import JobPriority
from deflection.schemas.common import JobResponse, QueueStats
from deflection.schemas.decision import DeflectionDecision
from deflection.schemas.ticket import TicketData
from deflection.services.notifications import format_job_failure_notification, send_slack_notification
from deflection.workers.base import run_async

logger = structlog.get_logger()


def compute_backoff(retry_count: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff in seconds, without jitter."""
    return min(base_delay * (2 ** retry_count), max_delay)


class DeflectionProcessor:
    def __init__(
        self,
        store,
        engine,
        settings_provider,
        similarity=None,
        poll_interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        retry_max_delay: Optional[float] = None,
        retry_jitter: Optional[float] = None,
        retention_days: Optional[int] = None,
        stale_timeout: Optional[float] = None,
        alert_webhook_url: Optional[str] = None,
    ):
        self.store = store
        self.engine = engine
        self.settings_provider = settings_provider
        self.similarity = similarity

        self.poll_interval = poll_interval if poll_interval is not None else settings.poll_interval_seconds
        self.batch_size = batch_size or settings.batch_size
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.retry_base_delay = retry_base_delay if retry_base_delay is not None else settings.retry_base_delay_seconds
        self.retry_max_delay = retry_max_delay if retry_max_delay is not None else settings.retry_max_delay_seconds
        self.retry_jitter = retry_jitter if retry_jitter is not None else settings.retry_jitter_seconds
        self.retention_days = retention_days or settings.job_retention_days
        self.stale_timeout = stale_timeout if stale_timeout is not None else settings.stale_job_timeout_seconds
        self.alert_webhook_url = alert_webhook_url if alert_webhook_url is not None else settings.slack_webhook_url

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._in_flight: dict[uuid.UUID, Future] = {}
        self._in_flight_lock = threading.Lock()

    # --- enqueue ---

    def enqueue(
        self,
        tenant_id: uuid.UUID | str,
        ticket: TicketData,
        webhook_event: Optional[dict] = None,
        priority: JobPriority = JobPriority.NORMAL,
    ) -> str:
        """Create a pending job and return its id."""
        tenant_uuid = uuid.UUID(str(tenant_id))
        if ticket.tenant_id != tenant_uuid:
            raise InputValidationError(f"Ticket {ticket.id} belongs to tenant {ticket.tenant_id}, not {tenant_uuid}")
        if self.settings_provider.get(tenant_uuid) is None:
            raise SettingsMissingError(str(tenant_uuid))

        priority = JobPriority(priority)
        job_id = self.store.create_job(
            tenant_uuid, ticket,
            webhook_event=webhook_event,
            priority=priority,
            max_retries=self.max_retries,
        )
        JOBS_ENQUEUED.labels(priority=priority.value).inc()
        logger.info("deflection_job_enqueued",
                    job_id=str(job_id), tenant_id=str(tenant_uuid), ticket_id=ticket.id, priority=priority.value)
        return str(job_id)

    # --- lifecycle ---

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            logger.info("deflection_processor_already_running")
            return
        self._stop_event.clear()
        self.recover_stale_jobs()
        self._executor = ThreadPoolExecutor(max_workers=self.batch_size, thread_name_prefix="deflection-job")
        self._thread = threading.Thread(target=self._run, name="deflection-dispatcher", daemon=True)
        self._thread.start()
        logger.info("deflection_processor_started",
                    poll_interval=self.poll_interval, batch_size=self.batch_size)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop claiming new jobs and drain the batch in flight.

        Jobs still running when ``timeout`` expires stay in processing until
        they finish, or until the stale reaper picks them up. Only jobs that
        never started are returned to the queue.
        """
        timeout = timeout if timeout is not None else settings.shutdown_timeout_seconds
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("deflection_processor_drain_timeout", timeout=timeout)

        never_started = []
        still_running = 0
        if self._executor is not None:
            with self._in_flight_lock:
                self._executor.shutdown(wait=False, cancel_futures=True)
                never_started = [job_id for job_id, future in self._in_flight.items() if future.cancelled()]
                for job_id in never_started:
                    del self._in_flight[job_id]
                still_running = len(self._in_flight)

        if never_started:
            self._requeue_on_shutdown(never_started)
        if still_running:
            logger.warning("deflection_jobs_left_processing", count=still_running)

        self._thread = None
        self._executor = None
        logger.info("deflection_processor_stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.recover_stale_jobs()
                self.process_batch()
            except SQLAlchemyError as e:
                ERRORS.labels(type="persistence").inc()
                logger.error("deflection_poll_failed", error=str(e))
            except Exception:
                ERRORS.labels(type="poll").inc()
                logger.exception("deflection_poll_crashed")
            self._stop_event.wait(self.poll_interval)

    # --- processing ---

    def process_batch(self) -> int:
        """Claim and run one batch. Returns the number of jobs claimed."""
        jobs = self.store.claim_batch(self.batch_size)
        if not jobs:
            return 0

        JOBS_CLAIMED.inc(len(jobs))
        logger.info("deflection_batch_claimed", count=len(jobs), job_ids=[str(j.id) for j in jobs])

        executor = self._executor
        if executor is not None:
            futures = []
            for index, job in enumerate(jobs):
                with self._in_flight_lock:
                    try:
                        future = executor.submit(self._process_job_safely, job)
                    except RuntimeError:
                        # Executor shut down mid-batch.
                        unsubmitted = [j.id for j in jobs[index:]]
                        break
                    self._in_flight[job.id] = future
                futures.append(future)
            else:
                unsubmitted = []
            if unsubmitted:
                self._requeue_on_shutdown(unsubmitted)
            wait(futures)
        else:
            # Not started: run inline on a throwaway pool so jobs still overlap.
            with ThreadPoolExecutor(max_workers=self.batch_size) as pool:
                wait([pool.submit(self._process_job_safely, job) for job in jobs])
        return len(jobs)

    def _process_job_safely(self, job: JobResponse) -> None:
        try:
            self.process_job(job)
        except Exception:
            ERRORS.labels(type="job_bookkeeping").inc()
            logger.exception("deflection_job_bookkeeping_failed", job_id=str(job.id))
        finally:
            with self._in_flight_lock:
                self._in_flight.pop(job.id, None)

    def _requeue_on_shutdown(self, job_ids: list[uuid.UUID]) -> None:
        requeued = self.store.requeue(job_ids)
        JOBS_REQUEUED.labels(cause="shutdown").inc(requeued)
        logger.warning("deflection_jobs_requeued_on_shutdown", count=requeued)

    def process_job(self, job: JobResponse) -> None:
        start = time.time()
        try:
            ticket = self._load_ticket(job)
            deflection_settings = self.settings_provider.get(job.tenant_id)
            prior = self.similarity.find_similar(ticket) if self.similarity else []
            decision = run_async(self.engine.decide(ticket, deflection_settings, prior))
        except Exception as e:
            self.handle_job_error(job, e)
            return

        try:
            if not self.store.complete_job(job.id, decision):
                logger.warning("deflection_job_completion_lost", job_id=str(job.id))
                return
        except SQLAlchemyError as e:
            # Job stays in processing; the stale reaper returns it to the queue.
            ERRORS.labels(type="persistence").inc()
            logger.error("deflection_job_completion_write_failed", job_id=str(job.id), error=str(e))
            return

        self._record_analysis(ticket, decision)
        duration = time.time() - start
        JOB_DURATION.observe(duration)
        JOBS_COMPLETED.inc()
        logger.info("deflection_job_completed",
                    job_id=str(job.id), ticket_id=ticket.id,
                    should_respond=decision.should_respond, reason=decision.reason.value,
                    action=decision.action.value,
                    confidence=decision.response.confidence_score if decision.response else None,
                    cost=decision.cost_usd, duration=round(duration, 3))

    @staticmethod
    def _load_ticket(job: JobResponse) -> TicketData:
        try:
            return job.ticket
        except ValidationError as e:
            raise InputValidationError(f"Stored ticket for job {job.id} is invalid: {e}") from e

    def handle_job_error(self, job: JobResponse, error: Exception) -> None:
        """Retry with backoff, or fail the job permanently."""
        retryable, kind = classify_error(error)
        message = str(error) or error.__class__.__name__
        new_retry_count = job.retry_count + 1

        if retryable and new_retry_count <= job.max_retries:
            delay = self.retry_delay(new_retry_count)
            retry_at = utcnow() + timedelta(seconds=delay)
            if self.store.schedule_retry(job.id, new_retry_count, retry_at, message, kind):
                JOBS_RETRIED.labels(kind=kind).inc()
                log = logger.warning if kind == "malformed_response" else logger.info
                log("deflection_job_retry_scheduled",
                    job_id=str(job.id), retry=new_retry_count, max_retries=job.max_retries,
                    delay=round(delay, 3), error_kind=kind, error=message)
            else:
                logger.warning("deflection_job_retry_lost", job_id=str(job.id))
            return

        if not self.store.fail_job(job.id, message, kind):
            logger.warning("deflection_job_failure_lost", job_id=str(job.id))
            return
        JOBS_FAILED.labels(kind=kind).inc()
        logger.critical("deflection_job_failed",
                        job_id=str(job.id), tenant_id=str(job.tenant_id), retry_count=job.retry_count,
                        error_kind=kind, retryable=retryable, error=message)
        self.log_critical_failure(job, message, kind)

    def retry_delay(self, retry_count: int) -> float:
        base = compute_backoff(retry_count, self.retry_base_delay, self.retry_max_delay)
        return base + random.uniform(0, self.retry_jitter)

    def log_critical_failure(self, job: JobResponse, message: str, kind: str) -> None:
        failure = {
            "job_id": str(job.id),
            "tenant_id": str(job.tenant_id),
            "ticket_id": job.ticket_id,
            "retry_count": job.retry_count,
            "error_kind": kind,
            "error": message,
        }
        try:
            self.store.record_critical_failure(
                job.tenant_id, f"Deflection job {job.id} failed permanently: {message}", failure,
            )
        except SQLAlchemyError as e:
            logger.error("critical_failure_record_failed", job_id=str(job.id), error=str(e))

        if self.alert_webhook_url:
            text, blocks = format_job_failure_notification(failure)
            run_async(send_slack_notification(self.alert_webhook_url, text, blocks=blocks))

    def _record_analysis(self, ticket: TicketData, decision: DeflectionDecision) -> None:
        if self.similarity is None:
            return
        try:
            self.similarity.record(ticket, decision)
        except SQLAlchemyError as e:
            logger.error("ticket_analysis_record_failed", ticket_id=ticket.id, error=str(e))

    # --- synchronous query ---

    def decide_now(self, ticket: TicketData, dry_run: bool = True) -> DeflectionDecision:
        """Decide a ticket immediately, bypassing the queue.

        With ``dry_run`` nothing is persisted: no job, no analysis record and
        no budget counters. Backend errors propagate to the caller.
        """
        deflection_settings = self.settings_provider.get(ticket.tenant_id)
        prior = self.similarity.find_similar(ticket) if self.similarity else []
        decision = run_async(self.engine.decide(ticket, deflection_settings, prior, track_usage=not dry_run))
        if not dry_run:
            self._record_analysis(ticket, decision)
        logger.info("deflection_decided_now", ticket_id=ticket.id, dry_run=dry_run,
                    action=decision.action.value, reason=decision.reason.value)
        return decision

    # --- maintenance / reporting ---

    def recover_stale_jobs(self) -> int:
        cutoff = utcnow() - timedelta(seconds=self.stale_timeout)
        count = self.store.requeue_stale(cutoff)
        if count:
            JOBS_REQUEUED.labels(cause="stale").inc(count)
            logger.warning("deflection_stale_jobs_requeued", count=count)
        return count

    def get_queue_stats(self, window_hours: Optional[int] = None) -> QueueStats:
        window_hours = window_hours or settings.stats_window_hours
        return self.store.get_stats(utcnow() - timedelta(hours=window_hours), window_hours=window_hours)

    def cleanup_old_jobs(self) -> int:
        cutoff = utcnow() - timedelta(days=self.retention_days)
        deleted = self.store.cleanup(cutoff)
        logger.info("deflection_jobs_cleaned_up", deleted=deleted, retention_days=self.retention_days)
        return deleted
