"""Job store - durable deflection job queue on top of SQLAlchemy.

Every status transition is a single ``UPDATE ... WHERE status = <expected>``
so concurrent processors (threads or replicas) can never both win the same
transition. Callers learn whether they won from the affected row count.
"""

import uuid
from datetime import datetime
from typing import Iterable, Optional

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import sessionmaker

from deflection.database import utcnow
from deflection.models.job import (
    CLAIMABLE_STATUSES, TERMINAL_STATUSES, DeflectionJob, JobPriority, JobStatus, priority_order,
)
from deflection.models.system_error import SystemErrorLog
from deflection.schemas.common import JobResponse, QueueStats, SystemErrorResponse
from deflection.schemas.decision import DeflectionDecision
from deflection.schemas.ticket import TicketData

logger = structlog.get_logger()


class JobStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # --- creation / lookup ---

    def create_job(
        self,
        tenant_id: uuid.UUID,
        ticket: TicketData,
        webhook_event: Optional[dict] = None,
        priority: JobPriority = JobPriority.NORMAL,
        max_retries: int = 3,
        scheduled_at: Optional[datetime] = None,
    ) -> uuid.UUID:
        now = utcnow()
        job = DeflectionJob(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            ticket_id=ticket.id,
            ticket_data=ticket.model_dump(mode="json"),
            webhook_event=webhook_event,
            priority=JobPriority(priority).value,
            status=JobStatus.PENDING.value,
            max_retries=max_retries,
            retry_count=0,
            scheduled_at=scheduled_at or now,
            created_at=now,
            updated_at=now,
        )
        with self.session_factory() as session:
            session.add(job)
            session.commit()
        return job.id

    def get_job(self, job_id: uuid.UUID) -> Optional[JobResponse]:
        with self.session_factory() as session:
            job = session.get(DeflectionJob, job_id)
            return JobResponse.model_validate(job) if job else None

    def list_jobs(
        self,
        tenant_id: Optional[uuid.UUID] = None,
        status: Optional[JobStatus] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> list[JobResponse]:
        query = select(DeflectionJob).order_by(DeflectionJob.created_at.desc())
        if tenant_id:
            query = query.where(DeflectionJob.tenant_id == tenant_id)
        if status:
            query = query.where(DeflectionJob.status == JobStatus(status).value)
        query = query.offset((page - 1) * per_page).limit(per_page)
        with self.session_factory() as session:
            return [JobResponse.model_validate(j) for j in session.execute(query).scalars().all()]

    # --- claiming ---

    def claim_job(self, job_id: uuid.UUID, now: Optional[datetime] = None) -> bool:
        """Atomically move one job from pending/retrying to processing."""
        now = now or utcnow()
        stmt = (
            update(DeflectionJob)
            .where(DeflectionJob.id == job_id, DeflectionJob.status.in_(CLAIMABLE_STATUSES))
            .values(status=JobStatus.PROCESSING.value, started_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        with self.session_factory() as session:
            result = session.execute(stmt)
            session.commit()
        return result.rowcount == 1

    def claim_batch(self, limit: int, now: Optional[datetime] = None) -> list[JobResponse]:
        """Claim up to ``limit`` eligible jobs, highest priority then oldest first."""
        now = now or utcnow()
        with self.session_factory() as session:
            candidates = session.execute(
                select(DeflectionJob.id)
                .where(DeflectionJob.status.in_(CLAIMABLE_STATUSES), DeflectionJob.scheduled_at <= now)
                .order_by(priority_order, DeflectionJob.created_at.asc())
                .limit(limit)
            ).scalars().all()

        claimed = [job_id for job_id in candidates if self.claim_job(job_id, now)]
        if len(claimed) < len(candidates):
            logger.debug("jobs_claimed_elsewhere", lost=len(candidates) - len(claimed))
        if not claimed:
            return []

        with self.session_factory() as session:
            jobs = session.execute(select(DeflectionJob).where(DeflectionJob.id.in_(claimed))).scalars().all()
            by_id = {job.id: JobResponse.model_validate(job) for job in jobs}
        return [by_id[job_id] for job_id in claimed if job_id in by_id]

    # --- transitions out of processing ---

    def _transition(self, job_id: uuid.UUID, **values) -> bool:
        values.setdefault("updated_at", utcnow())
        stmt = (
            update(DeflectionJob)
            .where(DeflectionJob.id == job_id, DeflectionJob.status == JobStatus.PROCESSING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with self.session_factory() as session:
            result = session.execute(stmt)
            session.commit()
        return result.rowcount == 1

    def complete_job(self, job_id: uuid.UUID, decision: DeflectionDecision, now: Optional[datetime] = None) -> bool:
        return self._transition(
            job_id,
            status=JobStatus.COMPLETED.value,
            completed_at=now or utcnow(),
            result=decision.model_dump(mode="json"),
            error_message=None,
            error_kind=None,
        )

    def schedule_retry(
        self,
        job_id: uuid.UUID,
        retry_count: int,
        scheduled_at: datetime,
        error_message: str,
        error_kind: str,
    ) -> bool:
        return self._transition(
            job_id,
            status=JobStatus.RETRYING.value,
            retry_count=retry_count,
            scheduled_at=scheduled_at,
            error_message=error_message[:1000],
            error_kind=error_kind,
        )

    def fail_job(self, job_id: uuid.UUID, error_message: str, error_kind: str, now: Optional[datetime] = None) -> bool:
        return self._transition(
            job_id,
            status=JobStatus.FAILED.value,
            completed_at=now or utcnow(),
            error_message=error_message[:1000],
            error_kind=error_kind,
        )

    def requeue(self, job_ids: Iterable[uuid.UUID]) -> int:
        """Return processing jobs to pending."""
        job_ids = list(job_ids)
        if not job_ids:
            return 0
        now = utcnow()
        stmt = (
            update(DeflectionJob)
            .where(DeflectionJob.id.in_(job_ids), DeflectionJob.status == JobStatus.PROCESSING.value)
            .values(status=JobStatus.PENDING.value, started_at=None, scheduled_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        with self.session_factory() as session:
            result = session.execute(stmt)
            session.commit()
        return result.rowcount

    def requeue_stale(self, started_before: datetime) -> int:
        """Return jobs stuck in processing since before ``started_before`` to pending."""
        now = utcnow()
        stmt = (
            update(DeflectionJob)
            .where(DeflectionJob.status == JobStatus.PROCESSING.value, DeflectionJob.started_at < started_before)
            .values(status=JobStatus.PENDING.value, started_at=None, scheduled_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        with self.session_factory() as session:
            result = session.execute(stmt)
            session.commit()
        return result.rowcount

    # --- critical failures ---

    def record_critical_failure(self, tenant_id: Optional[uuid.UUID], message: str, extra_data: dict,
                                error_type: str = "deflection_job_failure") -> uuid.UUID:
        entry = SystemErrorLog(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            type=error_type,
            severity="critical",
            message=message,
            extra_data=extra_data,
        )
        with self.session_factory() as session:
            session.add(entry)
            session.commit()
        return entry.id

    def list_failures(self, tenant_id: Optional[uuid.UUID] = None, page: int = 1, per_page: int = 50) -> list[SystemErrorResponse]:
        query = select(SystemErrorLog).order_by(SystemErrorLog.created_at.desc())
        if tenant_id:
            query = query.where(SystemErrorLog.tenant_id == tenant_id)
        query = query.offset((page - 1) * per_page).limit(per_page)
        with self.session_factory() as session:
            return [SystemErrorResponse.model_validate(e) for e in session.execute(query).scalars().all()]

    # --- reporting / maintenance ---

    def get_stats(self, since: datetime, window_hours: int = 24) -> QueueStats:
        with self.session_factory() as session:
            counts = dict(session.execute(
                select(DeflectionJob.status, func.count())
                .where(DeflectionJob.created_at >= since)
                .group_by(DeflectionJob.status)
            ).all())
            timings = session.execute(
                select(DeflectionJob.started_at, DeflectionJob.completed_at)
                .where(
                    DeflectionJob.created_at >= since,
                    DeflectionJob.status == JobStatus.COMPLETED.value,
                    DeflectionJob.started_at.is_not(None),
                    DeflectionJob.completed_at.is_not(None),
                )
            ).all()

        durations = [(completed - started).total_seconds() for started, completed in timings]
        return QueueStats(
            **{status.value: counts.get(status.value, 0) for status in JobStatus},
            average_processing_seconds=round(sum(durations) / len(durations), 3) if durations else 0.0,
            window_hours=window_hours,
        )

    def cleanup(self, created_before: datetime) -> int:
        """Delete terminal jobs created before the cutoff."""
        stmt = (
            delete(DeflectionJob)
            .where(DeflectionJob.status.in_(TERMINAL_STATUSES), DeflectionJob.created_at < created_before)
            .execution_options(synchronize_session=False)
        )
        with self.session_factory() as session:
            result = session.execute(stmt)
            session.commit()
        return result.rowcount
