"""Tests for the durable job store."""

import threading
import uuid
from datetime import timedelta

from sqlalchemy import update

from deflection.database import utcnow
from deflection.models.job import DeflectionJob, JobPriority, JobStatus
from deflection.schemas.decision import DecisionReason, DeflectionDecision


def _set_created_at(session_factory, job_id, created_at):
    with session_factory() as session:
        session.execute(update(DeflectionJob).where(DeflectionJob.id == job_id).values(created_at=created_at))
        session.commit()


class TestCreateAndLookup:
    def test_create_job_defaults(self, store, tenant, make_ticket):
        ticket = make_ticket(tenant.id)
        job_id = store.create_job(tenant.id, ticket, webhook_event={"type": "ticket.created"})

        job = store.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.priority == JobPriority.NORMAL
        assert job.retry_count == 0
        assert job.max_retries == 3
        assert job.ticket == ticket
        assert job.webhook_event == {"type": "ticket.created"}

    def test_get_missing_job(self, store):
        assert store.get_job(uuid.uuid4()) is None

    def test_list_jobs_filters(self, store, make_tenant, make_ticket):
        a, b = make_tenant(), make_tenant()
        store.create_job(a.id, make_ticket(a.id))
        store.create_job(b.id, make_ticket(b.id))

        assert len(store.list_jobs()) == 2
        assert [j.tenant_id for j in store.list_jobs(tenant_id=a.id)] == [a.id]
        assert store.list_jobs(status=JobStatus.COMPLETED) == []


class TestClaiming:
    def test_priority_then_fifo(self, store, session_factory, tenant, make_ticket):
        now = utcnow()
        order = [
            ("low-1", JobPriority.LOW),
            ("normal-1", JobPriority.NORMAL),
            ("high-1", JobPriority.HIGH),
            ("normal-2", JobPriority.NORMAL),
            ("high-2", JobPriority.HIGH),
        ]
        for i, (ticket_id, priority) in enumerate(order):
            job_id = store.create_job(tenant.id, make_ticket(tenant.id, id=ticket_id), priority=priority)
            _set_created_at(session_factory, job_id, now - timedelta(minutes=10 - i))

        claimed = store.claim_batch(10)
        assert [j.ticket_id for j in claimed] == ["high-1", "high-2", "normal-1", "normal-2", "low-1"]
        assert all(j.status == JobStatus.PROCESSING for j in claimed)
        assert all(j.started_at is not None for j in claimed)

    def test_batch_limit(self, store, tenant, make_ticket):
        for _ in range(7):
            store.create_job(tenant.id, make_ticket(tenant.id))
        assert len(store.claim_batch(5)) == 5
        assert len(store.claim_batch(5)) == 2
        assert store.claim_batch(5) == []

    def test_future_retry_not_claimed(self, store, tenant, make_ticket):
        store.create_job(tenant.id, make_ticket(tenant.id), scheduled_at=utcnow() + timedelta(minutes=5))
        assert store.claim_batch(5) == []

    def test_claim_is_exclusive(self, store, tenant, make_ticket):
        job_id = store.create_job(tenant.id, make_ticket(tenant.id))
        assert store.claim_job(job_id) is True
        assert store.claim_job(job_id) is False

    def test_concurrent_claims_exactly_one_wins(self, store, tenant, make_ticket):
        job_id = store.create_job(tenant.id, make_ticket(tenant.id))
        workers = 8
        barrier = threading.Barrier(workers)
        results = []
        lock = threading.Lock()

        def claim():
            barrier.wait()
            won = store.claim_job(job_id)
            with lock:
                results.append(won)

        threads = [threading.Thread(target=claim) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == workers - 1

    def test_concurrent_batches_never_share_jobs(self, store, tenant, make_ticket):
        for _ in range(10):
            store.create_job(tenant.id, make_ticket(tenant.id))
        barrier = threading.Barrier(4)
        claimed = []
        lock = threading.Lock()

        def claim():
            barrier.wait()
            jobs = store.claim_batch(5)
            with lock:
                claimed.extend(j.id for j in jobs)

        threads = [threading.Thread(target=claim) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(claimed) == len(set(claimed))
        # Candidates lost to another claimer stay claimable.
        claimed.extend(j.id for j in store.claim_batch(10))
        assert len(claimed) == len(set(claimed)) == 10


class TestTransitions:
    def _claimed(self, store, tenant, make_ticket):
        job_id = store.create_job(tenant.id, make_ticket(tenant.id))
        store.claim_job(job_id)
        return job_id

    def test_complete_stores_decision(self, store, tenant, make_ticket):
        job_id = self._claimed(store, tenant, make_ticket)
        decision = DeflectionDecision(should_respond=False, reason=DecisionReason.EMPTY_CONTENT)
        assert store.complete_job(job_id, decision) is True

        job = store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.completed_at is not None
        assert job.decision == decision

    def test_transitions_require_processing(self, store, tenant, make_ticket):
        job_id = store.create_job(tenant.id, make_ticket(tenant.id))
        decision = DeflectionDecision(should_respond=False, reason=DecisionReason.EMPTY_CONTENT)
        assert store.complete_job(job_id, decision) is False
        assert store.fail_job(job_id, "boom", "unexpected") is False
        assert store.get_job(job_id).status == JobStatus.PENDING

    def test_schedule_retry(self, store, tenant, make_ticket):
        job_id = self._claimed(store, tenant, make_ticket)
        retry_at = utcnow() + timedelta(seconds=30)
        assert store.schedule_retry(job_id, 1, retry_at, "timed out", "timeout") is True

        job = store.get_job(job_id)
        assert job.status == JobStatus.RETRYING
        assert job.retry_count == 1
        assert job.error_kind == "timeout"
        assert job.scheduled_at == retry_at

    def test_fail_only_once(self, store, tenant, make_ticket):
        job_id = self._claimed(store, tenant, make_ticket)
        assert store.fail_job(job_id, "bad key", "auth") is True
        assert store.fail_job(job_id, "bad key", "auth") is False
        assert store.get_job(job_id).status == JobStatus.FAILED

    def test_requeue_stale(self, store, tenant, make_ticket):
        stale = store.create_job(tenant.id, make_ticket(tenant.id))
        fresh = store.create_job(tenant.id, make_ticket(tenant.id))
        store.claim_job(stale, now=utcnow() - timedelta(hours=1))
        store.claim_job(fresh)

        assert store.requeue_stale(utcnow() - timedelta(minutes=10)) == 1
        assert store.get_job(stale).status == JobStatus.PENDING
        assert store.get_job(stale).started_at is None
        assert store.get_job(fresh).status == JobStatus.PROCESSING


class TestFailuresStatsCleanup:
    def test_record_and_list_failures(self, store, tenant):
        store.record_critical_failure(tenant.id, "job failed", {"job_id": "x"})
        failures = store.list_failures(tenant_id=tenant.id)
        assert len(failures) == 1
        assert failures[0].severity == "critical"
        assert failures[0].extra_data == {"job_id": "x"}

    def test_stats(self, store, tenant, make_ticket):
        decision = DeflectionDecision(should_respond=False, reason=DecisionReason.EMPTY_CONTENT)
        done = store.create_job(tenant.id, make_ticket(tenant.id))
        store.claim_job(done, now=utcnow() - timedelta(seconds=4))
        store.complete_job(done, decision)
        failed = store.create_job(tenant.id, make_ticket(tenant.id))
        store.claim_job(failed)
        store.fail_job(failed, "boom", "auth")
        store.create_job(tenant.id, make_ticket(tenant.id))

        stats = store.get_stats(utcnow() - timedelta(hours=24))
        assert stats.pending == 1
        assert stats.completed == 1
        assert stats.failed == 1
        assert stats.processing == 0
        assert stats.average_processing_seconds >= 4

    def test_stats_window_excludes_old_jobs(self, store, session_factory, tenant, make_ticket):
        job_id = store.create_job(tenant.id, make_ticket(tenant.id))
        _set_created_at(session_factory, job_id, utcnow() - timedelta(hours=30))
        assert store.get_stats(utcnow() - timedelta(hours=24)).pending == 0

    def test_cleanup_only_old_terminal_jobs(self, store, session_factory, tenant, make_ticket):
        decision = DeflectionDecision(should_respond=False, reason=DecisionReason.EMPTY_CONTENT)
        old_done = store.create_job(tenant.id, make_ticket(tenant.id))
        store.claim_job(old_done)
        store.complete_job(old_done, decision)
        old_pending = store.create_job(tenant.id, make_ticket(tenant.id))
        new_done = store.create_job(tenant.id, make_ticket(tenant.id))
        store.claim_job(new_done)
        store.complete_job(new_done, decision)

        eight_days_ago = utcnow() - timedelta(days=8)
        _set_created_at(session_factory, old_done, eight_days_ago)
        _set_created_at(session_factory, old_pending, eight_days_ago)

        assert store.cleanup(utcnow() - timedelta(days=7)) == 1
        assert store.get_job(old_done) is None
        assert store.get_job(old_pending) is not None
        assert store.get_job(new_done) is not None
