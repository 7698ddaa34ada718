"""Prometheus metrics for the deflection core."""

from prometheus_client import Counter, Histogram

JOBS_ENQUEUED = Counter("deflection_jobs_enqueued_total", "Jobs enqueued", ["priority"])
JOBS_CLAIMED = Counter("deflection_jobs_claimed_total", "Jobs claimed by a processor")
JOBS_COMPLETED = Counter("deflection_jobs_completed_total", "Jobs completed")
JOBS_RETRIED = Counter("deflection_jobs_retried_total", "Job retries scheduled", ["kind"])
JOBS_FAILED = Counter("deflection_jobs_failed_total", "Jobs failed permanently", ["kind"])
JOBS_REQUEUED = Counter("deflection_jobs_requeued_total", "Processing jobs returned to pending", ["cause"])
DECISIONS = Counter("deflection_decisions_total", "Decisions made", ["action", "reason"])
BACKEND_CALLS = Counter("deflection_backend_calls_total", "Reasoning backend calls", ["model", "outcome"])
JOB_DURATION = Histogram("deflection_job_duration_seconds", "Job processing duration")
ERRORS = Counter("errors_total", "Total errors", ["type"])
WEBHOOK_REQUESTS = Counter("webhook_requests_total", "Total webhook requests", ["tenant"])
