"""Reasoning spend controls.

``ModelCircuitBreaker`` stops calls to a reasoning model that keeps failing,
for every tenant at once. ``TenantUsage`` is the per-tenant daily ledger of
tokens, calls and USD spend that backs the ``max_tokens_per_day`` quota.
``UsageGuard`` brackets a single reasoning call with both.
"""

import time
from datetime import datetime, timezone

import redis as redis_lib
import structlog

from deflection.config import settings
from deflection.errors import BudgetExceededError, CircuitOpenError

logger = structlog.get_logger()

_redis: redis_lib.Redis | None = None

# USD per 1M tokens (input, output), matched on model id prefix
MODEL_PRICING = {
    "claude-haiku-4-5": (1.0, 5.0),
    "claude-sonnet-4": (3.0, 15.0),
    "claude-opus-4": (15.0, 75.0),
}
FALLBACK_MODEL = "claude-sonnet-4"

USAGE_TTL = 86400 * 2


def get_redis() -> redis_lib.Redis:
    global _redis
    if _redis is None:
        _redis = redis_lib.from_url(settings.redis_url, decode_responses=True)
    return _redis


def model_rates(model: str) -> tuple[float, float]:
    matches = [prefix for prefix in MODEL_PRICING if model.startswith(prefix)]
    if not matches:
        return MODEL_PRICING[FALLBACK_MODEL]
    return MODEL_PRICING[max(matches, key=len)]


def price_call(model: str, input_tokens: int, output_tokens: int) -> float:
    """USD cost of one call; unknown models are priced like Sonnet."""
    input_rate, output_rate = model_rates(model)
    return round((input_tokens * input_rate + output_tokens * output_rate) / 1_000_000, 6)


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


class ModelCircuitBreaker:
    """Failure breaker for one reasoning model, shared by all tenants.

    State is the Redis hash ``breaker:{model}`` with ``failures``, ``state``
    and ``opened_at``. Once ``reset_seconds`` have passed an open breaker goes
    half-open and lets a trial call through; a failed trial reopens it.
    """

    def __init__(
        self,
        model: str,
        r: redis_lib.Redis | None = None,
        failure_threshold: int | None = None,
        reset_seconds: int | None = None,
    ):
        self.model = model
        self.r = r if r is not None else get_redis()
        self.failure_threshold = failure_threshold or settings.circuit_failure_threshold
        self.reset_seconds = reset_seconds or settings.circuit_reset_seconds

    @property
    def key(self) -> str:
        return f"breaker:{self.model}"

    def check(self) -> None:
        data = self.r.hgetall(self.key)
        if data.get("state") != "open":
            return
        elapsed = time.time() - float(data.get("opened_at", 0))
        if elapsed >= self.reset_seconds:
            self.r.hset(self.key, "state", "half-open")
            logger.info("circuit_breaker_half_open", model=self.model)
            return
        raise CircuitOpenError(
            f"Reasoning model {self.model} is failing ({data.get('failures', '?')} consecutive errors); "
            f"retry in {int(self.reset_seconds - elapsed)}s"
        )

    def record_failure(self) -> None:
        failures = self.r.hincrby(self.key, "failures", 1)
        self.r.expire(self.key, self.reset_seconds * 2)
        trial_failed = self.r.hget(self.key, "state") == "half-open"
        if trial_failed or failures >= self.failure_threshold:
            self.r.hset(self.key, mapping={"state": "open", "opened_at": str(time.time())})
            logger.warning("circuit_breaker_opened", model=self.model, failures=failures, trial_failed=trial_failed)

    def record_success(self) -> None:
        self.r.delete(self.key)


class TenantUsage:
    """Daily ledger ``usage:{tenant}:{YYYY-MM-DD}`` (UTC) with tokens, calls and spend."""

    def __init__(self, tenant_id: str, max_tokens_per_day: int, r: redis_lib.Redis | None = None):
        self.tenant_id = str(tenant_id)
        self.max_tokens_per_day = max_tokens_per_day
        self.r = r if r is not None else get_redis()

    def key(self, day: str | None = None) -> str:
        return f"usage:{self.tenant_id}:{day or _today()}"

    def check(self, estimated_tokens: int = 0) -> None:
        current = int(self.r.hget(self.key(), "tokens") or 0)
        if current + estimated_tokens > self.max_tokens_per_day:
            raise BudgetExceededError(
                f"Tenant {self.tenant_id} would exceed its daily token quota: "
                f"{current}+{estimated_tokens}/{self.max_tokens_per_day}",
                "daily_tokens",
            )

    def record(self, tokens: int, cost_usd: float) -> None:
        key = self.key()
        pipe = self.r.pipeline()
        pipe.hincrby(key, "tokens", tokens)
        pipe.hincrby(key, "calls", 1)
        # Integer micro-dollars keep HINCRBY exact
        pipe.hincrby(key, "cost_micro_usd", round(cost_usd * 1_000_000))
        pipe.expire(key, USAGE_TTL)
        pipe.execute()

    def snapshot(self, day: str | None = None) -> dict:
        day = day or _today()
        data = self.r.hgetall(self.key(day))
        tokens = int(data.get("tokens", 0))
        return {
            "tenant_id": self.tenant_id,
            "date": day,
            "tokens": tokens,
            "calls": int(data.get("calls", 0)),
            "cost_usd": int(data.get("cost_micro_usd", 0)) / 1_000_000,
            "max_tokens_per_day": self.max_tokens_per_day,
            "tokens_remaining": max(self.max_tokens_per_day - tokens, 0),
        }


class UsageGuard:
    """Breaker and quota checks before a reasoning call, accounting after it."""

    def __init__(self, tenant_id: str, model: str, max_tokens_per_day: int, r: redis_lib.Redis | None = None):
        r = r if r is not None else get_redis()
        self.model = model
        self.breaker = ModelCircuitBreaker(model, r=r)
        self.usage = TenantUsage(tenant_id, max_tokens_per_day, r=r)

    def before_call(self, estimated_tokens: int) -> None:
        self.breaker.check()
        self.usage.check(estimated_tokens)

    def after_success(self, tokens: int, cost_usd: float) -> None:
        self.usage.record(tokens, cost_usd)
        self.breaker.record_success()

    def after_failure(self) -> None:
        self.breaker.record_failure()
