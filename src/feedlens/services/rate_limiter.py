"""Per-user daily quotas, usage accounting, dead letters and deferred requests."""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Generic, TypeVar

import structlog

from feedlens.models.db import AIUsageDaily
from feedlens.models.pipeline import (
    AIOperation,
    AIProvider,
    BatchOutcome,
    DailyUsage,
    DeadLetterEntry,
    DeadLetterRetryResult,
    QueueDecision,
    QueuedRequestEntry,
    QueueSweepResult,
    RateLimitCheck,
    RateLimitedResult,
    UsageRecord,
    UsageStats,
)
from feedlens.services.retry import BackoffPolicy
from feedlens.services.storage import DAILY_COUNTERS, DAILY_LIMITS, PipelineStore
from feedlens.utils.dates import next_utc_midnight, utc_date_string, utcnow

log = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_DAILY_LIMITS: dict[str, int] = {
    "embedding": 500,
    "clustering": 10,
    "search": 100,
    "summary": 50,
}

# Flat estimate per token for provider/model pairs without a rate card.
FALLBACK_COST_PER_TOKEN = 0.00001
QUEUED_REQUEST_RETRY_DELAY = timedelta(hours=1)


@dataclass(frozen=True)
class TokenRate:
    """Estimated cost per 1000 tokens."""

    input: float
    output: float = 0.0


TOKEN_COSTS: dict[str, dict[str, TokenRate]] = {
    "ollama": {
        "all-minilm": TokenRate(input=0.00001),
        "nomic-embed-text": TokenRate(input=0.00002),
        "llama3.2:3b": TokenRate(input=0.0001, output=0.0002),
        "llama3.1:8b": TokenRate(input=0.0002, output=0.0004),
    },
    "sentence-transformers": {
        "all-MiniLM-L6-v2": TokenRate(input=0.000005),
    },
}


def calculate_cost(provider: str, model: str | None, input_tokens: int, output_tokens: int = 0) -> float:
    rate = TOKEN_COSTS.get(provider, {}).get(model or "")
    if rate is None:
        return (input_tokens + output_tokens) * FALLBACK_COST_PER_TOKEN
    return input_tokens * rate.input / 1000 + output_tokens * rate.output / 1000


def _daily_usage(row: AIUsageDaily | None, date: str) -> DailyUsage:
    if row is None:
        return DailyUsage(date=date)
    return DailyUsage(
        date=row.date,
        embeddings=row.embeddings_count,
        clusterings=row.clusterings_count,
        searches=row.searches_count,
        summaries=row.summaries_count,
        total_tokens=row.total_tokens,
        ollama_tokens=row.ollama_tokens,
        local_tokens=row.local_tokens,
        estimated_cost=row.estimated_cost,
    )


class AIRateLimiter:
    """Usage ledger and daily quota gate.

    Quotas are keyed by ``(user_id, UTC date)``, so a new day starts from zero
    without any reset job. The gate reads the count and the caller increments it
    later; two calls racing near the limit can overshoot it slightly.
    """

    def __init__(
        self,
        store: PipelineStore,
        default_limits: dict[str, int] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.default_limits = {**DEFAULT_DAILY_LIMITS, **(default_limits or {})}
        self.clock = clock

    def _today(self) -> str:
        return utc_date_string(self.clock())

    def _limit(self, operation: AIOperation, row: AIUsageDaily | None) -> int:
        if row is not None:
            return getattr(row, DAILY_LIMITS[operation])
        return self.default_limits.get(operation, 100)

    def can_proceed(self, user_id: str, operation: AIOperation) -> RateLimitCheck:
        row = self.store.get_daily_usage(user_id, self._today())
        limit = self._limit(operation, row)
        current = getattr(row, DAILY_COUNTERS[operation]) if row is not None else 0

        if current >= limit:
            return RateLimitCheck(
                allowed=False,
                current_count=current,
                limit=limit,
                remaining=0,
                reason=f"Daily {operation} limit of {limit} reached. Resets at midnight UTC.",
            )
        return RateLimitCheck(allowed=True, current_count=current, limit=limit, remaining=limit - current)

    def record_usage(self, user_id: str | None, record: UsageRecord) -> None:
        """Write the usage log row and, for a known user, bump the daily aggregate.

        Failures are logged and swallowed; accounting never breaks the AI call it describes.
        """

        if record.success and not record.estimated_cost:
            record = record.model_copy(
                update={
                    "estimated_cost": calculate_cost(
                        record.provider,
                        record.model,
                        record.input_tokens if record.input_tokens is not None else record.token_count,
                        record.output_tokens or 0,
                    )
                }
            )
        try:
            self.store.insert_usage_log(user_id, record)
            if user_id:
                self.store.increment_daily_usage(
                    user_id,
                    self._today(),
                    record.operation,
                    record.token_count,
                    record.provider,
                    record.estimated_cost,
                    self.default_limits,
                )
            log.debug(
                "usage_recorded",
                operation=record.operation,
                tokens=record.token_count,
                cost=round(record.estimated_cost, 6),
                success=record.success,
            )
        except Exception:
            log.exception("usage_record_failed", operation=record.operation, user_id=user_id)

    def record_success(
        self,
        user_id: str | None,
        operation: AIOperation,
        provider: AIProvider,
        model: str,
        input_tokens: int,
        output_tokens: int = 0,
        latency_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.record_usage(
            user_id,
            UsageRecord(
                operation=operation,
                provider=provider,
                model=model,
                token_count=input_tokens + output_tokens,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                estimated_cost=calculate_cost(provider, model, input_tokens, output_tokens),
                success=True,
                latency_ms=latency_ms,
                metadata=metadata,
            ),
        )

    def record_failure(
        self,
        user_id: str | None,
        operation: AIOperation,
        provider: AIProvider,
        model: str,
        error_message: str,
        latency_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.record_usage(
            user_id,
            UsageRecord(
                operation=operation,
                provider=provider,
                model=model,
                success=False,
                error_message=error_message,
                latency_ms=latency_ms,
                metadata=metadata,
            ),
        )

    def get_usage_stats(self, user_id: str) -> UsageStats:
        today = self._today()
        row = self.store.get_daily_usage(user_id, today)
        daily = _daily_usage(row, today)
        limits = {operation: self._limit(operation, row) for operation in DAILY_COUNTERS}
        counts = {
            "embedding": daily.embeddings,
            "clustering": daily.clusterings,
            "search": daily.searches,
            "summary": daily.summaries,
        }
        remaining = {operation: max(0, limits[operation] - counts[operation]) for operation in limits}
        return UsageStats(daily=daily, limits=limits, remaining=remaining, reset_at=next_utc_midnight(self.clock()))

    def historical_usage(self, user_id: str, days: int = 7) -> list[DailyUsage]:
        since = utc_date_string(self.clock() - timedelta(days=max(days, 1) - 1))
        return [_daily_usage(row, row.date) for row in self.store.usage_history(user_id, since)]


class BatchProcessor(Generic[T, R]):
    """Runs work items one by one under the quota gate and the backoff policy."""

    def __init__(
        self,
        limiter: AIRateLimiter,
        operation: AIOperation,
        provider: AIProvider,
        policy: BackoffPolicy | None = None,
    ) -> None:
        self.limiter = limiter
        self.operation = operation
        self.provider = provider
        self.policy = policy or BackoffPolicy()

    def process_batch(
        self,
        items: Sequence[T],
        processor: Callable[[T], R],
        user_id: str | None = None,
        on_dead_letter: Callable[[T, BaseException], None] | None = None,
    ) -> BatchOutcome[R]:
        outcome: BatchOutcome[R] = BatchOutcome()

        for item in items:
            if user_id:
                check = self.limiter.can_proceed(user_id, self.operation)
                if not check.allowed:
                    outcome.failed.append((item, RuntimeError(check.reason or "Rate limit exceeded"), 0))
                    continue

            result = self.policy.execute(lambda: processor(item))
            if result.success:
                outcome.successful.append((item, result.result))
                continue

            error = result.error or RuntimeError("Unknown error")
            if result.attempts >= self.policy.max_attempts:
                outcome.dead_lettered.append((item, error))
                if on_dead_letter is not None:
                    try:
                        on_dead_letter(item, error)
                    except Exception:
                        log.exception("dead_letter_callback_failed", operation=self.operation)
            else:
                outcome.failed.append((item, error, result.attempts))

        log.info(
            "batch_completed",
            operation=self.operation,
            succeeded=len(outcome.successful),
            failed=len(outcome.failed),
            dead_lettered=len(outcome.dead_lettered),
        )
        return outcome


class DeadLetterQueueManager:
    def __init__(self, store: PipelineStore) -> None:
        self.store = store

    def add(
        self,
        operation: AIOperation,
        provider: AIProvider,
        payload: Any,
        error_message: str,
        attempts: int,
        user_id: str | None = None,
    ) -> DeadLetterEntry:
        item = self.store.add_dead_letter(operation, provider, payload, error_message, attempts, user_id=user_id)
        log.warning("dead_letter_added", operation=operation, attempts=attempts, error=error_message)
        return DeadLetterEntry.model_validate(item)

    def items(self, limit: int = 100, operation: AIOperation | None = None) -> list[DeadLetterEntry]:
        return [DeadLetterEntry.model_validate(item) for item in self.store.list_dead_letters(limit, operation)]

    def remove(self, item_id: uuid.UUID) -> None:
        self.store.remove_dead_letter(item_id)

    def retry_items(self, processor: Callable[[DeadLetterEntry], Any], limit: int = 10) -> DeadLetterRetryResult:
        """Re-run up to ``limit`` items; successes leave the queue, failures stay."""

        result = DeadLetterRetryResult()
        for item in self.items(limit):
            try:
                processor(item)
            except Exception as exc:
                result.failed += 1
                log.error("dead_letter_retry_failed", item_id=str(item.id), error=str(exc))
                continue
            self.remove(item.id)
            result.succeeded += 1

        result.remaining = self.store.count_dead_letters()
        return result

    def purge(self, older_than: timedelta | datetime) -> int:
        cutoff = utcnow() - older_than if isinstance(older_than, timedelta) else older_than
        removed = self.store.purge_dead_letters(cutoff)
        log.info("dead_letters_purged", count=removed, cutoff=cutoff.isoformat())
        return removed


class RequestQueueManager:
    """Defers operations refused by the quota gate to the next UTC midnight."""

    def __init__(self, store: PipelineStore, limiter: AIRateLimiter) -> None:
        self.store = store
        self.limiter = limiter

    def queue_request(
        self,
        user_id: str,
        operation: AIOperation,
        provider: AIProvider,
        payload: Any,
        priority: int = 0,
    ) -> QueuedRequestEntry:
        scheduled_for = next_utc_midnight(self.limiter.clock())
        request = self.store.add_queued_request(user_id, operation, provider, payload, scheduled_for, priority)
        log.info("request_deferred", user_id=user_id, operation=operation, scheduled_for=scheduled_for.isoformat())
        return QueuedRequestEntry.model_validate(request)

    def check_and_queue(
        self,
        user_id: str,
        operation: AIOperation,
        provider: AIProvider,
        payload: Any,
        priority: int = 0,
    ) -> QueueDecision:
        check = self.limiter.can_proceed(user_id, operation)
        if check.allowed:
            return QueueDecision(can_proceed=True, limit_check=check)
        queued = self.queue_request(user_id, operation, provider, payload, priority)
        return QueueDecision(can_proceed=False, limit_check=check, queued_request=queued)

    def user_requests(self, user_id: str, operation: AIOperation | None = None) -> list[QueuedRequestEntry]:
        return [QueuedRequestEntry.model_validate(row) for row in self.store.queued_requests(user_id, operation)]

    def process_queued_requests(
        self, processor: Callable[[QueuedRequestEntry], Any], limit: int = 100
    ) -> QueueSweepResult:
        """Run due requests whose quota now allows it; push the rest back."""

        now = self.limiter.clock()
        result = QueueSweepResult()
        for row in self.store.due_queued_requests(now, limit):
            request = QueuedRequestEntry.model_validate(row)
            result.processed += 1

            if not self.limiter.can_proceed(request.user_id, request.operation).allowed:
                self.store.reschedule_queued_request(request.id, next_utc_midnight(now))
                result.requeued += 1
                continue

            try:
                processor(request)
            except Exception as exc:
                result.failed += 1
                log.error("queued_request_failed", request_id=str(request.id), error=str(exc))
                self.store.reschedule_queued_request(request.id, now + QUEUED_REQUEST_RETRY_DELAY)
                continue
            self.store.remove_queued_request(request.id)
            result.succeeded += 1

        log.info(
            "queued_requests_swept",
            processed=result.processed,
            succeeded=result.succeeded,
            failed=result.failed,
            requeued=result.requeued,
        )
        return result


def execute_with_rate_limiting(
    limiter: AIRateLimiter,
    user_id: str | None,
    operation: AIOperation,
    provider: AIProvider,
    model: str,
    executor: Callable[[], tuple[T, int, int]],
    policy: BackoffPolicy | None = None,
    skip_rate_limit_check: bool = False,
    metadata: dict[str, Any] | None = None,
) -> RateLimitedResult[T]:
    """Gate, run with backoff, and account for one AI call.

    ``executor`` returns ``(result, input_tokens, output_tokens)``.
    """

    if user_id and not skip_rate_limit_check:
        check = limiter.can_proceed(user_id, operation)
        if not check.allowed:
            return RateLimitedResult(success=False, error=check.reason or "Rate limit exceeded")

    started = time.perf_counter()
    outcome = (policy or BackoffPolicy()).execute(executor)
    latency_ms = int((time.perf_counter() - started) * 1000)

    if outcome.success and outcome.result is not None:
        result, input_tokens, output_tokens = outcome.result
        limiter.record_success(user_id, operation, provider, model, input_tokens, output_tokens, latency_ms, metadata)
        return RateLimitedResult(success=True, result=result)

    error = str(outcome.error) if outcome.error else "Unknown error"
    limiter.record_failure(user_id, operation, provider, model, error, latency_ms, metadata)
    return RateLimitedResult(success=False, error=error)
