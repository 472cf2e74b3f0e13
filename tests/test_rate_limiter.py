from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import update

from feedlens.errors import TransientProviderError
from feedlens.models.db import AIUsageDaily, AIUsageLog
from feedlens.services.database import session_scope
from feedlens.services.rate_limiter import (
    FALLBACK_COST_PER_TOKEN,
    AIRateLimiter,
    BatchProcessor,
    DeadLetterQueueManager,
    RequestQueueManager,
    calculate_cost,
    execute_with_rate_limiting,
)
from feedlens.services.retry import BackoffPolicy
from feedlens.services.storage import PipelineStore
from feedlens.utils.dates import utc_date_string


@pytest.fixture
def limiter(store, clock):
    return AIRateLimiter(store, clock=clock)


def set_usage(session_factory, user_id, date, **values):
    with session_scope(session_factory) as session:
        session.execute(
            update(AIUsageDaily).where(AIUsageDaily.user_id == user_id, AIUsageDaily.date == date).values(**values)
        )


def test_fresh_user_is_allowed_with_default_limits(limiter):
    check = limiter.can_proceed("u1", "embedding")

    assert check.allowed
    assert (check.current_count, check.limit, check.remaining) == (0, 500, 500)


def test_quota_gate_closes_at_limit_until_next_utc_day(store, clock):
    limiter = AIRateLimiter(store, default_limits={"search": 2}, clock=clock)

    limiter.record_success("u1", "search", "ollama", "all-minilm", 10)
    assert limiter.can_proceed("u1", "search").remaining == 1
    limiter.record_success("u1", "search", "ollama", "all-minilm", 10)

    check = limiter.can_proceed("u1", "search")
    assert not check.allowed
    assert check.remaining == 0
    assert check.reason == "Daily search limit of 2 reached. Resets at midnight UTC."
    assert limiter.can_proceed("u2", "search").allowed
    assert limiter.can_proceed("u1", "embedding").allowed

    clock.advance(hours=9)
    assert limiter.can_proceed("u1", "search").allowed


def test_per_user_day_limit_overrides_default(store, session_factory, clock):
    limiter = AIRateLimiter(store, clock=clock)
    limiter.record_success("u1", "summary", "ollama", "llama3.2:3b", 5, 5)
    set_usage(session_factory, "u1", utc_date_string(clock()), summaries_limit=1)

    assert not limiter.can_proceed("u1", "summary").allowed


def test_usage_is_aggregated_per_day(limiter, store, session_factory, clock):
    limiter.record_success("u1", "embedding", "ollama", "all-minilm", 100)
    limiter.record_success("u1", "summary", "ollama", "llama3.2:3b", 200, 50)
    limiter.record_success("u1", "embedding", "sentence-transformers", "all-MiniLM-L6-v2", 40)
    limiter.record_failure("u1", "search", "ollama", "all-minilm", "HTTP 503")

    stats = limiter.get_usage_stats("u1")

    assert stats.daily.date == "2024-03-10"
    assert (stats.daily.embeddings, stats.daily.summaries, stats.daily.searches) == (2, 1, 1)
    assert stats.daily.total_tokens == 390
    assert stats.daily.ollama_tokens == 350
    assert stats.daily.local_tokens == 40
    assert stats.daily.estimated_cost > 0
    assert stats.remaining["embedding"] == 498
    assert stats.limits["clustering"] == 10
    assert stats.reset_at == datetime(2024, 3, 11, tzinfo=UTC)

    with session_scope(session_factory) as session:
        rows = session.query(AIUsageLog).all()
        assert len(rows) == 4
        assert sorted(row.success for row in rows) == [False, True, True, True]


def test_usage_without_user_is_logged_but_not_aggregated(limiter, session_factory):
    limiter.record_success(None, "embedding", "ollama", "all-minilm", 12)

    with session_scope(session_factory) as session:
        assert session.query(AIUsageLog).count() == 1
        assert session.query(AIUsageDaily).count() == 0


def test_usage_tracking_failures_are_swallowed(clock):
    broken = MagicMock(spec=PipelineStore)
    broken.insert_usage_log.side_effect = RuntimeError("database is down")
    limiter = AIRateLimiter(broken, clock=clock)

    limiter.record_success("u1", "embedding", "ollama", "all-minilm", 10)

    broken.increment_daily_usage.assert_not_called()


def test_historical_usage(limiter, clock):
    limiter.record_success("u1", "search", "ollama", "all-minilm", 1)
    clock.advance(days=1)
    limiter.record_success("u1", "search", "ollama", "all-minilm", 1)
    limiter.record_success("u1", "search", "ollama", "all-minilm", 1)

    history = limiter.historical_usage("u1", days=7)

    assert [(day.date, day.searches) for day in history] == [("2024-03-11", 2), ("2024-03-10", 1)]


def test_calculate_cost():
    assert calculate_cost("ollama", "llama3.2:3b", 1000, 1000) == pytest.approx(0.0003)
    assert calculate_cost("ollama", "unknown-model", 100, 50) == pytest.approx(150 * FALLBACK_COST_PER_TOKEN)
    assert calculate_cost("mystery", None, 10) == pytest.approx(10 * FALLBACK_COST_PER_TOKEN)


def test_full_embedding_quota_defers_request_to_next_midnight(store, session_factory, clock):
    limiter = AIRateLimiter(store, clock=clock)
    requests = RequestQueueManager(store, limiter)
    limiter.record_success("u1", "embedding", "ollama", "all-minilm", 1)
    set_usage(session_factory, "u1", "2024-03-10", embeddings_count=500)

    decision = requests.check_and_queue("u1", "embedding", "ollama", {"article_ids": ["a"]})

    assert not decision.can_proceed
    assert decision.limit_check.current_count == 500
    assert decision.queued_request.scheduled_for == datetime(2024, 3, 11, tzinfo=UTC)
    assert [request.operation for request in requests.user_requests("u1")] == ["embedding"]


def test_request_sweep_runs_due_requests(store, clock):
    limiter = AIRateLimiter(store, clock=clock)
    requests = RequestQueueManager(store, limiter)
    requests.queue_request("u1", "embedding", "ollama", {"article_ids": []})
    handled = []

    assert requests.process_queued_requests(handled.append).processed == 0

    clock.advance(hours=9)
    result = requests.process_queued_requests(handled.append)

    assert (result.processed, result.succeeded) == (1, 1)
    assert handled[0].user_id == "u1"
    assert requests.user_requests("u1") == []


def test_request_sweep_retries_failures_after_an_hour(store, clock):
    limiter = AIRateLimiter(store, clock=clock)
    requests = RequestQueueManager(store, limiter)
    requests.queue_request("u1", "clustering", "ollama", {})
    clock.advance(hours=9)

    def explode(request):
        raise RuntimeError("provider down")

    result = requests.process_queued_requests(explode)

    assert result.failed == 1
    assert requests.user_requests("u1")[0].scheduled_for == clock() + timedelta(hours=1)


def test_request_sweep_pushes_still_limited_requests_to_next_day(store, session_factory, clock):
    limiter = AIRateLimiter(store, default_limits={"clustering": 1}, clock=clock)
    requests = RequestQueueManager(store, limiter)
    requests.queue_request("u1", "clustering", "ollama", {})
    clock.advance(hours=9)
    limiter.record_success("u1", "clustering", "ollama", "llama3.2:3b", 0)

    result = requests.process_queued_requests(lambda request: None)

    assert result.requeued == 1
    assert requests.user_requests("u1")[0].scheduled_for == datetime(2024, 3, 12, tzinfo=UTC)


def test_batch_processor_dead_letters_exhausted_items(limiter, sleeps):
    processor = BatchProcessor(limiter, "embedding", "ollama", BackoffPolicy(delays=[1.0], sleep=sleeps))
    dead = []

    def work(item):
        if item == "bad":
            raise TransientProviderError("HTTP 500", status_code=500)
        return item.upper()

    outcome = processor.process_batch(["a", "bad", "b"], work, on_dead_letter=lambda item, error: dead.append(item))

    assert [result for _, result in outcome.successful] == ["A", "B"]
    assert [item for item, _ in outcome.dead_lettered] == ["bad"]
    assert dead == ["bad"]
    assert sleeps.delays == [1.0]


def test_batch_processor_stops_attempting_when_quota_runs_out(store, clock, sleeps):
    limiter = AIRateLimiter(store, default_limits={"summary": 1}, clock=clock)
    processor = BatchProcessor(limiter, "summary", "ollama", BackoffPolicy(sleep=sleeps))
    attempted = []

    def work(item):
        attempted.append(item)
        limiter.record_success("u1", "summary", "ollama", "llama3.2:3b", 10, 5)
        return item

    outcome = processor.process_batch([1, 2, 3], work, user_id="u1")

    assert attempted == [1]
    assert [item for item, _, _ in outcome.failed] == [2, 3]
    assert all(attempts == 0 for _, _, attempts in outcome.failed)
    assert "limit" in str(outcome.failed[0][1])


def test_batch_processor_keeps_going_when_dead_letter_callback_fails(limiter, sleeps):
    processor = BatchProcessor(limiter, "embedding", "ollama", BackoffPolicy(delays=[], sleep=sleeps))

    def broken_callback(item, error):
        raise RuntimeError("dead letter store unavailable")

    def work(item):
        raise TransientProviderError("HTTP 502", status_code=502)

    outcome = processor.process_batch(["x", "y"], work, on_dead_letter=broken_callback)

    assert len(outcome.dead_lettered) == 2


def test_dead_letter_manager(store):
    manager = DeadLetterQueueManager(store)
    first = manager.add("embedding", "ollama", {"article_id": "a"}, "HTTP 500", attempts=3)
    manager.add("summary", "ollama", {"cluster": "c"}, "HTTP 503", attempts=3, user_id="u1")

    assert [item.operation for item in manager.items()] == ["embedding", "summary"]
    assert [item.id for item in manager.items(operation="embedding")] == [first.id]

    def retry(item):
        if item.operation == "summary":
            raise RuntimeError("still failing")

    result = manager.retry_items(retry)

    assert (result.succeeded, result.failed, result.remaining) == (1, 1, 1)
    assert [item.operation for item in manager.items()] == ["summary"]
    assert manager.purge(datetime.now(tz=UTC) + timedelta(minutes=1)) == 1
    assert manager.items() == []


def test_execute_with_rate_limiting(store, clock, sleeps, session_factory):
    limiter = AIRateLimiter(store, default_limits={"summary": 1}, clock=clock)
    policy = BackoffPolicy(sleep=sleeps)

    ok = execute_with_rate_limiting(limiter, "u1", "summary", "ollama", "llama3.2:3b", lambda: ("label", 100, 20), policy)
    assert ok.success and ok.result == "label"
    assert limiter.get_usage_stats("u1").daily.total_tokens == 120

    limited = execute_with_rate_limiting(limiter, "u1", "summary", "ollama", "llama3.2:3b", lambda: ("x", 1, 1), policy)
    assert not limited.success
    assert "limit of 1 reached" in limited.error

    def fail():
        raise TransientProviderError("HTTP 503", status_code=503)

    failed = execute_with_rate_limiting(
        limiter, "u1", "summary", "ollama", "llama3.2:3b", fail, policy, skip_rate_limit_check=True
    )
    assert not failed.success
    assert "503" in failed.error
    with session_scope(session_factory) as session:
        assert session.query(AIUsageLog).filter(AIUsageLog.success.is_(False)).count() == 1
