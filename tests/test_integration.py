from unittest.mock import MagicMock

import pytest

from conftest import FailingEmbeddingProvider, FakeEmbeddingProvider
from feedlens.services.runtime import build_pipeline


@pytest.fixture
def provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def pipeline(config, session_factory, provider, sleeps):
    return build_pipeline(config, session_factory, embedding_provider=provider, labeling_provider=None, sleep=sleeps)


@pytest.fixture
def feed_id(seed):
    return seed.feed("Capitol Wire", subscribers=["u1"])


def test_sync_queues_only_articles_that_need_embeddings(pipeline, seed, feed_id):
    fresh = seed.article(feed_id, "Senate passes budget bill")
    done = seed.article(feed_id, "Congress approves funding", embedding=[1.0, 0.0, 0.0, 0.0])
    integration = pipeline.integration

    result = integration.on_sync_complete(feed_id, [fresh, done])

    assert result.embeddings_queued == 1
    assert result.clustering_pending
    assert integration.clustering_pending
    assert pipeline.queue.queue_stats().pending == 1
    assert integration.on_sync_complete(feed_id, [fresh]).embeddings_queued == 0


def test_sync_without_embedding_provider_is_a_no_op(config, session_factory, seed, feed_id, sleeps):
    pipeline = build_pipeline(config, session_factory, embedding_provider=None, labeling_provider=None, sleep=sleeps)
    article_id = seed.article(feed_id, "Senate passes budget bill")

    result = pipeline.integration.on_sync_complete(feed_id, [article_id])

    assert result.embeddings_queued == 0
    assert not result.clustering_pending
    assert pipeline.queue.queue_stats().pending == 0


def test_successful_drain_clears_pending_clustering(pipeline, seed, feed_id):
    integration = pipeline.integration
    integration.on_sync_complete(feed_id, [seed.article(feed_id, "Senate passes budget bill")])

    result = integration.process_embedding_queue()

    assert result.succeeded == 1
    assert not integration.clustering_pending
    assert pipeline.runtime.stats().last_clustering_run is not None


def test_failed_drain_keeps_clustering_pending(config, session_factory, seed, feed_id, sleeps):
    pipeline = build_pipeline(
        config, session_factory, embedding_provider=FailingEmbeddingProvider(), labeling_provider=None, sleep=sleeps
    )
    integration = pipeline.integration
    integration.on_sync_complete(feed_id, [seed.article(feed_id, "Senate passes budget bill")])

    result = integration.process_embedding_queue()

    assert result.failed == 1
    assert integration.clustering_pending
    assert pipeline.runtime.stats().last_clustering_run is None


def test_failing_drain_listener_keeps_the_drain_result(pipeline, seed, feed_id, monkeypatch):
    monkeypatch.setattr(
        pipeline.runtime.clustering, "generate_clusters", MagicMock(side_effect=RuntimeError("clustering store down"))
    )
    seen = []
    pipeline.runtime.add_drain_listener(seen.append)
    integration = pipeline.integration
    integration.on_sync_complete(feed_id, [seed.article(feed_id, "Senate passes budget bill")])

    result = integration.process_embedding_queue()

    assert result.succeeded == 1
    assert seen == [result]
    assert pipeline.runtime.stats().embeddings_processed == 1
    assert pipeline.runtime.stats().errors == ["drain listener error: clustering store down"]

    batch = integration.on_batch_sync_complete({feed_id: [seed.article(feed_id, "Congress approves funding")]})

    assert batch.drain.succeeded == 1
    assert len(seen) == 2
    assert len(pipeline.runtime.stats().errors) == 2


def test_batch_sync_drains_once_and_regenerates_clusters(pipeline, seed, feed_id, provider):
    other_feed = seed.feed("Daily Ledger")
    syncs = {
        feed_id: [seed.article(feed_id, "Senate passes budget bill")],
        other_feed: [seed.article(other_feed, "Congress approves funding"), seed.article(other_feed, "Lawmakers vote")],
    }

    result = pipeline.integration.on_batch_sync_complete(syncs)

    assert result.feeds == 2
    assert result.total_embeddings_queued == 3
    assert result.drain.succeeded == 3
    assert result.clustering_triggered
    assert len(provider.calls) == 3
    assert not pipeline.integration.clustering_pending


def test_batch_sync_with_nothing_new(pipeline, feed_id):
    result = pipeline.integration.on_batch_sync_complete({feed_id: []})

    assert result.total_embeddings_queued == 0
    assert result.drain is None
    assert not result.clustering_triggered


def test_requested_embeddings_are_charged_to_the_user(pipeline, seed, feed_id):
    article_id = seed.article(feed_id, "Senate passes budget bill")

    decision = pipeline.integration.request_embeddings("u1", [article_id])

    assert decision.can_proceed
    assert pipeline.queue.queue_stats().pending == 1
    assert pipeline.limiter.get_usage_stats("u1").daily.embeddings == 1
    assert pipeline.integration.clustering_pending


def test_requested_embeddings_over_quota_are_deferred(config, session_factory, seed, feed_id, sleeps):
    limited = config.model_copy(update={"embeddings_per_day": 0})
    pipeline = build_pipeline(
        limited, session_factory, embedding_provider=FakeEmbeddingProvider(), labeling_provider=None, sleep=sleeps
    )
    article_id = seed.article(feed_id, "Senate passes budget bill")

    decision = pipeline.integration.request_embeddings("u1", [article_id])

    assert not decision.can_proceed
    assert decision.queued_request.payload["article_ids"] == [str(article_id)]
    assert decision.queued_request.payload["priority"] == 1
    assert pipeline.queue.queue_stats().pending == 0
    assert [request.operation for request in pipeline.requests.user_requests("u1")] == ["embedding"]


def test_request_embeddings_without_provider(config, session_factory, seed, feed_id, sleeps):
    pipeline = build_pipeline(config, session_factory, embedding_provider=None, labeling_provider=None, sleep=sleeps)

    assert pipeline.integration.request_embeddings("u1", [seed.article(feed_id, "Senate passes budget bill")]) is None


def test_user_clustering_is_charged_or_deferred(config, session_factory, sleeps):
    pipeline = build_pipeline(
        config, session_factory, embedding_provider=FakeEmbeddingProvider(), labeling_provider=None, sleep=sleeps
    )
    assert pipeline.integration.trigger_clustering("u1") is not None
    assert pipeline.limiter.get_usage_stats("u1").daily.clusterings == 1

    limited = build_pipeline(
        config.model_copy(update={"clusterings_per_day": 0}),
        session_factory,
        embedding_provider=FakeEmbeddingProvider(),
        labeling_provider=None,
        sleep=sleeps,
    )
    assert limited.integration.trigger_clustering("u2") is None
    assert [request.operation for request in limited.requests.user_requests("u2")] == ["clustering"]


def test_pipeline_status(pipeline, config, session_factory, sleeps):
    status = pipeline.integration.pipeline_status()
    assert status.embedding_service_available
    assert status.clustering_service_available
    assert not status.labeling_service_available
    assert status.embedding_queue_stats.pending == 0

    bare = build_pipeline(config, session_factory, embedding_provider=None, labeling_provider=None, sleep=sleeps)
    assert bare.integration.pipeline_status().embedding_queue_stats is None


def test_expire_old_clusters_delegates_to_cleanup(pipeline):
    assert pipeline.integration.expire_old_clusters() == 0
    assert pipeline.runtime.stats().last_cleanup_run is not None
