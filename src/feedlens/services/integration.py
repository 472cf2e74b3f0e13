"""Hooks the external feed-sync step calls into."""

from __future__ import annotations

import threading
import uuid
from collections.abc import Iterable, Mapping

import structlog

from feedlens.models.db import Article
from feedlens.models.pipeline import (
    BatchSyncResult,
    ClusterGenerationResult,
    FeedSyncResult,
    PipelineStatus,
    QueueDecision,
    QueueProcessResult,
)
from feedlens.services.embeddings import needs_embedding_update
from feedlens.services.scheduler import PipelineRuntime

log = structlog.get_logger(__name__)

SYNC_PRIORITY = 0
USER_REQUEST_PRIORITY = 1


class FeedSyncIntegration:
    """Queues new articles after a sync and arms cluster regeneration.

    Clustering is not run on every sync. A sync that queues anything sets a
    pending flag, and the next drain that embeds at least one article clears
    it by regenerating clusters.
    """

    def __init__(self, runtime: PipelineRuntime) -> None:
        self.runtime = runtime
        self._lock = threading.Lock()
        self._clustering_pending = False
        runtime.add_drain_listener(self._after_drain)

    @property
    def clustering_pending(self) -> bool:
        with self._lock:
            return self._clustering_pending

    def _set_pending(self, value: bool) -> None:
        with self._lock:
            self._clustering_pending = value

    def _articles_to_embed(self, article_ids: Iterable[uuid.UUID]) -> list[uuid.UUID]:
        articles: dict[uuid.UUID, Article] = self.runtime.queue.store.get_articles(article_ids)
        return [article_id for article_id, article in articles.items() if needs_embedding_update(article)]

    def on_sync_complete(self, feed_id: uuid.UUID, new_article_ids: Iterable[uuid.UUID]) -> FeedSyncResult:
        """Queue a feed's new articles for embedding."""

        result = FeedSyncResult(feed_id=feed_id)
        if not self.runtime.queue.available:
            log.debug("sync_embeddings_unavailable", feed_id=str(feed_id))
            return result

        ids = self._articles_to_embed(new_article_ids)
        if ids:
            result.embeddings_queued = self.runtime.queue.enqueue(ids, priority=SYNC_PRIORITY)
            self._set_pending(True)
        result.clustering_pending = self.clustering_pending
        log.info("feed_sync_completed", feed_id=str(feed_id), queued=result.embeddings_queued)
        return result

    def on_batch_sync_complete(self, syncs: Mapping[uuid.UUID, Iterable[uuid.UUID]]) -> BatchSyncResult:
        result = BatchSyncResult(feeds=len(syncs))
        for feed_id, article_ids in syncs.items():
            result.total_embeddings_queued += self.on_sync_complete(feed_id, article_ids).embeddings_queued

        if result.total_embeddings_queued:
            # A drain that embedded something has already regenerated clusters.
            result.drain = self.runtime.trigger_embedding_processing()
            if self.clustering_pending:
                self.trigger_clustering()
            result.clustering_triggered = True
        return result

    def request_embeddings(self, user_id: str, article_ids: Iterable[uuid.UUID]) -> QueueDecision | None:
        """Re-embed articles on a user's behalf, deferring to midnight when over quota.

        Returns None when no request manager is wired in.
        """

        requests = self.runtime.requests
        generator = self.runtime.queue.generator
        if requests is None or generator.provider is None:
            return None

        ids = [str(article_id) for article_id in article_ids]
        payload = {"article_ids": ids, "priority": USER_REQUEST_PRIORITY, "model": generator.provider.model}
        decision = requests.check_and_queue(user_id, "embedding", generator.provider.name, payload)
        if decision.can_proceed and self.runtime.run_embedding_request(user_id, generator.provider.name, payload):
            self._set_pending(True)
        return decision

    def process_embedding_queue(self) -> QueueProcessResult:
        return self.runtime.trigger_embedding_processing()

    def _after_drain(self, result: QueueProcessResult) -> None:
        if result.succeeded > 0:
            self.trigger_clustering_if_pending()

    def trigger_clustering_if_pending(self) -> ClusterGenerationResult | None:
        if not self.clustering_pending:
            return None
        return self.trigger_clustering()

    def trigger_clustering(self, user_id: str | None = None) -> ClusterGenerationResult | None:
        """Regenerate clusters now, or defer when ``user_id`` is over quota.

        Returns None when the request was deferred.
        """

        requests = self.runtime.requests
        labeler = self.runtime.clustering.labeler
        provider_name = labeler.provider.name if labeler.provider is not None else "ollama"
        if user_id and requests is not None:
            decision = requests.check_and_queue(user_id, "clustering", provider_name, {"user_id": user_id})
            if not decision.can_proceed:
                log.info("clustering_deferred", user_id=user_id, reason=decision.limit_check.reason)
                return None

        self._set_pending(False)
        if user_id:
            return self.runtime.run_clustering_request(user_id, provider_name)
        return self.runtime.trigger_cluster_generation()

    def expire_old_clusters(self) -> int:
        return self.runtime.trigger_cleanup()

    def pipeline_status(self) -> PipelineStatus:
        queue = self.runtime.queue
        return PipelineStatus(
            embedding_service_available=queue.available,
            clustering_service_available=True,
            labeling_service_available=self.runtime.clustering.labeler.available,
            embedding_queue_stats=queue.queue_stats() if queue.available else None,
        )
