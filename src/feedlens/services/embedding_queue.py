"""Durable queue of articles waiting for an embedding."""

from __future__ import annotations

import uuid
from collections.abc import Iterable

import structlog

from feedlens.config import MAX_EMBEDDING_BATCH_SIZE
from feedlens.models.db import Article, EmbeddingQueueItem
from feedlens.models.pipeline import EmbeddingResult, QueueProcessResult, QueueStats
from feedlens.services.embeddings import EmbeddingGenerator, needs_embedding_update
from feedlens.services.storage import PipelineStore

log = structlog.get_logger(__name__)


class EmbeddingQueueManager:
    def __init__(
        self,
        store: PipelineStore,
        generator: EmbeddingGenerator,
        batch_size: int = 50,
        max_attempts: int = 3,
    ) -> None:
        self.store = store
        self.generator = generator
        self.batch_size = min(batch_size, MAX_EMBEDDING_BATCH_SIZE)
        self.max_attempts = max_attempts

    @property
    def available(self) -> bool:
        return self.generator.available

    def enqueue(self, article_ids: Iterable[uuid.UUID], priority: int = 0) -> int:
        """Queue articles for embedding. Articles already queued are left alone."""

        inserted = self.store.add_to_embedding_queue(article_ids, priority=priority, max_attempts=self.max_attempts)
        if inserted:
            log.info("articles_enqueued", count=inserted, priority=priority)
        return inserted

    def drain(self, batch_size: int | None = None) -> QueueProcessResult:
        """Embed up to ``batch_size`` pending articles (never more than 100).

        Successful items leave the queue. Failed items stay pending until they
        have used ``max_attempts`` drains, then move to ``dead_letter`` and
        their article is marked failed.
        """

        if not self.generator.available:
            log.warning("embedding_provider_unavailable")
            return QueueProcessResult(remaining_in_queue=self.store.count_queue_items("pending"))

        limit = max(1, min(batch_size or self.batch_size, MAX_EMBEDDING_BATCH_SIZE))
        items = self.store.claim_pending_queue_items(limit)
        result = QueueProcessResult()
        if not items:
            result.remaining_in_queue = self.store.count_queue_items("pending")
            return result

        articles = self.store.get_articles(item.article_id for item in items)
        work: list[tuple[EmbeddingQueueItem, Article]] = []
        for item in items:
            article = articles.get(item.article_id)
            if article is None:
                self.store.remove_queue_item(item.id)
                log.debug("queued_article_missing", article_id=str(item.article_id))
                continue
            if not needs_embedding_update(article):
                self.store.remove_queue_item(item.id)
                log.debug("article_content_unchanged", article_id=str(article.id))
                continue
            work.append((item, article))

        if work:
            batch = self.generator.generate_batch([article for _, article in work])
            outcomes = {outcome.article_id: outcome for outcome in [*batch.successful, *batch.failed]}
            for item, article in work:
                result.processed += 1
                if self._settle(item, outcomes[article.id]):
                    result.succeeded += 1
                else:
                    result.failed += 1

        result.remaining_in_queue = self.store.count_queue_items("pending")
        log.info(
            "embedding_queue_drained",
            processed=result.processed,
            succeeded=result.succeeded,
            failed=result.failed,
            remaining=result.remaining_in_queue,
        )
        return result

    def _settle(self, item: EmbeddingQueueItem, outcome: EmbeddingResult) -> bool:
        if not (outcome.success and outcome.embedding is not None and outcome.content_hash is not None):
            self._fail(item, outcome.error or "Unknown error")
            return False
        try:
            self.store.update_article_embedding(item.article_id, outcome.embedding, outcome.content_hash)
            self.store.remove_queue_item(item.id)
        except Exception as exc:
            log.exception("embedding_persist_failed", article_id=str(item.article_id))
            self._fail(item, str(exc))
            return False
        return True

    def _fail(self, item: EmbeddingQueueItem, error: str) -> None:
        status = self.store.record_queue_failure(item.id, error)
        if status == "dead_letter":
            self.store.mark_article_embedding_failed(item.article_id, error)
            log.error(
                "queue_item_dead_lettered",
                article_id=str(item.article_id),
                attempts=item.attempts + 1,
                error=error,
            )

    def queue_stats(self) -> QueueStats:
        return self.store.queue_stats()

    def requeue_dead_letters(self, limit: int | None = None) -> int:
        """Give dead-lettered items a fresh set of attempts."""

        count = self.store.requeue_dead_letters(limit)
        log.info("dead_letters_requeued", count=count)
        return count
