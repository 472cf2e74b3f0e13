"""SQLAlchemy-backed storage for everything the enrichment pipeline reads and writes."""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import and_, delete, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from feedlens.models.db import (
    AIUsageDaily,
    AIUsageLog,
    Article,
    Cluster,
    ClusterSettingsRow,
    DeadLetterItem,
    EmbeddingQueueItem,
    Feed,
    FeedSubscription,
    QueuedRequest,
)
from feedlens.models.pipeline import AIOperation, AIProvider, ArticleSnapshot, QueueStats, UsageRecord
from feedlens.services.database import SessionFactory, session_scope
from feedlens.utils.dates import utcnow

log = structlog.get_logger(__name__)

DAILY_COUNTERS: dict[str, str] = {
    "embedding": "embeddings_count",
    "clustering": "clusterings_count",
    "search": "searches_count",
    "summary": "summaries_count",
}

DAILY_LIMITS: dict[str, str] = {
    "embedding": "embeddings_limit",
    "clustering": "clusterings_limit",
    "search": "searches_limit",
    "summary": "summaries_limit",
}

PROVIDER_TOKEN_COLUMNS: dict[str, str] = {
    "ollama": "ollama_tokens",
    "sentence-transformers": "local_tokens",
}


def _snapshot(article: Article, feed_name: str) -> ArticleSnapshot:
    return ArticleSnapshot(
        id=article.id,
        title=article.title,
        excerpt=article.excerpt,
        feed_id=article.feed_id,
        feed_name=feed_name,
        published_at=article.published_at,
        embedding=list(article.embedding) if article.embedding is not None else None,
    )


class PipelineStore:
    """Storage collaborator for the queue, clustering, search and usage ledger.

    Each method runs in its own short transaction so callers on different
    threads never share a session.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)

    # ------------------------------------------------------------------
    # Articles
    # ------------------------------------------------------------------

    def get_articles(self, article_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, Article]:
        ids = list(dict.fromkeys(article_ids))
        if not ids:
            return {}
        with self._session() as session:
            rows = session.query(Article).filter(Article.id.in_(ids)).all()
            return {row.id: row for row in rows}

    def get_article_snapshot(self, article_id: uuid.UUID) -> ArticleSnapshot | None:
        with self._session() as session:
            row = (
                session.query(Article, Feed.name)
                .join(Feed, Feed.id == Article.feed_id)
                .filter(Article.id == article_id)
                .first()
            )
            return _snapshot(*row) if row else None

    def update_article_embedding(self, article_id: uuid.UUID, embedding: Sequence[float], content_hash: str) -> None:
        with self._session() as session:
            session.execute(
                update(Article)
                .where(Article.id == article_id)
                .values(
                    embedding=list(embedding),
                    content_hash=content_hash,
                    embedding_status="completed",
                    embedding_error=None,
                    embedded_at=utcnow(),
                )
            )

    def mark_article_embedding_failed(self, article_id: uuid.UUID, error: str) -> None:
        with self._session() as session:
            session.execute(
                update(Article)
                .where(Article.id == article_id)
                .values(embedding_status="failed", embedding_error=error)
            )

    def user_feed_ids(self, user_id: str) -> set[uuid.UUID]:
        with self._session() as session:
            rows = session.query(FeedSubscription.feed_id).filter(FeedSubscription.user_id == user_id).all()
            return {row.feed_id for row in rows}

    def _scoped_articles(
        self,
        session: Session,
        user_id: str | None,
        feed_ids: Iterable[uuid.UUID] | None,
        since: datetime | None,
    ) -> Query:
        query = session.query(Article, Feed.name).join(Feed, Feed.id == Article.feed_id)
        if user_id is not None:
            query = query.join(
                FeedSubscription,
                and_(FeedSubscription.feed_id == Article.feed_id, FeedSubscription.user_id == user_id),
            )
        if feed_ids is not None:
            query = query.filter(Article.feed_id.in_(list(feed_ids)))
        if since is not None:
            query = query.filter(
                or_(
                    Article.published_at >= since,
                    and_(Article.published_at.is_(None), Article.created_at >= since),
                )
            )
        return query.order_by(Article.published_at.desc().nulls_last(), Article.created_at.desc())

    def articles_with_embeddings(
        self,
        user_id: str | None = None,
        feed_ids: Iterable[uuid.UUID] | None = None,
        hours_back: float | None = None,
    ) -> list[ArticleSnapshot]:
        """Completed embeddings only, newest first, scoped by subscription, feed and window."""

        since = utcnow() - timedelta(hours=hours_back) if hours_back is not None else None
        with self._session() as session:
            query = self._scoped_articles(session, user_id, feed_ids, since)
            query = query.filter(Article.embedding.is_not(None), Article.embedding_status == "completed")
            return [_snapshot(article, name) for article, name in query.all()]

    def recent_articles(
        self,
        user_id: str | None = None,
        feed_ids: Iterable[uuid.UUID] | None = None,
        hours_back: float | None = None,
        limit: int | None = None,
    ) -> list[ArticleSnapshot]:
        since = utcnow() - timedelta(hours=hours_back) if hours_back is not None else None
        with self._session() as session:
            query = self._scoped_articles(session, user_id, feed_ids, since)
            if limit is not None:
                query = query.limit(limit)
            return [_snapshot(article, name) for article, name in query.all()]

    # ------------------------------------------------------------------
    # Embedding queue
    # ------------------------------------------------------------------

    def add_to_embedding_queue(self, article_ids: Iterable[uuid.UUID], priority: int = 0, max_attempts: int = 3) -> int:
        """Insert queue items for articles not already queued; returns the number inserted."""

        ids = list(dict.fromkeys(article_ids))
        if not ids:
            return 0
        with self._session() as session:
            existing = {
                row.article_id
                for row in session.query(EmbeddingQueueItem.article_id).filter(EmbeddingQueueItem.article_id.in_(ids))
            }
            fresh = [article_id for article_id in ids if article_id not in existing]
            session.add_all(
                EmbeddingQueueItem(article_id=article_id, priority=priority, max_attempts=max_attempts)
                for article_id in fresh
            )
        return len(fresh)

    def claim_pending_queue_items(self, limit: int) -> list[EmbeddingQueueItem]:
        """Select pending items by priority then age and mark them processing."""

        with self._session() as session:
            items = (
                session.query(EmbeddingQueueItem)
                .filter(EmbeddingQueueItem.status == "pending")
                .order_by(EmbeddingQueueItem.priority.desc(), EmbeddingQueueItem.created_at.asc())
                .limit(limit)
                .all()
            )
            for item in items:
                item.status = "processing"
            return items

    def release_processing_queue_items(self) -> int:
        """Return items orphaned in ``processing`` by a crashed drain to ``pending``."""

        with self._session() as session:
            result = session.execute(
                update(EmbeddingQueueItem)
                .where(EmbeddingQueueItem.status == "processing")
                .values(status="pending")
            )
            return result.rowcount or 0

    def remove_queue_item(self, item_id: uuid.UUID) -> None:
        with self._session() as session:
            session.execute(delete(EmbeddingQueueItem).where(EmbeddingQueueItem.id == item_id))

    def record_queue_failure(self, item_id: uuid.UUID, error: str) -> str | None:
        """Count one failed attempt; returns the item's new status."""

        with self._session() as session:
            item = session.get(EmbeddingQueueItem, item_id)
            if item is None:
                return None
            item.attempts += 1
            item.last_attempt_at = utcnow()
            item.error_message = error
            item.status = "dead_letter" if item.attempts >= item.max_attempts else "pending"
            return item.status

    def count_queue_items(self, status: str = "pending") -> int:
        with self._session() as session:
            return session.query(func.count(EmbeddingQueueItem.id)).filter(EmbeddingQueueItem.status == status).scalar() or 0

    def queue_stats(self) -> QueueStats:
        with self._session() as session:
            rows = session.query(EmbeddingQueueItem.status, func.count(EmbeddingQueueItem.id)).group_by(
                EmbeddingQueueItem.status
            )
            counts = {status: count for status, count in rows}
        return QueueStats(
            pending=counts.get("pending", 0),
            processing=counts.get("processing", 0),
            failed=counts.get("failed", 0),
            dead_letter=counts.get("dead_letter", 0),
        )

    def requeue_dead_letters(self, limit: int | None = None) -> int:
        with self._session() as session:
            query = session.query(EmbeddingQueueItem).filter(EmbeddingQueueItem.status == "dead_letter")
            query = query.order_by(EmbeddingQueueItem.created_at.asc())
            if limit is not None:
                query = query.limit(limit)
            items = query.all()
            for item in items:
                item.status = "pending"
                item.attempts = 0
                item.error_message = None
            return len(items)

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------

    def save_cluster(
        self,
        *,
        title: str,
        summary: str,
        article_ids: Sequence[uuid.UUID],
        source_feeds: Sequence[str],
        avg_similarity: float,
        relevance_score: float,
        timeframe_start: datetime | None,
        timeframe_end: datetime | None,
        expires_at: datetime,
        generation_method: str,
        user_id: str | None = None,
    ) -> Cluster:
        """Persist a cluster and point every member article at it, in one transaction."""

        with self._session() as session:
            cluster = Cluster(
                title=title,
                summary=summary,
                user_id=user_id,
                article_ids=[str(article_id) for article_id in article_ids],
                article_count=len(article_ids),
                source_feeds=list(source_feeds),
                avg_similarity=avg_similarity,
                relevance_score=relevance_score,
                timeframe_start=timeframe_start,
                timeframe_end=timeframe_end,
                expires_at=expires_at,
                generation_method=generation_method,
            )
            session.add(cluster)
            session.flush()
            session.execute(
                update(Article).where(Article.id.in_(list(article_ids))).values(cluster_id=cluster.id)
            )
            return cluster

    def user_clusters(self, user_id: str | None, now: datetime, limit: int | None = None) -> list[Cluster]:
        with self._session() as session:
            query = session.query(Cluster).filter(Cluster.expires_at > now)
            if user_id is not None:
                query = query.filter(or_(Cluster.user_id.is_(None), Cluster.user_id == user_id))
            else:
                query = query.filter(Cluster.user_id.is_(None))
            query = query.order_by(Cluster.relevance_score.desc(), Cluster.created_at.desc())
            if limit is not None:
                query = query.limit(limit)
            return query.all()

    def delete_expired_clusters(self, now: datetime) -> int:
        with self._session() as session:
            result = session.execute(delete(Cluster).where(Cluster.expires_at < now))
            return result.rowcount or 0

    def cluster_settings(self) -> ClusterSettingsRow | None:
        with self._session() as session:
            return session.get(ClusterSettingsRow, 1)

    def save_cluster_settings(self, **overrides: Any) -> ClusterSettingsRow:
        with self._session() as session:
            row = session.get(ClusterSettingsRow, 1) or ClusterSettingsRow(id=1)
            for name, value in overrides.items():
                setattr(row, name, value)
            session.add(row)
            return row

    # ------------------------------------------------------------------
    # Usage ledger
    # ------------------------------------------------------------------

    def insert_usage_log(self, user_id: str | None, record: UsageRecord) -> None:
        with self._session() as session:
            session.add(
                AIUsageLog(
                    user_id=user_id,
                    operation=record.operation,
                    provider=record.provider,
                    model=record.model,
                    token_count=record.token_count,
                    input_tokens=record.input_tokens,
                    output_tokens=record.output_tokens,
                    estimated_cost=record.estimated_cost,
                    success=record.success,
                    error_message=record.error_message,
                    latency_ms=record.latency_ms,
                    request_metadata=record.metadata,
                )
            )

    def get_daily_usage(self, user_id: str, date: str) -> AIUsageDaily | None:
        with self._session() as session:
            return (
                session.query(AIUsageDaily)
                .filter(AIUsageDaily.user_id == user_id, AIUsageDaily.date == date)
                .first()
            )

    def ensure_daily_usage(self, user_id: str, date: str, limits: dict[str, int]) -> None:
        """Create the (user, date) row lazily; a concurrent creator wins harmlessly."""

        if self.get_daily_usage(user_id, date) is not None:
            return
        values = {DAILY_LIMITS[operation]: limit for operation, limit in limits.items() if operation in DAILY_LIMITS}
        try:
            with self._session() as session:
                session.add(AIUsageDaily(user_id=user_id, date=date, **values))
        except IntegrityError:
            log.debug("daily_usage_row_exists", user_id=user_id, date=date)

    def increment_daily_usage(
        self,
        user_id: str,
        date: str,
        operation: AIOperation,
        token_count: int,
        provider: AIProvider,
        cost: float,
        limits: dict[str, int],
    ) -> None:
        """Add one call to the day's aggregate with a single UPDATE, so increments never get lost."""

        self.ensure_daily_usage(user_id, date, limits)
        values: dict[str, Any] = {
            DAILY_COUNTERS[operation]: getattr(AIUsageDaily, DAILY_COUNTERS[operation]) + 1,
            "total_tokens": AIUsageDaily.total_tokens + token_count,
            "estimated_cost": AIUsageDaily.estimated_cost + cost,
            "updated_at": utcnow(),
        }
        token_column = PROVIDER_TOKEN_COLUMNS.get(provider)
        if token_column is not None:
            values[token_column] = getattr(AIUsageDaily, token_column) + token_count
        with self._session() as session:
            session.execute(
                update(AIUsageDaily)
                .where(AIUsageDaily.user_id == user_id, AIUsageDaily.date == date)
                .values(**values)
            )

    def usage_history(self, user_id: str, since_date: str) -> list[AIUsageDaily]:
        with self._session() as session:
            return (
                session.query(AIUsageDaily)
                .filter(AIUsageDaily.user_id == user_id, AIUsageDaily.date >= since_date)
                .order_by(AIUsageDaily.date.desc())
                .all()
            )

    # ------------------------------------------------------------------
    # Dead letters and deferred requests
    # ------------------------------------------------------------------

    def add_dead_letter(
        self,
        operation: AIOperation,
        provider: AIProvider,
        payload: Any,
        error_message: str,
        attempts: int,
        user_id: str | None = None,
    ) -> DeadLetterItem:
        with self._session() as session:
            item = DeadLetterItem(
                operation=operation,
                provider=provider,
                user_id=user_id,
                payload=payload,
                error_message=error_message,
                attempts=attempts,
                last_attempt_at=utcnow(),
            )
            session.add(item)
            return item

    def list_dead_letters(self, limit: int = 100, operation: AIOperation | None = None) -> list[DeadLetterItem]:
        with self._session() as session:
            query = session.query(DeadLetterItem)
            if operation is not None:
                query = query.filter(DeadLetterItem.operation == operation)
            return query.order_by(DeadLetterItem.created_at.asc()).limit(limit).all()

    def count_dead_letters(self) -> int:
        with self._session() as session:
            return session.query(func.count(DeadLetterItem.id)).scalar() or 0

    def remove_dead_letter(self, item_id: uuid.UUID) -> None:
        with self._session() as session:
            session.execute(delete(DeadLetterItem).where(DeadLetterItem.id == item_id))

    def purge_dead_letters(self, older_than: datetime) -> int:
        with self._session() as session:
            result = session.execute(delete(DeadLetterItem).where(DeadLetterItem.created_at < older_than))
            return result.rowcount or 0

    def add_queued_request(
        self,
        user_id: str,
        operation: AIOperation,
        provider: AIProvider,
        payload: Any,
        scheduled_for: datetime,
        priority: int = 0,
    ) -> QueuedRequest:
        with self._session() as session:
            request = QueuedRequest(
                user_id=user_id,
                operation=operation,
                provider=provider,
                payload=payload,
                priority=priority,
                scheduled_for=scheduled_for,
            )
            session.add(request)
            return request

    def queued_requests(self, user_id: str, operation: AIOperation | None = None) -> list[QueuedRequest]:
        with self._session() as session:
            query = session.query(QueuedRequest).filter(QueuedRequest.user_id == user_id)
            if operation is not None:
                query = query.filter(QueuedRequest.operation == operation)
            return query.order_by(QueuedRequest.scheduled_for.asc()).all()

    def due_queued_requests(self, now: datetime, limit: int = 100) -> list[QueuedRequest]:
        with self._session() as session:
            return (
                session.query(QueuedRequest)
                .filter(QueuedRequest.scheduled_for <= now)
                .order_by(QueuedRequest.priority.desc(), QueuedRequest.scheduled_for.asc())
                .limit(limit)
                .all()
            )

    def reschedule_queued_request(self, request_id: uuid.UUID, scheduled_for: datetime) -> None:
        with self._session() as session:
            session.execute(
                update(QueuedRequest).where(QueuedRequest.id == request_id).values(scheduled_for=scheduled_for)
            )

    def remove_queued_request(self, request_id: uuid.UUID) -> None:
        with self._session() as session:
            session.execute(delete(QueuedRequest).where(QueuedRequest.id == request_id))
