"""Plain result structures passed between pipeline components and callers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from feedlens.utils.dates import ensure_utc

AIOperation = Literal["embedding", "clustering", "search", "summary"]
AIProvider = Literal["ollama", "sentence-transformers"]
EmbeddingStatus = Literal["pending", "completed", "failed"]
QueueStatus = Literal["pending", "processing", "failed", "dead_letter"]
ClusterMethod = Literal["vector", "keyword", "none"]

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Articles
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ArticleSnapshot:
    """Read-only view of an article as the pipeline sees it."""

    id: uuid.UUID
    title: str
    excerpt: str | None
    feed_id: uuid.UUID
    feed_name: str
    published_at: datetime | None
    embedding: list[float] | None = None

    @property
    def text(self) -> str:
        return f"{self.title} {self.excerpt or ''}"


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------


class EmbeddingResult(BaseModel):
    article_id: uuid.UUID
    success: bool
    embedding: list[float] | None = None
    token_count: int = 0
    content_hash: str | None = None
    error: str | None = None
    attempts: int = 0
    retry_delay_seconds: float = 0.0


class BatchEmbeddingResult(BaseModel):
    successful: list[EmbeddingResult] = Field(default_factory=list)
    failed: list[EmbeddingResult] = Field(default_factory=list)
    total_tokens: int = 0
    processing_time_ms: int = 0


class QueueProcessResult(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    remaining_in_queue: int = 0


class QueueStats(BaseModel):
    pending: int = 0
    processing: int = 0
    failed: int = 0
    dead_letter: int = 0


# ---------------------------------------------------------------------------
# Clustering
# ---------------------------------------------------------------------------


class ClusterSettings(BaseModel):
    min_sources: int = 3
    min_articles: int = 3
    similarity_threshold: float = 0.6
    keyword_overlap_min: int = 3
    time_window_hours: float = 48.0


@dataclass
class ClusterCandidate:
    members: list[ArticleSnapshot]
    avg_similarity: float
    sources: set[str] = field(default_factory=set)

    @property
    def article_ids(self) -> list[uuid.UUID]:
        return [member.id for member in self.members]


class ClusterLabel(BaseModel):
    topic: str
    summary: str


class ClusterView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    topic: str
    summary: str
    article_ids: list[uuid.UUID]
    article_count: int
    sources: list[str]
    avg_similarity: float
    latest_timestamp: datetime | None
    relevance_score: float
    expires_at: datetime


class ClusterGenerationResult(BaseModel):
    clusters: list[ClusterView] = Field(default_factory=list)
    articles_processed: int = 0
    clusters_created: int = 0
    processing_time_ms: int = 0
    method: ClusterMethod = "none"


class SimilarArticle(BaseModel):
    article_id: uuid.UUID
    title: str
    feed_name: str
    feed_id: uuid.UUID
    similarity_score: float
    published_at: datetime | None


# ---------------------------------------------------------------------------
# Usage ledger
# ---------------------------------------------------------------------------


class RateLimitCheck(BaseModel):
    allowed: bool
    current_count: int
    limit: int
    remaining: int
    reason: str | None = None


class DailyUsage(BaseModel):
    date: str | None = None
    embeddings: int = 0
    clusterings: int = 0
    searches: int = 0
    summaries: int = 0
    total_tokens: int = 0
    ollama_tokens: int = 0
    local_tokens: int = 0
    estimated_cost: float = 0.0


class UsageStats(BaseModel):
    daily: DailyUsage
    limits: dict[str, int]
    remaining: dict[str, int]
    reset_at: datetime


class UsageRecord(BaseModel):
    """One AI call, successful or not, as written to the detailed usage log."""

    operation: AIOperation
    provider: AIProvider
    model: str | None = None
    token_count: int = 0
    input_tokens: int | None = None
    output_tokens: int | None = None
    estimated_cost: float = 0.0
    success: bool = True
    error_message: str | None = None
    latency_ms: int | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class RetryResult(Generic[T]):
    success: bool
    result: T | None = None
    error: BaseException | None = None
    attempts: int = 0
    total_delay_seconds: float = 0.0


@dataclass
class BatchOutcome(Generic[T]):
    successful: list[tuple[Any, T]] = field(default_factory=list)
    failed: list[tuple[Any, BaseException, int]] = field(default_factory=list)
    dead_lettered: list[tuple[Any, BaseException]] = field(default_factory=list)


class DeadLetterEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    operation: AIOperation
    provider: AIProvider
    user_id: str | None
    payload: Any
    error_message: str
    attempts: int
    last_attempt_at: datetime
    created_at: datetime


class QueuedRequestEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: str
    operation: AIOperation
    provider: AIProvider
    payload: Any
    priority: int
    scheduled_for: datetime
    created_at: datetime


class QueueSweepResult(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    requeued: int = 0


class DeadLetterRetryResult(BaseModel):
    succeeded: int = 0
    failed: int = 0
    remaining: int = 0


class QueueDecision(BaseModel):
    can_proceed: bool
    limit_check: RateLimitCheck
    queued_request: QueuedRequestEntry | None = None


@dataclass
class RateLimitedResult(Generic[T]):
    success: bool
    result: T | None = None
    error: str | None = None
    queued: bool = False


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


class SearchOptions(BaseModel):
    user_id: str
    max_results: int = 50
    min_score: float | None = None
    feed_ids: list[uuid.UUID] | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None

    @field_validator("date_from", "date_to")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None


class SearchResultArticle(BaseModel):
    id: uuid.UUID
    title: str
    excerpt: str | None
    feed_name: str
    feed_id: uuid.UUID
    published_at: datetime | None
    relevance_score: float


class SearchResult(BaseModel):
    articles: list[SearchResultArticle] = Field(default_factory=list)
    query: str
    total_results: int = 0
    processing_time_ms: int = 0
    fallback_used: bool = False
    notice: str | None = None


# ---------------------------------------------------------------------------
# Scheduler and feed-sync integration
# ---------------------------------------------------------------------------


class SchedulerStats(BaseModel):
    embeddings_processed: int = 0
    embeddings_failed: int = 0
    clusters_generated: int = 0
    clusters_expired: int = 0
    requests_swept: int = 0
    last_embedding_run: datetime | None = None
    last_clustering_run: datetime | None = None
    last_cleanup_run: datetime | None = None
    last_request_sweep: datetime | None = None
    errors: list[str] = Field(default_factory=list)
    is_running: bool = False
    services: dict[str, bool] = Field(default_factory=dict)


class FeedSyncResult(BaseModel):
    feed_id: uuid.UUID
    embeddings_queued: int = 0
    clustering_pending: bool = False


class BatchSyncResult(BaseModel):
    feeds: int = 0
    total_embeddings_queued: int = 0
    drain: QueueProcessResult | None = None
    clustering_triggered: bool = False


class PipelineStatus(BaseModel):
    embedding_service_available: bool
    clustering_service_available: bool
    labeling_service_available: bool
    embedding_queue_stats: QueueStats | None = None
