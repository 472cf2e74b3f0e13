"""Builds the pipeline's components from configuration."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from feedlens.config import AppConfig
from feedlens.services.cache import TTLCache
from feedlens.services.clustering import ClusteringManager
from feedlens.services.database import SessionFactory, build_engine, create_session_factory, init_database
from feedlens.services.embedding_queue import EmbeddingQueueManager
from feedlens.services.embeddings import EmbeddingGenerator
from feedlens.services.integration import FeedSyncIntegration
from feedlens.services.labeling import ClusterLabeler
from feedlens.services.rate_limiter import AIRateLimiter, DeadLetterQueueManager, RequestQueueManager
from feedlens.services.retry import BackoffPolicy
from feedlens.services.scheduler import PipelineRuntime
from feedlens.services.search import SemanticSearchService
from feedlens.services.storage import PipelineStore
from feedlens.tools.providers import (
    EmbeddingProvider,
    LabelingProvider,
    build_embedding_provider,
    build_labeling_provider,
)

log = structlog.get_logger(__name__)

_UNSET = object()


@dataclass
class Pipeline:
    config: AppConfig
    store: PipelineStore
    limiter: AIRateLimiter
    generator: EmbeddingGenerator
    queue: EmbeddingQueueManager
    clustering: ClusteringManager
    search: SemanticSearchService
    dead_letters: DeadLetterQueueManager
    requests: RequestQueueManager
    runtime: PipelineRuntime
    integration: FeedSyncIntegration


def build_pipeline(
    config: AppConfig,
    session_factory: SessionFactory | None = None,
    embedding_provider: EmbeddingProvider | None | object = _UNSET,
    labeling_provider: LabelingProvider | None | object = _UNSET,
    sleep: Callable[[float], None] = time.sleep,
) -> Pipeline:
    """Wire every component once; providers default to the configured backends.

    Pass ``embedding_provider=None`` (or ``labeling_provider=None``) to run with
    that feature unavailable.
    """

    if session_factory is None:
        session_factory = create_session_factory(build_engine(config.database_url))
    if embedding_provider is _UNSET:
        embedding_provider = build_embedding_provider(config)
    if labeling_provider is _UNSET:
        labeling_provider = build_labeling_provider(config)

    store = PipelineStore(session_factory)
    limiter = AIRateLimiter(store, default_limits=config.default_daily_limits)
    policy = BackoffPolicy(delays=config.retry_delays_seconds, sleep=sleep)

    # Background work has no user; its usage is logged but counts against no quota.
    generator = EmbeddingGenerator(
        embedding_provider,
        dimensions=config.embedding_dimensions,
        policy=policy,
        concurrency=config.embedding_concurrency,
        on_usage=lambda record: limiter.record_usage(None, record),
    )
    labeler = ClusterLabeler(labeling_provider, policy=policy, on_usage=lambda record: limiter.record_usage(None, record))

    queue = EmbeddingQueueManager(
        store,
        generator,
        batch_size=config.embedding_batch_size,
        max_attempts=config.embedding_max_attempts,
    )
    clustering = ClusteringManager(store, labeler, config)
    requests = RequestQueueManager(store, limiter)
    search = SemanticSearchService(
        store,
        generator,
        cache=TTLCache(ttl_seconds=config.query_cache_ttl_seconds),
        limiter=limiter,
        min_score=config.search_min_score,
    )
    runtime = PipelineRuntime(
        queue,
        clustering,
        requests,
        embedding_interval=config.embedding_interval_seconds,
        clustering_interval=config.clustering_interval_seconds,
        cleanup_interval=config.cleanup_interval_seconds,
        request_sweep_interval=config.request_sweep_interval_seconds,
        batch_size=config.embedding_batch_size,
    )
    log.info(
        "pipeline_built",
        embedding_backend=config.embedding_backend if generator.available else "unavailable",
        labeling=labeler.available,
    )
    return Pipeline(
        config=config,
        store=store,
        limiter=limiter,
        generator=generator,
        queue=queue,
        clustering=clustering,
        search=search,
        dead_letters=DeadLetterQueueManager(store),
        requests=requests,
        runtime=runtime,
        integration=FeedSyncIntegration(runtime),
    )


def open_pipeline(config: AppConfig) -> Pipeline:
    """Connect to the configured database, create missing tables and build the pipeline."""

    engine = build_engine(config.database_url)
    init_database(engine)
    return build_pipeline(config, create_session_factory(engine))
