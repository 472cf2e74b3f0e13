"""Embedding generation with dimension validation, backoff and bounded concurrency."""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor

import structlog

from feedlens.config import MAX_EMBEDDING_BATCH_SIZE, MAX_EMBEDDING_CONCURRENCY
from feedlens.errors import EmbeddingDimensionError
from feedlens.models.db import Article
from feedlens.models.pipeline import BatchEmbeddingResult, EmbeddingResult, UsageRecord
from feedlens.services.retry import BackoffPolicy
from feedlens.tools.providers import EmbeddingProvider
from feedlens.utils.text import content_hash

log = structlog.get_logger(__name__)

UsageSink = Callable[[UsageRecord], None]

PROVIDER_NOT_CONFIGURED = "Embedding provider not configured"


def prepare_embedding_input(title: str, excerpt: str | None) -> str:
    """Trimmed title, then a blank line and the trimmed excerpt when there is one."""

    title = title.strip()
    excerpt = (excerpt or "").strip()
    if not excerpt:
        return title
    return f"{title}\n\n{excerpt}"


def needs_embedding_update(article: Article) -> bool:
    """True unless the article holds a completed embedding for its current text."""

    if article.embedding is None or article.embedding_status in ("pending", "failed"):
        return True
    if not article.content_hash:
        return True
    return content_hash(article.title, article.excerpt) != article.content_hash


class EmbeddingGenerator:
    """Wraps an embedding provider with the pipeline's contract.

    Every returned vector has exactly ``dimensions`` entries. Transient provider
    failures are retried under ``policy``; dimension mismatches and other
    permanent failures are reported immediately.
    """

    def __init__(
        self,
        provider: EmbeddingProvider | None,
        dimensions: int,
        policy: BackoffPolicy | None = None,
        concurrency: int = MAX_EMBEDDING_CONCURRENCY,
        on_usage: UsageSink | None = None,
    ) -> None:
        self.provider = provider
        self.dimensions = dimensions
        self.policy = policy or BackoffPolicy()
        self.concurrency = max(1, min(concurrency, MAX_EMBEDDING_CONCURRENCY))
        self._on_usage = on_usage

    @property
    def available(self) -> bool:
        return self.provider is not None

    def embed_text(self, text: str) -> tuple[list[float], int]:
        """One validated provider call, without retries."""

        if self.provider is None:
            raise RuntimeError(PROVIDER_NOT_CONFIGURED)
        vector, tokens = self.provider.embed(text)
        if len(vector) != self.dimensions:
            raise EmbeddingDimensionError(self.dimensions, len(vector))
        return [float(value) for value in vector], int(tokens)

    def embed_with_retry(self, text: str) -> tuple[list[float], int]:
        """Validated provider call under the backoff policy; the last error propagates."""

        return self.policy.call(lambda: self.embed_text(text))

    def generate(self, article_id: uuid.UUID, title: str, excerpt: str | None) -> EmbeddingResult:
        digest = content_hash(title, excerpt)
        if self.provider is None:
            return EmbeddingResult(
                article_id=article_id,
                success=False,
                content_hash=digest,
                error=PROVIDER_NOT_CONFIGURED,
            )

        text = prepare_embedding_input(title, excerpt)
        started = time.perf_counter()
        outcome = self.policy.execute(lambda: self.embed_text(text))
        latency_ms = int((time.perf_counter() - started) * 1000)

        if outcome.success and outcome.result is not None:
            vector, tokens = outcome.result
            self._record(tokens, latency_ms, success=True)
            return EmbeddingResult(
                article_id=article_id,
                success=True,
                embedding=vector,
                token_count=tokens,
                content_hash=digest,
                attempts=outcome.attempts,
                retry_delay_seconds=outcome.total_delay_seconds,
            )

        error = str(outcome.error)
        log.warning(
            "embedding_failed",
            article_id=str(article_id),
            attempts=outcome.attempts,
            retry_delay_seconds=outcome.total_delay_seconds,
            error=error,
        )
        self._record(0, latency_ms, success=False, error=error)
        return EmbeddingResult(
            article_id=article_id,
            success=False,
            content_hash=digest,
            error=error,
            attempts=outcome.attempts,
            retry_delay_seconds=outcome.total_delay_seconds,
        )

    def generate_batch(self, articles: Sequence[Article]) -> BatchEmbeddingResult:
        """Embed up to 100 articles with at most ``concurrency`` provider calls in flight."""

        if len(articles) > MAX_EMBEDDING_BATCH_SIZE:
            log.warning("embedding_batch_truncated", requested=len(articles), limit=MAX_EMBEDDING_BATCH_SIZE)
            articles = articles[:MAX_EMBEDDING_BATCH_SIZE]

        started = time.perf_counter()
        result = BatchEmbeddingResult()
        if not articles:
            return result

        workers = min(self.concurrency, len(articles))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="embed") as executor:
            outcomes = list(
                executor.map(lambda article: self.generate(article.id, article.title, article.excerpt), articles)
            )

        for outcome in outcomes:
            if outcome.success:
                result.successful.append(outcome)
                result.total_tokens += outcome.token_count
            else:
                result.failed.append(outcome)

        result.processing_time_ms = int((time.perf_counter() - started) * 1000)
        log.info(
            "embedding_batch_completed",
            succeeded=len(result.successful),
            failed=len(result.failed),
            tokens=result.total_tokens,
            duration_ms=result.processing_time_ms,
        )
        return result

    def _record(self, tokens: int, latency_ms: int, success: bool, error: str | None = None) -> None:
        if self._on_usage is None or self.provider is None:
            return
        self._on_usage(
            UsageRecord(
                operation="embedding",
                provider=self.provider.name,
                model=self.provider.model,
                token_count=tokens,
                input_tokens=tokens,
                output_tokens=0,
                success=success,
                error_message=error,
                latency_ms=latency_ms,
            )
        )
