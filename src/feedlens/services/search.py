"""Natural-language search over a user's subscribed feeds."""

from __future__ import annotations

import math
import time
import uuid
from collections.abc import Iterable

import structlog

from feedlens.models.pipeline import ArticleSnapshot, SearchOptions, SearchResult, SearchResultArticle
from feedlens.services.cache import TTLCache
from feedlens.services.embeddings import EmbeddingGenerator
from feedlens.services.rate_limiter import AIRateLimiter
from feedlens.services.storage import PipelineStore
from feedlens.utils.dates import utcnow
from feedlens.utils.vectors import cosine_similarity

log = structlog.get_logger(__name__)

MAX_QUERY_LENGTH = 500
MAX_SEARCH_RESULTS = 50
DEFAULT_MIN_SCORE = 0.5
DEFAULT_SEARCH_HOURS = 168
MIN_SEARCH_HOURS = 24

TITLE_TERM_WEIGHT = 0.3
EXCERPT_TERM_WEIGHT = 0.1
TITLE_PHRASE_BONUS = 0.4
EXCERPT_PHRASE_BONUS = 0.2


def prepare_query(query: str) -> str:
    return query.strip()[:MAX_QUERY_LENGTH]


def cache_key(query: str) -> str:
    return prepare_query(query).lower()


def text_match_score(query: str, title: str, excerpt: str | None) -> float:
    """Lexical relevance in [0, 1] from term and whole-phrase matches."""

    phrase = query.strip().lower()
    terms = [term for term in phrase.split() if len(term) > 2]
    title_lower = title.lower()
    excerpt_lower = (excerpt or "").lower()

    score = 0.0
    for term in terms:
        if term in title_lower:
            score += TITLE_TERM_WEIGHT
        if term in excerpt_lower:
            score += EXCERPT_TERM_WEIGHT
    if phrase and phrase in title_lower:
        score += TITLE_PHRASE_BONUS
    if phrase and phrase in excerpt_lower:
        score += EXCERPT_PHRASE_BONUS
    return min(score, 1.0)


def _in_date_range(article: ArticleSnapshot, options: SearchOptions) -> bool:
    if article.published_at is None:
        return True
    if options.date_from is not None and article.published_at < options.date_from:
        return False
    if options.date_to is not None and article.published_at > options.date_to:
        return False
    return True


def _result_limit(options: SearchOptions) -> int:
    return max(0, min(options.max_results, MAX_SEARCH_RESULTS))


def _ranked(scored: Iterable[tuple[ArticleSnapshot, float]], limit: int) -> list[SearchResultArticle]:
    ordered = sorted(scored, key=lambda pair: pair[1], reverse=True)[:limit]
    return [
        SearchResultArticle(
            id=article.id,
            title=article.title,
            excerpt=article.excerpt,
            feed_name=article.feed_name,
            feed_id=article.feed_id,
            published_at=article.published_at,
            relevance_score=score,
        )
        for article, score in ordered
    ]


class SemanticSearchService:
    """Embedding search with a cached query vector and a lexical fallback."""

    def __init__(
        self,
        store: PipelineStore,
        generator: EmbeddingGenerator,
        cache: TTLCache[list[float]] | None = None,
        limiter: AIRateLimiter | None = None,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> None:
        self.store = store
        self.generator = generator
        self.cache = cache if cache is not None else TTLCache(ttl_seconds=0)
        self.limiter = limiter
        self.min_score = min_score

    @property
    def available(self) -> bool:
        return self.generator.available

    def query_embedding(self, query: str, user_id: str | None = None) -> list[float] | None:
        """Embed a query, reusing a cached vector for the same normalized text.

        Returns None for a blank query or when no provider is configured;
        provider errors propagate.
        """

        text = prepare_query(query)
        if not text:
            return None
        key = text.lower()
        cached = self.cache.get(key)
        if cached is not None:
            log.debug("query_cache_hit", query=text[:50])
            return cached
        if not self.generator.available:
            return None

        provider = self.generator.provider
        started = time.perf_counter()
        try:
            vector, tokens = self.generator.embed_with_retry(text)
        except Exception as exc:
            if self.limiter is not None and provider is not None:
                self.limiter.record_failure(
                    user_id,
                    "search",
                    provider.name,
                    provider.model,
                    str(exc),
                    latency_ms=int((time.perf_counter() - started) * 1000),
                    metadata={"query_length": len(text)},
                )
            raise

        self.cache.set(key, vector)
        if self.limiter is not None and provider is not None:
            self.limiter.record_success(
                user_id,
                "search",
                provider.name,
                provider.model,
                tokens,
                latency_ms=int((time.perf_counter() - started) * 1000),
                metadata={"query_length": len(text)},
            )
        return vector

    def _search_scope(self, options: SearchOptions) -> set[uuid.UUID]:
        """The user's feeds, narrowed by any requested feed filter."""

        feeds = self.store.user_feed_ids(options.user_id)
        if options.feed_ids:
            feeds &= set(options.feed_ids)
        return feeds

    @staticmethod
    def _hours_back(options: SearchOptions) -> float:
        if options.date_from is None:
            return DEFAULT_SEARCH_HOURS
        hours = math.ceil((utcnow() - options.date_from).total_seconds() / 3600)
        return max(hours, MIN_SEARCH_HOURS)

    def semantic_search(self, query: str, options: SearchOptions) -> SearchResult:
        started = time.perf_counter()
        result = SearchResult(query=query)

        embedding = self.query_embedding(query, user_id=options.user_id)
        feeds = self._search_scope(options) if embedding is not None else set()
        if embedding is None or not feeds:
            result.processing_time_ms = int((time.perf_counter() - started) * 1000)
            return result

        min_score = options.min_score if options.min_score is not None else self.min_score
        scored = []
        for article in self.store.articles_with_embeddings(options.user_id, feeds, self._hours_back(options)):
            if not article.embedding or len(article.embedding) != len(embedding):
                continue
            if not _in_date_range(article, options):
                continue
            score = cosine_similarity(embedding, article.embedding)
            if score >= min_score:
                scored.append((article, score))

        result.articles = _ranked(scored, _result_limit(options))
        result.total_results = len(result.articles)
        result.processing_time_ms = int((time.perf_counter() - started) * 1000)
        return result

    def text_search(self, query: str, options: SearchOptions) -> SearchResult:
        started = time.perf_counter()
        result = SearchResult(query=query, fallback_used=True)
        text = prepare_query(query)
        feeds = self._search_scope(options)
        if not text or not feeds:
            result.processing_time_ms = int((time.perf_counter() - started) * 1000)
            return result

        scored = []
        for article in self.store.recent_articles(options.user_id, feeds, self._hours_back(options)):
            if not _in_date_range(article, options):
                continue
            score = text_match_score(text, article.title, article.excerpt)
            if score > 0:
                scored.append((article, score))

        result.articles = _ranked(scored, _result_limit(options))
        result.total_results = len(result.articles)
        result.processing_time_ms = int((time.perf_counter() - started) * 1000)
        return result

    def search(self, query: str, options: SearchOptions) -> SearchResult:
        """Semantic search, falling back to text matching when it cannot answer."""

        if self.limiter is not None and self.available:
            check = self.limiter.can_proceed(options.user_id, "search")
            if not check.allowed:
                result = self.text_search(query, options)
                result.notice = check.reason
                return result

        if not self.available:
            return self.text_search(query, options)

        try:
            result = self.semantic_search(query, options)
        except Exception as exc:
            log.warning("semantic_search_failed", error=str(exc))
            return self.text_search(query, options)

        if result.articles:
            return result
        return self.text_search(query, options)
