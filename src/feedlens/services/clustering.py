"""Topic clustering of articles using embeddings, keyword overlap, time and source diversity."""

from __future__ import annotations

import time
import uuid
from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

import numpy as np
import structlog

from feedlens.config import AppConfig
from feedlens.models.db import Cluster
from feedlens.models.pipeline import (
    ArticleSnapshot,
    ClusterCandidate,
    ClusterGenerationResult,
    ClusterMethod,
    ClusterSettings,
    ClusterView,
    SimilarArticle,
)
from feedlens.services.labeling import ClusterLabeler
from feedlens.services.storage import PipelineStore
from feedlens.utils.dates import utcnow
from feedlens.utils.scoring import engagement_score, relevance_score, time_span_hours
from feedlens.utils.text import extract_keywords, weighted_keyword_overlap
from feedlens.utils.vectors import similarities_to, similarity_matrix

log = structlog.get_logger(__name__)

SIMILAR_ARTICLES_THRESHOLD = 0.7
MAX_SIMILAR_ARTICLES = 5
DEFAULT_CLUSTER_LIMIT = 10

TIME_BUCKET_HOURS = 6
TIME_BUCKET_SIMILARITY = 0.8
MAX_FALLBACK_CLUSTERS = 10


def _keyword_index(articles: Iterable[ArticleSnapshot]) -> dict[uuid.UUID, frozenset[str]]:
    return {article.id: extract_keywords(article.text) for article in articles}


def _overlap_ok(keywords: dict[uuid.UUID, frozenset[str]], first: uuid.UUID, second: uuid.UUID, minimum: int) -> bool:
    weighted, _ = weighted_keyword_overlap(keywords[first], keywords[second])
    return weighted >= minimum


def within_time_window(members: Iterable[ArticleSnapshot], window_hours: float) -> bool:
    """Members must carry at least one date and span no more than ``window_hours``."""

    span = time_span_hours(member.published_at for member in members)
    return span is not None and span <= window_hours


def passes_gates(candidate: ClusterCandidate, settings: ClusterSettings) -> bool:
    return (
        len(candidate.members) >= settings.min_articles
        and len(candidate.sources) >= settings.min_sources
        and within_time_window(candidate.members, settings.time_window_hours)
    )


def _newest_first(articles: Sequence[ArticleSnapshot]) -> list[ArticleSnapshot]:
    return sorted(articles, key=lambda article: article.published_at.timestamp() if article.published_at else 0.0, reverse=True)


def form_clusters(articles: Sequence[ArticleSnapshot], settings: ClusterSettings) -> list[ClusterCandidate]:
    """Vector clustering with keyword validation and pairwise cross-checks.

    Seeds are visited newest-first. Each unassigned seed collects unassigned
    neighbours that clear both the similarity threshold and the weighted keyword
    overlap. Neighbours are then admitted in descending similarity only if they
    also clear both checks against every member admitted so far, so that A~B and
    B~C never pull in an unrelated C. A candidate that fails the time window or
    the source-diversity gate is dropped whole and its articles stay available.
    """

    embedded = [article for article in articles if article.embedding]
    if len(embedded) < settings.min_articles:
        return []

    ordered = _newest_first(embedded)
    position = {article.id: index for index, article in enumerate(ordered)}
    similarities = similarity_matrix([article.embedding for article in ordered])
    keywords = _keyword_index(ordered)
    threshold = settings.similarity_threshold
    assigned: set[uuid.UUID] = set()
    clusters: list[ClusterCandidate] = []

    for seed in ordered:
        if seed.id in assigned:
            continue
        seed_row = similarities[position[seed.id]]

        neighbours: list[tuple[ArticleSnapshot, float]] = []
        for other in ordered:
            if other.id == seed.id or other.id in assigned:
                continue
            score = float(seed_row[position[other.id]])
            if score < threshold:
                continue
            if not _overlap_ok(keywords, seed.id, other.id, settings.keyword_overlap_min):
                continue
            neighbours.append((other, score))

        if not neighbours:
            continue
        neighbours.sort(key=lambda pair: pair[1], reverse=True)

        members = [seed]
        pair_scores: list[float] = []
        for candidate, _ in neighbours:
            scores = [float(similarities[position[member.id], position[candidate.id]]) for member in members]
            if any(score < threshold for score in scores):
                continue
            if not all(_overlap_ok(keywords, member.id, candidate.id, settings.keyword_overlap_min) for member in members):
                continue
            members.append(candidate)
            pair_scores.extend(scores)

        cluster = ClusterCandidate(
            members=members,
            avg_similarity=float(np.mean(pair_scores)) if pair_scores else 0.0,
            sources={member.feed_name for member in members},
        )
        if not passes_gates(cluster, settings):
            log.debug(
                "cluster_candidate_rejected",
                seed=str(seed.id),
                members=len(members),
                sources=len(cluster.sources),
            )
            continue

        assigned.update(cluster.article_ids)
        clusters.append(cluster)

    return clusters


def fallback_cluster_by_keywords(
    articles: Sequence[ArticleSnapshot], settings: ClusterSettings
) -> list[ClusterCandidate]:
    """Group articles that share enough weighted keywords with a seed; no embeddings needed."""

    keywords = _keyword_index(articles)
    assigned: set[uuid.UUID] = set()
    clusters: list[ClusterCandidate] = []

    for seed in articles:
        if seed.id in assigned:
            continue
        members = [seed]
        for other in articles:
            if other.id == seed.id or other.id in assigned:
                continue
            if _overlap_ok(keywords, seed.id, other.id, settings.keyword_overlap_min):
                members.append(other)

        cluster = ClusterCandidate(
            members=members,
            avg_similarity=1.0,
            sources={member.feed_name for member in members},
        )
        if passes_gates(cluster, settings):
            assigned.update(cluster.article_ids)
            clusters.append(cluster)

    return clusters


def cluster_by_time_windows(
    articles: Sequence[ArticleSnapshot],
    settings: ClusterSettings,
    exclude: Iterable[uuid.UUID] = (),
) -> list[ClusterCandidate]:
    """Bucket dated articles into fixed 6-hour windows.

    A bucket needs at least two articles from two sources, and never fewer than
    the configured minimums, so every bucket obeys the same gates as any other
    cluster.
    """

    excluded = set(exclude)
    bucket_seconds = TIME_BUCKET_HOURS * 3600
    buckets: dict[int, list[ArticleSnapshot]] = defaultdict(list)
    for article in articles:
        if article.published_at is None or article.id in excluded:
            continue
        buckets[int(article.published_at.timestamp() // bucket_seconds)].append(article)

    gate = settings.model_copy(
        update={
            "min_articles": max(2, settings.min_articles),
            "min_sources": max(2, settings.min_sources),
        }
    )
    clusters = []
    for members in buckets.values():
        cluster = ClusterCandidate(
            members=members,
            avg_similarity=TIME_BUCKET_SIMILARITY,
            sources={member.feed_name for member in members},
        )
        if passes_gates(cluster, gate):
            clusters.append(cluster)
    return clusters


def fallback_clusters(articles: Sequence[ArticleSnapshot], settings: ClusterSettings) -> list[ClusterCandidate]:
    """Keyword groups first, then time buckets over what is left; the 10 largest win."""

    by_keyword = fallback_cluster_by_keywords(articles, settings)
    used = {article_id for cluster in by_keyword for article_id in cluster.article_ids}
    by_time = cluster_by_time_windows(articles, settings, exclude=used)
    combined = sorted([*by_keyword, *by_time], key=lambda cluster: len(cluster.members), reverse=True)
    return combined[:MAX_FALLBACK_CLUSTERS]


def find_similar_by_embedding(
    target: Sequence[float],
    articles: Iterable[ArticleSnapshot],
    threshold: float = SIMILAR_ARTICLES_THRESHOLD,
    max_results: int = MAX_SIMILAR_ARTICLES,
    exclude_ids: Iterable[uuid.UUID] = (),
    feed_ids: Iterable[uuid.UUID] | None = None,
) -> list[SimilarArticle]:
    excluded = set(exclude_ids)
    allowed_feeds = set(feed_ids) if feed_ids is not None else None
    candidates = [
        article
        for article in articles
        if article.id not in excluded
        and article.embedding
        and len(article.embedding) == len(target)
        and (allowed_feeds is None or article.feed_id in allowed_feeds)
    ]
    scores = similarities_to(target, [article.embedding for article in candidates])
    scored = [(article, float(score)) for article, score in zip(candidates, scores) if score >= threshold]

    scored.sort(key=lambda pair: pair[1], reverse=True)
    return [
        SimilarArticle(
            article_id=article.id,
            title=article.title,
            feed_name=article.feed_name,
            feed_id=article.feed_id,
            similarity_score=score,
            published_at=article.published_at,
        )
        for article, score in scored[:max_results]
    ]


def cluster_relevance(candidate: ClusterCandidate, now: datetime | None = None) -> float:
    now = now or utcnow()
    engagement = [
        engagement_score(member.published_at, member.feed_name, member.title, now=now) for member in candidate.members
    ]
    average = sum(engagement) / len(engagement) if engagement else 0.0
    return relevance_score(len(candidate.members), len(candidate.sources), average)


def _cluster_view(cluster: Cluster) -> ClusterView:
    return ClusterView(
        id=cluster.id,
        topic=cluster.title,
        summary=cluster.summary or "",
        article_ids=[uuid.UUID(str(article_id)) for article_id in cluster.article_ids or []],
        article_count=cluster.article_count,
        sources=list(cluster.source_feeds or []),
        avg_similarity=cluster.avg_similarity,
        latest_timestamp=cluster.timeframe_end,
        relevance_score=cluster.relevance_score,
        expires_at=cluster.expires_at,
    )


class ClusteringManager:
    """Generates, persists, lists and expires topic clusters."""

    def __init__(self, store: PipelineStore, labeler: ClusterLabeler, config: AppConfig) -> None:
        self.store = store
        self.labeler = labeler
        self.config = config

    def load_settings(self) -> ClusterSettings:
        """Config defaults, overridden by any values stored in the settings row."""

        row = self.store.cluster_settings()

        def pick(column: str, default):
            value = getattr(row, column, None) if row is not None else None
            return default if value is None else value

        return ClusterSettings(
            min_sources=pick("min_cluster_sources", self.config.min_cluster_sources),
            min_articles=pick("min_cluster_articles", self.config.min_cluster_articles),
            similarity_threshold=pick("cluster_similarity_threshold", self.config.cluster_similarity_threshold),
            keyword_overlap_min=pick("keyword_overlap_min", self.config.keyword_overlap_min),
            time_window_hours=pick("cluster_time_window_hours", self.config.cluster_time_window_hours),
        )

    def generate_clusters(
        self,
        user_id: str | None = None,
        feed_ids: Sequence[uuid.UUID] | None = None,
        hours_back: float | None = None,
        settings: ClusterSettings | None = None,
    ) -> ClusterGenerationResult:
        started = time.perf_counter()
        settings = settings or self.load_settings()
        hours_back = hours_back if hours_back is not None else self.config.cluster_lookback_hours

        embedded = [
            article
            for article in self.store.articles_with_embeddings(user_id, feed_ids, hours_back)
            if article.embedding and len(article.embedding) == self.config.embedding_dimensions
        ]
        method: ClusterMethod = "vector"
        candidates: list[ClusterCandidate] = []
        if len(embedded) >= settings.min_articles:
            candidates = form_clusters(embedded, settings)

        processed = len(embedded)
        if not candidates:
            recent = self.store.recent_articles(user_id, feed_ids, hours_back)
            processed = max(processed, len(recent))
            candidates = fallback_clusters(recent, settings)
            method = "keyword" if candidates else "none"

        now = utcnow()
        expires_at = now + timedelta(hours=self.config.cluster_expiration_hours)
        views: list[ClusterView] = []
        for candidate in candidates:
            try:
                views.append(self._persist(candidate, method, expires_at, now, user_id))
            except Exception:
                log.exception("cluster_persist_failed", members=len(candidate.members))

        views.sort(key=lambda view: view.relevance_score, reverse=True)
        result = ClusterGenerationResult(
            clusters=views,
            articles_processed=processed,
            clusters_created=len(views),
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            method=method,
        )
        log.info(
            "clustering_completed",
            method=method,
            articles=processed,
            clusters=result.clusters_created,
            duration_ms=result.processing_time_ms,
        )
        return result

    def _persist(
        self,
        candidate: ClusterCandidate,
        method: ClusterMethod,
        expires_at: datetime,
        now: datetime,
        user_id: str | None,
    ) -> ClusterView:
        label = self.labeler.label(candidate.members)
        score = cluster_relevance(candidate, now=now)
        dates = [member.published_at for member in candidate.members if member.published_at is not None]
        sources = sorted(candidate.sources)
        cluster = self.store.save_cluster(
            title=label.topic,
            summary=label.summary,
            article_ids=candidate.article_ids,
            source_feeds=sources,
            avg_similarity=candidate.avg_similarity,
            relevance_score=score,
            timeframe_start=min(dates) if dates else None,
            timeframe_end=max(dates) if dates else None,
            expires_at=expires_at,
            generation_method=method,
            user_id=user_id,
        )
        return _cluster_view(cluster)

    def get_user_clusters(self, user_id: str | None = None, limit: int = DEFAULT_CLUSTER_LIMIT) -> list[ClusterView]:
        """Live clusters visible to the user, most relevant first."""

        clusters = [_cluster_view(cluster) for cluster in self.store.user_clusters(user_id, utcnow(), limit=limit)]
        clusters.sort(key=lambda view: view.relevance_score, reverse=True)
        return clusters

    def expire_old_clusters(self) -> int:
        removed = self.store.delete_expired_clusters(utcnow())
        if removed:
            log.info("clusters_expired", count=removed)
        return removed

    def find_similar_articles(
        self,
        article_id: uuid.UUID,
        user_id: str | None = None,
        feed_ids: Sequence[uuid.UUID] | None = None,
    ) -> list[SimilarArticle]:
        source = self.store.get_article_snapshot(article_id)
        if source is None or not source.embedding:
            return []
        candidates = self.store.articles_with_embeddings(user_id, feed_ids)
        return find_similar_by_embedding(
            source.embedding,
            candidates,
            threshold=SIMILAR_ARTICLES_THRESHOLD,
            max_results=MAX_SIMILAR_ARTICLES,
            exclude_ids=[source.id],
            feed_ids=feed_ids,
        )
