"""Heuristic scoring used to rank clusters."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime

KNOWN_OUTLETS = ("BBC", "CNN", "Reuters", "Associated Press", "The New York Times", "The Guardian")

RECENCY_WEIGHT = 0.5
RECENCY_DECAY_HOURS = 168.0
OUTLET_BONUS = 0.3
TITLE_QUALITY_BONUS = 0.2


def engagement_score(
    published_at: datetime | None,
    feed_name: str,
    title: str,
    now: datetime | None = None,
) -> float:
    """Score one article in [0, 1] from recency, outlet and title length."""

    now = now or datetime.now(tz=UTC)
    score = 0.0

    if published_at is not None:
        hours_ago = (now - published_at).total_seconds() / 3600
        recency = RECENCY_WEIGHT - (hours_ago / RECENCY_DECAY_HOURS) * RECENCY_WEIGHT
        score += min(RECENCY_WEIGHT, max(0.0, recency))

    feed_lower = feed_name.lower()
    if any(outlet.lower() in feed_lower for outlet in KNOWN_OUTLETS):
        score += OUTLET_BONUS

    if 50 < len(title) < 120:
        score += TITLE_QUALITY_BONUS

    return min(1.0, score)


def relevance_score(article_count: int, source_count: int, avg_engagement: float = 0.5) -> float:
    """article_count x source_count x (1 + avg_engagement)."""

    return article_count * source_count * (1 + avg_engagement)


def time_span_hours(timestamps: Iterable[datetime | None]) -> float | None:
    """Hours between the earliest and latest timestamp, or None when none are known."""

    known = [ts for ts in timestamps if ts is not None]
    if not known:
        return None
    return (max(known) - min(known)).total_seconds() / 3600
