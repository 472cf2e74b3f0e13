"""Topic titles and summaries for clusters, via an LLM with a deterministic fallback."""

from __future__ import annotations

import re
import time
from collections.abc import Callable, Sequence

import structlog

from feedlens.models.pipeline import ArticleSnapshot, ClusterLabel, UsageRecord
from feedlens.services.retry import BackoffPolicy
from feedlens.tools.providers import LabelingProvider

log = structlog.get_logger(__name__)

MAX_PROMPT_ARTICLES = 10
PROMPT_EXCERPT_CHARS = 150
MAX_TOPIC_CHARS = 100
MAX_SUMMARY_CHARS = 200

FALLBACK_TOPIC = "Trending Topic"
FALLBACK_SUMMARY = "Multiple sources covering this story."

LABEL_PROMPT = """Analyze these related news articles and generate a topic title and summary.

Articles:
{articles}

Generate:
1. A concise topic title (3-8 words) that captures the main story
2. A one-sentence summary (max 150 characters) explaining what's happening

Format your response exactly as:
TOPIC: [your topic title]
SUMMARY: [your summary]

Be factual and neutral. Focus on what the articles have in common."""

_TOPIC_PATTERN = re.compile(r"TOPIC:\s*(.+?)(?:\n|$)")
_SUMMARY_PATTERN = re.compile(r"SUMMARY:\s*(.+?)(?:\n|$)")


def build_label_prompt(articles: Sequence[ArticleSnapshot]) -> str:
    lines = []
    for index, article in enumerate(articles[:MAX_PROMPT_ARTICLES], start=1):
        entry = f'[{index}] "{article.title}" ({article.feed_name})'
        if article.excerpt:
            entry += f"\n   {article.excerpt[:PROMPT_EXCERPT_CHARS]}..."
        lines.append(entry)
    return LABEL_PROMPT.format(articles="\n\n".join(lines))


def parse_label_response(text: str) -> ClusterLabel | None:
    """Extract ``TOPIC:`` and ``SUMMARY:`` lines; None unless both are present."""

    topic = _TOPIC_PATTERN.search(text)
    summary = _SUMMARY_PATTERN.search(text)
    if not topic or not summary:
        return None
    return ClusterLabel(
        topic=topic.group(1).strip()[:MAX_TOPIC_CHARS],
        summary=summary.group(1).strip()[:MAX_SUMMARY_CHARS],
    )


def fallback_label(articles: Sequence[ArticleSnapshot]) -> ClusterLabel:
    first = articles[0] if articles else None
    topic = first.title[:MAX_TOPIC_CHARS] if first and first.title else FALLBACK_TOPIC
    summary = first.excerpt[:MAX_SUMMARY_CHARS] if first and first.excerpt else FALLBACK_SUMMARY
    return ClusterLabel(topic=topic, summary=summary)


class ClusterLabeler:
    def __init__(
        self,
        provider: LabelingProvider | None,
        policy: BackoffPolicy | None = None,
        on_usage: Callable[[UsageRecord], None] | None = None,
    ) -> None:
        self.provider = provider
        self.policy = policy or BackoffPolicy()
        self._on_usage = on_usage

    @property
    def available(self) -> bool:
        return self.provider is not None

    def label(self, articles: Sequence[ArticleSnapshot]) -> ClusterLabel:
        """Ask the provider for a label, falling back to the first member's title and excerpt."""

        fallback = fallback_label(articles)
        if self.provider is None:
            log.debug("labeling_provider_unavailable")
            return fallback

        prompt = build_label_prompt(articles)
        started = time.perf_counter()
        outcome = self.policy.execute(lambda: self.provider.complete(prompt))
        latency_ms = int((time.perf_counter() - started) * 1000)

        if not outcome.success or outcome.result is None:
            log.warning("labeling_failed", attempts=outcome.attempts, error=str(outcome.error))
            self._record(prompt, "", latency_ms, error=str(outcome.error))
            return fallback

        self._record(prompt, outcome.result, latency_ms)
        parsed = parse_label_response(outcome.result)
        if parsed is None:
            log.warning("unparseable_label_response", response=outcome.result[:200])
            return fallback
        return parsed

    def _record(self, prompt: str, response: str, latency_ms: int, error: str | None = None) -> None:
        if self._on_usage is None or self.provider is None:
            return
        input_tokens = len(prompt.split())
        output_tokens = len(response.split())
        self._on_usage(
            UsageRecord(
                operation="summary",
                provider=self.provider.name,
                model=self.provider.model,
                token_count=input_tokens + output_tokens if error is None else 0,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                success=error is None,
                error_message=error,
                latency_ms=latency_ms,
            )
        )
