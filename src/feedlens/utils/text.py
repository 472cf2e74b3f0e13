"""Text, hashing and keyword helpers."""

from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable

STOP_WORDS = frozenset(
    """
    the a an and or but in on at to for of with by is are was were be been being have has had
    do does did will would could should may might must can this that these those from into
    through during before after above below between under again further then once here there
    when where why how all both each few more most other some such only own same than too very
    just about says said new also its their his her our your them they what which who whom whose
    """.split()
)

_NON_WORD = re.compile(r"[^\w\s]")


def content_hash(title: str, excerpt: str | None) -> str:
    """SHA-256 of ``title|excerpt``, used to decide whether re-embedding is needed."""

    content = f"{title}|{excerpt or ''}"
    return hashlib.sha256(content.encode("utf-8", errors="ignore")).hexdigest()


def _tokens(text: str) -> list[str]:
    return [word for word in _NON_WORD.sub(" ", text.lower()).split() if len(word) > 2]


def extract_keywords(text: str) -> frozenset[str]:
    """Return significant single terms plus bigram and trigram phrases.

    Phrases are space-joined so they can be told apart from single terms.
    """

    words = _tokens(text)
    keywords: set[str] = set()

    for word in words:
        if len(word) > 3 and word not in STOP_WORDS:
            keywords.add(word)

    for first, second in zip(words, words[1:]):
        if len(first) > 3 and len(second) > 3 and first not in STOP_WORDS and second not in STOP_WORDS:
            keywords.add(f"{first} {second}")

    for first, second, third in zip(words, words[1:], words[2:]):
        if not {first, second, third} & STOP_WORDS:
            keywords.add(f"{first} {second} {third}")

    return frozenset(keywords)


def weighted_keyword_overlap(keywords1: Iterable[str], keywords2: Iterable[str]) -> tuple[int, list[str]]:
    """Count shared terms, weighting phrases 2x and single terms 1x."""

    shared = sorted(set(keywords1) & set(keywords2))
    weighted = sum(2 if " " in term else 1 for term in shared)
    return weighted, shared
