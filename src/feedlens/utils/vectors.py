"""Vector similarity helpers."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity as _pairwise_cosine

Vector = Sequence[float]


def cosine_similarity(embedding1: Vector, embedding2: Vector) -> float:
    """Cosine similarity in [-1, 1]; 0.0 for empty or zero-magnitude vectors."""

    if len(embedding1) != len(embedding2):
        raise ValueError(f"Embedding dimensions mismatch: {len(embedding1)} vs {len(embedding2)}")
    if len(embedding1) == 0:
        return 0.0

    first = np.asarray(embedding1, dtype=np.float64)
    second = np.asarray(embedding2, dtype=np.float64)
    magnitude = float(np.linalg.norm(first) * np.linalg.norm(second))
    if magnitude == 0.0:
        return 0.0
    return float(np.dot(first, second) / magnitude)


def similarity_matrix(embeddings: Sequence[Vector]) -> np.ndarray:
    """Pairwise cosine similarity for a list of equal-length vectors."""

    if not embeddings:
        return np.zeros((0, 0))
    matrix = np.asarray(embeddings, dtype=np.float64)
    return _pairwise_cosine(matrix)


def similarities_to(target: Vector, embeddings: Sequence[Vector]) -> np.ndarray:
    """Cosine similarity of ``target`` against each row of ``embeddings``."""

    if not embeddings:
        return np.zeros(0)
    matrix = np.asarray(embeddings, dtype=np.float64)
    query = np.asarray(target, dtype=np.float64).reshape(1, -1)
    if matrix.shape[1] != query.shape[1]:
        raise ValueError(f"Embedding dimensions mismatch: {query.shape[1]} vs {matrix.shape[1]}")
    return _pairwise_cosine(query, matrix)[0]
