"""In-process embedding provider using sentence-transformers."""

from __future__ import annotations

from functools import lru_cache

import structlog
from sentence_transformers import SentenceTransformer

log = structlog.get_logger(__name__)

# Ollama model tags that have a sentence-transformers equivalent.
MODEL_ALIASES = {
    "all-minilm": "all-MiniLM-L6-v2",
    "all-minilm:l6-v2": "all-MiniLM-L6-v2",
}


@lru_cache(maxsize=2)
def get_embedding_model(model_name: str) -> SentenceTransformer:
    """Load and cache the embedding model."""
    log.info("loading_embedding_model", model=model_name)
    return SentenceTransformer(model_name)


class SentenceTransformerEmbeddingProvider:
    name = "sentence-transformers"

    def __init__(self, model: str = "all-MiniLM-L6-v2") -> None:
        self.model = MODEL_ALIASES.get(model, model)

    def embed(self, text: str) -> tuple[list[float], int]:
        vector = get_embedding_model(self.model).encode(text, convert_to_numpy=True, show_progress_bar=False)
        return vector.tolist(), len(text.split())
