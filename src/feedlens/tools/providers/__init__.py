"""Embedding and labeling provider registry."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Protocol

from feedlens.config import AppConfig
from feedlens.models.pipeline import AIProvider
from feedlens.tools.providers.local import SentenceTransformerEmbeddingProvider
from feedlens.tools.providers.ollama import OllamaEmbeddingProvider, OllamaLabelingProvider

EmbeddingFactory = Callable[[AppConfig], "EmbeddingProvider | None"]


class EmbeddingProvider(Protocol):
    """Turns text into a vector of fixed length plus a token count."""

    name: AIProvider
    model: str

    def embed(self, text: str) -> tuple[Sequence[float], int]:
        ...


class LabelingProvider(Protocol):
    """Completes a prompt with free text."""

    name: AIProvider
    model: str

    def complete(self, prompt: str) -> str:
        ...


def ollama_embedding_factory(config: AppConfig) -> EmbeddingProvider | None:
    if not config.ollama_host:
        return None
    return OllamaEmbeddingProvider(
        host=config.ollama_host,
        model=config.embedding_model,
        timeout=config.provider_timeout_seconds,
    )


def local_embedding_factory(config: AppConfig) -> EmbeddingProvider | None:
    return SentenceTransformerEmbeddingProvider(model=config.embedding_model)


AVAILABLE_EMBEDDING_BACKENDS: dict[str, EmbeddingFactory] = {
    "ollama": ollama_embedding_factory,
    "sentence-transformers": local_embedding_factory,
}


def build_embedding_provider(config: AppConfig) -> EmbeddingProvider | None:
    """Return the configured embedding provider, or None when embeddings are disabled."""

    factory = AVAILABLE_EMBEDDING_BACKENDS.get(config.embedding_backend)
    if factory is None:
        return None
    return factory(config)


def build_labeling_provider(config: AppConfig) -> LabelingProvider | None:
    """Cluster labels always come from Ollama; no host means no labeling."""

    if not config.ollama_host:
        return None
    return OllamaLabelingProvider(
        host=config.ollama_host,
        model=config.labeling_model,
        timeout=config.provider_timeout_seconds,
    )
