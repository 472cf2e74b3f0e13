import pytest
from pydantic import ValidationError

from feedlens.config import AppConfig


def test_defaults(monkeypatch):
    monkeypatch.delenv("FEEDLENS_RETRY_DELAYS_SECONDS", raising=False)
    config = AppConfig(_env_file=None)

    assert config.embedding_dimensions == 384
    assert config.retry_delays_seconds == [1.0, 2.0, 4.0]
    assert config.embedding_batch_size == 50
    assert config.min_cluster_sources == 3
    assert config.cluster_similarity_threshold == 0.6
    assert config.query_cache_ttl_seconds == 1800.0
    assert config.default_daily_limits == {"embedding": 500, "clustering": 10, "search": 100, "summary": 50}


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("FEEDLENS_RETRY_DELAYS_SECONDS", "0.5, 1")
    monkeypatch.setenv("FEEDLENS_SEARCHES_PER_DAY", "7")
    monkeypatch.setenv("FEEDLENS_EMBEDDING_BACKEND", "sentence-transformers")

    config = AppConfig(_env_file=None)

    assert config.retry_delays_seconds == [0.5, 1.0]
    assert config.default_daily_limits["search"] == 7
    assert config.embedding_backend == "sentence-transformers"


@pytest.mark.parametrize(
    "overrides",
    [
        {"embedding_batch_size": 101},
        {"embedding_concurrency": 11},
        {"embedding_dimensions": 0},
        {"min_cluster_articles": 1},
        {"embedding_backend": "openai"},
    ],
)
def test_invalid_values_are_rejected(overrides):
    with pytest.raises(ValidationError):
        AppConfig(_env_file=None, **overrides)
