"""Error taxonomy shared by every AI operation in the pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
import ollama

if TYPE_CHECKING:
    from feedlens.models.pipeline import RateLimitCheck

RETRYABLE_MESSAGE_SIGNATURES = (
    "rate limit",
    "429",
    "500",
    "502",
    "503",
    "504",
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
)


class PipelineError(Exception):
    """Base error for the enrichment pipeline."""


class ProviderError(PipelineError):
    """An external embedding/labeling provider call failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """429, 5xx, timeouts and connection resets: safe to retry."""


class PermanentProviderError(ProviderError):
    """Other 4xx and malformed responses: retrying will not help."""


class ProviderUnavailableError(PipelineError):
    """No provider is configured, so the feature is unavailable."""


class EmbeddingDimensionError(PipelineError):
    """The provider returned a vector whose length differs from D."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Invalid embedding dimensions: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class RateLimitExceeded(PipelineError):
    """A user's daily quota for an operation is exhausted."""

    def __init__(self, check: RateLimitCheck) -> None:
        super().__init__(check.reason or "Rate limit exceeded")
        self.check = check


def is_retryable_status(status_code: int | None) -> bool:
    return status_code is not None and (status_code == 429 or status_code >= 500)


def is_retryable_error(error: BaseException) -> bool:
    """Classify an error as transient (retry) or permanent (fail now)."""

    if isinstance(error, TransientProviderError):
        return True
    if isinstance(error, (PermanentProviderError, EmbeddingDimensionError, ProviderUnavailableError, RateLimitExceeded)):
        return False
    if isinstance(error, ProviderError):
        return is_retryable_status(error.status_code)
    if isinstance(error, ollama.ResponseError):
        return is_retryable_status(error.status_code)
    if isinstance(error, httpx.HTTPStatusError):
        return is_retryable_status(error.response.status_code)
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, TimeoutError, ConnectionError)):
        return True

    message = str(error).lower()
    return any(signature in message for signature in RETRYABLE_MESSAGE_SIGNATURES)
