"""Ollama-backed embedding and labeling providers."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TypeVar

import httpx
import ollama
import structlog

from feedlens.errors import PermanentProviderError, TransientProviderError, is_retryable_status

log = structlog.get_logger(__name__)

T = TypeVar("T")

LABEL_OPTIONS = {"temperature": 0.3, "num_predict": 200}


@contextmanager
def _translate_errors(model: str) -> Iterator[None]:
    """Map client and transport failures onto the transient/permanent taxonomy."""

    try:
        yield
    except ollama.ResponseError as exc:
        error_cls = TransientProviderError if is_retryable_status(exc.status_code) else PermanentProviderError
        raise error_cls(f"Ollama error for {model}: {exc.error}", status_code=exc.status_code) from exc
    except (httpx.TimeoutException, TimeoutError) as exc:
        raise TransientProviderError(f"Ollama request timed out for {model}") from exc
    except (httpx.NetworkError, ConnectionError) as exc:
        raise TransientProviderError(f"Ollama network error for {model}: {exc}") from exc


def _estimate_tokens(text: str) -> int:
    return len(text.split())


class _OllamaProvider:
    name = "ollama"

    def __init__(
        self,
        host: str,
        model: str,
        timeout: float = 15.0,
        client_factory: Callable[..., ollama.Client] = ollama.Client,
    ) -> None:
        self.host = host
        self.model = model
        self.timeout = timeout
        self._client = client_factory(host=host, timeout=timeout)


class OllamaEmbeddingProvider(_OllamaProvider):
    def embed(self, text: str) -> tuple[list[float], int]:
        with _translate_errors(self.model):
            response = self._client.embed(model=self.model, input=text)

        embeddings = response.embeddings or []
        if not embeddings:
            raise PermanentProviderError(f"Ollama returned no embedding for {self.model}")

        tokens = response.prompt_eval_count or _estimate_tokens(text)
        return [float(value) for value in embeddings[0]], tokens


class OllamaLabelingProvider(_OllamaProvider):
    def complete(self, prompt: str) -> str:
        with _translate_errors(self.model):
            response = self._client.chat(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                options=LABEL_OPTIONS,
            )

        content = (response.message.content or "").strip()
        log.debug(
            "ollama_completion",
            model=self.model,
            prompt_tokens=response.prompt_eval_count,
            completion_tokens=response.eval_count,
        )
        return content
