"""OpenAI embedding gateway: batching, rate-limit backoff, dimension checks."""

import logging
from typing import Any, List, Optional, Sequence

import openai
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import Settings
from .errors import ConfigurationError, EmbeddingError

logger = logging.getLogger(__name__)


def make_openai_client(settings: Settings) -> openai.OpenAI:
    """Create the OpenAI client used for embeddings and completions."""
    if not settings.openai_api_key:
        raise ConfigurationError("OpenAI API key not found in environment variables")
    return openai.OpenAI(api_key=settings.openai_api_key)


def batched(items: Sequence[Any], size: int) -> List[Sequence[Any]]:
    """Split a sequence into consecutive slices of at most ``size`` items."""
    return [items[i:i + size] for i in range(0, len(items), size)]


class EmbeddingGateway:
    """Turns text into fixed-length vectors through the embeddings API."""

    def __init__(
        self,
        client: Any,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        batch_size: int = 50,
        max_attempts: int = 3,
        backoff_min: float = 1.0,
        backoff_max: float = 10.0
    ):
        self.client = client
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[Any] = None) -> "EmbeddingGateway":
        return cls(
            client=client if client is not None else make_openai_client(settings),
            model=settings.embed_model,
            dimensions=settings.embed_dimensions,
            batch_size=settings.embed_batch_size,
            max_attempts=settings.embed_max_attempts,
            backoff_min=settings.embed_backoff_min,
            backoff_max=settings.embed_backoff_max,
        )

    def _request(self, texts: List[str]) -> List[List[float]]:
        response = self.client.embeddings.create(
            model=self.model,
            input=texts,
            dimensions=self.dimensions
        )
        return [list(item.embedding) for item in response.data]

    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        retrying = Retrying(
            retry=retry_if_exception_type(openai.RateLimitError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.backoff_min, max=self.backoff_max),
            before_sleep=lambda state: logger.warning(
                f"Embedding rate limited (attempt {state.attempt_number}/{self.max_attempts}), backing off"
            ),
        )
        try:
            embeddings = retrying(self._request, texts)
        except RetryError as e:
            raise EmbeddingError(
                f"Embedding service rate limit persisted after {self.max_attempts} attempts"
            ) from e.last_attempt.exception()
        except Exception as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        if len(embeddings) != len(texts):
            raise EmbeddingError(
                f"Embedding service returned {len(embeddings)} vectors for {len(texts)} inputs"
            )
        for vector in embeddings:
            if len(vector) != self.dimensions:
                raise EmbeddingError(
                    f"Expected {self.dimensions}-dimensional vectors, got {len(vector)}"
                )
        return embeddings

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Embed texts in batches of at most ``batch_size``.

        Args:
            texts: Chunk texts to embed

        Returns:
            One vector per input text, in input order

        Raises:
            EmbeddingError: on any failure; rate limits are retried first
        """
        vectors: List[List[float]] = []
        for batch in batched(list(texts), self.batch_size):
            vectors.extend(self._embed_batch(list(batch)))
        logger.debug(f"Generated {len(vectors)} embeddings using {self.model}")
        return vectors

    def embed_query(self, text: str) -> List[float]:
        """Embed a single question."""
        return self._embed_batch([text])[0]
