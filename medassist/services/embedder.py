"""Sentence embeddings for sections and chat queries.

Two providers implement the same contract: a local sentence-transformers
model (mean pooling + L2 normalization) and the OpenAI embeddings API.
Providers are constructed once per process and injected where needed.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import numpy as np
from openai import OpenAI, RateLimitError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from medassist.core.config import Settings
from medassist.core.logging import get_logger

logger = get_logger(__name__)

# Batch size for embedding requests (OpenAI allows up to 2048 texts per request)
EMBEDDING_BATCH_SIZE = 20


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Contract for embedding generation."""

    @property
    def model_name(self) -> str:
        ...

    @property
    def dimensions(self) -> int:
        ...

    def embed(self, text: str) -> np.ndarray:
        """Generate embedding for a single text."""
        ...

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        """Generate embeddings for multiple texts, in input order."""
        ...


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    vector = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        return vector
    return vector / norm


def _validate_texts(texts: list[str]) -> None:
    if any(not isinstance(text, str) or not text.strip() for text in texts):
        raise ValueError("All texts must be non-empty strings for embedding.")


class SentenceTransformerEmbeddings:
    """Local sentence-embedding model with mean pooling and L2 normalization.

    The model is assembled explicitly (transformer, mean pooling, normalize)
    instead of trusting the checkpoint's pooling config, and loaded on first
    use.
    """

    def __init__(
        self,
        model_name: str = "thenlper/gte-small",
        *,
        dimensions: int = 384,
        device: str | None = None,
    ) -> None:
        self._model_name = model_name
        self._dimensions = dimensions
        self._device = device
        self._model = None

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model(self):
        """Lazy-load embedding model."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer, models

            logger.info("Loading embedding model %s", self._model_name)
            word_embeddings = models.Transformer(self._model_name)
            pooling = models.Pooling(
                word_embeddings.get_word_embedding_dimension(),
                pooling_mode="mean",
            )
            model = SentenceTransformer(
                modules=[word_embeddings, pooling, models.Normalize()],
                device=self._device,
            )
            loaded_dim = model.get_sentence_embedding_dimension()
            if loaded_dim != self._dimensions:
                raise ValueError(
                    f"Model {self._model_name} produces {loaded_dim}-dim vectors, "
                    f"configured dimensionality is {self._dimensions}."
                )
            self._model = model
        return self._model

    def embed(self, text: str) -> np.ndarray:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        if not texts:
            return []
        _validate_texts(texts)
        vectors = self.model.encode(
            texts,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return [np.asarray(vector, dtype=np.float32) for vector in vectors]


class OpenAIEmbeddings:
    """OpenAI embeddings endpoint, batched, with retry on rate limits."""

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        *,
        dimensions: int = 1536,
        api_key: str | None = None,
        client: OpenAI | None = None,
    ) -> None:
        self._model_name = model
        self._dimensions = dimensions
        self._client = client or OpenAI(api_key=api_key)

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @retry(
        retry=retry_if_exception_type(RateLimitError),
        stop=stop_after_attempt(10),
        wait=wait_exponential_jitter(initial=5, max=120, jitter=5),
        reraise=True,
    )
    def _create(self, texts: list[str]) -> list[np.ndarray]:
        resp = self._client.embeddings.create(
            model=self._model_name,
            input=texts,
            dimensions=self._dimensions,
        )
        return [l2_normalize(np.array(item.embedding, dtype=np.float32)) for item in resp.data]

    def embed(self, text: str) -> np.ndarray:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        """Embed texts in batches of EMBEDDING_BATCH_SIZE.

        Raises:
            RateLimitError: If rate limit is exceeded after all retries
            ValueError: If texts are invalid
        """
        if not texts:
            return []
        _validate_texts(texts)

        all_embeddings: list[np.ndarray] = []
        for i in range(0, len(texts), EMBEDDING_BATCH_SIZE):
            batch = texts[i : i + EMBEDDING_BATCH_SIZE]
            all_embeddings.extend(self._create(batch))
        return all_embeddings


def get_embedding_provider(settings: Settings) -> EmbeddingProvider:
    """Build the configured embedding provider."""
    if settings.embedding_backend == "openai":
        return OpenAIEmbeddings(
            model=settings.embedding_model,
            dimensions=settings.embedding_dim,
            api_key=settings.openai_api_key,
        )
    return SentenceTransformerEmbeddings(
        settings.embedding_model,
        dimensions=settings.embedding_dim,
    )
