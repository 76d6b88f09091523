"""
Embedding Service

Embeds query text with the OpenAI embeddings API. Vectors are validated
against the index dimension before they reach the vector store.
"""

import asyncio
import logging
from typing import List, Optional

import numpy as np

logger = logging.getLogger("mailrecall.common.embedding_service")


class EmbeddingService:
    """
    Query embedding service.

    One instance is built at process start and injected into the searcher.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "text-embedding-3-small",
        dimension: int = 1536,
        client=None,
    ):
        self._model = model
        self._dimension = dimension
        self._client = client

        if self._client is None and api_key:
            try:
                from openai import OpenAI
                self._client = OpenAI(api_key=api_key)
                logger.info("Initialized embeddings with model=%s", model)
            except ImportError:
                logger.warning("openai package not installed")
            except Exception as e:
                logger.warning("Failed to initialize OpenAI embeddings client: %s", e)

    @property
    def is_available(self) -> bool:
        """Check if embedding service is available"""
        return self._client is not None

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of strings to embed

        Returns:
            List of embedding vectors
        """
        if not self._client:
            raise RuntimeError("Embedding client not initialized")

        if not texts:
            return []

        response = self._client.embeddings.create(model=self._model, input=texts)
        vectors = np.asarray([item.embedding for item in response.data], dtype=np.float32)

        if vectors.ndim != 2 or vectors.shape[1] != self._dimension:
            raise ValueError(
                f"Embedding dimension mismatch: expected {self._dimension}, got shape {vectors.shape}"
            )
        if not np.all(np.isfinite(vectors)):
            raise ValueError("Embedding contains non-finite values")

        return vectors.tolist()

    def embed_single(self, text: str) -> List[float]:
        """Generate embedding for a single text."""
        return self.embed_batch([text])[0]

    async def embed(self, text: str) -> List[float]:
        """Embed capability used by the semantic searcher."""
        return await asyncio.to_thread(self.embed_single, text)
