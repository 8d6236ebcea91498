"""
Sentence embedding client.

Wraps a sentence-transformers model behind an async embed() call. Vectors
come back L2-normalized as a float32 matrix, so inner product equals cosine
similarity in the vector index.

The model loads lazily on first use; encoding runs in a worker thread so it
never blocks the event loop.
"""

import asyncio
import logging
import time
from typing import Optional, Protocol

import numpy as np
from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    async def embed(self, texts: list[str]) -> np.ndarray: ...


class SentenceEmbedder:
    """Local sentence-transformers model exposed as an embedding service."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self._model_name = model_name
        self._model: Optional[SentenceTransformer] = None

    def _load(self) -> SentenceTransformer:
        if self._model is None:
            self._model = SentenceTransformer(self._model_name)
            logger.info(
                "embedder.loaded",
                extra={"action": "embedder.loaded", "model": self._model_name},
            )
        return self._model

    def _encode(self, texts: list[str]) -> np.ndarray:
        model = self._load()
        vectors = model.encode(texts, normalize_embeddings=True, convert_to_numpy=True)
        return np.asarray(vectors, dtype="float32")

    async def embed(self, texts: list[str]) -> np.ndarray:
        """Embed texts into an (n, d) float32 matrix of unit vectors."""
        start = time.monotonic()
        vectors = await asyncio.to_thread(self._encode, texts)
        logger.debug(
            "embedder.encoded",
            extra={
                "action": "embedder.encoded",
                "count": len(texts),
                "latency_ms": int((time.monotonic() - start) * 1000),
            },
        )
        return vectors
