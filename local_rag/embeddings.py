"""Sentence embeddings for knowledge-base chunks and incoming queries."""

import asyncio
import logging
from collections.abc import Sequence
from functools import lru_cache

from sentence_transformers import SentenceTransformer

from local_rag.config import RAGConfig

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"


@lru_cache(maxsize=4)
def _load_model(model_name: str) -> SentenceTransformer:
    logger.info("Loading embedding model: %s", model_name)
    return SentenceTransformer(model_name)


class LocalEmbeddings:
    """Maps text to fixed-length, unit-norm vectors.

    Chunks and queries must go through the same model: an index built with
    one model cannot be searched with vectors from another, and
    ``dimension`` is what the coordinator checks against a loaded index.
    """

    def __init__(
        self,
        model: str = DEFAULT_EMBEDDING_MODEL,
        batch_size: int = 32,
        device: str | None = None,
    ):
        self.model_name = model
        self.batch_size = batch_size
        encoder = _load_model(model)
        self._model = encoder.to(device) if device else encoder

    @classmethod
    def from_config(cls, config: RAGConfig) -> "LocalEmbeddings":
        return cls(model=config.embedding_model, device=config.device)

    @property
    def dimension(self) -> int:
        return self._model.get_sentence_embedding_dimension()

    def _encode(self, texts: Sequence[str]) -> list[list[float]]:
        vectors = self._model.encode(
            list(texts),
            batch_size=self.batch_size,
            show_progress_bar=len(texts) > 100,
            normalize_embeddings=True,
            convert_to_numpy=True,
        )
        return [[float(x) for x in row] for row in vectors]

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        """One vector per text, in input order. Encoding runs off the event loop."""
        if not texts:
            return []
        loop = asyncio.get_running_loop()
        vectors = await loop.run_in_executor(None, self._encode, texts)
        logger.debug("Embedded %d texts with %s", len(vectors), self.model_name)
        return vectors

    async def embed_query(self, query: str) -> list[float]:
        [vector] = await self.embed_texts([query])
        return vector
