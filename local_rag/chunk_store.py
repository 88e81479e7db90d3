"""Persistent chunk store backed by a ChromaDB collection."""

import json
import logging
from pathlib import Path
from typing import Any

import chromadb
from chromadb.config import Settings

from local_rag.errors import IndexAbsentError, IndexCorruptError, PersistenceError
from local_rag.models import Chunk, SearchResult

logger = logging.getLogger(__name__)

COLLECTION_NAME = "knowledge_base"
MANIFEST_FILE = "manifest.json"


class ChunkStore:
    """Embedded text chunks with top-k cosine search.

    The ChromaDB collection holds the vectors; ``manifest.json`` next to it
    marks the index as complete. An index directory without a manifest is
    treated as absent, so a build interrupted halfway is rebuilt rather than
    served.
    """

    def __init__(self, index_path: Path, embedding_model: str, client: Any, collection: Any):
        self.index_path = Path(index_path)
        self.embedding_model = embedding_model
        self.client = client
        self.collection = collection
        self._count = 0
        self._dimension: int | None = None

    @staticmethod
    def _client(index_path: Path):
        return chromadb.PersistentClient(
            path=str(index_path), settings=Settings(anonymized_telemetry=False)
        )

    @classmethod
    def create(cls, index_path: Path, embedding_model: str) -> "ChunkStore":
        """Open an empty store at ``index_path``, discarding any previous contents."""
        index_path = Path(index_path)
        index_path.mkdir(parents=True, exist_ok=True)
        (index_path / MANIFEST_FILE).unlink(missing_ok=True)

        client = cls._client(index_path)
        try:
            client.delete_collection(COLLECTION_NAME)
        except Exception:
            # nothing to drop on a fresh directory
            logger.debug("No existing collection at %s", index_path)
        collection = client.create_collection(
            name=COLLECTION_NAME,
            metadata={"hnsw:space": "cosine", "embedding_model": embedding_model},
        )
        logger.info("Created new chunk store at %s", index_path)
        return cls(index_path, embedding_model, client, collection)

    @classmethod
    def load(cls, index_path: Path, embedding_model: str) -> "ChunkStore":
        """Open a persisted store.

        Raises IndexAbsentError when nothing complete was persisted here, and
        IndexCorruptError when something was but cannot be used.
        """
        index_path = Path(index_path)
        manifest_file = index_path / MANIFEST_FILE
        if not manifest_file.exists():
            raise IndexAbsentError(f"No index found at {index_path}")

        try:
            manifest = json.loads(manifest_file.read_text(encoding="utf-8"))
            count = int(manifest["count"])
            dimension = manifest["dimension"]
            stored_model = manifest["embedding_model"]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise IndexCorruptError(f"Unreadable index manifest {manifest_file}: {exc}") from exc

        if stored_model != embedding_model:
            raise IndexCorruptError(
                f"Index at {index_path} was built with {stored_model!r}, not {embedding_model!r}"
            )

        try:
            client = cls._client(index_path)
            collection = client.get_collection(name=COLLECTION_NAME)
            actual = collection.count()
        except Exception as exc:
            raise IndexCorruptError(f"Cannot open index at {index_path}: {exc}") from exc

        if actual != count:
            raise IndexCorruptError(
                f"Index at {index_path} holds {actual} chunks, manifest says {count}"
            )

        store = cls(index_path, embedding_model, client, collection)
        store._count = count
        store._dimension = dimension
        logger.info("Loaded chunk store from %s (%d chunks)", index_path, count)
        return store

    @property
    def count(self) -> int:
        return self._count

    @property
    def dimension(self) -> int | None:
        return self._dimension

    def add(self, chunks: list[Chunk]) -> None:
        """Append chunks in order. All vectors must share one dimension."""
        if not chunks:
            return

        dimension = self._dimension if self._dimension is not None else len(chunks[0].vector)
        for chunk in chunks:
            if len(chunk.vector) != dimension:
                raise ValueError(
                    f"Chunk vector has dimension {len(chunk.vector)}, store expects {dimension}"
                )

        start = self._count
        self.collection.add(
            ids=[f"chunk-{start + i}" for i in range(len(chunks))],
            embeddings=[chunk.vector for chunk in chunks],
            documents=[chunk.text for chunk in chunks],
            metadatas=[
                {"source_id": chunk.source_id, "seq": start + i}
                for i, chunk in enumerate(chunks)
            ],
        )
        self._count = start + len(chunks)
        self._dimension = dimension
        logger.info("Added %d chunks to store", len(chunks))

    def query(self, vector: list[float], k: int) -> list[SearchResult]:
        """Return up to ``k`` chunks by descending similarity.

        Equal scores keep insertion order, including across the k-th place:
        the fetch widens until the k-th hit scores strictly above the last
        candidate fetched, so every chunk tied with it is considered.
        """
        if k < 1:
            raise ValueError(f"k must be at least 1, got {k}")
        if self._count == 0:
            return []

        # one extra row shows whether the k-th place is tied
        n = min(k + 1, self._count)
        while True:
            results = self.collection.query(
                query_embeddings=[vector],
                n_results=n,
                include=["documents", "metadatas", "distances", "embeddings"],
            )
            if not results["ids"] or not results["ids"][0]:
                return []
            fetched = results["distances"][0]
            if n >= self._count or len(fetched) < n or fetched[k - 1] < fetched[-1]:
                break
            n = min(n * 2, self._count)

        ids = results["ids"][0]
        documents = results["documents"][0]
        metadatas = results["metadatas"][0]
        distances = results["distances"][0]
        embeddings = results["embeddings"][0]

        seen = set()
        ranked = []
        for i, chunk_id in enumerate(ids):
            if chunk_id in seen:
                continue
            seen.add(chunk_id)
            metadata = metadatas[i] or {}
            chunk = Chunk(
                text=documents[i],
                source_id=metadata.get("source_id", ""),
                vector=[float(x) for x in embeddings[i]],
            )
            score = 1.0 - distances[i]
            ranked.append((-score, metadata.get("seq", i), SearchResult(chunk=chunk, score=score)))

        ranked.sort(key=lambda item: (item[0], item[1]))
        return [result for _, _, result in ranked[:k]]

    def persist(self) -> None:
        """Mark the store as complete by writing its manifest."""
        manifest = {
            "embedding_model": self.embedding_model,
            "dimension": self._dimension,
            "count": self._count,
        }
        try:
            self.index_path.mkdir(parents=True, exist_ok=True)
            (self.index_path / MANIFEST_FILE).write_text(json.dumps(manifest), encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"Failed to save index to {self.index_path}: {exc}") from exc
        logger.info("Saved chunk store to %s", self.index_path)

