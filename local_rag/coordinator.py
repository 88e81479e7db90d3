"""
Lifecycle owner for the generator, embedder and chunk store.

    UNINITIALIZED --ensure_ready()--> INITIALIZING --ok--> READY
          ^                                |
          +------------- failure ----------+

The first caller to find the coordinator UNINITIALIZED creates one shared
task; every caller that arrives while it runs awaits that same task. The
check and the assignment happen with no await between them, so on a single
event loop no second task can be started. A failed attempt clears the
handle and the partial components, so the next call starts over.
"""

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from local_rag.chunk_store import ChunkStore
from local_rag.config import RAGConfig
from local_rag.document_loader import load_and_split
from local_rag.embeddings import LocalEmbeddings
from local_rag.errors import IndexAbsentError, InitializationError
from local_rag.llm_client import load_generator
from local_rag.models import Chunk, ReadinessStatus

logger = logging.getLogger(__name__)


class SystemState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


@dataclass(frozen=True)
class Components:
    generator: Any
    embedder: Any
    chunk_store: Any


def _load_embedder(config: RAGConfig) -> LocalEmbeddings:
    return LocalEmbeddings.from_config(config)


async def build_chunk_store(config: RAGConfig, embedder, open_store=ChunkStore) -> ChunkStore:
    """Read, split, embed and persist the knowledge base as a fresh store."""
    doc_chunks = await asyncio.to_thread(
        load_and_split, config.knowledge_base_dir, config.chunk_size, config.chunk_overlap
    )
    vectors = await embedder.embed_texts([c.text for c in doc_chunks])

    store = await asyncio.to_thread(open_store.create, config.index_path, config.embedding_model)
    chunks = [
        Chunk(text=c.text, source_id=c.source_id, vector=vector)
        for c, vector in zip(doc_chunks, vectors)
    ]
    await asyncio.to_thread(store.add, chunks)
    await asyncio.to_thread(store.persist)
    if chunks:
        logger.info("Created chunk store with %d document chunks", len(chunks))
    else:
        logger.warning("No documents found in knowledge base directory, created empty chunk store")
    return store


class InitializationCoordinator:
    """Owns the process-wide model and index handles."""

    def __init__(
        self,
        config: RAGConfig,
        load_generator: Callable[[RAGConfig], Any] = load_generator,
        load_embedder: Callable[[RAGConfig], Any] = _load_embedder,
        chunk_store_cls=ChunkStore,
    ):
        self.config = config
        self._load_generator = load_generator
        self._load_embedder = load_embedder
        self._chunk_store_cls = chunk_store_cls
        self._state = SystemState.UNINITIALIZED
        self._task: asyncio.Task | None = None
        self._components: Components | None = None

    @property
    def state(self) -> SystemState:
        return self._state

    def is_ready(self) -> bool:
        return self._state is SystemState.READY and self._components is not None

    def readiness(self) -> ReadinessStatus:
        ready = self.is_ready()
        return ReadinessStatus(initialized=ready, ready=ready)

    @property
    def components(self) -> Components:
        if not self.is_ready():
            raise RuntimeError("RAG system is not initialized; call ensure_ready() first")
        return self._components

    async def ensure_ready(self) -> None:
        """Initialize once, sharing one in-flight attempt among all callers."""
        if self._state is SystemState.READY:
            return
        if self._task is None:
            self._state = SystemState.INITIALIZING
            self._task = asyncio.get_running_loop().create_task(self._initialize())
            self._task.add_done_callback(self._on_done)
        # a cancelled waiter must not cancel the shared attempt
        await asyncio.shield(self._task)

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is not None:
            self._components = None
            self._state = SystemState.UNINITIALIZED
        else:
            self._state = SystemState.READY
        self._task = None

    async def _initialize(self) -> None:
        config = self.config
        logger.info("Initializing RAG system...")
        try:
            logger.info("Step 1: Loading LLM model...")
            generator = await asyncio.to_thread(self._load_generator, config)

            logger.info("Step 2: Loading embedding model...")
            embedder = await asyncio.to_thread(self._load_embedder, config)

            logger.info("Step 3: Initializing chunk store...")
            chunk_store = await self._load_or_build_store(embedder)

            dimension = getattr(embedder, "dimension", None)
            if chunk_store.dimension is not None and dimension is not None and chunk_store.dimension != dimension:
                raise InitializationError(
                    f"Index dimension {chunk_store.dimension} does not match embedder dimension {dimension}"
                )
        except InitializationError:
            logger.exception("Error initializing RAG system")
            raise
        except Exception as exc:
            logger.exception("Error initializing RAG system")
            raise InitializationError(f"Failed to initialize RAG system: {exc}") from exc

        self._components = Components(generator=generator, embedder=embedder, chunk_store=chunk_store)
        logger.info("RAG system initialized successfully")

    async def _load_or_build_store(self, embedder):
        config = self.config
        try:
            store = await asyncio.to_thread(
                self._chunk_store_cls.load, config.index_path, config.embedding_model
            )
            logger.info("Chunk store loaded from existing index")
            return store
        except IndexAbsentError:
            logger.info("No index found, building from knowledge base at %s", config.knowledge_base_dir)
        return await build_chunk_store(config, embedder, self._chunk_store_cls)

    async def rebuild_index(self) -> int:
        """Re-embed the knowledge base into a fresh index. Not safe alongside query traffic."""
        if self._state is SystemState.INITIALIZING:
            raise RuntimeError("Cannot rebuild the index while initialization is running")
        if self.is_ready():
            embedder = self._components.embedder
        else:
            embedder = await asyncio.to_thread(self._load_embedder, self.config)
        store = await build_chunk_store(self.config, embedder, self._chunk_store_cls)
        if self.is_ready():
            self._components = Components(
                generator=self._components.generator, embedder=embedder, chunk_store=store
            )
        return store.count

    async def close(self) -> None:
        """Release the model. The coordinator returns to UNINITIALIZED."""
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        components, self._components = self._components, None
        self._state = SystemState.UNINITIALIZED
        if components is not None and hasattr(components.generator, "close"):
            await components.generator.close()
