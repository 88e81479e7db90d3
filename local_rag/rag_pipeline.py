"""RAG pipeline orchestrator."""

import logging
from collections.abc import AsyncGenerator

from local_rag.coordinator import InitializationCoordinator
from local_rag.errors import GenerationError, InvalidInputError, RAGError, RetrievalError
from local_rag.llm_client import GenerationOptions
from local_rag.models import Prompt, SearchResult
from local_rag.stream_adapter import TokenStream

logger = logging.getLogger(__name__)

SYSTEM_PREAMBLE = """You are a helpful assistant. Use the following context to answer the user's question. If the context doesn't contain relevant information, use your general knowledge to provide a helpful response.

Context:
{context}

Answer the user's question based on the context provided above."""


def build_context(search_results: list[SearchResult]) -> str:
    """Number retrieved chunks from 1 in the order given."""
    return "\n\n".join(
        f"[Document {i}]\n{result.chunk.text}" for i, result in enumerate(search_results, 1)
    )


def build_prompt(query: str, search_results: list[SearchResult]) -> Prompt:
    return Prompt(
        system_preamble=SYSTEM_PREAMBLE,
        context_block=build_context(search_results),
        user_query=query,
    )


def validate_query(query: str) -> str:
    if not isinstance(query, str) or not query.strip():
        raise InvalidInputError("Query is required and must be a non-empty string")
    return query


class RAGPipeline:
    """Orchestrates retrieval and generation for RAG system.

    The coordinator must be ready before either answer method is called.
    """

    def __init__(
        self,
        coordinator: InitializationCoordinator,
        default_top_k: int | None = None,
        options: GenerationOptions | None = None,
    ):
        self.coordinator = coordinator
        self.default_top_k = default_top_k or coordinator.config.top_k
        self.options = options or GenerationOptions.from_config(coordinator.config)

    def _resolve_k(self, k: int | None) -> int:
        k = self.default_top_k if k is None else k
        if k < 1:
            raise InvalidInputError(f"top_k must be at least 1, got {k}")
        return k

    async def retrieve(self, query: str, k: int) -> list[SearchResult]:
        components = self.coordinator.components
        logger.info("Retrieving top %d relevant documents for query: %r", k, query)
        try:
            vector = await components.embedder.embed_query(query)
            return components.chunk_store.query(vector, k)
        except Exception as exc:
            raise RetrievalError(f"Retrieval failed: {exc}") from exc

    async def _prepare(self, query: str, k: int | None) -> Prompt:
        query = validate_query(query)
        k = self._resolve_k(k)
        results = await self.retrieve(query, k)
        return build_prompt(query, results)

    async def answer(self, query: str, k: int | None = None) -> str:
        """Answer ``query`` in one piece."""
        prompt = await self._prepare(query, k)
        generator = self.coordinator.components.generator
        logger.info("Generating response...")
        try:
            return await generator.generate(prompt.to_messages(), self.options)
        except RAGError:
            raise
        except Exception as exc:
            raise GenerationError(f"Generation failed: {exc}") from exc

    async def answer_stream(self, query: str, k: int | None = None) -> AsyncGenerator[str, None]:
        """Answer ``query`` token by token.

        Closing the generator early cancels the underlying generation.
        """
        prompt = await self._prepare(query, k)
        generator = self.coordinator.components.generator
        messages = prompt.to_messages()

        async def produce(on_token, cancel_event):
            await generator.generate_streaming(messages, self.options, on_token, cancel_event)

        stream = TokenStream().start(produce)
        try:
            async for token in stream:
                yield token
        except RAGError:
            raise
        except Exception as exc:
            raise GenerationError(f"Generation failed: {exc}") from exc
        finally:
            await stream.aclose()
