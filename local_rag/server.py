"""
FastAPI application exposing the RAG pipeline.

Endpoints:
  GET  /health       readiness probe (503 until initialized)
  POST /warmup       initialize outside the request path (idempotent)
  POST /chat/stream  answer as server-sent events
  POST /chat         answer as one JSON document

The model and index are loaded on first touch unless WARMUP_ON_STARTUP is set.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from local_rag.config import RAGConfig
from local_rag.coordinator import InitializationCoordinator
from local_rag.errors import InvalidInputError, RAGError
from local_rag.models import (
    AnswerResponse,
    ChatRequest,
    HealthResponse,
    StreamEvent,
    WarmupResponse,
)
from local_rag.rag_pipeline import RAGPipeline, validate_query

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",  # disable nginx buffering
}


def _error_message(exc: BaseException, fallback: str = "Unknown error occurred") -> str:
    return str(exc) or fallback


async def _single_event(event: StreamEvent) -> AsyncGenerator[str, None]:
    yield event.to_sse()


async def stream_events(
    coordinator: InitializationCoordinator,
    pipeline: RAGPipeline,
    request: ChatRequest,
) -> AsyncGenerator[str, None]:
    """Frame one streamed answer as SSE. Exactly one terminal event is sent."""
    try:
        validate_query(request.query)
        await coordinator.ensure_ready()
        tokens = pipeline.answer_stream(request.query, request.top_k)
        try:
            async for token in tokens:
                yield StreamEvent.chunk(token).to_sse()
        finally:
            await tokens.aclose()
        yield StreamEvent.done().to_sse()
    except RAGError as exc:
        logger.warning("Stream ended with error: %s", exc)
        yield StreamEvent.error(_error_message(exc)).to_sse()
    except Exception as exc:
        logger.exception("Unexpected streaming error")
        yield StreamEvent.error(_error_message(exc)).to_sse()


def create_app(
    config: RAGConfig | None = None,
    coordinator: InitializationCoordinator | None = None,
) -> FastAPI:
    config = config or (coordinator.config if coordinator is not None else RAGConfig.from_env())
    coordinator = coordinator or InitializationCoordinator(config)
    pipeline = RAGPipeline(coordinator, default_top_k=config.top_k)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if config.warmup_on_startup:
            try:
                await coordinator.ensure_ready()
            except RAGError as exc:
                # the service stays up; /warmup or the first request retries
                logger.error("Warm-up at startup failed: %s", exc)
        yield
        logger.info("Shutting down...")
        await coordinator.close()

    app = FastAPI(
        title="Local RAG API",
        description="Streaming retrieval-augmented answers from a local knowledge base.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.coordinator = coordinator
    app.state.pipeline = pipeline

    # SSE clients connect from arbitrary origins
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=".*",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health():
        status = coordinator.readiness()
        body = HealthResponse(status="healthy" if status.ready else "unhealthy", rag=status)
        return JSONResponse(status_code=200 if status.ready else 503, content=body.model_dump())

    @app.post("/warmup", response_model=WarmupResponse, tags=["health"])
    async def warmup():
        if coordinator.is_ready():
            return WarmupResponse(status="success", message="RAG system is already initialized")
        try:
            await coordinator.ensure_ready()
        except RAGError as exc:
            body = WarmupResponse(
                status="error",
                message=_error_message(exc, "Failed to initialize RAG system"),
            )
            return JSONResponse(status_code=500, content=body.model_dump())
        return WarmupResponse(status="success", message="RAG system initialized successfully")

    @app.post("/chat/stream", tags=["chat"])
    async def chat_stream(request: Request):
        # malformed bodies are reported in-band, like every other stream failure
        try:
            body = ChatRequest.model_validate(await request.json())
            events = stream_events(coordinator, pipeline, body)
        except ValueError as exc:
            events = _single_event(StreamEvent.error(f"Invalid request: {exc}"))
        return StreamingResponse(events, media_type="text/event-stream", headers=SSE_HEADERS)

    @app.post("/chat", response_model=AnswerResponse, tags=["chat"])
    async def chat(body: ChatRequest):
        try:
            validate_query(body.query)
            await coordinator.ensure_ready()
            answer = await pipeline.answer(body.query, body.top_k)
        except InvalidInputError as exc:
            return JSONResponse(status_code=400, content={"detail": str(exc)})
        except RAGError as exc:
            logger.error("Chat request failed: %s", exc)
            return JSONResponse(status_code=500, content={"detail": _error_message(exc)})
        return AnswerResponse(answer=answer)

    return app
