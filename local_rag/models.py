"""Pydantic models for RAG system."""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Chunk(BaseModel):
    """A span of source text plus its embedding vector."""

    model_config = ConfigDict(frozen=True)

    text: str
    source_id: str
    vector: list[float]


class SearchResult(BaseModel):
    """Result from semantic search."""

    chunk: Chunk
    score: float


class Message(BaseModel):
    """One chat message. The role set is closed."""

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str


def system_message(content: str) -> Message:
    return Message(role="system", content=content)


def user_message(content: str) -> Message:
    return Message(role="user", content=content)


def assistant_message(content: str) -> Message:
    return Message(role="assistant", content=content)


class Prompt(BaseModel):
    """Prompt assembled for a single request."""

    system_preamble: str
    context_block: str
    user_query: str

    @property
    def system_text(self) -> str:
        return self.system_preamble.format(context=self.context_block)

    def to_messages(self) -> list[Message]:
        return [system_message(self.system_text), user_message(self.user_query)]


class ChatRequest(BaseModel):
    """Body of a chat request."""

    model_config = ConfigDict(populate_by_name=True)

    query: str = ""
    top_k: int | None = Field(default=None, alias="topK", ge=1)

    @field_validator("top_k", mode="before")
    @classmethod
    def _zero_means_default(cls, value):
        # clients send 0 for "use the configured default"
        return None if value == 0 else value


class StreamEvent(BaseModel):
    """One server-sent event of a streamed answer."""

    type: Literal["chunk", "done", "error"]
    content: str | None = None
    message: str | None = None

    @classmethod
    def chunk(cls, content: str) -> "StreamEvent":
        return cls(type="chunk", content=content)

    @classmethod
    def done(cls, message: str = "Stream completed") -> "StreamEvent":
        return cls(type="done", message=message)

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(type="error", message=message)

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json(exclude_none=True)}\n\n"


class AnswerResponse(BaseModel):
    """Response from the whole-answer endpoint."""

    answer: str


class ReadinessStatus(BaseModel):
    initialized: bool
    ready: bool


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthResponse(BaseModel):
    status: Literal["healthy", "unhealthy"]
    rag: ReadinessStatus
    timestamp: str = Field(default_factory=_now)


class WarmupResponse(BaseModel):
    status: Literal["success", "error"]
    message: str
    timestamp: str = Field(default_factory=_now)
