"""Runtime configuration for the RAG system, read from the environment."""

import os
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, model_validator

# env var -> field name
ENV_VARS = {
    "MODEL_PATH": "model_path",
    "GENERATOR_BACKEND": "generator_backend",
    "OPENAI_BASE_URL": "openai_base_url",
    "OPENAI_API_KEY": "openai_api_key",
    "EMBEDDING_MODEL": "embedding_model",
    "KNOWLEDGE_BASE_DIR": "knowledge_base_dir",
    "INDEX_PATH": "index_path",
    "CHUNK_SIZE": "chunk_size",
    "CHUNK_OVERLAP": "chunk_overlap",
    "TOP_K": "top_k",
    "MAX_TOKENS": "max_tokens",
    "TEMPERATURE": "temperature",
    "TOP_P": "top_p",
    "TOP_K_SAMPLING": "top_k_sampling",
    "DEVICE": "device",
    "HOST": "host",
    "PORT": "port",
    "WARMUP_ON_STARTUP": "warmup_on_startup",
    "LOG_LEVEL": "log_level",
}


class RAGConfig(BaseModel):
    """All tunables of the RAG system. Every field has a default."""

    model_config = ConfigDict(protected_namespaces=())

    model_path: str = "./models/Qwen2.5-0.5B-Instruct"
    generator_backend: Literal["transformers", "openai"] = "transformers"
    openai_base_url: str = "http://localhost:8080/v1"
    openai_api_key: str = "not-needed"  # local servers ignore the key
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    knowledge_base_dir: Path = Path("./knowledge-base")
    index_path: Path = Path("./chroma-store")
    chunk_size: int = Field(default=1000, gt=0)
    chunk_overlap: int = Field(default=200, ge=0)
    top_k: int = Field(default=3, ge=1)
    max_tokens: int = Field(default=512, ge=1)
    temperature: float = Field(default=0.7, ge=0.0)
    top_p: float = Field(default=0.9, gt=0.0, le=1.0)
    top_k_sampling: int = Field(default=40, ge=0)
    device: str | None = None  # None = auto-detect
    host: str = "0.0.0.0"
    port: int = 3000
    warmup_on_startup: bool = False
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_overlap(self) -> "RAGConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be smaller than chunk_size ({self.chunk_size})"
            )
        return self

    @classmethod
    def from_env(cls, env_file: str | Path | None = None, **overrides: Any) -> "RAGConfig":
        """Build a config from environment variables (and an optional .env file).

        Keyword overrides win over the environment.
        """
        load_dotenv(env_file)
        values: dict[str, Any] = {}
        for env_name, field_name in ENV_VARS.items():
            raw = os.getenv(env_name)
            if raw is not None and raw.strip() != "":
                values[field_name] = raw.strip()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
