"""Local language-model clients for answer generation.

Two backends share one interface:

    generate(messages, options) -> str
    generate_streaming(messages, options, on_token, cancel_event=None) -> None

``TransformersGenerator`` runs a causal LM in-process with transformers.
``OpenAICompatibleClient`` talks to a locally hosted OpenAI-compatible server
(llama.cpp server, vLLM, Ollama) through the openai SDK.
"""

import asyncio
import contextlib
import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

import torch
from openai import AsyncOpenAI
from transformers import (
    AutoModelForCausalLM,
    AutoTokenizer,
    StoppingCriteria,
    StoppingCriteriaList,
    TextStreamer,
)

from local_rag.config import RAGConfig
from local_rag.models import Message

logger = logging.getLogger(__name__)

TokenCallback = Callable[[str], None]

_ROLE_LABELS = {"system": "System", "user": "User", "assistant": "Assistant"}


@dataclass(frozen=True)
class GenerationOptions:
    max_tokens: int = 512
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40

    @classmethod
    def from_config(cls, config: RAGConfig) -> "GenerationOptions":
        return cls(
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            top_p=config.top_p,
            top_k=config.top_k_sampling,
        )


def format_messages(messages: Sequence[Message]) -> str:
    """Render messages as a plain-text transcript ending with an assistant cue."""
    prompt = "".join(f"{_ROLE_LABELS[m.role]}: {m.content}\n\n" for m in messages)
    return prompt + "Assistant:"


class _CallbackStreamer(TextStreamer):
    """TextStreamer that hands each finalized piece of text to a callback."""

    def __init__(self, tokenizer, on_token: TokenCallback):
        super().__init__(tokenizer, skip_prompt=True, skip_special_tokens=True)
        self._on_token = on_token

    def on_finalized_text(self, text: str, stream_end: bool = False):
        if text:
            self._on_token(text)


class _StopOnEvent(StoppingCriteria):
    def __init__(self, event: threading.Event):
        self._event = event

    def __call__(self, input_ids, scores, **kwargs):
        return torch.full(
            (input_ids.shape[0],), self._event.is_set(), dtype=torch.bool, device=input_ids.device
        )


class TransformersGenerator:
    """In-process causal LM loaded from a local directory or hub id.

    A single model instance cannot run two ``generate`` calls at once, so
    requests are serialized on an asyncio lock.
    """

    def __init__(self, model_path: str, device: str | None = None):
        self.model_path = model_path
        self.device = device or ("cuda" if torch.cuda.is_available() else "cpu")
        logger.info("Loading model from: %s", model_path)
        self.tokenizer = AutoTokenizer.from_pretrained(model_path)
        self.model = AutoModelForCausalLM.from_pretrained(
            model_path,
            torch_dtype=torch.float16 if self.device == "cuda" else torch.float32,
        ).to(self.device)
        self.model.eval()
        self._lock = asyncio.Lock()
        logger.info("Model loaded on %s", self.device)

    def _render(self, messages: Sequence[Message]) -> str:
        if getattr(self.tokenizer, "chat_template", None):
            return self.tokenizer.apply_chat_template(
                [m.model_dump() for m in messages],
                tokenize=False,
                add_generation_prompt=True,
            )
        return format_messages(messages)

    def _generate_sync(
        self,
        prompt: str,
        options: GenerationOptions,
        streamer: TextStreamer | None = None,
        stop: threading.Event | None = None,
    ) -> str:
        inputs = self.tokenizer(prompt, return_tensors="pt").to(self.model.device)
        pad_token_id = self.tokenizer.pad_token_id
        if pad_token_id is None:
            pad_token_id = self.tokenizer.eos_token_id

        kwargs = {"max_new_tokens": options.max_tokens, "pad_token_id": pad_token_id}
        if options.temperature > 0:
            kwargs.update(
                do_sample=True,
                temperature=options.temperature,
                top_p=options.top_p,
                top_k=options.top_k,
            )
        else:
            kwargs["do_sample"] = False
        if streamer is not None:
            kwargs["streamer"] = streamer
        if stop is not None:
            kwargs["stopping_criteria"] = StoppingCriteriaList([_StopOnEvent(stop)])

        with torch.no_grad():
            output = self.model.generate(**inputs, **kwargs)
        new_tokens = output[0][inputs["input_ids"].shape[1]:]
        return self.tokenizer.decode(new_tokens, skip_special_tokens=True)

    async def _run_locked(self, fn: Callable[[], str], stop: threading.Event) -> str:
        loop = asyncio.get_running_loop()
        async with self._lock:
            future = loop.run_in_executor(None, fn)
            try:
                return await asyncio.shield(future)
            except asyncio.CancelledError:
                # keep the lock until the worker thread has actually stopped
                stop.set()
                with contextlib.suppress(Exception):
                    await future
                raise

    async def generate(self, messages: Sequence[Message], options: GenerationOptions) -> str:
        prompt = self._render(messages)
        stop = threading.Event()
        return await self._run_locked(lambda: self._generate_sync(prompt, options, stop=stop), stop)

    async def generate_streaming(
        self,
        messages: Sequence[Message],
        options: GenerationOptions,
        on_token: TokenCallback,
        cancel_event: threading.Event | None = None,
    ) -> None:
        prompt = self._render(messages)
        stop = cancel_event or threading.Event()
        streamer = _CallbackStreamer(self.tokenizer, on_token)
        await self._run_locked(
            lambda: self._generate_sync(prompt, options, streamer=streamer, stop=stop), stop
        )

    async def close(self) -> None:
        del self.model
        if torch.cuda.is_available():
            torch.cuda.empty_cache()


class OpenAICompatibleClient:
    """Async client for a local server exposing the OpenAI chat API."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str = "not-needed",
    ):
        self.client = AsyncOpenAI(base_url=base_url, api_key=api_key)
        self.model = model

    def _request(self, messages: Sequence[Message], options: GenerationOptions) -> dict:
        return {
            "model": self.model,
            "messages": [m.model_dump() for m in messages],
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "top_p": options.top_p,
            "extra_body": {"top_k": options.top_k},
        }

    async def generate(self, messages: Sequence[Message], options: GenerationOptions) -> str:
        response = await self.client.chat.completions.create(**self._request(messages, options))
        return response.choices[0].message.content or ""

    async def generate_streaming(
        self,
        messages: Sequence[Message],
        options: GenerationOptions,
        on_token: TokenCallback,
        cancel_event: threading.Event | None = None,
    ) -> None:
        stream = await self.client.chat.completions.create(
            **self._request(messages, options), stream=True
        )
        # leaving the block closes the HTTP response, so the server stops generating
        async with stream:
            async for chunk in stream:
                if cancel_event is not None and cancel_event.is_set():
                    break
                if chunk.choices and chunk.choices[0].delta.content:
                    on_token(chunk.choices[0].delta.content)

    async def close(self) -> None:
        await self.client.close()


def load_generator(config: RAGConfig):
    """Construct the configured generator backend. Blocking."""
    if config.generator_backend == "transformers":
        return TransformersGenerator(config.model_path, device=config.device)
    if config.generator_backend == "openai":
        # the server decides which weights to serve; the name is informational
        return OpenAICompatibleClient(
            base_url=config.openai_base_url,
            model=Path(config.model_path).name,
            api_key=config.openai_api_key,
        )
    raise ValueError(f"Unknown generator backend: {config.generator_backend!r}")
