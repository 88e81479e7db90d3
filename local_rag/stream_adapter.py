"""
Push-to-pull bridge for generated tokens.

A producer emits tokens through a callback and reports completion by
returning (or raising). A consumer pulls them with ``async for``. Between the
two sits an unbounded FIFO queue plus a ``completed`` flag and a recorded
error:

    producer(on_token, cancel_event)  --on_token-->  deque  --__anext__-->  consumer
            |                                          ^
            +-- returns / raises --> completed, error -+

The callback may be invoked from the event-loop thread or from a worker
thread. Either way tokens are handed to the loop with
``call_soon_threadsafe``, and completion of the producer task is delivered
through the same ready queue, so no token can be overtaken by the completion
signal.

The queue is unbounded: a slow consumer never blocks the producer. A single
answer is capped by ``max_tokens``, which keeps memory bounded in practice.
"""

import asyncio
import logging
import threading
from collections import deque
from collections.abc import Awaitable, Callable

from local_rag.errors import StreamCancelledError

logger = logging.getLogger(__name__)

Producer = Callable[[Callable[[str], None], threading.Event], Awaitable[None]]


class TokenStream:
    """Single-subscriber async iterator over tokens pushed by a producer."""

    def __init__(self):
        self._queue: deque[str] = deque()
        self._completed = False
        self._error: BaseException | None = None
        self._cancelled = False
        self._wakeup = asyncio.Event()
        self._cancel_event = threading.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task | None = None
        self._subscribed = False

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def cancel_event(self) -> threading.Event:
        """Set when the consumer gives up; producers may poll it to stop early."""
        return self._cancel_event

    @property
    def status(self) -> str:
        if self._cancelled:
            return "cancelled"
        if not self._completed:
            return "pending"
        return "failed" if self._error is not None else "completed"

    def start(self, producer: Producer) -> "TokenStream":
        """Run ``producer`` in the background, feeding this stream."""
        if self._task is not None:
            raise RuntimeError("TokenStream already started")
        self._loop = asyncio.get_running_loop()
        self._task = self._loop.create_task(producer(self.push, self._cancel_event))
        self._task.add_done_callback(self._on_producer_done)
        return self

    # -- producer side -------------------------------------------------

    def push(self, token: str) -> None:
        """Token callback. Safe to call from any thread."""
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._loop.call_soon_threadsafe(self._enqueue, token)

    def _enqueue(self, token: str) -> None:
        if self._completed or self._cancelled:
            return
        self._queue.append(token)
        self._wakeup.set()

    def finish(self) -> None:
        self._loop_call(self._set_completed, None)

    def fail(self, error: BaseException) -> None:
        self._loop_call(self._set_completed, error)

    def _loop_call(self, fn, *args) -> None:
        if self._loop is None:
            fn(*args)
        else:
            self._loop.call_soon_threadsafe(fn, *args)

    def _set_completed(self, error: BaseException | None) -> None:
        if self._completed:
            return
        self._error = error
        self._completed = True
        self._wakeup.set()

    def _on_producer_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            # cancelled from outside counts as a cancelled stream too
            self._cancelled = True
            self._set_completed(None)
            return
        error = task.exception()
        if error is not None and not self._cancelled:
            logger.error("Token producer failed: %s", error)
        self._set_completed(error)

    # -- consumer side -------------------------------------------------

    def __aiter__(self) -> "TokenStream":
        if self._subscribed:
            raise RuntimeError("TokenStream can only be consumed once")
        self._subscribed = True
        return self

    async def __anext__(self) -> str:
        while True:
            if self._cancelled:
                raise StreamCancelledError("Token stream was cancelled")
            if self._queue:
                return self._queue.popleft()
            if self._completed:
                if self._error is not None:
                    raise self._error
                raise StopAsyncIteration
            self._wakeup.clear()
            await self._wakeup.wait()

    def cancel(self) -> None:
        """Stop delivery and ask the producer to stop. Best effort."""
        if self._cancelled or (self._completed and not self._queue):
            return
        self._cancelled = True
        self._queue.clear()
        self._cancel_event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._wakeup.set()

    async def aclose(self) -> None:
        """Cancel if unfinished and wait for the producer task to wind down."""
        self.cancel()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def __aenter__(self) -> "TokenStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
