"""
Event channel: asynchronous message delivery between the kernel and its peers.

Delivery is at-least-once and unordered across kinds: consumers deduplicate
on each message's dedup_key. The in-memory channel can be told to deliver
every message twice to exercise that.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Union

from econ_kernel.models.events import (
    AggregatePublished,
    LearningUpdateMessage,
    PriceUpdate,
    TaskRequest,
    TaskResult,
)

logger = logging.getLogger(__name__)

Message = Union[TaskRequest, TaskResult, LearningUpdateMessage, PriceUpdate, AggregatePublished]
Handler = Callable[[Message], Optional[Awaitable[None]]]

ALL_KINDS = "*"


class EventChannel(Protocol):
    def publish(self, message: Message) -> None: ...

    def subscribe(self, kind: str, handler: Handler) -> None: ...

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None: ...


class InMemoryChannel:
    """Single-process channel backed by an asyncio queue."""

    def __init__(self, duplicate_delivery: bool = False, poll_interval_seconds: float = 0.5):
        self.duplicate_delivery = duplicate_delivery
        self.poll_interval_seconds = poll_interval_seconds
        self._queue: asyncio.Queue = asyncio.Queue()
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self.published: List[Message] = []

    def publish(self, message: Message) -> None:
        """Enqueue a message. Never blocks."""
        self.published.append(message)
        self._queue.put_nowait(message)
        if self.duplicate_delivery:
            self._queue.put_nowait(message)

    def subscribe(self, kind: str, handler: Handler) -> None:
        """Register a handler for one message kind, or '*' for every kind."""
        self._handlers[kind].append(handler)

    def pending(self) -> int:
        return self._queue.qsize()

    async def deliver_pending(self) -> int:
        """Deliver everything queued so far, including messages handlers publish meanwhile."""
        delivered = 0
        while not self._queue.empty():
            await self._deliver(self._queue.get_nowait())
            delivered += 1
        return delivered

    async def _deliver(self, message: Message) -> None:
        handlers = self._handlers.get(message.kind, []) + self._handlers.get(ALL_KINDS, [])
        for handler in handlers:
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Handler failed for %s message %s", message.kind, message.message_id
                )

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Deliver messages as they arrive until stopped."""
        if stop_event is None:
            stop_event = asyncio.Event()

        while not stop_event.is_set():
            try:
                message = await asyncio.wait_for(
                    self._queue.get(), timeout=self.poll_interval_seconds
                )
            except asyncio.TimeoutError:
                continue
            await self._deliver(message)
