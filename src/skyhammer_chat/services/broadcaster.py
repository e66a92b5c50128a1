"""Live fan-out of streamed model output.

Listeners subscribe to an exchange id and receive the chunks published after
they subscribed. There is no replay buffer: the persisted message is the
durable transcript.
"""

import asyncio
from typing import AsyncIterator, Dict, Set

import structlog

from ..domain.models import StreamEvent
from ..metrics import STREAM_CHUNKS

logger = structlog.get_logger()

# Maximum number of undelivered events a listener may fall behind by
DEFAULT_BUFFER_SIZE = 1000


class Subscription:
    """One live listener of an exchange."""

    def __init__(self, broadcaster: "StreamBroadcaster", exchange_id: str, maxsize: int):
        self.broadcaster = broadcaster
        self.exchange_id = exchange_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        try:
            while True:
                event = await self.queue.get()
                yield event
                if event.done:
                    return
        finally:
            self.close()

    def drop(self) -> None:
        """Discard a lagging listener's backlog and end its stream."""
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(
            StreamEvent(
                exchange_id=self.exchange_id,
                chunk="Live stream interrupted.",
                done=True,
                error=True,
            )
        )
        self.close()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.broadcaster.unsubscribe(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class StreamBroadcaster:
    """Maps exchange ids to their currently subscribed listeners."""

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE):
        self.buffer_size = buffer_size
        self._subscribers: Dict[str, Set[Subscription]] = {}

    def subscribe(self, exchange_id: str) -> Subscription:
        subscription = Subscription(self, exchange_id, self.buffer_size)
        self._subscribers.setdefault(exchange_id, set()).add(subscription)
        logger.debug("listener_subscribed", exchange_id=exchange_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        listeners = self._subscribers.get(subscription.exchange_id)
        if listeners is None:
            return
        listeners.discard(subscription)
        if not listeners:
            del self._subscribers[subscription.exchange_id]

    def listener_count(self, exchange_id: str) -> int:
        return len(self._subscribers.get(exchange_id, ()))

    async def publish(
        self, exchange_id: str, chunk: str, done: bool = False, error: bool = False
    ) -> int:
        """Deliver a chunk to every current listener. Returns how many received it."""
        event = StreamEvent(exchange_id=exchange_id, chunk=chunk, done=done, error=error)
        listeners = list(self._subscribers.get(exchange_id, ()))
        delivered = 0
        for subscription in listeners:
            try:
                subscription.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("listener_dropped", exchange_id=exchange_id)
                subscription.drop()
        if done:
            # Listeners end after the terminal event; nothing more will arrive
            self._subscribers.pop(exchange_id, None)
        STREAM_CHUNKS.inc()
        return delivered
