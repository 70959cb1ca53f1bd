"""
In-process push channel for live views.

Mutations publish the full server-side snapshot of what changed; each
subscriber drains its own queue and always renders the latest payload.
"""

import asyncio
import json
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Set

import structlog
from fastapi.encoders import jsonable_encoder

logger = structlog.get_logger(__name__)

TUTORIALS_TOPIC = "tutorials"


def cart_topic(user_id: str) -> str:
    return f"cart:{user_id}"


class EventHub:
    def __init__(self, max_queue: int = 16):
        self.max_queue = max_queue
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    def publish(self, topic: str, payload: Any) -> int:
        delivered = 0
        for queue in list(self._subscribers.get(topic, ())):
            if queue.full():
                # only the newest snapshot matters
                queue.get_nowait()
            queue.put_nowait(payload)
            delivered += 1
        return delivered

    @asynccontextmanager
    async def subscribe(self, topic: str) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self._subscribers[topic].add(queue)
        logger.debug("subscribed", topic=topic)
        try:
            yield queue
        finally:
            self._subscribers[topic].discard(queue)
            if not self._subscribers[topic]:
                del self._subscribers[topic]
            logger.debug("unsubscribed", topic=topic)


hub = EventHub()


def get_hub() -> EventHub:
    return hub


async def sse_stream(event_hub: EventHub, topic: str, initial: Any) -> AsyncIterator[str]:
    """Yield Server-Sent Events: the current snapshot, then every update."""
    async with event_hub.subscribe(topic) as queue:
        yield f"data: {json.dumps(jsonable_encoder(initial))}\n\n"
        while True:
            payload = await queue.get()
            yield f"data: {json.dumps(jsonable_encoder(payload))}\n\n"
