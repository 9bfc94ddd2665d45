from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Set

from loguru import logger


KEEPALIVE = ": ping\n\n"


def sse_frame(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


class BroadcastHub:
    """Fan-out of events to connected viewers.

    Each subscriber owns a bounded queue; a viewer that falls behind loses
    events rather than slowing the conversation down.
    """

    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()

    @property
    def viewer_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        logger.info(f"viewer_connected | watching={self.viewer_count}")
        self.publish({"type": "viewers", "count": self.viewer_count})
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue not in self._subscribers:
            return
        self._subscribers.discard(queue)
        logger.info(f"viewer_disconnected | watching={self.viewer_count}")
        self.publish({"type": "viewers", "count": self.viewer_count})

    def publish(self, event: Dict[str, Any]) -> int:
        delivered = 0
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"viewer_lagging | dropped event type={event.get('type')}")
        return delivered
