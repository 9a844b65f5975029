from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Set

logger = logging.getLogger(__name__)

JOB_STARTED = "job-started"
PROMPT_PROCESSING = "prompt-processing"
PROMPT_COMPLETED = "prompt-completed"
PROMPT_ERROR = "prompt-error"
JOB_COMPLETED = "job-completed"


@dataclass
class JobEvent:
    name: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_sse(self) -> str:
        return f"event: {self.name}\ndata: {json.dumps(self.data)}\n\n"


class EventBroadcaster:
    """Fan worker progress events out to every connected subscriber."""

    def __init__(self, max_queue_size: int = 100) -> None:
        self.max_queue_size = max_queue_size
        self._subscribers: Set[asyncio.Queue[JobEvent]] = set()
        self.history: list[JobEvent] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, name: str, **data: Any) -> JobEvent:
        event = JobEvent(name, data)
        self.history.append(event)
        del self.history[: -self.max_queue_size]
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dropping %s event for a slow subscriber", name)
        return event

    async def subscribe(self) -> AsyncIterator[JobEvent]:
        queue: asyncio.Queue[JobEvent] = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)
