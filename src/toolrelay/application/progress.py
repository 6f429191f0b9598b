"""
Progress fan-out

Routes loop events to per-conversation subscribers so the CLI and the SSE
endpoint can stream progress while the executor drives the loop.
"""

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from toolrelay.core.domain.events import LoopEvent


@dataclass
class ProgressUpdate:
    """Progress update during execution.

    Attributes:
        timestamp: When this update occurred
        event_type: Loop event type, or "result" / "error" for the closing update
        message: Human-readable message describing the event
        details: Additional structured data about the event
    """

    timestamp: datetime
    event_type: str
    message: str
    details: dict


def event_to_update(event: LoopEvent) -> ProgressUpdate:
    details = dict(event.data)
    if "tool" in details:
        message = f"{event.event_type.value}: {details['tool']}"
    else:
        message = event.event_type.value
    return ProgressUpdate(
        timestamp=event.timestamp,
        event_type=event.event_type.value,
        message=message,
        details=details,
    )


class ProgressBroadcaster:
    """LoopObserverProtocol implementation delivering events to subscribed queues."""

    def __init__(self):
        self._subscribers: dict[str, list[asyncio.Queue[LoopEvent]]] = {}

    async def notify(self, event: LoopEvent) -> None:
        for queue in self._subscribers.get(event.conversation_id, []):
            queue.put_nowait(event)

    @contextmanager
    def subscribe(self, conversation_id: str) -> Iterator[asyncio.Queue[LoopEvent]]:
        queue: asyncio.Queue[LoopEvent] = asyncio.Queue()
        self._subscribers.setdefault(conversation_id, []).append(queue)
        try:
            yield queue
        finally:
            queues = self._subscribers.get(conversation_id, [])
            queues.remove(queue)
            if not queues:
                self._subscribers.pop(conversation_id, None)
