"""Fan-out of loop events to an optional observer."""

from typing import Any

import structlog

from toolrelay.core.domain.events import LoopEvent, LoopEventType
from toolrelay.core.interfaces.events import LoopObserverProtocol

logger = structlog.get_logger().bind(component="loop_events")


class LoopEventEmitter:
    """Sends events for one conversation; observer failures are logged, never raised."""

    def __init__(self, observer: LoopObserverProtocol | None, conversation_id: str):
        self.observer = observer
        self.conversation_id = conversation_id

    async def emit(self, event_type: LoopEventType, **data: Any) -> None:
        if self.observer is None:
            return
        event = LoopEvent(event_type=event_type, conversation_id=self.conversation_id, data=data)
        try:
            await self.observer.notify(event)
        except Exception as e:
            logger.warning(
                "observer_notify_failed",
                conversation_id=self.conversation_id,
                event_type=event_type.value,
                error=str(e),
                error_type=type(e).__name__,
            )
