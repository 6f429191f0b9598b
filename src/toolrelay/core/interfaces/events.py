"""Loop Observer Protocol."""

from typing import Protocol

from toolrelay.core.domain.events import LoopEvent


class LoopObserverProtocol(Protocol):
    """Receives progress events from the loop. Must not raise."""

    async def notify(self, event: LoopEvent) -> None:
        ...
