# notify/_local.py
from __future__ import annotations

from ..events import ChangeEvent, EventBus


class ChangeFeed:
    """Single-process feed: a published change goes straight to the bus."""

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def publish(self, event: ChangeEvent) -> None:
        await self.bus.publish(event)
