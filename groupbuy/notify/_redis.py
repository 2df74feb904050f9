# notify/_redis.py
from __future__ import annotations
import asyncio
import logging
from typing import Optional

import orjson
import redis.asyncio as redis

from ..events import (
    ChangeEvent, EventBus, ORDERS_TABLE, SETTINGS_TABLE,
    event_from_dict, event_to_dict,
)

log = logging.getLogger(__name__)

CHANNEL_PREFIX = "groupbuy:changes"
RETRY_SECONDS = 1.0


# ---- channels
def k_channel(table: str) -> str: return f"{CHANNEL_PREFIX}:{table}"


def encode(event: ChangeEvent) -> bytes:
    return orjson.dumps(event_to_dict(event))


def decode(data) -> ChangeEvent:
    return event_from_dict(orjson.loads(data))


class ChangeFeed:
    """
    Cross-process feed over Redis pub/sub.

    Publishing only writes to Redis; every worker, including the publishing
    one, gets the change back through its listener. Pub/sub drops messages
    while a listener is disconnected; the reconciliation loop (a totals
    reseed plus a forced-open re-read) covers that gap.
    """

    def __init__(self, bus: EventBus, r: redis.Redis,
                 tables=(ORDERS_TABLE, SETTINGS_TABLE)) -> None:
        self.bus = bus
        self.r = r
        self.channels = [k_channel(t) for t in tables]
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="change-feed")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def publish(self, event: ChangeEvent) -> None:
        await self.r.publish(k_channel(event.TABLE), encode(event))

    async def _run(self) -> None:
        while True:
            pubsub = self.r.pubsub(ignore_subscribe_messages=True)
            try:
                await pubsub.subscribe(*self.channels)
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    await self._dispatch(message.get("data"))
            except asyncio.CancelledError:
                raise
            except Exception:
                log.warning("change feed listener lost its connection; "
                            "retrying in %.1fs", RETRY_SECONDS, exc_info=True)
                await asyncio.sleep(RETRY_SECONDS)
            finally:
                try:
                    await pubsub.aclose()
                except Exception:
                    log.debug("pubsub close failed", exc_info=True)

    async def _dispatch(self, data) -> None:
        try:
            event = decode(data)
        # orjson.JSONDecodeError is a ValueError
        except (ValueError, KeyError, TypeError):
            log.warning("dropping malformed change message: %r", data)
            return
        await self.bus.publish(event)
