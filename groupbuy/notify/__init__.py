# notify/__init__.py
from typing import Optional

import redis.asyncio as redis

from ..events import EventBus
from ._local import ChangeFeed as LocalChangeFeed
from ._redis import ChangeFeed as RedisChangeFeed

BACKENDS = ("local", "redis")


# Factory keeps server.py simple and constructor-agnostic:
def new_feed(backend: str, *, bus: EventBus,
             r: Optional[redis.Redis] = None):
    if backend == "redis":
        if r is None:
            raise RuntimeError("ChangeFeed(redis) requires r=redis.Redis")
        return RedisChangeFeed(bus, r)
    if backend == "local":
        return LocalChangeFeed(bus)
    raise RuntimeError(
        f"unknown NOTIFY_BACKEND {backend!r}; expected one of {BACKENDS}"
    )


__all__ = ["new_feed", "LocalChangeFeed", "RedisChangeFeed", "BACKENDS"]
