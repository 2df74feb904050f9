# groupbuy/events.py
"""
Typed change events and the in-process bus that fans them out.

Every consumer holds an explicit Subscription and must give it back; the
`subscription()` context manager does that on exit, also when the consumer
fails or is cancelled (an SSE client going away, app shutdown).
"""
from __future__ import annotations
import asyncio
import inspect
import itertools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import (
    Any, AsyncIterator, Awaitable, Callable, ClassVar, Dict, Optional, Union
)

log = logging.getLogger(__name__)

ORDERS_TABLE = "orders"
SETTINGS_TABLE = "settings"


# ----------------------------
# Events
# ----------------------------
@dataclass(frozen=True)
class OrderInserted:
    TABLE: ClassVar[str] = ORDERS_TABLE
    KIND: ClassVar[str] = "INSERT"

    order_id: Optional[str]
    qty_a: int
    qty_b: int
    created_at: Optional[float] = None

    def row(self) -> Dict[str, Any]:
        return {
            "id": self.order_id,
            "qty_a": self.qty_a,
            "qty_b": self.qty_b,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OrderInserted":
        return cls(
            order_id=row.get("id"),
            qty_a=int(row.get("qty_a") or 0),
            qty_b=int(row.get("qty_b") or 0),
            created_at=row.get("created_at"),
        )


@dataclass(frozen=True)
class SettingChanged:
    TABLE: ClassVar[str] = SETTINGS_TABLE
    KIND: ClassVar[str] = "UPSERT"

    key: str
    value: bool

    def row(self) -> Dict[str, Any]:
        return {"key": self.key, "value": self.value}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SettingChanged":
        return cls(key=str(row["key"]), value=bool(row.get("value")))


ChangeEvent = Union[OrderInserted, SettingChanged]
Callback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]

EVENT_TYPES = {cls.TABLE: cls for cls in (OrderInserted, SettingChanged)}


def event_to_dict(event: ChangeEvent) -> Dict[str, Any]:
    return {"table": event.TABLE, "kind": event.KIND, "row": event.row()}


def event_from_dict(data: Dict[str, Any]) -> ChangeEvent:
    cls = EVENT_TYPES.get(data.get("table"))
    if cls is None:
        raise ValueError(f"unknown table in change event: {data!r}")
    return cls.from_row(data.get("row") or {})


# ----------------------------
# Bus
# ----------------------------
@dataclass(frozen=True)
class Subscription:
    id: int
    table: str


class EventBus:
    def __init__(self) -> None:
        self._subs: Dict[str, Dict[int, Callback]] = {}
        self._ids = itertools.count(1)

    def subscribe(self, table: str, callback: Callback) -> Subscription:
        sub = Subscription(id=next(self._ids), table=table)
        self._subs.setdefault(table, {})[sub.id] = callback
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        callbacks = self._subs.get(sub.table)
        if callbacks is None:
            return
        callbacks.pop(sub.id, None)
        if not callbacks:
            del self._subs[sub.table]

    def subscriber_count(self, table: Optional[str] = None) -> int:
        if table is not None:
            return len(self._subs.get(table, {}))
        return sum(len(c) for c in self._subs.values())

    async def publish(self, event: ChangeEvent) -> int:
        """Deliver to every subscriber of the event's table, in order."""
        # copy: callbacks may unsubscribe while we iterate
        callbacks = list(self._subs.get(event.TABLE, {}).values())
        delivered = 0
        for cb in callbacks:
            try:
                res = cb(event)
                if inspect.isawaitable(res):
                    await res
                delivered += 1
            except Exception:
                log.exception("subscriber for %s failed on %s",
                              event.TABLE, event)
        return delivered

    @asynccontextmanager
    async def subscription(
        self, table: str, callback: Callback
    ) -> AsyncIterator[Subscription]:
        sub = self.subscribe(table, callback)
        try:
            yield sub
        finally:
            self.unsubscribe(sub)

    @asynccontextmanager
    async def listen(
        self, *tables: str, maxsize: int = 256
    ) -> AsyncIterator[asyncio.Queue]:
        """
        A queue that receives every event for `tables` while the block runs.

        A slow reader that lets the queue fill up loses the oldest events;
        queue readers only render snapshots, so a lost event is superseded
        by the next one.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

        def _put(event: ChangeEvent) -> None:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)

        subs = [self.subscribe(t, _put) for t in tables]
        try:
            yield queue
        finally:
            for sub in subs:
                self.unsubscribe(sub)
