# groupbuy/tracker.py
"""
Running totals of committed quantity, per design.

Seeded by a full read of the order store, kept current by insert
notifications, and re-read periodically so that anything a notification
missed (feed reconnects, lost messages) is corrected within one
reconciliation interval.
"""
from __future__ import annotations
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set

from .events import OrderInserted
from .helpers import now_ts
from .model.orders import Totals, sum_rows
from .pricing import Quote, TierTable, price_for_quantity, quote

log = logging.getLogger(__name__)

# notifications held back while one read is in flight
MAX_PENDING = 10_000


class TrackerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    SEEDING = "seeding"
    LIVE = "live"


class AggregateTracker:
    def __init__(self, store, table: TierTable) -> None:
        self.store = store
        self.table = table
        self.state = TrackerState.UNINITIALIZED
        # swapped as a whole, never mutated: readers see old or new sums
        self.totals = Totals()
        self.last_seeded_at: Optional[float] = None
        self.reseeds = 0
        self.failed_reseeds = 0
        self.duplicates_dropped = 0

        # ids already counted in self.totals
        self._seen: Set[str] = set()
        # notifications that arrived while a read was in flight
        self._pending: List[OrderInserted] = []
        self._reading = False
        self._lock = asyncio.Lock()

    # ----------------------------
    # Full read
    # ----------------------------
    async def reseed(self) -> bool:
        async with self._lock:
            if self.state is TrackerState.UNINITIALIZED:
                self.state = TrackerState.SEEDING
            self._reading = True
            try:
                rows = await self.store.list_orders()
            except Exception:
                self.failed_reseeds += 1
                # committed before they were notified, so the next read
                # holds them; while LIVE they are already in self.totals
                self._pending.clear()
                log.warning("reseed failed; keeping totals %s (state %s)",
                            self.totals, self.state.value, exc_info=True)
                return False
            finally:
                self._reading = False

            totals = sum_rows(rows)
            seen = {r.id for r in rows}
            # inserts committed after the read started
            for ev in self._pending:
                if ev.order_id is not None:
                    if ev.order_id in seen:
                        continue
                    seen.add(ev.order_id)
                totals = totals.plus(ev.qty_a, ev.qty_b)
            self._pending.clear()

            self.totals = totals
            self._seen = seen
            self.state = TrackerState.LIVE
            self.last_seeded_at = now_ts()
            self.reseeds += 1
            return True

    # ----------------------------
    # Notifications
    # ----------------------------
    def apply_insert_notification(
        self, qty_a: int, qty_b: int, order_id: Optional[str] = None
    ) -> bool:
        """
        Count one inserted order. Returns False if `order_id` was already
        counted (redelivered notification).
        """
        ev = OrderInserted(order_id=order_id, qty_a=int(qty_a or 0),
                           qty_b=int(qty_b or 0))
        if order_id is not None:
            if order_id in self._seen or any(
                p.order_id == order_id for p in self._pending
            ):
                self.duplicates_dropped += 1
                return False

        if self._reading:
            if len(self._pending) >= MAX_PENDING:
                # the next reconciliation reseed recounts the dropped one
                log.warning("pending notifications full (%d); dropping %s",
                            MAX_PENDING, self._pending[0])
                self._pending.pop(0)
            self._pending.append(ev)
        if self.state is TrackerState.LIVE:
            if order_id is not None:
                self._seen.add(order_id)
            self.totals = self.totals.plus(ev.qty_a, ev.qty_b)
        return True

    def on_order_inserted(self, event: OrderInserted) -> None:
        self.apply_insert_notification(
            event.qty_a, event.qty_b, order_id=event.order_id
        )

    async def run_reconciliation(
        self, interval: float,
        also: Optional[Callable[[], Awaitable[object]]] = None,
    ) -> None:
        """
        Reseed every `interval` seconds until cancelled. `also` runs on
        every tick after the reseed, whether or not the reseed succeeded.
        """
        while True:
            await asyncio.sleep(interval)
            ok = await self.reseed()
            if ok:
                log.debug("reconciled totals: %s", self.totals)
            if also is not None:
                try:
                    await also()
                except Exception:
                    log.warning("reconciliation hook failed", exc_info=True)

    # ----------------------------
    # Derived values
    # ----------------------------
    def current_price(self):
        return price_for_quantity(self.table, self.totals.grand)

    def quote(self, qty_a: int, qty_b: int) -> Quote:
        return quote(self.table, self.totals.grand, qty_a, qty_b)

    def snapshot(self) -> dict:
        totals = self.totals
        return {
            **totals.to_dict(),
            "state": self.state.value,
            "unit_price": float(price_for_quantity(self.table, totals.grand)),
            "pricing_table": self.table.version,
            "last_seeded_at": self.last_seeded_at,
        }
