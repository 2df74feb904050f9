# groupbuy/model/orders.py
from __future__ import annotations
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, async_sessionmaker

from ..helpers import now_ts, to_iso
from ..infra.sql import Gated
from ..infra.timings import timeit
from .db import Base, Order, Setting


class StoreError(Exception):
    """A store call failed; the message is fit to show to the user."""


def _message(e: SQLAlchemyError) -> str:
    orig = getattr(e, "orig", None)
    return str(orig) if orig is not None else str(e)


@dataclass(frozen=True)
class Totals:
    qty_a: int = 0
    qty_b: int = 0

    @property
    def grand(self) -> int:
        return self.qty_a + self.qty_b

    def plus(self, qty_a: int, qty_b: int) -> "Totals":
        return Totals(self.qty_a + qty_a, self.qty_b + qty_b)

    def to_dict(self) -> Dict[str, int]:
        return {"qty_a": self.qty_a, "qty_b": self.qty_b,
                "grand": self.grand}


@dataclass(frozen=True)
class OrderRow:
    id: str
    created_at: float
    name: str
    department: str
    qty_a: int
    qty_b: int
    total_price: int

    @property
    def qty(self) -> int:
        return self.qty_a + self.qty_b

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "created_at_iso": to_iso(self.created_at),
            "name": self.name,
            "department": self.department,
            "qty_a": self.qty_a,
            "qty_b": self.qty_b,
            "qty": self.qty,
            "total_price": self.total_price,
        }


def sum_rows(rows: List[OrderRow]) -> Totals:
    qty_a = 0
    qty_b = 0
    for r in rows:
        qty_a += r.qty_a or 0
        qty_b += r.qty_b or 0
    return Totals(qty_a, qty_b)


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)


class OrderStore:
    def __init__(self, *, sessions: async_sessionmaker,
                 gated: Gated) -> None:
        self.sessions = sessions
        self.gated = gated

    async def insert_order(self, fields: Dict[str, Any]) -> OrderRow:
        row = OrderRow(
            id=uuid.uuid4().hex,
            created_at=now_ts(),
            name=fields["name"],
            department=fields["department"],
            qty_a=int(fields.get("qty_a") or 0),
            qty_b=int(fields.get("qty_b") or 0),
            total_price=int(fields.get("total_price") or 0),
        )
        try:
            async with timeit("store.insert_order"):
                async with self.sessions() as db:
                    async with self.gated():
                        async with db.begin():
                            db.add(Order(
                                id=row.id,
                                created_at=row.created_at,
                                name=row.name,
                                department=row.department,
                                qty_a=row.qty_a,
                                qty_b=row.qty_b,
                                total_price=row.total_price,
                            ))
        except SQLAlchemyError as e:
            raise StoreError(f"order was not saved: {_message(e)}") from e
        return row

    async def list_orders(self) -> List[OrderRow]:
        """All orders, newest first."""
        try:
            async with timeit("store.list_orders"):
                async with self.sessions() as db:
                    async with self.gated():
                        result = await db.execute(
                            select(Order).order_by(Order.created_at.desc())
                        )
                        orders = result.scalars().all()
        except SQLAlchemyError as e:
            raise StoreError(f"orders could not be read: {_message(e)}") \
                from e
        return [
            OrderRow(
                id=o.id,
                created_at=o.created_at,
                name=o.name,
                department=o.department,
                qty_a=o.qty_a or 0,
                qty_b=o.qty_b or 0,
                total_price=o.total_price or 0,
            )
            for o in orders
        ]

    async def sum_quantities(self) -> Totals:
        try:
            async with timeit("store.sum_quantities"):
                async with self.sessions() as db:
                    async with self.gated():
                        row = (await db.execute(text("""
                            SELECT COALESCE(SUM(qty_a), 0),
                                   COALESCE(SUM(qty_b), 0)
                            FROM orders
                        """))).first()
        except SQLAlchemyError as e:
            raise StoreError(f"totals could not be read: {_message(e)}") \
                from e
        return Totals(int(row[0]), int(row[1]))

    async def get_setting(self, key: str) -> Optional[bool]:
        try:
            async with timeit("store.get_setting"):
                async with self.sessions() as db:
                    async with self.gated():
                        s = await db.get(Setting, key)
        except SQLAlchemyError as e:
            raise StoreError(
                f"setting {key!r} could not be read: {_message(e)}"
            ) from e
        return None if s is None else bool(s.value)

    async def upsert_setting(self, key: str, value: bool) -> None:
        try:
            async with timeit("store.upsert_setting"):
                async with self.sessions() as db:
                    async with self.gated():
                        async with db.begin():
                            await db.execute(text("""
                              INSERT INTO settings(key, value)
                              VALUES (:key, :value)
                              ON CONFLICT (key) DO UPDATE
                              SET value = EXCLUDED.value
                            """), {"key": key, "value": bool(value)})
        except SQLAlchemyError as e:
            raise StoreError(
                f"setting {key!r} was not saved (is the settings table "
                f"missing?): {_message(e)}"
            ) from e
