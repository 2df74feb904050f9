import asyncio
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from groupbuy.config import Config
from groupbuy.infra import timings
from groupbuy.model.orders import OrderRow, StoreError
from groupbuy.pricing import get_table
from groupbuy.server import create_app


@pytest.fixture(autouse=True)
def clear_timings():
    timings.reset()
    yield
    timings.reset()


@pytest.fixture
def table():
    return get_table("2026-v2")


def make_row(order_id: str, qty_a: int, qty_b: int,
             created_at: float = 0.0) -> OrderRow:
    return OrderRow(
        id=order_id,
        created_at=created_at,
        name=f"name-{order_id}",
        department="HQ",
        qty_a=qty_a,
        qty_b=qty_b,
        total_price=0,
    )


class FakeStore:
    """In-memory stand-in for OrderStore's read side."""

    def __init__(self, rows: Optional[List[OrderRow]] = None) -> None:
        self.rows: List[OrderRow] = list(rows or [])
        self.fail = False
        self.forced_open: Optional[bool] = None
        self.reads = 0
        # awaited after the snapshot is taken, before list_orders returns
        self.during_read = None

    async def list_orders(self) -> List[OrderRow]:
        self.reads += 1
        if self.fail:
            raise StoreError("store unavailable")
        snapshot = list(reversed(self.rows))
        if self.during_read is not None:
            await self.during_read()
        await asyncio.sleep(0)
        return snapshot

    async def get_setting(self, key: str) -> Optional[bool]:
        if self.fail:
            raise StoreError("store unavailable")
        return self.forced_open


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def make_client(tmp_path):
    def _make(**overrides) -> TestClient:
        overrides.setdefault("reconcile_seconds", 0)
        cfg = Config(
            database_url=f"sqlite:///{tmp_path / 'orders.db'}",
            **overrides,
        )
        return TestClient(create_app(cfg))
    return _make
