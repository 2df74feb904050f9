from __future__ import annotations
import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

import orjson
import redis.asyncio as redis
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, ORJSONResponse, StreamingResponse
from fastapi.templating import Jinja2Templates

from .admin import recompute_orders
from .config import Config, get_config
from .events import (
    EventBus, OrderInserted, SettingChanged, ORDERS_TABLE, SETTINGS_TABLE,
)
from .gate import FORCED_OPEN_KEY, GateState
from .helpers import clean_text, coerce_qty, utcnow
from .infra import timings
from .infra.sql import make_async_engine
from .model.orders import OrderStore, StoreError, create_schema
from .notify import new_feed
from .pricing import get_table, tier_rows
from .tracker import AggregateTracker

log = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"

# ----------------------------
# Constants
# ----------------------------
VARIANTS = {
    "A": {"field": "qty_a", "title": "Design A: Gold Horse"},
    "B": {"field": "qty_b", "title": "Design B: Money Horse"},
}
SSE_KEEPALIVE_SECONDS = 15.0


def sse_frame(kind: str, data: dict) -> bytes:
    return b"event: " + kind.encode() + b"\ndata: " + \
        orjson.dumps(data) + b"\n\n"


async def event_frames(
    bus: EventBus,
    totals: Callable[[], dict],
    status: Callable[[], dict],
    is_disconnected: Callable[[], Awaitable[bool]],
    keepalive: float = SSE_KEEPALIVE_SECONDS,
) -> AsyncIterator[bytes]:
    """
    Server-sent events for one client: a totals snapshot on connect and
    after every insert, a gate status after every settings change.
    """
    async with bus.listen(ORDERS_TABLE, SETTINGS_TABLE) as queue:
        yield sse_frame("totals", totals())
        while not await is_disconnected():
            try:
                ev = await asyncio.wait_for(queue.get(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield b": keepalive\n\n"
                continue
            if isinstance(ev, OrderInserted):
                yield sse_frame("totals", totals())
            else:
                yield sse_frame("status", status())


def create_app(config: Optional[Config] = None) -> FastAPI:
    cfg = config or get_config()
    # fail at startup, not on the first quote
    table = get_table(cfg.pricing_table)
    templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

    app = FastAPI(
        title="Group-buy card orders",
        default_response_class=ORJSONResponse,
    )
    app.state.config = cfg
    app.state.table = table
    app.state.bus = EventBus()
    app.state.gate = GateState(deadline=cfg.deadline)

    def store() -> OrderStore:
        return app.state.store

    def tracker() -> AggregateTracker:
        return app.state.tracker

    async def bounded(coro):
        return await asyncio.wait_for(coro, timeout=cfg.store_timeout_seconds)

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        print('=' * 50)
        print(f'{cfg.site_name} is starting up...')
        print(f'   - Pricing table : {table.version}')
        print(f'   - Change feed   : {cfg.notify_backend}')
        deadline = cfg.deadline.isoformat() if cfg.deadline else 'none'
        print(f'   - Deadline      : {deadline}')
        print('=' * 50)

    @app.on_event("startup")
    async def _db_init():
        engine, SessionAsync, gated = make_async_engine(
            cfg.database_url,
            pool_size=cfg.db_pool_size,
            max_overflow=cfg.db_max_overflow,
            pool_timeout=cfg.db_pool_timeout,
            gate_limit=cfg.db_gate_limit,
        )
        if cfg.create_schema:
            async with engine.begin() as conn:
                await create_schema(conn)
        app.state.engine = engine
        app.state.store = OrderStore(sessions=SessionAsync, gated=gated)

    @app.on_event("startup")
    async def _feed_start():
        r = None
        if cfg.notify_backend == "redis":
            r = redis.from_url(
                cfg.redis_url,
                decode_responses=True,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )
        app.state.redis = r
        app.state.feed = new_feed(cfg.notify_backend, bus=app.state.bus, r=r)
        await app.state.feed.start()

    @app.on_event("startup")
    async def _tracker_start():
        bus: EventBus = app.state.bus
        gate: GateState = app.state.gate
        t = AggregateTracker(store(), table)
        app.state.tracker = t

        async def _settings_changed(event: SettingChanged):
            await gate.refresh(store())

        # the tracker subscribes first so that stream readers, which
        # subscribe later, always render totals that include the event
        app.state.subscriptions = [
            bus.subscribe(ORDERS_TABLE, t.on_order_inserted),
            bus.subscribe(SETTINGS_TABLE, _settings_changed),
        ]
        await t.reseed()
        await gate.refresh(store())

        app.state.reconciler = None
        if cfg.reconcile_seconds > 0:
            app.state.reconciler = asyncio.create_task(
                t.run_reconciliation(
                    cfg.reconcile_seconds,
                    also=lambda: gate.refresh(store()),
                ),
                name="reconcile",
            )

    @app.on_event("shutdown")
    async def _tracker_stop():
        task = getattr(app.state, "reconciler", None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            app.state.reconciler = None
        for sub in getattr(app.state, "subscriptions", []):
            app.state.bus.unsubscribe(sub)
        app.state.subscriptions = []

    @app.on_event("shutdown")
    async def _feed_stop():
        feed = getattr(app.state, "feed", None)
        if feed is not None:
            await feed.stop()
        r = getattr(app.state, "redis", None)
        if r is not None:
            await r.aclose()
            app.state.redis = None

    @app.on_event("shutdown")
    async def _db_stop():
        engine = getattr(app.state, "engine", None)
        if engine is not None:
            await engine.dispose()
            app.state.engine = None

    # ----------------------------
    # Pages
    # ----------------------------
    @app.get("/", response_class=HTMLResponse)
    async def index(request: Request, page: Optional[str] = None):
        name = "admin.html" if page == "admin" else "order.html"
        return templates.TemplateResponse(
            request,
            name,
            {
                "site_name": cfg.site_name,
                "variants": VARIANTS,
                "list_price": float(table.list_price),
                "deadline": (
                    cfg.deadline.isoformat() if cfg.deadline else None
                ),
            },
        )

    # ----------------------------
    # API: pricing and live totals
    # ----------------------------
    @app.get("/api/pricing")
    async def api_pricing():
        grand = tracker().totals.grand
        return {
            "version": table.version,
            "list_price": float(table.list_price),
            "tiers": [
                {"min_qty": t.min_qty, "price": float(t.price)}
                for t in table.tiers
            ],
            "rows": tier_rows(table, grand),
        }

    @app.get("/api/stats")
    async def api_stats():
        return tracker().snapshot()

    @app.get("/api/quote")
    async def api_quote(qty_a: Optional[str] = None,
                        qty_b: Optional[str] = None):
        q = tracker().quote(coerce_qty(qty_a), coerce_qty(qty_b))
        out = q.to_dict()
        out["rows"] = tier_rows(table, q.grand_total)
        return out

    @app.get("/api/status")
    async def api_status():
        return app.state.gate.to_dict(utcnow())

    # ----------------------------
    # API: submit an order
    # ----------------------------
    @app.post("/api/orders")
    async def create_order(payload: dict):
        name = clean_text(payload.get("name"))
        department = clean_text(payload.get("department"))
        if not name or not department:
            raise HTTPException(
                400, detail="name and department are required"
            )

        qty_a = coerce_qty(payload.get("qty_a"))
        qty_b = coerce_qty(payload.get("qty_b"))
        if qty_a + qty_b <= 0:
            raise HTTPException(
                400, detail="enter a quantity for at least one design"
            )

        if not app.state.gate.allowed(utcnow()):
            raise HTTPException(403, detail="ordering is closed")

        q = tracker().quote(qty_a, qty_b)
        if cfg.enforce_multiple_of_ten and q.warnings:
            raise HTTPException(400, detail="; ".join(q.warnings))

        try:
            row = await bounded(store().insert_order({
                "name": name,
                "department": department,
                "qty_a": qty_a,
                "qty_b": qty_b,
                "total_price": q.total,
            }))
        except asyncio.TimeoutError:
            log.warning("insert_order timed out after %.1fs",
                        cfg.store_timeout_seconds)
            raise HTTPException(
                504,
                detail="the order service did not answer in time; "
                       "please check the order list before retrying",
            )
        except StoreError as e:
            log.warning("insert_order failed: %s", e)
            raise HTTPException(502, detail=str(e))

        try:
            await app.state.feed.publish(OrderInserted(
                order_id=row.id, qty_a=row.qty_a, qty_b=row.qty_b,
                created_at=row.created_at,
            ))
        except Exception:
            # the order is saved; reconciliation picks it up
            log.warning("could not publish insert of %s", row.id,
                        exc_info=True)

        return {
            "order_id": row.id,
            "created_at": row.created_at,
            "estimate": q.to_dict(),
            "warnings": q.warnings,
        }

    # ----------------------------
    # API: live event stream
    # ----------------------------
    @app.get("/api/events")
    async def api_events(request: Request):
        return StreamingResponse(
            event_frames(
                app.state.bus,
                totals=lambda: tracker().snapshot(),
                status=lambda: app.state.gate.to_dict(utcnow()),
                is_disconnected=request.is_disconnected,
            ),
            media_type="text/event-stream",
            headers={"cache-control": "no-cache"},
        )

    # ----------------------------
    # Admin
    # ----------------------------
    @app.get("/api/admin/orders")
    async def api_admin_orders():
        try:
            orders = await bounded(store().list_orders())
        except (StoreError, asyncio.TimeoutError):
            log.warning("admin order list unavailable", exc_info=True)
            out = recompute_orders(table, [])
            out["available"] = False
            return out
        out = recompute_orders(table, orders)
        out["available"] = True
        return out

    @app.get("/api/admin/settings")
    async def api_admin_settings():
        return {FORCED_OPEN_KEY: app.state.gate.forced_open}

    @app.put("/api/admin/settings/forced_open")
    async def api_admin_set_forced_open(payload: dict):
        value = payload.get("value")
        if not isinstance(value, bool):
            raise HTTPException(400, detail="value must be true or false")
        try:
            await bounded(store().upsert_setting(FORCED_OPEN_KEY, value))
        except asyncio.TimeoutError:
            raise HTTPException(
                503, detail="saving the setting timed out; try again"
            )
        except StoreError as e:
            log.warning("forced_open update failed: %s", e)
            raise HTTPException(503, detail=str(e))

        # committed; other workers follow through the feed or reconciliation
        app.state.gate.forced_open = value
        try:
            await app.state.feed.publish(
                SettingChanged(key=FORCED_OPEN_KEY, value=value)
            )
        except Exception:
            log.warning("could not publish settings change", exc_info=True)
        return app.state.gate.to_dict(utcnow())

    @app.get("/api/admin/timings")
    async def api_admin_timings():
        return timings.summary()

    return app


app = create_app()
