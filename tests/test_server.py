import asyncio
import time
from datetime import datetime, timezone

import orjson

from groupbuy.events import (
    EventBus, OrderInserted, ORDERS_TABLE, SETTINGS_TABLE, SettingChanged,
)
from groupbuy.gate import GateState
from groupbuy.model.orders import StoreError
from groupbuy.notify import RedisChangeFeed
from groupbuy.server import event_frames
from groupbuy.tracker import AggregateTracker

PAST = datetime(2020, 1, 1, tzinfo=timezone.utc)
FUTURE = datetime(2099, 1, 1, tzinfo=timezone.utc)


def _order(**kw):
    body = {"name": "Ana", "department": "Sales", "qty_a": 10, "qty_b": 0}
    body.update(kw)
    return body


def test_pages_render(make_client):
    with make_client() as client:
        r = client.get("/")
        assert r.status_code == 200
        assert "Design A" in r.text
        assert "/api/status" in r.text
        assert "addEventListener('status'" in r.text

        r = client.get("/?page=admin")
        assert r.status_code == 200
        assert "/api/admin/orders" in r.text


def test_fresh_store_reports_zero_totals(make_client):
    with make_client() as client:
        stats = client.get("/api/stats").json()
        assert stats["grand"] == 0
        assert stats["state"] == "live"
        assert stats["unit_price"] == 9.0


def test_submitted_order_moves_the_totals(make_client):
    with make_client() as client:
        r = client.post("/api/orders", json=_order(qty_a=20, qty_b=30))
        assert r.status_code == 200
        body = r.json()
        assert body["order_id"]
        assert body["estimate"]["total"] == 50 * 9
        assert body["warnings"] == []

        stats = client.get("/api/stats").json()
        assert (stats["qty_a"], stats["qty_b"], stats["grand"]) == (20, 30, 50)


def test_admin_view_reprices_every_order(make_client):
    with make_client() as client:
        first = client.post("/api/orders", json=_order(qty_a=10)).json()
        assert first["estimate"]["total"] == 90
        second = client.post(
            "/api/orders", json=_order(name="Bo", qty_a=0, qty_b=500)
        ).json()
        assert second["estimate"]["unit_price"] == 6.0
        assert second["estimate"]["total"] == 3000

        admin = client.get("/api/admin/orders").json()
        assert admin["available"] is True
        assert admin["unit_price"] == 6.0
        assert admin["estimated_revenue"] == 3060.0
        charges = {o["name"]: o["estimated_charge"] for o in admin["orders"]}
        assert charges == {"Ana": 60, "Bo": 3000}


def test_quote_coerces_bad_input_to_zero(make_client):
    with make_client() as client:
        q = client.get("/api/quote",
                       params={"qty_a": "abc", "qty_b": "12.0"}).json()
        assert (q["qty_a"], q["qty_b"]) == (0, 12)
        assert q["total"] == 12 * 9
        assert len(q["warnings"]) == 1

        q = client.get("/api/quote", params={"qty_a": "-5"}).json()
        assert q["qty_a"] == 0
        assert q["total"] == 0
        assert q["unit_price"] == 9.0
        assert any(row["active"] for row in q["rows"])


def test_pricing_lists_the_tiers(make_client):
    with make_client() as client:
        p = client.get("/api/pricing").json()
        assert p["version"] == "2026-v2"
        assert p["list_price"] == 9.0
        assert [r["min_qty"] for r in p["rows"]] == [200, 300, 500, 1000, 1500]


def test_order_validation(make_client):
    with make_client() as client:
        r = client.post("/api/orders", json=_order(name="  "))
        assert r.status_code == 400
        assert r.json()["detail"] == "name and department are required"

        r = client.post("/api/orders", json=_order(qty_a=0, qty_b="x"))
        assert r.status_code == 400
        assert "at least one design" in r.json()["detail"]

        assert client.get("/api/stats").json()["grand"] == 0


def test_odd_quantities_are_a_warning_by_default(make_client):
    with make_client() as client:
        r = client.post("/api/orders", json=_order(qty_a=15))
        assert r.status_code == 200
        assert "multiple of 10" in r.json()["warnings"][0]


def test_odd_quantities_rejected_when_enforced(make_client):
    with make_client(enforce_multiple_of_ten=True) as client:
        r = client.post("/api/orders", json=_order(qty_a=15))
        assert r.status_code == 400
        assert "multiple of 10" in r.json()["detail"]

        assert client.post("/api/orders", json=_order(qty_a=20)).status_code \
            == 200


def test_closed_after_deadline_until_forced_open(make_client):
    with make_client(deadline=PAST) as client:
        status = client.get("/api/status").json()
        assert status["allowed"] is False
        assert status["countdown"]["expired"] is True

        r = client.post("/api/orders", json=_order())
        assert r.status_code == 403

        r = client.put("/api/admin/settings/forced_open",
                       json={"value": True})
        assert r.status_code == 200
        assert r.json()["allowed"] is True
        assert client.get("/api/admin/settings").json() == \
            {"forced_open": True}

        assert client.post("/api/orders", json=_order()).status_code == 200

        client.put("/api/admin/settings/forced_open", json={"value": False})
        assert client.post("/api/orders", json=_order()).status_code == 403


def test_open_before_deadline(make_client):
    with make_client(deadline=FUTURE) as client:
        status = client.get("/api/status").json()
        assert status["allowed"] is True
        assert status["countdown"]["days"] > 0


def test_forced_open_requires_a_boolean(make_client):
    with make_client() as client:
        r = client.put("/api/admin/settings/forced_open",
                       json={"value": "yes"})
        assert r.status_code == 400


def test_store_failure_on_submit_is_reported(make_client, monkeypatch):
    with make_client() as client:
        async def fail(fields):
            raise StoreError("order was not saved: disk full")

        monkeypatch.setattr(client.app.state.store, "insert_order", fail)
        r = client.post("/api/orders", json=_order())
        assert r.status_code == 502
        assert r.json()["detail"] == "order was not saved: disk full"
        assert client.get("/api/stats").json()["grand"] == 0


def test_hung_store_on_submit_times_out(make_client, monkeypatch):
    with make_client(store_timeout_seconds=0.05) as client:
        async def hang(fields):
            await asyncio.sleep(5)

        monkeypatch.setattr(client.app.state.store, "insert_order", hang)
        r = client.post("/api/orders", json=_order())
        assert r.status_code == 504


def test_settings_failure_is_reported(make_client, monkeypatch):
    with make_client() as client:
        async def fail(key, value):
            raise StoreError("setting 'forced_open' was not saved")

        monkeypatch.setattr(client.app.state.store, "upsert_setting", fail)
        r = client.put("/api/admin/settings/forced_open",
                       json={"value": True})
        assert r.status_code == 503
        assert "was not saved" in r.json()["detail"]
        assert client.get("/api/admin/settings").json() == \
            {"forced_open": False}


def test_admin_list_unavailable(make_client, monkeypatch):
    with make_client() as client:
        async def fail():
            raise StoreError("orders could not be read")

        monkeypatch.setattr(client.app.state.store, "list_orders", fail)
        r = client.get("/api/admin/orders")
        assert r.status_code == 200
        assert r.json()["available"] is False
        assert r.json()["orders"] == []


def test_timings_are_exposed(make_client):
    with make_client() as client:
        client.post("/api/orders", json=_order())
        t = client.get("/api/admin/timings").json()
        assert t["store.insert_order"]["n"] == 1
        assert t["store.list_orders"]["n"] >= 1


class _PublishOnlyRedis:
    """Accepts publishes; nothing comes back to this worker."""

    def __init__(self):
        self.published = []

    async def publish(self, channel, data):
        self.published.append(channel)
        return 0


def test_forced_open_applies_locally_with_the_redis_feed(make_client):
    with make_client(deadline=PAST) as client:
        r = _PublishOnlyRedis()
        client.app.state.feed = RedisChangeFeed(EventBus(), r)

        resp = client.put("/api/admin/settings/forced_open",
                          json={"value": True})
        assert resp.status_code == 200
        assert resp.json()["allowed"] is True
        assert resp.json()["forced_open"] is True
        assert r.published == ["groupbuy:changes:settings"]

        assert client.get("/api/admin/settings").json() == \
            {"forced_open": True}
        assert client.post("/api/orders", json=_order()).status_code == 200


def test_reconciliation_picks_up_a_missed_settings_change(make_client):
    with make_client(deadline=PAST, reconcile_seconds=0.05) as client:
        # written by another worker whose notification never arrived
        client.portal.call(
            client.app.state.store.upsert_setting, "forced_open", True
        )
        for _ in range(50):
            if client.get("/api/admin/settings").json()["forced_open"]:
                break
            time.sleep(0.05)
        assert client.get("/api/status").json()["allowed"] is True


def _parse(frame: bytes):
    kind, data = frame.decode().split("\n", 1)
    return kind.split(": ", 1)[1], orjson.loads(data.split(": ", 1)[1])


def test_event_stream_frames(table, fake_store):
    bus = EventBus()
    gate = GateState(deadline=PAST)
    t = AggregateTracker(fake_store, table)

    async def connected():
        return False

    async def settings_changed(event):
        await gate.refresh(fake_store)

    async def run():
        await t.reseed()
        bus.subscribe(ORDERS_TABLE, t.on_order_inserted)
        bus.subscribe(SETTINGS_TABLE, settings_changed)
        frames = event_frames(
            bus,
            totals=t.snapshot,
            status=lambda: gate.to_dict(PAST),
            is_disconnected=connected,
            keepalive=0.01,
        )
        out = [await frames.__anext__()]
        assert bus.subscriber_count() == 4

        await bus.publish(OrderInserted("o1", 20, 30))
        out.append(await frames.__anext__())

        fake_store.forced_open = True
        await bus.publish(SettingChanged("forced_open", True))
        out.append(await frames.__anext__())

        out.append(await frames.__anext__())
        await frames.aclose()
        assert bus.subscriber_count() == 2
        return out

    first, inserted, status, idle = asyncio.run(run())
    kind, data = _parse(first)
    assert kind == "totals"
    assert data["grand"] == 0
    kind, data = _parse(inserted)
    assert kind == "totals"
    assert (data["qty_a"], data["qty_b"], data["grand"]) == (20, 30, 50)
    kind, data = _parse(status)
    assert kind == "status"
    assert data["forced_open"] is True
    assert data["allowed"] is True
    assert idle == b": keepalive\n\n"


def test_event_stream_ends_when_the_client_goes_away():
    bus = EventBus()

    async def gone():
        return True

    async def run():
        return [f async for f in event_frames(
            bus, totals=lambda: {"grand": 0}, status=dict,
            is_disconnected=gone,
        )]

    frames = asyncio.run(run())
    assert len(frames) == 1
    assert frames[0].startswith(b"event: totals\n")
    assert bus.subscriber_count() == 0
