#!/usr/bin/env python3
"""
Group-buy load client (async)

Simulates many people ordering at once:
  1) GET  /api/stats          -> totals before the run
  2) POST /api/orders         (name, department, qty_a, qty_b), N at a time
  3) poll GET /api/stats until the totals include every accepted order
     (or timeout)

It prints latency figures and whether the live totals converged to
before + sum(accepted quantities).

Usage:
  python -m groupbuy.load_client --base http://localhost:8000 \
                                 --total 200 --concurrency 50

Notes:
- Run against a server with ORDER_DEADLINE unset or forced open.
- With the redis feed, other workers' totals converge as well; point
  --base at each of them to check.
"""

import argparse
import asyncio
import random
import string
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx


def _rand_name() -> str:
    return ''.join(random.choices(string.ascii_lowercase, k=8)).title()


@dataclass
class Result:
    ok: bool
    qty_a: int
    qty_b: int
    t_submit: float = 0.0
    status: int = 0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def accepted(self) -> List[Result]:
        return [r for r in self.results if r.ok]

    def summary(self) -> Dict[str, float]:
        lat = sorted(r.t_submit for r in self.results if r.t_submit > 0)

        def pct(p):
            if not lat:
                return 0.0
            k = int(max(0, min(len(lat)-1, round(p/100*(len(lat)-1)))))
            return lat[k]
        acc = self.accepted()
        return {
            "total": len(self.results),
            "ok": len(acc),
            "error": sum(1 for r in self.results if not r.ok),
            "qty_a": sum(r.qty_a for r in acc),
            "qty_b": sum(r.qty_b for r in acc),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "p99_s": pct(99),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Load Summary ===")
        print(
            f"Total: {int(s['total'])}   OK: {int(s['ok'])}   "
            f"ERROR: {int(s['error'])}   "
            f"accepted A: {int(s['qty_a'])}  B: {int(s['qty_b'])}"
        )
        print(
            f"Latency (submit): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} orders/s"
        )


def _random_qty(max_tens: int) -> int:
    return 10 * random.randint(0, max_tens)


async def one_order(client: httpx.AsyncClient, base: str,
                    max_tens: int) -> Result:
    qty_a = _random_qty(max_tens)
    qty_b = _random_qty(max_tens)
    if qty_a + qty_b == 0:
        qty_a = 10
    r = Result(ok=False, qty_a=qty_a, qty_b=qty_b)

    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/orders",
            json={
                "name": _rand_name(),
                "department": random.choice(["North", "South", "HQ"]),
                "qty_a": qty_a,
                "qty_b": qty_b,
            },
            timeout=30.0,
        )
    except Exception as e:
        r.err = f"submit: {e}"
        return r
    r.t_submit = time.perf_counter() - t0
    r.status = resp.status_code
    if resp.status_code != 200:
        r.err = f"submit HTTP {resp.status_code}: {resp.text[:120]}"
        return r
    r.ok = True
    return r


async def get_totals(client: httpx.AsyncClient, base: str) -> Dict[str, int]:
    resp = await client.get(f"{base}/api/stats", timeout=10.0)
    resp.raise_for_status()
    return resp.json()


async def wait_converged(
    client: httpx.AsyncClient, base: str, want_a: int, want_b: int,
    poll_interval_s: float, poll_timeout_s: float,
) -> Dict[str, int]:
    deadline = time.perf_counter() + poll_timeout_s
    totals = await get_totals(client, base)
    while time.perf_counter() < deadline:
        if totals["qty_a"] == want_a and totals["qty_b"] == want_b:
            break
        await asyncio.sleep(poll_interval_s)
        totals = await get_totals(client, base)
    return totals


async def run_load(
    base: str,
    total: int,
    concurrency: int,
    max_tens: int,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> tuple[Stats, Dict[str, int], Dict[str, int]]:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "GroupBuyLoad/1.0"}
    ) as client:
        before = await get_totals(client, base)

        async def worker(n: int):
            async with sem:
                stats.add(await one_order(client, base, max_tens))

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

        s = stats.summary()
        after = await wait_converged(
            client, base,
            before["qty_a"] + int(s["qty_a"]),
            before["qty_b"] + int(s["qty_b"]),
            poll_interval_s, poll_timeout_s,
        )
    return stats, before, after


def main():
    ap = argparse.ArgumentParser(description="Group-buy load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--total", type=int, default=100,
                    help="Total orders to submit")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent submitters")
    ap.add_argument("--max-tens", type=int, default=5,
                    help="Max quantity per design, in tens")
    ap.add_argument("--poll-interval", type=float, default=0.1,
                    help="Seconds between totals polls")
    ap.add_argument("--poll-timeout", type=float, default=10.0,
                    help="Max seconds to wait for totals to converge")
    args = ap.parse_args()

    t_start = time.perf_counter()
    stats, before, after = asyncio.run(run_load(
        base=args.base,
        total=args.total,
        concurrency=args.concurrency,
        max_tens=args.max_tens,
        poll_interval_s=args.poll_interval,
        poll_timeout_s=args.poll_timeout,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)

    s = stats.summary()
    want_a = before["qty_a"] + int(s["qty_a"])
    want_b = before["qty_b"] + int(s["qty_b"])
    ok = after["qty_a"] == want_a and after["qty_b"] == want_b
    print(
        f"Totals: A {after['qty_a']} (want {want_a})   "
        f"B {after['qty_b']} (want {want_b})   "
        f"{'converged' if ok else 'NOT converged'}"
    )
    if not ok:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
