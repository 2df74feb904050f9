# groupbuy/admin.py
"""
Admin table: every order re-priced at today's unit price.

The unit price comes from the grand total over *all* orders as read now, so
an order placed at 9.0 shows its charge at 6.0 once the group crosses 500.
The `total_price` stored with an order is only the estimate its submitter
saw and is reported next to the recomputed figure.
"""
from __future__ import annotations
import math
from typing import List

from .model.orders import OrderRow, sum_rows
from .pricing import TierTable, active_tier


def recompute_orders(table: TierTable, orders: List[OrderRow]) -> dict:
    totals = sum_rows(orders)
    tier = active_tier(table, totals.grand)
    price = tier.price

    rows = []
    for o in orders:
        row = o.to_dict()
        row["estimated_charge"] = math.ceil(o.qty * price)
        rows.append(row)

    return {
        "pricing_table": table.version,
        "totals": totals.to_dict(),
        "unit_price": float(price),
        "tier_min": tier.min_qty,
        "estimated_revenue": float(totals.grand * price),
        "orders": rows,
    }
