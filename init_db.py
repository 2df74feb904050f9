import argparse
import asyncio

from groupbuy.config import Config
from groupbuy.gate import FORCED_OPEN_KEY
from groupbuy.infra.sql import make_async_engine
from groupbuy.model.orders import OrderStore, create_schema


async def init_db(cfg: Config, forced_open=None) -> None:
    engine, SessionAsync, gated = make_async_engine(
        cfg.database_url,
        pool_size=cfg.db_pool_size,
        max_overflow=cfg.db_max_overflow,
        pool_timeout=cfg.db_pool_timeout,
        gate_limit=cfg.db_gate_limit,
    )
    try:
        async with engine.begin() as conn:
            await create_schema(conn)
        print('✅ orders / settings tables present / created')

        store = OrderStore(sessions=SessionAsync, gated=gated)
        if forced_open is not None:
            await store.upsert_setting(FORCED_OPEN_KEY, forced_open)
        value = await store.get_setting(FORCED_OPEN_KEY)
        print(f'✅ {FORCED_OPEN_KEY} = {bool(value)}')

        totals = await store.sum_quantities()
        print(f'✅ {totals.grand} cards ordered '
              f'(A: {totals.qty_a}, B: {totals.qty_b})')
    finally:
        await engine.dispose()


if __name__ == '__main__':
    ap = argparse.ArgumentParser(
        description="Create the order tables and set the forced-open flag"
    )
    g = ap.add_mutually_exclusive_group()
    g.add_argument("--open", dest="forced_open", action="store_const",
                   const=True, help="keep ordering open past the deadline")
    g.add_argument("--close", dest="forced_open", action="store_const",
                   const=False, help="clear the forced-open override")
    args = ap.parse_args()

    asyncio.run(init_db(Config.from_env(), forced_open=args.forced_open))
