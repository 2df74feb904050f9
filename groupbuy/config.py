"""
Settings for the order service, read from the environment.
"""
from __future__ import annotations
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


def _flag(value: Optional[str], default: bool = False) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_deadline(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 cutoff; naive timestamps are taken as UTC."""
    if not value or not value.strip():
        return None
    dt = datetime.fromisoformat(value.strip())
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class Config:
    database_url: str = "sqlite:///./groupbuy.db"
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None
    create_schema: bool = True

    notify_backend: str = "local"  # 'local' | 'redis'
    redis_url: str = "redis://127.0.0.1:6379"

    pricing_table: str = "2026-v2"
    deadline: Optional[datetime] = None
    reconcile_seconds: float = 30.0
    store_timeout_seconds: float = 10.0
    enforce_multiple_of_ten: bool = False

    site_name: str = "Year of the Horse Cards"

    @classmethod
    def from_env(cls, env: Optional[dict] = None) -> "Config":
        env = os.environ if env is None else env
        gate = env.get("DB_GATE_LIMIT")
        return cls(
            database_url=env.get("DATABASE_URL", cls.database_url),
            db_pool_size=int(env.get("DB_POOL_SIZE", "10")),
            db_max_overflow=int(env.get("DB_MAX_OVERFLOW", "10")),
            db_pool_timeout=int(env.get("DB_POOL_TIMEOUT", "30")),
            db_gate_limit=int(gate) if gate else None,
            create_schema=_flag(env.get("CREATE_SCHEMA"), True),
            notify_backend=env.get("NOTIFY_BACKEND", "local").lower(),
            redis_url=env.get("REDIS_URL", cls.redis_url),
            pricing_table=env.get("PRICING_TABLE", cls.pricing_table),
            deadline=parse_deadline(env.get("ORDER_DEADLINE")),
            reconcile_seconds=float(env.get("RECONCILE_SECONDS", "30")),
            store_timeout_seconds=float(
                env.get("STORE_TIMEOUT_SECONDS", "10")
            ),
            enforce_multiple_of_ten=_flag(
                env.get("ENFORCE_MULTIPLE_OF_TEN"), False
            ),
            site_name=env.get("SITE_NAME", cls.site_name),
        )


_config: Optional[Config] = None


def get_config() -> Config:
    """Process-wide config, loaded from the environment on first use."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config
