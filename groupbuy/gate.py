# groupbuy/gate.py
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

log = logging.getLogger(__name__)

FORCED_OPEN_KEY = "forced_open"


def is_submission_allowed(
    now: datetime, deadline: Optional[datetime], forced_open: bool
) -> bool:
    if forced_open:
        return True
    if deadline is None:
        return True
    return now < deadline


@dataclass(frozen=True)
class Countdown:
    days: int
    hours: int
    minutes: int
    seconds: int
    total_seconds: int

    @property
    def expired(self) -> bool:
        return self.total_seconds <= 0

    def to_dict(self) -> dict:
        return {
            "days": self.days,
            "hours": self.hours,
            "minutes": self.minutes,
            "seconds": self.seconds,
            "total_seconds": self.total_seconds,
            "expired": self.expired,
        }


def countdown(now: datetime, deadline: datetime) -> Countdown:
    remaining = max(0, int((deadline - now).total_seconds()))
    days, rest = divmod(remaining, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)
    return Countdown(days, hours, minutes, seconds, remaining)


class GateState:
    """Deadline plus the admin-controlled forced-open flag."""

    def __init__(self, deadline: Optional[datetime] = None,
                 forced_open: bool = False) -> None:
        self.deadline = deadline
        self.forced_open = forced_open

    def allowed(self, now: datetime) -> bool:
        return is_submission_allowed(now, self.deadline, self.forced_open)

    async def refresh(self, store) -> bool:
        try:
            value = await store.get_setting(FORCED_OPEN_KEY)
        except Exception:
            log.warning("could not read %s setting; keeping %s",
                        FORCED_OPEN_KEY, self.forced_open, exc_info=True)
            return False
        self.forced_open = bool(value)
        return True

    def to_dict(self, now: datetime) -> dict:
        out = {
            "allowed": self.allowed(now),
            "forced_open": self.forced_open,
            "deadline": (
                self.deadline.isoformat() if self.deadline else None
            ),
            "countdown": None,
        }
        if self.deadline is not None:
            out["countdown"] = countdown(now, self.deadline).to_dict()
        return out
