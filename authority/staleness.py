"""Derived urgency flags for bets, recomputed on every read.

Nothing here touches the store: every function is a pure function of ``now``
and the bet's own fields (plus the set of bet ids linked to capability pods).

``is_aging`` uses days since the last update, the same clock as the
fresh/watch/stale tiers, so a bet that was just edited is not aging even if
it is old. ``age_days`` (days since creation) drives the slice window.
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Collection

from authority.models import Bet, BetStatus
from authority.utils import as_utc, utcnow

DEFAULT_SLICE_DEADLINE_DAYS = 10
URGENT_WINDOW_DAYS = 3
AGING_AFTER_DAYS = 7

FRESH_MAX_DAYS = 3
WATCH_MAX_DAYS = 7

_ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class BetFlags:
    age_days: int
    days_since_update: int
    slice_remaining: int
    is_exceeded: bool
    is_urgent: bool
    is_aging: bool
    is_unbound: bool
    needs_exec_attention: bool
    staleness: str

    def as_dict(self) -> dict:
        return asdict(self)


def days_between(start: datetime | None, now: datetime) -> int:
    if start is None:
        return 0
    return math.floor((as_utc(now) - as_utc(start)) / _ONE_DAY)


def staleness_tier(days_since_update: int) -> str:
    """Cosmetic tier: ``fresh`` (<=3 days), ``watch`` (4-7), ``stale`` (>7)."""
    if days_since_update <= FRESH_MAX_DAYS:
        return "fresh"
    if days_since_update <= WATCH_MAX_DAYS:
        return "watch"
    return "stale"


def evaluate(bet: Bet, now: datetime | None = None, linked_bet_ids: Collection[str] = ()) -> BetFlags:
    now = now or utcnow()
    age = days_between(bet.created_at, now)
    since_update = days_between(bet.updated_at or bet.created_at, now)
    deadline = bet.slice_deadline_days if bet.slice_deadline_days is not None else DEFAULT_SLICE_DEADLINE_DAYS
    remaining = deadline - age
    exceeded = remaining < 0
    return BetFlags(
        age_days=age,
        days_since_update=since_update,
        slice_remaining=remaining,
        is_exceeded=exceeded,
        is_urgent=0 <= remaining <= URGENT_WINDOW_DAYS,
        is_aging=since_update > AGING_AFTER_DAYS,
        is_unbound=bet.id not in linked_bet_ids,
        needs_exec_attention=(exceeded and bet.status != BetStatus.CLOSED) or bool(bet.executive_attention_required),
        staleness=staleness_tier(since_update),
    )
