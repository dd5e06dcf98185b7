"""Tests for derived urgency flags."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest

from authority import staleness
from authority.models import BetStatus

NOW = datetime(2025, 3, 20, 12, 0, tzinfo=UTC)


def _bet(age_days: float = 0, since_update: float | None = None, **kw) -> SimpleNamespace:
    created = NOW - timedelta(days=age_days)
    updated = NOW - timedelta(days=since_update if since_update is not None else age_days)
    base = dict(
        id="bet-1", status=BetStatus.ACTIVE, created_at=created, updated_at=updated,
        slice_deadline_days=10, executive_attention_required=False,
    )
    base.update(kw)
    return SimpleNamespace(**base)


class TestDaysBetween:
    def test_floors_partial_days(self):
        assert staleness.days_between(NOW - timedelta(days=2, hours=23), NOW) == 2

    def test_naive_datetimes_are_utc(self):
        naive = (NOW - timedelta(days=3)).replace(tzinfo=None)
        assert staleness.days_between(naive, NOW) == 3

    def test_none_start(self):
        assert staleness.days_between(None, NOW) == 0


class TestSliceWindow:
    @pytest.mark.parametrize("age,remaining,urgent,exceeded", [
        (0, 10, False, False),
        (6, 4, False, False),
        (7, 3, True, False),
        (10, 0, True, False),
        (11, -1, False, True),
        (30, -20, False, True),
    ])
    def test_default_window(self, age, remaining, urgent, exceeded):
        flags = staleness.evaluate(_bet(age_days=age, since_update=0), now=NOW)
        assert flags.age_days == age
        assert flags.slice_remaining == remaining
        assert flags.is_urgent is urgent
        assert flags.is_exceeded is exceeded

    def test_missing_deadline_uses_default(self):
        flags = staleness.evaluate(_bet(age_days=4, slice_deadline_days=None), now=NOW)
        assert flags.slice_remaining == staleness.DEFAULT_SLICE_DEADLINE_DAYS - 4

    def test_custom_deadline(self):
        flags = staleness.evaluate(_bet(age_days=4, slice_deadline_days=5), now=NOW)
        assert flags.slice_remaining == 1
        assert flags.is_urgent


class TestAging:
    def test_aging_uses_last_update(self):
        assert staleness.evaluate(_bet(age_days=30, since_update=8), now=NOW).is_aging
        assert not staleness.evaluate(_bet(age_days=30, since_update=7), now=NOW).is_aging

    def test_recent_edit_resets_aging(self):
        flags = staleness.evaluate(_bet(age_days=40, since_update=1), now=NOW)
        assert not flags.is_aging
        assert flags.staleness == "fresh"

    @pytest.mark.parametrize("days,tier", [(0, "fresh"), (3, "fresh"), (4, "watch"), (7, "watch"), (8, "stale")])
    def test_staleness_tiers(self, days, tier):
        assert staleness.staleness_tier(days) == tier

    def test_missing_updated_at_falls_back_to_created(self):
        flags = staleness.evaluate(_bet(age_days=9, updated_at=None), now=NOW)
        assert flags.days_since_update == 9


class TestExecAttention:
    def test_exceeded_open_bet(self):
        assert staleness.evaluate(_bet(age_days=12), now=NOW).needs_exec_attention

    def test_exceeded_closed_bet(self):
        flags = staleness.evaluate(_bet(age_days=12, status=BetStatus.CLOSED), now=NOW)
        assert flags.is_exceeded
        assert not flags.needs_exec_attention

    def test_manual_flag(self):
        flags = staleness.evaluate(_bet(age_days=1, executive_attention_required=True), now=NOW)
        assert flags.needs_exec_attention


class TestUnbound:
    def test_unbound_without_pod(self):
        assert staleness.evaluate(_bet(), now=NOW).is_unbound

    def test_bound_when_linked(self):
        assert not staleness.evaluate(_bet(), now=NOW, linked_bet_ids={"bet-1"}).is_unbound


def test_as_dict_round_trip_keys():
    flags = staleness.evaluate(_bet(age_days=2), now=NOW)
    assert set(flags.as_dict()) == {
        "age_days", "days_since_update", "slice_remaining", "is_exceeded", "is_urgent",
        "is_aging", "is_unbound", "needs_exec_attention", "staleness",
    }
