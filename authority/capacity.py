"""High-impact capacity gate.

An organization may hold at most :data:`MAX_HIGH_IMPACT_ACTIVE` bets that are
simultaneously ``active``, ``High`` tier and carry an ``activated_at``
timestamp. Counting and claiming happen in one conditional ``UPDATE`` so two
sessions that both observed a count of four cannot both take the fifth slot.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, aliased

from authority.models import Bet, BetStatus, ImpactTier, Organization
from authority.utils import utcnow

log = logging.getLogger(__name__)

MAX_HIGH_IMPACT_ACTIVE = 5


def _occupied_slots_query(org_id: str, exclude_bet_id: str | None = None):
    other = aliased(Bet)
    query = select(func.count()).select_from(other).where(
        other.org_id == org_id,
        other.status == BetStatus.ACTIVE,
        other.impact_tier == ImpactTier.HIGH,
        other.activated_at.is_not(None),
    )
    if exclude_bet_id is not None:
        query = query.where(other.id != exclude_bet_id)
    return query


def count_high_impact_active(session: Session, org_id: str, exclude_bet_id: str | None = None) -> int:
    return session.execute(_occupied_slots_query(org_id, exclude_bet_id)).scalar_one()


def has_capacity(session: Session, org_id: str, exclude_bet_id: str | None = None) -> bool:
    """Advisory pre-check; :func:`claim_high_impact_slot` is the authoritative gate."""
    return count_high_impact_active(session, org_id, exclude_bet_id) < MAX_HIGH_IMPACT_ACTIVE


def capacity_summary(session: Session, org_id: str) -> dict:
    used = count_high_impact_active(session, org_id)
    return {
        "used": used,
        "cap": MAX_HIGH_IMPACT_ACTIVE,
        "remaining": max(0, MAX_HIGH_IMPACT_ACTIVE - used),
        "at_capacity": used >= MAX_HIGH_IMPACT_ACTIVE,
    }


def _lock_org(session: Session, org_id: str) -> None:
    # Serializes claims per org on Postgres; SQLite already serializes writers.
    session.execute(select(Organization.id).where(Organization.id == org_id).with_for_update())


def claim_high_impact_slot(
    session: Session, bet: Bet, expected_status: BetStatus, now: datetime | None = None,
) -> bool:
    """Atomically move *bet* into active/High if a slot is free.

    The update only applies when the bet is still in *expected_status* and
    fewer than :data:`MAX_HIGH_IMPACT_ACTIVE` other bets hold a slot. Returns
    ``False`` (nothing written) when either condition fails; use
    :func:`stored_status` to tell a concurrent status change from a full cap.
    The caller commits.
    """
    now = now or utcnow()
    _lock_org(session, bet.org_id)
    occupied = _occupied_slots_query(bet.org_id, exclude_bet_id=bet.id).scalar_subquery()
    result = session.execute(
        update(Bet)
        .where(
            Bet.id == bet.id,
            Bet.org_id == bet.org_id,
            Bet.status == expected_status,
            occupied < MAX_HIGH_IMPACT_ACTIVE,
        )
        .values(
            status=BetStatus.ACTIVE,
            impact_tier=ImpactTier.HIGH,
            activated_at=func.coalesce(Bet.activated_at, now),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    claimed = result.rowcount == 1
    if claimed:
        session.refresh(bet)
    else:
        log.info("No high-impact slot claimed for bet %s in org %s", bet.id, bet.org_id)
    return claimed


def stored_status(session: Session, bet_id: str) -> BetStatus | None:
    """Status of a bet as stored, bypassing the session identity map."""
    return session.execute(select(Bet.status).where(Bet.id == bet_id)).scalar_one_or_none()
