"""Tests for the high-impact capacity gate, including concurrent claims for the last slot."""
from __future__ import annotations

import threading
from datetime import UTC, datetime

import pytest
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from authority import capacity
from authority.db import make_engine
from authority.models import Base, Bet, BetStatus, ImpactTier, Organization

ACTIVATED = datetime(2025, 1, 6, tzinfo=UTC)


def _bet(org_id: str, **kw) -> Bet:
    base = dict(
        org_id=org_id, title="Bet", owner="Dana", outcome_category="ARR",
        expected_impact="More ARR", exposure_value="$1M", outcome_target="+5%",
        status=BetStatus.DRAFT, impact_tier=ImpactTier.HIGH,
    )
    base.update(kw)
    return Bet(**base)


def _active_high(org_id: str, **kw) -> Bet:
    return _bet(org_id, status=BetStatus.ACTIVE, activated_at=ACTIVATED, **kw)


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def org(session) -> Organization:
    org = Organization(name="Acme")
    session.add(org)
    session.commit()
    return org


class TestCount:
    def test_only_active_high_activated_count(self, session, org):
        session.add_all([
            _active_high(org.id),
            _active_high(org.id),
            _bet(org.id, status=BetStatus.ACTIVE, impact_tier=ImpactTier.MEDIUM, activated_at=ACTIVATED),
            _bet(org.id, status=BetStatus.BLOCKED, activated_at=ACTIVATED),
            _bet(org.id, status=BetStatus.ACTIVE, activated_at=None),
            _bet(org.id),
        ])
        session.commit()
        assert capacity.count_high_impact_active(session, org.id) == 2

    def test_scoped_to_org(self, session, org):
        other = Organization(name="Other")
        session.add(other)
        session.flush()
        session.add_all([_active_high(other.id) for _ in range(5)])
        session.commit()
        assert capacity.count_high_impact_active(session, org.id) == 0
        assert capacity.has_capacity(session, org.id)

    def test_excludes_bet(self, session, org):
        bet = _active_high(org.id)
        session.add(bet)
        session.commit()
        assert capacity.count_high_impact_active(session, org.id, exclude_bet_id=bet.id) == 0

    def test_summary(self, session, org):
        session.add_all([_active_high(org.id) for _ in range(3)])
        session.commit()
        assert capacity.capacity_summary(session, org.id) == {
            "used": 3, "cap": 5, "remaining": 2, "at_capacity": False,
        }


class TestClaim:
    def test_fills_to_cap_then_rejects(self, session, org):
        bets = [_bet(org.id) for _ in range(6)]
        session.add_all(bets)
        session.commit()
        for bet in bets[:5]:
            assert capacity.claim_high_impact_slot(session, bet, BetStatus.DRAFT)
            session.commit()
            assert bet.status == BetStatus.ACTIVE
            assert bet.activated_at is not None

        assert not capacity.claim_high_impact_slot(session, bets[5], BetStatus.DRAFT)
        session.rollback()
        stored = session.execute(select(Bet).where(Bet.id == bets[5].id)).scalars().one()
        assert stored.status == BetStatus.DRAFT
        assert stored.activated_at is None
        assert capacity.count_high_impact_active(session, org.id) == 5
        assert capacity.capacity_summary(session, org.id)["at_capacity"] is True

    def test_keeps_original_activated_at(self, session, org):
        bet = _bet(org.id, status=BetStatus.BLOCKED, activated_at=ACTIVATED)
        session.add(bet)
        session.commit()
        assert capacity.claim_high_impact_slot(session, bet, BetStatus.BLOCKED)
        session.commit()
        assert bet.activated_at.replace(tzinfo=UTC) == ACTIVATED

    def test_stale_expected_status_rejected(self, session, org):
        bet = _bet(org.id, status=BetStatus.CLOSED)
        session.add(bet)
        session.commit()
        assert not capacity.claim_high_impact_slot(session, bet, BetStatus.DRAFT)

    def test_stored_status_reads_database(self, session, org):
        bet = _bet(org.id)
        session.add(bet)
        session.commit()
        session.execute(
            update(Bet).where(Bet.id == bet.id).values(status=BetStatus.CLOSED)
            .execution_options(synchronize_session=False)
        )
        assert bet.status == BetStatus.DRAFT
        assert capacity.stored_status(session, bet.id) == BetStatus.CLOSED
        assert capacity.stored_status(session, "missing") is None

    def test_reclaim_by_holder_not_double_counted(self, session, org):
        session.add_all([_active_high(org.id) for _ in range(4)])
        holder = _bet(org.id, status=BetStatus.BLOCKED, activated_at=ACTIVATED)
        session.add(holder)
        session.commit()
        assert capacity.claim_high_impact_slot(session, holder, BetStatus.BLOCKED)
        session.commit()
        assert capacity.count_high_impact_active(session, org.id) == 5


class TestRace:
    def test_two_sessions_that_both_saw_four(self, tmp_path):
        """Both requests observe four occupied slots; only one may take the fifth."""
        engine = make_engine(f"sqlite:///{tmp_path / 'race.db'}")
        Base.metadata.create_all(engine)
        Factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

        with Factory() as setup:
            org = Organization(name="Race")
            setup.add(org)
            setup.flush()
            setup.add_all([_active_high(org.id) for _ in range(4)])
            first, second = _bet(org.id, title="first"), _bet(org.id, title="second")
            setup.add_all([first, second])
            setup.commit()
            org_id, first_id, second_id = org.id, first.id, second.id

        a, b = Factory(), Factory()
        try:
            bet_a = a.get(Bet, first_id)
            bet_b = b.get(Bet, second_id)
            assert capacity.has_capacity(a, org_id, exclude_bet_id=first_id)
            assert capacity.has_capacity(b, org_id, exclude_bet_id=second_id)

            assert capacity.claim_high_impact_slot(a, bet_a, BetStatus.DRAFT)
            a.commit()
            assert not capacity.claim_high_impact_slot(b, bet_b, BetStatus.DRAFT)
            b.rollback()
        finally:
            a.close()
            b.close()

        with Factory() as check:
            assert capacity.count_high_impact_active(check, org_id) == 5
            assert check.get(Bet, second_id).status == BetStatus.DRAFT
        engine.dispose()

    def test_six_threads_race_for_last_slot(self, tmp_path):
        engine = make_engine(f"sqlite:///{tmp_path / 'threads.db'}")
        Base.metadata.create_all(engine)
        Factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

        with Factory() as setup:
            org = Organization(name="Threads")
            setup.add(org)
            setup.flush()
            setup.add_all([_active_high(org.id) for _ in range(4)])
            contenders = [_bet(org.id, title=f"contender {i}") for i in range(6)]
            setup.add_all(contenders)
            setup.commit()
            org_id, ids = org.id, [b.id for b in contenders]

        barrier = threading.Barrier(len(ids))
        results: list[bool] = []
        errors: list[Exception] = []
        guard = threading.Lock()

        def contend(bet_id: str) -> None:
            session = Factory()
            try:
                bet = session.get(Bet, bet_id)
                barrier.wait()
                claimed = capacity.claim_high_impact_slot(session, bet, BetStatus.DRAFT)
                session.commit()
                with guard:
                    results.append(claimed)
            except Exception as exc:
                session.rollback()
                with guard:
                    errors.append(exc)
            finally:
                session.close()

        threads = [threading.Thread(target=contend, args=(bet_id,)) for bet_id in ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        assert sorted(results) == [False] * 5 + [True]
        with Factory() as check:
            assert capacity.count_high_impact_active(check, org_id) == 5
        engine.dispose()
