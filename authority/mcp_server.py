from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager

from mcp.server.fastmcp import FastMCP

from authority import capacity, lifecycle, services, staleness
from authority.db import get_session, init_db
from authority.risk import RED_THRESHOLD, YELLOW_THRESHOLD

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def authority_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Build Authority",
    instructions=(
        "Build Authority tracks strategic bets under a hard cap of "
        f"{capacity.MAX_HIGH_IMPACT_ACTIVE} active high-impact bets per organization. "
        "Every tool takes org_id and user_id; the user must be a member of the org. "
        "Start with get_capacity() and get_stats(), then list_bets() and get_bet(id)."
    ),
    lifespan=authority_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session():
    session = get_session()
    try:
        yield session
    finally:
        session.close()


def _context_or_error(session, org_id: str, user_id: str):
    ctx = services.resolve_context(session, org_id, user_id)
    if ctx is None:
        return None, {"error": f"User {user_id} is not a member of organization {org_id}"}
    return ctx, None


def _bet_or_error(session, ctx, bet_id: str):
    bet = services.get_bet(session, ctx.org_id, bet_id)
    if not bet:
        return None, {"error": f"Bet {bet_id} not found"}
    return bet, None


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("authority://overview")
def authority_overview() -> str:
    """Overview of Build Authority: lifecycle, capacity rule, flags, and risk scoring."""
    return json.dumps({
        "system": "Build Authority: decision capacity for strategic bets",
        "lifecycle": {
            "draft": ["active"], "active": ["blocked", "closed"],
            "blocked": ["active", "closed"], "closed": [],
        },
        "capacity": (
            f"At most {capacity.MAX_HIGH_IMPACT_ACTIVE} bets per org may be active, High tier "
            "and activated at the same time. Activation beyond that fails with HIGH_IMPACT_CAP."
        ),
        "activation_requires": list(lifecycle.ACTIVATION_REASONS),
        "flags": {
            "is_exceeded": "slice window (default "
                           f"{staleness.DEFAULT_SLICE_DEADLINE_DAYS} days since creation) has passed",
            "is_urgent": f"{staleness.URGENT_WINDOW_DAYS} or fewer days left in the slice window",
            "is_aging": f"no update for more than {staleness.AGING_AFTER_DAYS} days",
            "is_unbound": "no capability pod references the bet",
            "needs_exec_attention": "slice window exceeded on an open bet, or flagged manually",
        },
        "risk": (
            "Deterministic score from projection confidences: delayed High +20 / Medium +12, "
            "deprioritized High +25 / Medium +15, 'renewal' in exposure +10, capped at 100. "
            f">= {RED_THRESHOLD} Red, >= {YELLOW_THRESHOLD} Yellow, else Green."
        ),
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Bets
# ---------------------------------------------------------------------------


@mcp.tool()
def list_bets(
    org_id: str, user_id: str, status: str | None = None,
    impact_tier: str | None = None, search: str | None = None, limit: int = 50,
) -> list[dict] | dict:
    """List bets in an organization with derived urgency flags.

    Args:
        org_id: Organization to read from.
        user_id: Acting user; must be a member of the organization.
        status: Comma-separated from: draft, active, blocked, closed.
        impact_tier: Comma-separated from: High, Medium, Low.
        search: Free-text search across title, owner, surface, and outcome target.
        limit: Max results (default 50, max 500).
    """
    with _session() as session:
        ctx, err = _context_or_error(session, org_id, user_id)
        if err:
            return err
        try:
            items, _ = services.query_bets(
                session, ctx.org_id, status=status, impact_tier=impact_tier, search=search,
            )
        except ValueError as exc:
            return {"error": str(exc)}
        return items[:max(1, min(limit, 500))]


@mcp.tool()
def get_bet(org_id: str, user_id: str, bet_id: str) -> dict:
    """Get a bet with flags, risk, linked pods, and projection staleness."""
    with _session() as session:
        ctx, err = _context_or_error(session, org_id, user_id)
        if err:
            return err
        bet, err = _bet_or_error(session, ctx, bet_id)
        return err if err else services.bet_detail(session, bet)


@mcp.tool()
def transition_bet(
    org_id: str, user_id: str, bet_id: str, status: str,
    impact_tier: str | None = None, blocked_reason: str | None = None,
    measured_outcome_result: str | None = None,
) -> dict:
    """Move a bet to another status (draft, active, blocked, closed).

    Activation checks required fields first, then the high-impact cap for High-tier bets.
    """
    with _session() as session:
        ctx, err = _context_or_error(session, org_id, user_id)
        if err:
            return err
        bet, err = _bet_or_error(session, ctx, bet_id)
        if err:
            return err
        if not services.can_transition_bet(ctx, bet):
            return {"error": "Only writers or the bet owner may change its status"}
        outcome = services.transition_bet(
            session, bet, status, actor=ctx.user_id, impact_tier=impact_tier,
            blocked_reason=blocked_reason, measured_outcome_result=measured_outcome_result,
        )
        if not outcome.ok:
            session.rollback()
            return outcome.as_dict()
        session.commit()
        return {**outcome.as_dict(), "bet": services.bet_detail(session, bet)}


# ---------------------------------------------------------------------------
# Tools: Projections
# ---------------------------------------------------------------------------


@mcp.tool()
async def generate_bet_projection(org_id: str, user_id: str, bet_id: str) -> dict:
    """Generate on-time / delayed / deprioritized scenarios for a bet and refresh its risk score.

    Falls back to a template projection when no LLM is configured or its reply is unusable.
    """
    with _session() as session:
        ctx, err = _context_or_error(session, org_id, user_id)
        if err:
            return err
        bet, err = _bet_or_error(session, ctx, bet_id)
        if err:
            return err
        if not services.can_transition_bet(ctx, bet):
            return {"error": "Only writers or the bet owner may generate projections"}
        try:
            proj, _risk = await services.run_projection(session, bet)
        except services.ProjectionInputError as exc:
            return {"error": str(exc), "missing": exc.missing}
        session.commit()
        return services.projection_dict(proj, bet)


# ---------------------------------------------------------------------------
# Tools: Capacity & Stats
# ---------------------------------------------------------------------------


@mcp.tool()
def get_capacity(org_id: str, user_id: str) -> dict:
    """High-impact slots used and remaining for an organization."""
    with _session() as session:
        ctx, err = _context_or_error(session, org_id, user_id)
        return err if err else capacity.capacity_summary(session, ctx.org_id)


@mcp.tool()
def get_stats(org_id: str, user_id: str) -> dict:
    """Counts of bets by status, tier, risk indicator, and urgency flag."""
    with _session() as session:
        ctx, err = _context_or_error(session, org_id, user_id)
        return err if err else services.compute_stats(session, ctx.org_id)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Build Authority MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
