from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from authority import capacity, lifecycle, services
from authority.db import init_db, session_generator
from authority.lifecycle import TransitionOutcome
from authority.models import Bet
from authority.schemas import (
    ActivityOut,
    BetCreate,
    BetDetail,
    BetListResponse,
    BetUpdate,
    CapacityOut,
    PodCreate,
    PodOut,
    PodUpdate,
    ProjectionOut,
    ProjectionRequest,
    RiskOut,
    SignalCreate,
    SignalOut,
    StatsOut,
    TransitionOut,
    TransitionRequest,
)
from authority.services import OrgContext

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Build Authority",
    version="0.1.0",
    description=(
        "Decision-capacity API for strategic bets. An organization may hold at most "
        f"{capacity.MAX_HIGH_IMPACT_ACTIVE} active high-impact bets. Every request is scoped "
        "by the X-Org-Id and X-User-Id headers."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Bets", "description": "Create, browse, and update strategic bets."},
        {"name": "Lifecycle", "description": "Status transitions, gated by required fields and the high-impact cap."},
        {"name": "Projections", "description": "LLM scenario projections and deterministic risk."},
        {"name": "Signals", "description": "Operating signals that trigger or inform bets."},
        {"name": "Pods", "description": "Capability pods executing against bets."},
        {"name": "Stats", "description": "Capacity and aggregate statistics."},
    ],
)


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError):
    log.error("Store error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": f"Store error: {exc}"})


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def org_context(
    x_org_id: str | None = Header(None),
    x_user_id: str | None = Header(None),
    session: Session = Depends(db_session),
) -> OrgContext:
    if not x_org_id or not x_user_id:
        raise HTTPException(401, "X-Org-Id and X-User-Id headers are required")
    ctx = services.resolve_context(session, x_org_id, x_user_id)
    if ctx is None:
        raise HTTPException(403, "Not a member of this organization")
    return ctx


def _require_write(ctx: OrgContext) -> None:
    if not services.can_write(ctx):
        raise HTTPException(403, "Requires admin or pod_lead role")


def _require_admin(ctx: OrgContext) -> None:
    if not services.is_admin(ctx):
        raise HTTPException(403, "Requires admin role")


def _get_bet_or_404(session: Session, ctx: OrgContext, bet_id: str) -> Bet:
    bet = services.get_bet(session, ctx.org_id, bet_id)
    if not bet:
        raise HTTPException(404, "Bet not found")
    return bet


def _raise_for_outcome(session: Session, outcome: TransitionOutcome) -> None:
    """Roll back and translate a rejected outcome into an HTTP error."""
    if outcome.ok:
        return
    session.rollback()
    if outcome.error == lifecycle.HIGH_IMPACT_CAP:
        raise HTTPException(409, {
            "error": lifecycle.HIGH_IMPACT_CAP,
            "message": f"Organization already has {capacity.MAX_HIGH_IMPACT_ACTIVE} active high-impact bets",
            "slots_used": outcome.slots_used,
            "cap": capacity.MAX_HIGH_IMPACT_ACTIVE,
        })
    raise HTTPException(422, {"error": outcome.error, "reasons": outcome.reasons})


# ---------------------------------------------------------------------------
# Routes: Bets
# ---------------------------------------------------------------------------


@app.get("/api/bets", response_model=BetListResponse,
         tags=["Bets"], summary="List bets with derived urgency flags")
async def list_bets(
    status: str | None = Query(None, description="Comma-separated: draft, active, blocked, closed"),
    impact_tier: str | None = Query(None, description="Comma-separated: High, Medium, Low"),
    search: str | None = Query(None, description="Free-text search across title, owner, surface, and outcome target"),
    ctx: OrgContext = Depends(org_context),
    session: Session = Depends(db_session),
):
    try:
        items, total = services.query_bets(
            session, ctx.org_id, status=status, impact_tier=impact_tier, search=search,
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    return {"items": items, "total": total}


@app.post("/api/bets", response_model=BetDetail, status_code=201,
          tags=["Bets"], summary="Create a draft bet")
async def create_bet(body: BetCreate, ctx: OrgContext = Depends(org_context),
                     session: Session = Depends(db_session)):
    _require_write(ctx)
    bet = services.create_bet(session, ctx, body.model_dump())
    session.commit()
    return services.bet_detail(session, bet)


@app.get("/api/bets/{bet_id}", response_model=BetDetail,
         tags=["Bets"], summary="Get bet detail with flags, risk, and projection staleness")
async def get_bet(bet_id: str, ctx: OrgContext = Depends(org_context),
                  session: Session = Depends(db_session)):
    return services.bet_detail(session, _get_bet_or_404(session, ctx, bet_id))


@app.put("/api/bets/{bet_id}", response_model=BetDetail,
         tags=["Bets"], summary="Update bet fields (partial update, null fields ignored)")
async def update_bet(bet_id: str, body: BetUpdate, ctx: OrgContext = Depends(org_context),
                     session: Session = Depends(db_session)):
    bet = _get_bet_or_404(session, ctx, bet_id)
    updates = body.model_dump()
    if not services.can_update_bet(ctx, bet, updates):
        raise HTTPException(403, "Not allowed to change these fields")
    outcome = services.update_bet(session, bet, updates, ctx.user_id)
    _raise_for_outcome(session, outcome)
    session.commit()
    return services.bet_detail(session, bet)


@app.delete("/api/bets/{bet_id}", tags=["Bets"], summary="Delete a bet with its risk, projections, and pods")
async def delete_bet(bet_id: str, ctx: OrgContext = Depends(org_context),
                     session: Session = Depends(db_session)):
    _require_admin(ctx)
    services.delete_bet(session, _get_bet_or_404(session, ctx, bet_id))
    session.commit()
    return {"ok": True}


@app.get("/api/bets/{bet_id}/activity", response_model=list[ActivityOut],
         tags=["Bets"], summary="Recent field changes for a bet")
async def bet_activity(bet_id: str, limit: int = Query(50, ge=1, le=500),
                       ctx: OrgContext = Depends(org_context),
                       session: Session = Depends(db_session)):
    return services.list_activity(session, _get_bet_or_404(session, ctx, bet_id), limit=limit)


# ---------------------------------------------------------------------------
# Routes: Lifecycle
# ---------------------------------------------------------------------------


@app.post("/api/bets/{bet_id}/transition", response_model=TransitionOut,
          tags=["Lifecycle"], summary="Move a bet to another status")
async def transition_bet(bet_id: str, body: TransitionRequest,
                         ctx: OrgContext = Depends(org_context),
                         session: Session = Depends(db_session)):
    bet = _get_bet_or_404(session, ctx, bet_id)
    if not services.can_transition_bet(ctx, bet):
        raise HTTPException(403, "Only writers or the bet owner may change its status")
    outcome = services.transition_bet(
        session, bet, body.status, actor=ctx.user_id, impact_tier=body.impact_tier,
        blocked_reason=body.blocked_reason,
        blocked_dependency_owner=body.blocked_dependency_owner,
        measured_outcome_result=body.measured_outcome_result,
    )
    _raise_for_outcome(session, outcome)
    session.commit()
    return {**outcome.as_dict(), "bet": services.bet_detail(session, bet)}


@app.get("/api/capacity", response_model=CapacityOut,
         tags=["Stats"], summary="High-impact slots used and remaining")
async def get_capacity(ctx: OrgContext = Depends(org_context), session: Session = Depends(db_session)):
    return capacity.capacity_summary(session, ctx.org_id)


# ---------------------------------------------------------------------------
# Routes: Projections
# ---------------------------------------------------------------------------


@app.post("/api/projection", response_model=ProjectionOut,
          tags=["Projections"], summary="Generate a three-scenario projection and refresh the risk score")
async def create_projection(body: ProjectionRequest, ctx: OrgContext = Depends(org_context),
                            session: Session = Depends(db_session)):
    if not body.decision_id or not body.org_id:
        raise HTTPException(400, "Missing required fields")
    if body.org_id != ctx.org_id:
        raise HTTPException(403, "Organization does not match request context")
    bet = _get_bet_or_404(session, ctx, body.decision_id)
    if not services.can_transition_bet(ctx, bet):
        raise HTTPException(403, "Only writers or the bet owner may generate projections")
    try:
        proj, _risk = await services.run_projection(session, bet)
    except services.ProjectionInputError:
        raise HTTPException(400, "Missing required fields")
    session.commit()
    return services.projection_dict(proj, bet)


@app.get("/api/bets/{bet_id}/projection", response_model=ProjectionOut,
         tags=["Projections"], summary="Stored projection with staleness check")
async def get_projection(bet_id: str, ctx: OrgContext = Depends(org_context),
                         session: Session = Depends(db_session)):
    bet = _get_bet_or_404(session, ctx, bet_id)
    proj = services.latest_projection(session, bet)
    if proj is None:
        raise HTTPException(404, "No projection for this bet")
    return services.projection_dict(proj, bet)


@app.post("/api/bets/{bet_id}/risk", response_model=RiskOut,
          tags=["Projections"], summary="Recompute the risk score from the stored projection")
async def recompute_risk(bet_id: str, ctx: OrgContext = Depends(org_context),
                         session: Session = Depends(db_session)):
    _require_write(ctx)
    bet = _get_bet_or_404(session, ctx, bet_id)
    risk = services.recompute_risk(session, bet)
    if risk is None:
        raise HTTPException(404, "No projection for this bet")
    session.commit()
    return services.risk_dict(risk)


# ---------------------------------------------------------------------------
# Routes: Signals
# ---------------------------------------------------------------------------


@app.get("/api/signals", response_model=list[SignalOut], tags=["Signals"], summary="List signals")
async def list_signals(decision_id: str | None = Query(None, description="Only signals linked to this bet"),
                       ctx: OrgContext = Depends(org_context),
                       session: Session = Depends(db_session)):
    return services.list_signals(session, ctx.org_id, decision_id=decision_id)


@app.post("/api/signals", response_model=SignalOut, status_code=201,
          tags=["Signals"], summary="Record a signal")
async def create_signal(body: SignalCreate, ctx: OrgContext = Depends(org_context),
                        session: Session = Depends(db_session)):
    _require_write(ctx)
    try:
        sig = services.create_signal(session, ctx, body.model_dump())
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    session.commit()
    return services.signal_dict(sig)


@app.delete("/api/signals/{signal_id}", tags=["Signals"], summary="Delete a signal")
async def delete_signal(signal_id: str, ctx: OrgContext = Depends(org_context),
                        session: Session = Depends(db_session)):
    _require_write(ctx)
    sig = services.get_signal(session, ctx.org_id, signal_id)
    if not sig:
        raise HTTPException(404, "Signal not found")
    session.delete(sig)
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Pods
# ---------------------------------------------------------------------------


def _pod_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, services.PodGuardError):
        return HTTPException(422, {"error": lifecycle.VALIDATION_FAILED, "reasons": [exc.reason]})
    return HTTPException(400, str(exc))


@app.get("/api/pods", response_model=list[PodOut], tags=["Pods"], summary="List capability pods")
async def list_pods(ctx: OrgContext = Depends(org_context), session: Session = Depends(db_session)):
    return services.list_pods(session, ctx.org_id)


@app.get("/api/pods/{pod_id}", response_model=PodOut, tags=["Pods"], summary="Get a capability pod")
async def get_pod(pod_id: str, ctx: OrgContext = Depends(org_context), session: Session = Depends(db_session)):
    pod = services.get_pod(session, ctx.org_id, pod_id)
    if not pod:
        raise HTTPException(404, "Pod not found")
    return services.pod_dict(pod)


@app.post("/api/pods", response_model=PodOut, status_code=201,
          tags=["Pods"], summary="Create a capability pod")
async def create_pod(body: PodCreate, ctx: OrgContext = Depends(org_context),
                     session: Session = Depends(db_session)):
    _require_write(ctx)
    try:
        pod = services.create_pod(session, ctx, body.model_dump())
    except ValueError as exc:
        session.rollback()
        raise _pod_error(exc) from exc
    session.commit()
    return services.pod_dict(pod)


@app.put("/api/pods/{pod_id}", response_model=PodOut,
         tags=["Pods"], summary="Update a capability pod (partial update)")
async def update_pod(pod_id: str, body: PodUpdate, ctx: OrgContext = Depends(org_context),
                     session: Session = Depends(db_session)):
    _require_write(ctx)
    pod = services.get_pod(session, ctx.org_id, pod_id)
    if not pod:
        raise HTTPException(404, "Pod not found")
    try:
        services.update_pod(session, pod, body.model_dump())
    except ValueError as exc:
        session.rollback()
        raise _pod_error(exc) from exc
    session.commit()
    return services.pod_dict(pod)


@app.delete("/api/pods/{pod_id}", tags=["Pods"], summary="Delete a capability pod")
async def delete_pod(pod_id: str, ctx: OrgContext = Depends(org_context),
                     session: Session = Depends(db_session)):
    _require_admin(ctx)
    pod = services.get_pod(session, ctx.org_id, pod_id)
    if not pod:
        raise HTTPException(404, "Pod not found")
    session.delete(pod)
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut,
         tags=["Stats"], summary="Counts by status, tier, risk, and urgency flag")
async def get_stats(ctx: OrgContext = Depends(org_context), session: Session = Depends(db_session)):
    return services.compute_stats(session, ctx.org_id)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("authority.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
