"""Shared business logic for the Build Authority API and MCP server."""
from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from authority import capacity, lifecycle, staleness
from authority.lifecycle import TransitionOutcome
from authority.models import (
    Bet, BetActivity, BetRisk, BetStatus, CapabilityPod, ImpactTier, Membership,
    PodStatus, Projection, Role, Signal,
)
from authority.projector import (
    LLMClient, generate_projection, projection_is_stale, scenarios_by_key,
)
from authority.risk import RiskAssessment, assess
from authority.utils import as_utc, is_blank, json_parse, utcnow

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

BET_FIELDS = (
    "title", "surface", "owner", "owner_user_id", "solution_domain", "outcome_category",
    "trigger_signal", "impact_tier", "expected_impact", "exposure_value", "current_delta",
    "revenue_at_risk", "outcome_target", "segment_impact", "slice_deadline_days",
)

UPDATABLE_FIELDS = BET_FIELDS + ("executive_attention_required",)

# What a bet's owner may change without a write role
OWNER_UPDATABLE_FIELDS = ("executive_attention_required",)

POD_FIELDS = (
    "name", "description", "primary_bet_id", "owner", "status", "deliverable",
    "prototype_built", "customer_validated", "production_shipped", "cycle_time_days",
)

WRITE_ROLES = (Role.ADMIN, Role.POD_LEAD)

# ---------------------------------------------------------------------------
# Tenant context & role gating
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrgContext:
    org_id: str
    user_id: str
    role: Role


def resolve_context(session: Session, org_id: str, user_id: str) -> OrgContext | None:
    """Look up *user_id*'s membership in *org_id*; ``None`` if there is none."""
    membership = session.execute(
        select(Membership).where(Membership.org_id == org_id, Membership.user_id == user_id)
    ).scalars().first()
    if membership is None:
        return None
    return OrgContext(org_id=org_id, user_id=user_id, role=Role(membership.role))


def can_write(ctx: OrgContext) -> bool:
    return ctx.role in WRITE_ROLES


def is_admin(ctx: OrgContext) -> bool:
    return ctx.role == Role.ADMIN


def is_bet_owner(ctx: OrgContext, bet: Bet) -> bool:
    return bool(bet.owner_user_id) and bet.owner_user_id == ctx.user_id


def can_transition_bet(ctx: OrgContext, bet: Bet) -> bool:
    return can_write(ctx) or is_bet_owner(ctx, bet)


def can_update_bet(ctx: OrgContext, bet: Bet, updates: dict[str, Any]) -> bool:
    if can_write(ctx):
        return True
    if not is_bet_owner(ctx, bet):
        return False
    touched = {f for f in UPDATABLE_FIELDS if updates.get(f) is not None}
    return touched <= set(OWNER_UPDATABLE_FIELDS)


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def risk_dict(risk: BetRisk | None) -> dict | None:
    if risk is None:
        return None
    return {
        "risk_score": risk.risk_score, "risk_indicator": risk.risk_indicator,
        "risk_reason": risk.risk_reason, "risk_source": risk.risk_source,
        "updated_at": _iso(risk.updated_at),
    }


def bet_summary(bet: Bet, linked_bet_ids: set[str] | frozenset[str] = frozenset(),
                now: datetime | None = None) -> dict:
    flags = staleness.evaluate(bet, now=now, linked_bet_ids=linked_bet_ids)
    return {
        "id": bet.id, "org_id": bet.org_id,
        **{f: getattr(bet, f) for f in BET_FIELDS},
        "status": lifecycle.normalize_status(bet.status).value,
        "activated_at": _iso(bet.activated_at), "closed_at": _iso(bet.closed_at),
        "blocked_reason": bet.blocked_reason or "",
        "blocked_dependency_owner": bet.blocked_dependency_owner or "",
        "measured_outcome_result": bet.measured_outcome_result or "",
        "executive_attention_required": bool(bet.executive_attention_required),
        "created_at": _iso(bet.created_at), "updated_at": _iso(bet.updated_at),
        "flags": flags.as_dict(),
        "risk": risk_dict(bet.risk),
    }


def bet_detail(session: Session, bet: Bet, now: datetime | None = None) -> dict:
    pod_ids = session.execute(
        select(CapabilityPod.id).where(
            CapabilityPod.org_id == bet.org_id,
            or_(CapabilityPod.primary_bet_id == bet.id, CapabilityPod.secondary_bet_id == bet.id),
        )
    ).scalars().all()
    base = bet_summary(bet, {bet.id} if pod_ids else set(), now=now)
    proj = latest_projection(session, bet)
    base["pod_ids"] = list(pod_ids)
    base["has_projection"] = proj is not None
    base["projection_is_stale"] = projection_is_stale(proj.metadata_hash, bet) if proj else None
    return base


def projection_dict(proj: Projection, bet: Bet) -> dict:
    return {
        "decision_id": proj.decision_id,
        "scenarios": json_parse(proj.scenarios_json, []),
        "generated_at": _iso(proj.generated_at),
        "metadata_hash": proj.metadata_hash,
        "model": proj.model,
        "source": proj.source,
        "is_stale": projection_is_stale(proj.metadata_hash, bet),
        "risk": risk_dict(bet.risk),
    }


def activity_dict(row: BetActivity) -> dict:
    return {
        "id": row.id, "field_name": row.field_name, "old_value": row.old_value,
        "new_value": row.new_value, "changed_by": row.changed_by,
        "created_at": _iso(row.created_at),
    }


def signal_dict(sig: Signal) -> dict:
    return {
        "id": sig.id, "type": str(sig.type), "description": sig.description,
        "source": sig.source, "decision_id": sig.decision_id,
        "solution_domain": str(sig.solution_domain) if sig.solution_domain else None,
        "created_by": sig.created_by, "created_at": _iso(sig.created_at),
    }


def pod_dict(pod: CapabilityPod) -> dict:
    kpis = json_parse(pod.kpi_targets_json, [])
    return {
        "id": pod.id, "name": pod.name, "description": pod.description,
        "primary_bet_id": pod.primary_bet_id, "secondary_bet_id": pod.secondary_bet_id,
        "owner": pod.owner, "status": str(pod.status), "deliverable": pod.deliverable,
        "kpi_targets": kpis,
        "prototype_built": bool(pod.prototype_built),
        "customer_validated": bool(pod.customer_validated),
        "production_shipped": bool(pod.production_shipped),
        "cycle_time_days": pod.cycle_time_days,
        "drift_warnings": lifecycle.pod_drift_warnings(
            status=PodStatus(pod.status), kpi_targets=kpis,
            production_shipped=bool(pod.production_shipped),
            customer_validated=bool(pod.customer_validated),
            description=pod.description, secondary_bet_id=pod.secondary_bet_id,
        ),
        "created_at": _iso(pod.created_at), "updated_at": _iso(pod.updated_at),
    }


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> dict[str, tuple[Any, Any]]:
    """Apply non-None values from updates dict to an ORM object.

    Returns ``{field: (old, new)}`` for the values that actually changed.
    """
    changed: dict[str, tuple[Any, Any]] = {}
    for field in fields:
        val = updates.get(field)
        if val is None:
            continue
        old = getattr(obj, field)
        if old != val:
            setattr(obj, field, val)
            changed[field] = (old, val)
    return changed


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _iso(value)
    return str(value)


def record_activity(session: Session, bet: Bet, changes: dict[str, tuple[Any, Any]],
                    actor: str | None) -> None:
    for field, (old, new) in changes.items():
        session.add(BetActivity(
            org_id=bet.org_id, decision_id=bet.id, field_name=field,
            old_value=_text(old), new_value=_text(new), changed_by=actor,
        ))


# ---------------------------------------------------------------------------
# Bets
# ---------------------------------------------------------------------------


def get_bet(session: Session, org_id: str, bet_id: str) -> Bet | None:
    return session.execute(
        select(Bet).where(Bet.id == bet_id, Bet.org_id == org_id)
    ).scalars().first()


def linked_bet_ids(session: Session, org_id: str) -> set[str]:
    rows = session.execute(
        select(CapabilityPod.primary_bet_id, CapabilityPod.secondary_bet_id)
        .where(CapabilityPod.org_id == org_id)
    ).all()
    return {bet_id for row in rows for bet_id in row if bet_id}


def query_bets(
    session: Session, org_id: str, *, status: str | None = None,
    impact_tier: str | None = None, search: str | None = None,
    now: datetime | None = None,
) -> tuple[list[dict], int]:
    """List an org's bets with derived flags, newest first.

    ``status`` and ``impact_tier`` accept comma-separated values; unknown
    values raise ``ValueError``.
    """
    query = select(Bet).where(Bet.org_id == org_id)
    if status:
        query = query.where(Bet.status.in_([lifecycle.normalize_status(s) for s in status.split(",")]))
    if impact_tier:
        query = query.where(Bet.impact_tier.in_([lifecycle.normalize_tier(t) for t in impact_tier.split(",")]))
    if search:
        q = f"%{search.strip()}%"
        query = query.where(or_(
            Bet.title.ilike(q), Bet.owner.ilike(q), Bet.surface.ilike(q), Bet.outcome_target.ilike(q),
        ))
    bets = session.execute(query.order_by(Bet.created_at.desc())).scalars().all()
    linked = linked_bet_ids(session, org_id)
    now = now or utcnow()
    items = [bet_summary(b, linked, now=now) for b in bets]
    return items, len(items)


def create_bet(session: Session, ctx: OrgContext, data: dict[str, Any]) -> Bet:
    """Create a draft bet (caller must commit)."""
    bet = Bet(org_id=ctx.org_id, status=BetStatus.DRAFT)
    apply_updates(bet, data, BET_FIELDS)
    session.add(bet)
    session.flush()
    record_activity(session, bet, {"status": (None, BetStatus.DRAFT)}, ctx.user_id)
    log.info("Created bet %s in org %s", bet.id, ctx.org_id)
    return bet


def _claim_rejection(session: Session, bet: Bet, current: BetStatus) -> TransitionOutcome:
    """Outcome for a failed slot claim: a status changed underneath us, or the cap is full."""
    stored = capacity.stored_status(session, bet.id)
    if stored is None or lifecycle.normalize_status(stored) != current:
        log.info("Bet %s moved to %s during activation", bet.id, stored)
        return TransitionOutcome.rejected(current, lifecycle.INVALID_TRANSITION, capacity_checked=True)
    return TransitionOutcome.rejected(
        current, lifecycle.HIGH_IMPACT_CAP, capacity_checked=True,
        slots_used=capacity.count_high_impact_active(session, bet.org_id, exclude_bet_id=bet.id),
    )


def update_bet(session: Session, bet: Bet, updates: dict[str, Any], actor: str | None) -> TransitionOutcome:
    """Partial update of descriptive fields (caller must commit).

    Raising an active bet to High tier needs a free capacity slot; when none
    is left nothing is written and a ``HIGH_IMPACT_CAP`` outcome is returned.
    """
    current = lifecycle.normalize_status(bet.status)
    updates = dict(updates)
    changes: dict[str, tuple[Any, Any]] = {}
    capacity_checked = False
    now = utcnow()

    new_tier = updates.get("impact_tier")
    if (new_tier is not None and current == BetStatus.ACTIVE
            and lifecycle.normalize_tier(new_tier) == ImpactTier.HIGH
            and bet.impact_tier != ImpactTier.HIGH):
        old_tier = bet.impact_tier
        capacity_checked = True
        if not capacity.claim_high_impact_slot(session, bet, expected_status=current, now=now):
            return _claim_rejection(session, bet, current)
        changes["impact_tier"] = (old_tier, ImpactTier.HIGH)
        updates.pop("impact_tier")

    changes.update(apply_updates(bet, updates, UPDATABLE_FIELDS))
    if changes:
        bet.updated_at = now
        record_activity(session, bet, changes, actor)
    return TransitionOutcome(ok=True, status=current, capacity_checked=capacity_checked)


def transition_bet(
    session: Session, bet: Bet, target: Any, *, actor: str | None = None,
    impact_tier: Any = None, blocked_reason: str | None = None,
    blocked_dependency_owner: str | None = None, measured_outcome_result: str | None = None,
    now: datetime | None = None,
) -> TransitionOutcome:
    """Move *bet* along the lifecycle (caller must commit).

    Activation runs the required-field validator first and, for High-tier
    bets, the atomic capacity claim second. Rejections leave the bet untouched.
    """
    now = now or utcnow()
    current = lifecycle.normalize_status(bet.status)
    try:
        target_status = lifecycle.normalize_status(target)
        tier = lifecycle.normalize_tier(impact_tier) if impact_tier is not None else ImpactTier(bet.impact_tier)
    except ValueError:
        return TransitionOutcome.rejected(current, lifecycle.INVALID_TRANSITION)
    if not lifecycle.can_transition(current, target_status):
        return TransitionOutcome.rejected(current, lifecycle.INVALID_TRANSITION)

    before = {
        "status": bet.status, "impact_tier": bet.impact_tier, "activated_at": bet.activated_at,
        "blocked_reason": bet.blocked_reason, "blocked_dependency_owner": bet.blocked_dependency_owner,
        "closed_at": bet.closed_at, "measured_outcome_result": bet.measured_outcome_result,
    }
    capacity_checked = False
    slots_used = None

    if target_status == BetStatus.ACTIVE:
        reasons = lifecycle.validate_activation(bet)
        if reasons:
            return TransitionOutcome.rejected(current, lifecycle.VALIDATION_FAILED, reasons)
        if tier == ImpactTier.HIGH:
            capacity_checked = True
            if not capacity.claim_high_impact_slot(session, bet, expected_status=current, now=now):
                return _claim_rejection(session, bet, current)
            slots_used = capacity.count_high_impact_active(session, bet.org_id)
        else:
            bet.status = BetStatus.ACTIVE
            bet.impact_tier = tier
            if bet.activated_at is None:
                bet.activated_at = now
        bet.blocked_reason = ""
        bet.blocked_dependency_owner = ""

    elif target_status == BetStatus.BLOCKED:
        reason = blocked_reason if blocked_reason is not None else bet.blocked_reason
        if is_blank(reason):
            return TransitionOutcome.rejected(
                current, lifecycle.VALIDATION_FAILED, [lifecycle.BLOCKED_REASON_REQUIRED],
            )
        bet.status = BetStatus.BLOCKED
        bet.impact_tier = tier
        bet.blocked_reason = reason.strip()
        if blocked_dependency_owner is not None:
            bet.blocked_dependency_owner = blocked_dependency_owner.strip()

    else:
        bet.status = BetStatus.CLOSED
        bet.impact_tier = tier
        bet.closed_at = now
        if measured_outcome_result is not None:
            bet.measured_outcome_result = measured_outcome_result.strip()

    bet.updated_at = now
    changes = {
        f: (old, getattr(bet, f)) for f, old in before.items() if getattr(bet, f) != old
    }
    record_activity(session, bet, changes, actor)
    log.info("Bet %s: %s -> %s (tier %s)", bet.id, current.value, target_status.value, tier.value)
    return TransitionOutcome(
        ok=True, status=target_status, capacity_checked=capacity_checked, slots_used=slots_used,
    )


def delete_bet(session: Session, bet: Bet) -> None:
    """Delete a bet with its risk, projections and activity (caller must commit).

    Pods built on it as primary go with it; other links are cleared.
    """
    session.execute(delete(CapabilityPod).where(
        CapabilityPod.org_id == bet.org_id, CapabilityPod.primary_bet_id == bet.id,
    ))
    session.execute(update(CapabilityPod).where(
        CapabilityPod.org_id == bet.org_id, CapabilityPod.secondary_bet_id == bet.id,
    ).values(secondary_bet_id=None))
    session.execute(update(Signal).where(
        Signal.org_id == bet.org_id, Signal.decision_id == bet.id,
    ).values(decision_id=None))
    session.delete(bet)


def list_activity(session: Session, bet: Bet, limit: int = 50) -> list[dict]:
    rows = session.execute(
        select(BetActivity)
        .where(BetActivity.decision_id == bet.id, BetActivity.org_id == bet.org_id)
        .order_by(BetActivity.created_at.desc())
        .limit(limit)
    ).scalars().all()
    return [activity_dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Projections & risk
# ---------------------------------------------------------------------------


def default_client() -> LLMClient | None:
    """Build the configured LLM client, or ``None`` when it cannot be set up."""
    try:
        return LLMClient()
    except Exception as exc:
        log.warning("LLM client unavailable, projections will use the fallback: %s", exc)
        return None


def latest_projection(session: Session, bet: Bet) -> Projection | None:
    return session.execute(
        select(Projection)
        .where(Projection.decision_id == bet.id, Projection.org_id == bet.org_id)
        .order_by(Projection.generated_at.desc())
    ).scalars().first()


def upsert_risk(session: Session, bet: Bet, assessment: RiskAssessment, source: str) -> BetRisk:
    risk = session.execute(
        select(BetRisk).where(BetRisk.org_id == bet.org_id, BetRisk.decision_id == bet.id)
    ).scalars().first()
    if risk is None:
        risk = BetRisk(org_id=bet.org_id, decision_id=bet.id)
        session.add(risk)
    risk.risk_score = assessment.risk_score
    risk.risk_indicator = assessment.risk_indicator
    risk.risk_reason = assessment.risk_reason
    risk.risk_source = source
    risk.updated_at = utcnow()
    bet.risk = risk
    return risk


class ProjectionInputError(ValueError):
    """The bet lacks the fields a projection is built from; ``missing`` lists them."""
    def __init__(self, missing: list[str]):
        super().__init__("Missing required fields")
        self.missing = missing


def missing_projection_fields(bet: Bet) -> list[str]:
    missing = [name for name in ("outcome_category", "expected_impact") if is_blank(getattr(bet, name))]
    if is_blank(bet.exposure_value) and is_blank(bet.revenue_at_risk):
        missing.append("exposure_value")
    return missing


async def run_projection(
    session: Session, bet: Bet, client: LLMClient | None = None,
) -> tuple[Projection, BetRisk]:
    """Generate a projection, replacing existing ones, and refresh the risk (caller must commit).

    Raises :class:`ProjectionInputError` before any LLM call when a field the
    prompt is built from is blank.
    """
    missing = missing_projection_fields(bet)
    if missing:
        raise ProjectionInputError(missing)
    if client is None:
        client = default_client()
    result = await generate_projection(bet, client)
    assessment = assess(scenarios_by_key(result.scenarios), bet.exposure_value)
    session.execute(delete(Projection).where(
        Projection.decision_id == bet.id, Projection.org_id == bet.org_id,
    ))
    proj = Projection(
        org_id=bet.org_id, decision_id=bet.id,
        scenarios_json=json.dumps(result.scenarios),
        metadata_hash=result.metadata_hash, model=result.model,
        source=result.source, generated_at=result.generated_at,
    )
    session.add(proj)
    risk = upsert_risk(session, bet, assessment, result.source)
    log.info("Projection for bet %s (%s): risk %d %s", bet.id, result.source,
             assessment.risk_score, assessment.risk_indicator)
    return proj, risk


def recompute_risk(session: Session, bet: Bet) -> BetRisk | None:
    """Re-score the stored projection; ``None`` if the bet has none (caller must commit)."""
    proj = latest_projection(session, bet)
    if proj is None:
        return None
    scenarios = scenarios_by_key(json_parse(proj.scenarios_json, []))
    return upsert_risk(session, bet, assess(scenarios, bet.exposure_value), proj.source)


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


def list_signals(session: Session, org_id: str, decision_id: str | None = None) -> list[dict]:
    query = select(Signal).where(Signal.org_id == org_id)
    if decision_id:
        query = query.where(Signal.decision_id == decision_id)
    rows = session.execute(query.order_by(Signal.created_at.desc())).scalars().all()
    return [signal_dict(s) for s in rows]


def create_signal(session: Session, ctx: OrgContext, data: dict[str, Any]) -> Signal:
    """Record a signal (caller must commit). Raises ``ValueError`` for a foreign bet."""
    decision_id = data.get("decision_id") or None
    if decision_id and get_bet(session, ctx.org_id, decision_id) is None:
        raise ValueError(f"Bet {decision_id} not found in this organization")
    sig = Signal(
        org_id=ctx.org_id, type=data["type"], description=data.get("description") or "",
        source=data.get("source") or "", decision_id=decision_id,
        solution_domain=data.get("solution_domain"), created_by=ctx.user_id,
    )
    session.add(sig)
    session.flush()
    return sig


def get_signal(session: Session, org_id: str, signal_id: str) -> Signal | None:
    return session.execute(
        select(Signal).where(Signal.id == signal_id, Signal.org_id == org_id)
    ).scalars().first()


# ---------------------------------------------------------------------------
# Capability pods
# ---------------------------------------------------------------------------


class PodGuardError(ValueError):
    """A pod change broke a lifecycle rule; ``reason`` carries the code."""
    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


def get_pod(session: Session, org_id: str, pod_id: str) -> CapabilityPod | None:
    return session.execute(
        select(CapabilityPod).where(CapabilityPod.id == pod_id, CapabilityPod.org_id == org_id)
    ).scalars().first()


def list_pods(session: Session, org_id: str) -> list[dict]:
    pods = session.execute(
        select(CapabilityPod).where(CapabilityPod.org_id == org_id).order_by(CapabilityPod.created_at)
    ).scalars().all()
    return [pod_dict(p) for p in pods]


def _check_pod(session: Session, org_id: str, pod: CapabilityPod) -> None:
    if get_bet(session, org_id, pod.primary_bet_id) is None:
        raise ValueError(f"Primary bet {pod.primary_bet_id} not found in this organization")
    if pod.secondary_bet_id:
        if pod.secondary_bet_id == pod.primary_bet_id:
            raise ValueError("Secondary bet must differ from the primary bet")
        if get_bet(session, org_id, pod.secondary_bet_id) is None:
            raise ValueError(f"Secondary bet {pod.secondary_bet_id} not found in this organization")
    reason = lifecycle.check_pod_status(
        PodStatus(pod.status), bool(pod.prototype_built), bool(pod.customer_validated),
    )
    if reason:
        raise PodGuardError(reason, "in_production requires prototype_built and customer_validated")


def _kpi_json(kpis: list[Any]) -> str:
    return json.dumps([k.model_dump() if hasattr(k, "model_dump") else dict(k) for k in kpis])


def create_pod(session: Session, ctx: OrgContext, data: dict[str, Any]) -> CapabilityPod:
    """Create a pod (caller must commit). Raises ``ValueError`` on rule violations."""
    pod = CapabilityPod(
        org_id=ctx.org_id, created_by=ctx.user_id, status=PodStatus.PROPOSED,
        prototype_built=False, customer_validated=False, production_shipped=False,
    )
    apply_updates(pod, data, POD_FIELDS)
    pod.secondary_bet_id = data.get("secondary_bet_id") or None
    pod.kpi_targets_json = _kpi_json(data.get("kpi_targets") or [])
    _check_pod(session, ctx.org_id, pod)
    session.add(pod)
    session.flush()
    return pod


def update_pod(session: Session, pod: CapabilityPod, data: dict[str, Any]) -> CapabilityPod:
    """Partial pod update (caller must commit). Raises ``ValueError`` on rule violations.

    An empty-string ``secondary_bet_id`` clears the link.
    """
    apply_updates(pod, data, POD_FIELDS)
    if data.get("secondary_bet_id") is not None:
        pod.secondary_bet_id = data["secondary_bet_id"] or None
    if data.get("kpi_targets") is not None:
        pod.kpi_targets_json = _kpi_json(data["kpi_targets"])
    _check_pod(session, pod.org_id, pod)
    pod.updated_at = utcnow()
    return pod


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


def compute_stats(session: Session, org_id: str, now: datetime | None = None) -> dict:
    bets = session.execute(select(Bet).where(Bet.org_id == org_id)).scalars().all()
    linked = linked_bet_ids(session, org_id)
    now = now or utcnow()
    by_status: Counter[str] = Counter()
    by_tier: Counter[str] = Counter()
    by_risk: Counter[str] = Counter()
    flag_counts: Counter[str] = Counter()
    for bet in bets:
        by_status[lifecycle.normalize_status(bet.status).value] += 1
        by_tier[str(bet.impact_tier)] += 1
        by_risk[bet.risk.risk_indicator if bet.risk else "Unscored"] += 1
        flags = staleness.evaluate(bet, now=now, linked_bet_ids=linked)
        for name in ("is_exceeded", "is_urgent", "is_aging", "is_unbound", "needs_exec_attention"):
            if getattr(flags, name):
                flag_counts[name] += 1
    return {
        "total": len(bets),
        "by_status": dict(by_status), "by_tier": dict(by_tier), "by_risk": dict(by_risk),
        "high_impact_active": capacity.count_high_impact_active(session, org_id),
        "exceeded": flag_counts["is_exceeded"], "urgent": flag_counts["is_urgent"],
        "aging": flag_counts["is_aging"], "unbound": flag_counts["is_unbound"],
        "needs_exec_attention": flag_counts["needs_exec_attention"],
    }
