"""Bet lifecycle: status normalization, allowed transitions, and activation gating.

Statuses have one canonical spelling (:class:`~authority.models.BetStatus`).
Legacy spellings seen in imported data ("Active", "activated", "proving_value",
"archived", ...) are folded into it by :func:`normalize_status`, which is the
only place case or synonym variance is tolerated.

Transitions::

    draft   -> active
    active  -> blocked | closed
    blocked -> active | closed
    closed  (terminal)

Entering ``active`` always runs :func:`validate_activation`; the capacity gate
(:mod:`authority.capacity`) runs afterwards, and only for High-tier bets.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from authority.models import BetStatus, ImpactTier, PodStatus
from authority.utils import is_blank

# ---------------------------------------------------------------------------
# Reason codes
# ---------------------------------------------------------------------------

OUTCOME_REQUIRED = "OUTCOME_REQUIRED"
OWNER_REQUIRED = "OWNER_REQUIRED"
OUTCOME_CATEGORY_REQUIRED = "OUTCOME_CATEGORY_REQUIRED"
EXPECTED_IMPACT_REQUIRED = "EXPECTED_IMPACT_REQUIRED"
EXPOSURE_REQUIRED = "EXPOSURE_REQUIRED"
BLOCKED_REASON_REQUIRED = "BLOCKED_REASON_REQUIRED"
INVALID_TRANSITION = "INVALID_TRANSITION"
HIGH_IMPACT_CAP = "HIGH_IMPACT_CAP"
POD_MILESTONES_REQUIRED = "POD_MILESTONES_REQUIRED"

ACTIVATION_REASONS = (
    OUTCOME_REQUIRED, OWNER_REQUIRED, OUTCOME_CATEGORY_REQUIRED,
    EXPECTED_IMPACT_REQUIRED, EXPOSURE_REQUIRED,
)

# Error kinds carried on a TransitionOutcome
VALIDATION_FAILED = "VALIDATION_FAILED"

ALLOWED_TRANSITIONS: dict[BetStatus, frozenset[BetStatus]] = {
    BetStatus.DRAFT: frozenset({BetStatus.ACTIVE}),
    BetStatus.ACTIVE: frozenset({BetStatus.BLOCKED, BetStatus.CLOSED}),
    BetStatus.BLOCKED: frozenset({BetStatus.ACTIVE, BetStatus.CLOSED}),
    BetStatus.CLOSED: frozenset(),
}

_STATUS_ALIASES: dict[str, BetStatus] = {
    "draft": BetStatus.DRAFT,
    "defined": BetStatus.DRAFT,
    "hypothesis": BetStatus.DRAFT,
    "hypothesis defined": BetStatus.DRAFT,
    "active": BetStatus.ACTIVE,
    "activated": BetStatus.ACTIVE,
    "piloting": BetStatus.ACTIVE,
    "proving value": BetStatus.ACTIVE,
    "proving_value": BetStatus.ACTIVE,
    "scaling": BetStatus.ACTIVE,
    "durable": BetStatus.ACTIVE,
    "blocked": BetStatus.BLOCKED,
    "at risk": BetStatus.BLOCKED,
    "at_risk": BetStatus.BLOCKED,
    "closed": BetStatus.CLOSED,
    "archived": BetStatus.CLOSED,
    "accepted": BetStatus.CLOSED,
    "rejected": BetStatus.CLOSED,
}

_TIER_ALIASES: dict[str, ImpactTier] = {t.value.lower(): t for t in ImpactTier}


def normalize_status(value: Any) -> BetStatus:
    """Fold any known spelling of a bet status into :class:`BetStatus`.

    Raises ``ValueError`` for values that do not name a status.
    """
    if isinstance(value, BetStatus):
        return value
    key = str(value or "").strip().lower()
    try:
        return _STATUS_ALIASES[key]
    except KeyError:
        raise ValueError(f"Unknown bet status: {value!r}") from None


def normalize_tier(value: Any) -> ImpactTier:
    if isinstance(value, ImpactTier):
        return value
    key = str(value or "").strip().lower()
    try:
        return _TIER_ALIASES[key]
    except KeyError:
        raise ValueError(f"Unknown impact tier: {value!r}") from None


def can_transition(current: BetStatus, target: BetStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


# ---------------------------------------------------------------------------
# Activation validator
# ---------------------------------------------------------------------------


class ActivationFields(Protocol):
    outcome_target: str
    owner: str
    outcome_category: str
    expected_impact: str
    exposure_value: str
    revenue_at_risk: str


def validate_activation(bet: ActivationFields) -> list[str]:
    """Return the reason codes for every required field *bet* is missing.

    An empty list means the bet may be activated. All missing fields are
    reported together so the caller can render field-level feedback.
    """
    reasons: list[str] = []
    if is_blank(bet.outcome_target):
        reasons.append(OUTCOME_REQUIRED)
    if is_blank(bet.owner):
        reasons.append(OWNER_REQUIRED)
    if is_blank(bet.outcome_category):
        reasons.append(OUTCOME_CATEGORY_REQUIRED)
    if is_blank(bet.expected_impact):
        reasons.append(EXPECTED_IMPACT_REQUIRED)
    if is_blank(bet.exposure_value) and is_blank(bet.revenue_at_risk):
        reasons.append(EXPOSURE_REQUIRED)
    return reasons


# ---------------------------------------------------------------------------
# Outcome value
# ---------------------------------------------------------------------------


@dataclass
class TransitionOutcome:
    """Structured result of a lifecycle transition attempt.

    ``error`` is ``None`` on success, otherwise one of ``VALIDATION_FAILED``,
    ``HIGH_IMPACT_CAP`` or ``INVALID_TRANSITION``; ``reasons`` carries the
    field-level codes for validation failures.
    """
    ok: bool
    status: BetStatus
    error: str | None = None
    reasons: list[str] = field(default_factory=list)
    capacity_checked: bool = False
    slots_used: int | None = None

    @classmethod
    def rejected(cls, status: BetStatus, error: str, reasons: list[str] | None = None,
                 **kwargs: Any) -> TransitionOutcome:
        return cls(ok=False, status=status, error=error, reasons=list(reasons or []), **kwargs)

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok, "status": self.status.value, "error": self.error,
            "reasons": self.reasons, "capacity_checked": self.capacity_checked,
            "slots_used": self.slots_used,
        }


# ---------------------------------------------------------------------------
# Capability pods
# ---------------------------------------------------------------------------


def can_set_in_production(prototype_built: bool, customer_validated: bool) -> bool:
    return bool(prototype_built) and bool(customer_validated)


def check_pod_status(target: PodStatus, prototype_built: bool, customer_validated: bool) -> str | None:
    """Return a reason code if *target* is not reachable with the given milestones."""
    if target == PodStatus.IN_PRODUCTION and not can_set_in_production(prototype_built, customer_validated):
        return POD_MILESTONES_REQUIRED
    return None


def pod_drift_warnings(
    *, status: PodStatus, kpi_targets: list[Any], production_shipped: bool,
    customer_validated: bool, description: str, secondary_bet_id: str | None,
) -> list[str]:
    warnings: list[str] = []
    if not kpi_targets:
        warnings.append("No KPI targets set")
    if status == PodStatus.IN_PRODUCTION and not production_shipped:
        warnings.append("In production but not yet shipped")
    if status == PodStatus.BUILDING and not customer_validated:
        warnings.append("Customer validation missing")
    if "cross-platform" in (description or "").lower() and not secondary_bet_id:
        warnings.append("Cross-platform pod without secondary bet")
    return warnings
