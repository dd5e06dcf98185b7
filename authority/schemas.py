"""Pydantic request/response schemas for the Build Authority API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from authority.models import ImpactTier, PodStatus, SignalType, SolutionDomain


class _BetFieldsMixin(BaseModel):
    surface: str = ""
    owner: str = ""
    owner_user_id: str | None = None
    solution_domain: SolutionDomain = SolutionDomain.CROSS
    outcome_category: str = ""
    trigger_signal: str = ""
    impact_tier: ImpactTier = ImpactTier.MEDIUM
    expected_impact: str = ""
    exposure_value: str = ""
    current_delta: str = ""
    revenue_at_risk: str = ""
    outcome_target: str = ""
    segment_impact: str = ""
    slice_deadline_days: int | None = 10


class BetCreate(_BetFieldsMixin):
    title: str

    @field_validator("title")
    @classmethod
    def title_must_have_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("title must not be empty")
        return v


class BetUpdate(BaseModel):
    title: str | None = None
    surface: str | None = None
    owner: str | None = None
    owner_user_id: str | None = None
    solution_domain: SolutionDomain | None = None
    outcome_category: str | None = None
    trigger_signal: str | None = None
    impact_tier: ImpactTier | None = None
    expected_impact: str | None = None
    exposure_value: str | None = None
    current_delta: str | None = None
    revenue_at_risk: str | None = None
    outcome_target: str | None = None
    segment_impact: str | None = None
    slice_deadline_days: int | None = None
    executive_attention_required: bool | None = None


class FlagsOut(BaseModel):
    age_days: int
    days_since_update: int
    slice_remaining: int
    is_exceeded: bool
    is_urgent: bool
    is_aging: bool
    is_unbound: bool
    needs_exec_attention: bool
    staleness: str


class RiskOut(BaseModel):
    risk_score: int
    risk_indicator: str
    risk_reason: str
    risk_source: str | None = None
    updated_at: str | None = None


class BetOut(_BetFieldsMixin):
    id: str
    org_id: str
    title: str
    status: str
    activated_at: str | None = None
    closed_at: str | None = None
    blocked_reason: str = ""
    blocked_dependency_owner: str = ""
    measured_outcome_result: str = ""
    executive_attention_required: bool = False
    created_at: str
    updated_at: str
    flags: FlagsOut
    risk: RiskOut | None = None


class BetDetail(BetOut):
    pod_ids: list[str] = []
    has_projection: bool = False
    projection_is_stale: bool | None = None


class BetListResponse(BaseModel):
    items: list[BetOut]
    total: int


class TransitionRequest(BaseModel):
    status: str
    impact_tier: ImpactTier | None = None
    blocked_reason: str | None = None
    blocked_dependency_owner: str | None = None
    measured_outcome_result: str | None = None


class TransitionOut(BaseModel):
    ok: bool
    status: str
    error: str | None = None
    reasons: list[str] = []
    capacity_checked: bool = False
    slots_used: int | None = None
    bet: BetDetail | None = None


class ActivityOut(BaseModel):
    id: str
    field_name: str
    old_value: str | None = None
    new_value: str | None = None
    changed_by: str | None = None
    created_at: str


class ScenarioOut(BaseModel):
    key: str
    label: str
    impact_summary: str
    exposure_shift: str
    confidence: str | None = None


class ProjectionRequest(BaseModel):
    # Both optional so a missing one yields the documented 400, not a 422.
    decision_id: str | None = None
    org_id: str | None = None


class ProjectionOut(BaseModel):
    decision_id: str
    scenarios: list[ScenarioOut]
    generated_at: str
    metadata_hash: str
    model: str
    source: str
    is_stale: bool = False
    risk: RiskOut | None = None


class CapacityOut(BaseModel):
    used: int
    cap: int
    remaining: int
    at_capacity: bool


class SignalCreate(BaseModel):
    type: SignalType
    description: str = ""
    source: str = ""
    decision_id: str | None = None
    solution_domain: SolutionDomain | None = None


class SignalOut(BaseModel):
    id: str
    type: str
    description: str
    source: str
    decision_id: str | None = None
    solution_domain: str | None = None
    created_by: str | None = None
    created_at: str


class KpiTarget(BaseModel):
    kpi_name: str
    baseline: str = ""
    target: str = ""
    unit: str = ""
    measurement_notes: str = ""


class PodCreate(BaseModel):
    name: str
    description: str = ""
    primary_bet_id: str
    secondary_bet_id: str | None = None
    owner: str = ""
    status: PodStatus = PodStatus.PROPOSED
    deliverable: str = ""
    kpi_targets: list[KpiTarget] = []
    prototype_built: bool = False
    customer_validated: bool = False
    production_shipped: bool = False
    cycle_time_days: int | None = Field(None, ge=0)


class PodUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    primary_bet_id: str | None = None
    secondary_bet_id: str | None = None
    owner: str | None = None
    status: PodStatus | None = None
    deliverable: str | None = None
    kpi_targets: list[KpiTarget] | None = None
    prototype_built: bool | None = None
    customer_validated: bool | None = None
    production_shipped: bool | None = None
    cycle_time_days: int | None = Field(None, ge=0)


class PodOut(BaseModel):
    id: str
    name: str
    description: str
    primary_bet_id: str
    secondary_bet_id: str | None = None
    owner: str
    status: str
    deliverable: str
    kpi_targets: list[dict[str, Any]] = []
    prototype_built: bool
    customer_validated: bool
    production_shipped: bool
    cycle_time_days: int | None = None
    drift_warnings: list[str] = []
    created_at: str
    updated_at: str


class StatsOut(BaseModel):
    total: int
    by_status: dict[str, int]
    by_tier: dict[str, int]
    by_risk: dict[str, int]
    high_impact_active: int
    exceeded: int
    urgent: int
    aging: int
    unbound: int
    needs_exec_attention: int
