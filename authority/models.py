from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import (
    Boolean, DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _enum(cls: type[StrEnum], length: int = 30) -> Enum:
    """Store enum *values* as plain strings so the table stays readable."""
    return Enum(
        cls, native_enum=False, length=length, validate_strings=True,
        values_callable=lambda e: [m.value for m in e],
    )


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class BetStatus(StrEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    BLOCKED = "blocked"
    CLOSED = "closed"


class ImpactTier(StrEnum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class SolutionDomain(StrEnum):
    S1 = "S1"
    S2 = "S2"
    S3 = "S3"
    CROSS = "Cross"


class Role(StrEnum):
    ADMIN = "admin"
    POD_LEAD = "pod_lead"
    VIEWER = "viewer"


class PodStatus(StrEnum):
    PROPOSED = "proposed"
    PROTOTYPING = "prototyping"
    VALIDATED = "validated"
    BUILDING = "building"
    IN_PRODUCTION = "in_production"
    PAUSED = "paused"


class SignalType(StrEnum):
    KPI_DEVIATION = "KPI Deviation"
    SEGMENT_VARIANCE = "Segment Variance"
    AGENT_DRIFT = "Agent Drift"
    EXEC_ESCALATION = "Exec Escalation"
    LAUNCH_MILESTONE = "Launch Milestone"
    RENEWAL_RISK = "Renewal Risk"
    CROSS_SOLUTION_CONFLICT = "Cross-Solution Conflict"


OUTCOME_CATEGORIES = (
    "ARR", "NRR", "DPI_Adoption", "Agent_Trust", "Live_Event_Risk", "Operational_Efficiency",
)


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Tenancy
# ---------------------------------------------------------------------------


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    memberships: Mapped[list[Membership]] = relationship("Membership", back_populates="organization", cascade="all, delete-orphan")


class Membership(Base):
    __tablename__ = "memberships"
    __table_args__ = (UniqueConstraint("org_id", "user_id", name="uq_membership_org_user"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    org_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[Role] = mapped_column(_enum(Role), default=Role.VIEWER)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    organization: Mapped[Organization] = relationship("Organization", back_populates="memberships")


# ---------------------------------------------------------------------------
# Bets
# ---------------------------------------------------------------------------


class Bet(Base):
    __tablename__ = "bets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    org_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    surface: Mapped[str] = mapped_column(String(200), default="")
    owner: Mapped[str] = mapped_column(String(200), default="")
    owner_user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    solution_domain: Mapped[SolutionDomain] = mapped_column(_enum(SolutionDomain), default=SolutionDomain.CROSS)
    outcome_category: Mapped[str] = mapped_column(String(100), default="")
    trigger_signal: Mapped[str] = mapped_column(Text, default="")

    status: Mapped[BetStatus] = mapped_column(_enum(BetStatus), default=BetStatus.DRAFT)
    impact_tier: Mapped[ImpactTier] = mapped_column(_enum(ImpactTier), default=ImpactTier.MEDIUM)
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Free-text exposure fields; never parsed as numbers
    expected_impact: Mapped[str] = mapped_column(Text, default="")
    exposure_value: Mapped[str] = mapped_column(Text, default="")
    current_delta: Mapped[str] = mapped_column(Text, default="")
    revenue_at_risk: Mapped[str] = mapped_column(Text, default="")
    outcome_target: Mapped[str] = mapped_column(Text, default="")
    segment_impact: Mapped[str] = mapped_column(Text, default="")
    measured_outcome_result: Mapped[str] = mapped_column(Text, default="")

    blocked_reason: Mapped[str] = mapped_column(Text, default="")
    blocked_dependency_owner: Mapped[str] = mapped_column(String(200), default="")

    executive_attention_required: Mapped[bool] = mapped_column(Boolean, default=False)
    slice_deadline_days: Mapped[int | None] = mapped_column(Integer, nullable=True, default=10)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    risk: Mapped[BetRisk | None] = relationship("BetRisk", back_populates="bet", uselist=False, cascade="all, delete-orphan")
    projections: Mapped[list[Projection]] = relationship("Projection", back_populates="bet", cascade="all, delete-orphan")
    activity: Mapped[list[BetActivity]] = relationship("BetActivity", back_populates="bet", cascade="all, delete-orphan")


class BetRisk(Base):
    __tablename__ = "bet_risks"
    __table_args__ = (UniqueConstraint("org_id", "decision_id", name="uq_risk_org_decision"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    org_id: Mapped[str] = mapped_column(String(36), nullable=False)
    decision_id: Mapped[str] = mapped_column(String(36), ForeignKey("bets.id"), nullable=False)
    risk_score: Mapped[int] = mapped_column(Integer, default=0)
    risk_indicator: Mapped[str] = mapped_column(String(10), default="Green")  # Green | Yellow | Red
    risk_reason: Mapped[str] = mapped_column(String(200), default="")
    risk_source: Mapped[str] = mapped_column(String(20), default="ai")  # ai | fallback
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    bet: Mapped[Bet] = relationship("Bet", back_populates="risk")


class Projection(Base):
    __tablename__ = "projections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    org_id: Mapped[str] = mapped_column(String(36), nullable=False)
    decision_id: Mapped[str] = mapped_column(String(36), ForeignKey("bets.id"), nullable=False, index=True)
    scenarios_json: Mapped[str] = mapped_column(Text, default="[]")
    metadata_hash: Mapped[str] = mapped_column(String(128), default="")
    model: Mapped[str] = mapped_column(String(100), default="")
    source: Mapped[str] = mapped_column(String(20), default="ai")  # ai | fallback
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    bet: Mapped[Bet] = relationship("Bet", back_populates="projections")


class BetActivity(Base):
    __tablename__ = "bet_activity"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    org_id: Mapped[str] = mapped_column(String(36), nullable=False)
    decision_id: Mapped[str] = mapped_column(String(36), ForeignKey("bets.id"), nullable=False, index=True)
    field_name: Mapped[str] = mapped_column(String(100), nullable=False)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    bet: Mapped[Bet] = relationship("Bet", back_populates="activity")


# ---------------------------------------------------------------------------
# Signals & capability pods
# ---------------------------------------------------------------------------


class Signal(Base):
    __tablename__ = "signals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    org_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    type: Mapped[SignalType] = mapped_column(_enum(SignalType, length=40), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    source: Mapped[str] = mapped_column(String(200), default="")
    decision_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("bets.id"), nullable=True)
    solution_domain: Mapped[SolutionDomain | None] = mapped_column(_enum(SolutionDomain), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class CapabilityPod(Base):
    __tablename__ = "capability_pods"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    org_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    primary_bet_id: Mapped[str] = mapped_column(String(36), ForeignKey("bets.id"), nullable=False)
    secondary_bet_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("bets.id"), nullable=True)
    owner: Mapped[str] = mapped_column(String(200), default="")
    status: Mapped[PodStatus] = mapped_column(_enum(PodStatus), default=PodStatus.PROPOSED)
    deliverable: Mapped[str] = mapped_column(Text, default="")
    kpi_targets_json: Mapped[str] = mapped_column(Text, default="[]")
    prototype_built: Mapped[bool] = mapped_column(Boolean, default=False)
    customer_validated: Mapped[bool] = mapped_column(Boolean, default=False)
    production_shipped: Mapped[bool] = mapped_column(Boolean, default=False)
    cycle_time_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
