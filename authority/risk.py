"""Deterministic risk scoring on top of AI projection confidence labels.

The hosted model only supplies qualitative confidence for each scenario; the
number is produced here by a fixed additive rule so the same projection always
yields the same score:

- delayed-10-days confidence: High +20, Medium +12
- deprioritized confidence: High +25, Medium +15
- exposure text mentioning "renewal": +10
- capped at 100

Indicator: score >= 70 Red, 40-69 Yellow, otherwise Green.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Mapping

RISK_REASON = "AI projection + deterministic rules"

VALID_CONFIDENCE = ("Low", "Medium", "High")

DELAYED_POINTS = {"High": 20, "Medium": 12}
DEPRIORITIZED_POINTS = {"High": 25, "Medium": 15}
RENEWAL_POINTS = 10
RENEWAL_KEYWORD = "renewal"

RED_THRESHOLD = 70
YELLOW_THRESHOLD = 40
MAX_SCORE = 100


@dataclass(frozen=True)
class RiskAssessment:
    risk_score: int
    risk_indicator: str
    risk_reason: str = RISK_REASON

    def as_dict(self) -> dict:
        return asdict(self)


def normalize_confidence(value: Any) -> str | None:
    """Return a recognised confidence label or ``None`` for anything else."""
    if isinstance(value, str) and value.strip() in VALID_CONFIDENCE:
        return value.strip()
    return None


def risk_indicator(score: int) -> str:
    if score >= RED_THRESHOLD:
        return "Red"
    if score >= YELLOW_THRESHOLD:
        return "Yellow"
    return "Green"


def compute_risk_score(delayed_confidence: Any, deprioritized_confidence: Any, exposure_value: Any) -> int:
    score = DELAYED_POINTS.get(normalize_confidence(delayed_confidence) or "", 0)
    score += DEPRIORITIZED_POINTS.get(normalize_confidence(deprioritized_confidence) or "", 0)
    if isinstance(exposure_value, str) and RENEWAL_KEYWORD in exposure_value.lower():
        score += RENEWAL_POINTS
    return min(MAX_SCORE, score)


def _confidence_of(scenarios: Mapping[str, Any] | None, key: str) -> Any:
    if not isinstance(scenarios, Mapping):
        return None
    scenario = scenarios.get(key)
    if isinstance(scenario, Mapping):
        return scenario.get("confidence")
    return getattr(scenario, "confidence", None)


def assess(scenarios: Mapping[str, Any] | None, exposure_value: Any) -> RiskAssessment:
    """Score a projection keyed by scenario (``delayed_10_days``, ``deprioritized``, ...).

    Total over its inputs: missing scenarios, missing or unrecognised
    confidences and non-string exposure all contribute 0.
    """
    score = compute_risk_score(
        _confidence_of(scenarios, "delayed_10_days"),
        _confidence_of(scenarios, "deprioritized"),
        exposure_value,
    )
    return RiskAssessment(risk_score=score, risk_indicator=risk_indicator(score))
