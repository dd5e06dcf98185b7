"""Scenario projection engine: one LLM call, strict validation, deterministic fallback.

Architecture
------------
A projection is exactly three scenarios for a bet:

- **On-Time Delivery** (``on_time``)
- **Delayed 10 Days** (``delayed_10_days``)
- **Deprioritized** (``deprioritized``)

each carrying ``impact_summary``, ``exposure_shift`` and a ``confidence``
label. The model's raw text is untrusted: markdown fences and surrounding
prose are stripped, the first balanced ``{...}`` span is parsed, and the
result is validated against :class:`ScenarioPayload`. Anything that is not
exactly three well-formed scenarios is discarded in favour of
:func:`fallback_scenarios`, which builds a template projection from the bet's
own text and cannot fail.

Confidence labels other than Low/Medium/High are kept as ``None`` (absent)
rather than rejected; :mod:`authority.risk` scores them as 0.

``metadata_hash`` fingerprints the exposure-relevant fields at generation time
so a reader can tell whether a stored projection is stale.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ValidationError, field_validator

from authority.models import Bet
from authority.risk import normalize_confidence
from authority.utils import utcnow

log = logging.getLogger(__name__)


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


# ---------------------------------------------------------------------------
# Scenario catalogue
# ---------------------------------------------------------------------------

SCENARIO_KEYS = ("on_time", "delayed_10_days", "deprioritized")
SCENARIO_LABELS = {
    "on_time": "On-Time Delivery",
    "delayed_10_days": "Delayed 10 Days",
    "deprioritized": "Deprioritized",
}

SOURCE_AI = "ai"
SOURCE_FALLBACK = "fallback"
FALLBACK_MODEL = "deterministic-template"

PROJECTION_SYSTEM_PROMPT = """\
You are an enterprise decision-impact analyst. Given the decision metadata \
below, produce exactly 3 scenario projections.

Rules:
- Use only the provided data. No hype, no speculation beyond reasonable inference.
- impact_summary: 1-2 sentences, at most 35 words.
- exposure_shift: a quantified shift in exposure, e.g. "-30% exposure reduction".
- confidence must be exactly one of: Low, Medium, High.

Respond with ONLY valid JSON:
{
  "scenarios": [
    {"label": "On-Time Delivery", "impact_summary": "", "exposure_shift": "", "confidence": ""},
    {"label": "Delayed 10 Days", "impact_summary": "", "exposure_shift": "", "confidence": ""},
    {"label": "Deprioritized", "impact_summary": "", "exposure_shift": "", "confidence": ""}
  ]
}
"""


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def complete(self, system: str, user: str) -> str:
        """Send system+user message to the LLM, return the raw response text."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=1024,
                    temperature=0.2,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                return "".join(
                    block.text for block in response.content if getattr(block, "type", "") == "text"
                )
            response = await self._client.chat.completions.create(
                model=self.model,
                max_tokens=1024,
                temperature=0.2,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
            return response.choices[0].message.content or ""
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """Like :meth:`complete`, but return the first JSON object in the reply."""
        text = await self.complete(system, user)
        try:
            parsed = json.loads(extract_json_object(text))
        except json.JSONDecodeError as exc:
            raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}", retryable=False) from exc
        if not isinstance(parsed, dict):
            raise LLMCallError(f"LLM returned non-object JSON: {text[:200]}", retryable=False)
        return parsed


# ---------------------------------------------------------------------------
# Response extraction
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


def extract_json_object(text: str) -> str:
    """Return the first balanced ``{...}`` span in *text*, ignoring markdown fences.

    Braces inside JSON strings are skipped. Raises :class:`LLMCallError` if no
    balanced object is found.
    """
    cleaned = _FENCE_RE.sub("", text or "")
    start = cleaned.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(cleaned)):
            ch = cleaned[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return cleaned[start:idx + 1]
        start = cleaned.find("{", start + 1)
    raise LLMCallError(f"No JSON object in LLM response: {(text or '')[:200]}", retryable=False)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ScenarioPayload(BaseModel):
    impact_summary: str
    exposure_shift: str
    confidence: Any  # required key; unrecognised values are kept as absent

    @field_validator("impact_summary", "exposure_shift")
    @classmethod
    def must_have_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v


def _scenario_dict(key: str, payload: ScenarioPayload) -> dict[str, Any]:
    return {
        "key": key,
        "label": SCENARIO_LABELS[key],
        "impact_summary": payload.impact_summary,
        "exposure_shift": payload.exposure_shift,
        "confidence": normalize_confidence(payload.confidence),
    }


def _label_token(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", value.lower())


# Canonical labels and keys, reduced to bare alphanumerics.
_LABEL_LOOKUP = {
    **{_label_token(label): key for key, label in SCENARIO_LABELS.items()},
    **{_label_token(key): key for key in SCENARIO_KEYS},
}


def _label_of(item: Any) -> str:
    label = item.get("label") if isinstance(item, dict) else None
    return label.strip() if isinstance(label, str) else ""


def _pair_by_label(items: list[Any]) -> list[tuple[str, Any]] | None:
    """Match list items to scenario keys by their ``label``.

    Items without any labels are taken in canonical order. Partial, unknown
    or repeated labels reject the whole list.
    """
    labels = [_label_of(item) for item in items]
    if not any(labels):
        return list(zip(SCENARIO_KEYS, items))
    by_key: dict[str, Any] = {}
    for label, item in zip(labels, items):
        key = _LABEL_LOOKUP.get(_label_token(label))
        if key is None or key in by_key:
            log.warning("Projection label rejected: %r", label)
            return None
        by_key[key] = item
    return [(k, by_key[k]) for k in SCENARIO_KEYS]


def parse_scenarios(raw: Any) -> list[dict[str, Any]] | None:
    """Validate an LLM JSON object into the three canonical scenarios.

    Accepts ``{"scenarios": [a, b, c]}``, matched to scenarios by each item's
    ``label`` in any order, or ``{"on_time": a, "delayed_10_days": b,
    "deprioritized": c}``. Returns ``None`` on any shape mismatch.
    """
    if not isinstance(raw, dict):
        return None
    if "scenarios" in raw:
        items = raw["scenarios"]
        if not isinstance(items, list) or len(items) != len(SCENARIO_KEYS):
            return None
        pairs = _pair_by_label(items)
        if pairs is None:
            return None
    elif all(k in raw for k in SCENARIO_KEYS):
        pairs = [(k, raw[k]) for k in SCENARIO_KEYS]
    else:
        return None
    try:
        return [_scenario_dict(k, ScenarioPayload.model_validate(item)) for k, item in pairs]
    except ValidationError as exc:
        log.warning("Projection shape rejected: %s", exc.errors()[:3])
        return None


def scenarios_by_key(scenarios: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    return {s.get("key", ""): s for s in scenarios if isinstance(s, dict)}


# ---------------------------------------------------------------------------
# Prompt & hashing
# ---------------------------------------------------------------------------

# (label, attribute, placeholder when empty)
_PROMPT_FIELDS: list[tuple[str, str, str]] = [
    ("Title", "title", "Untitled"),
    ("Outcome Category", "outcome_category", "Not specified"),
    ("Expected Impact", "expected_impact", "Not specified"),
    ("Exposure Value", "exposure_value", "Not specified"),
    ("Outcome Target", "outcome_target", "Not specified"),
    ("Impact Tier", "impact_tier", "Medium"),
    ("Domain", "solution_domain", "Cross"),
    ("Surface", "surface", "Not specified"),
    ("Current Delta", "current_delta", "None"),
    ("Revenue at Risk", "revenue_at_risk", "Not specified"),
    ("Segment Impact", "segment_impact", "Not specified"),
]


def build_projection_prompt(bet: Bet) -> str:
    lines = ["Decision:"]
    for label, attr, placeholder in _PROMPT_FIELDS:
        val = getattr(bet, attr, None)
        text = str(getattr(val, "value", val) or "").strip()
        lines.append(f"- {label}: {text or placeholder}")
    window = bet.slice_deadline_days or 10
    lines.append(f"- Slice Window: {window} days")
    return "\n".join(lines)


def exposure_text(bet: Bet) -> str:
    return (bet.exposure_value or "").strip() or (bet.revenue_at_risk or "").strip()


def metadata_hash(bet: Bet) -> str:
    """Fingerprint of the fields a projection depends on."""
    joined = "|".join([
        bet.outcome_category or "",
        bet.expected_impact or "",
        exposure_text(bet),
        bet.outcome_target or "",
        bet.current_delta or "",
    ])
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def projection_is_stale(stored_hash: str | None, bet: Bet) -> bool:
    return stored_hash != metadata_hash(bet)


# ---------------------------------------------------------------------------
# Fallback
# ---------------------------------------------------------------------------


def _clip(text: str, limit: int = 160) -> str:
    text = " ".join((text or "").split())
    return text if len(text) <= limit else text[:limit - 3].rstrip() + "..."


def fallback_scenarios(bet: Bet) -> list[dict[str, Any]]:
    """Template projection built only from the bet's text; never raises."""
    impact = _clip(getattr(bet, "expected_impact", "") or "") or "the expected impact"
    exposure = _clip(exposure_text(bet)) or "the stated exposure"
    target = _clip(getattr(bet, "outcome_target", "") or "") or "the outcome target"
    return [
        {
            "key": "on_time", "label": SCENARIO_LABELS["on_time"],
            "impact_summary": f"Delivered on time, the bet is positioned to realize {impact} against {target}.",
            "exposure_shift": f"Exposure reduced as planned: {exposure}",
            "confidence": "Medium",
        },
        {
            "key": "delayed_10_days", "label": SCENARIO_LABELS["delayed_10_days"],
            "impact_summary": f"A 10-day slip defers {impact} and leaves {target} open for another slice.",
            "exposure_shift": f"Exposure persists for 10 more days: {exposure}",
            "confidence": "Low",
        },
        {
            "key": "deprioritized", "label": SCENARIO_LABELS["deprioritized"],
            "impact_summary": f"If deprioritized, {impact} is not realized and {target} is missed.",
            "exposure_shift": f"Exposure remains unaddressed: {exposure}",
            "confidence": "Low",
        },
    ]


# ---------------------------------------------------------------------------
# Generate one projection
# ---------------------------------------------------------------------------


@dataclass
class ProjectionResult:
    scenarios: list[dict[str, Any]]
    source: str
    model: str
    metadata_hash: str
    generated_at: datetime = field(default_factory=utcnow)


async def generate_projection(bet: Bet, client: LLMClient | None) -> ProjectionResult:
    """Ask the model for three scenarios; fall back to the template on any failure."""
    scenarios: list[dict[str, Any]] | None = None
    if client is not None:
        try:
            raw = await client.call(PROJECTION_SYSTEM_PROMPT, build_projection_prompt(bet))
            scenarios = parse_scenarios(raw)
            if scenarios is None:
                log.warning("Projection for bet %s had an invalid shape; using fallback", bet.id)
        except LLMCallError as exc:
            log.warning("Projection LLM call failed for bet %s: %s", bet.id, exc)
    if scenarios is not None:
        return ProjectionResult(
            scenarios=scenarios, source=SOURCE_AI, model=client.model,  # type: ignore[union-attr]
            metadata_hash=metadata_hash(bet),
        )
    return ProjectionResult(
        scenarios=fallback_scenarios(bet), source=SOURCE_FALLBACK, model=FALLBACK_MODEL,
        metadata_hash=metadata_hash(bet),
    )
