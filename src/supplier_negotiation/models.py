"""Pydantic models for the Supplier Negotiation Crew.

Defines all domain objects shared by agents, crews, flows, and API
endpoints: counterparty profiles, the baseline quotation, structured
offers, conversation turns, negotiation rounds, disruption analysis,
final decisions, lifecycle events, and persisted negotiation records.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PriceTier(str, Enum):
    """Where a counterparty prices relative to the baseline."""

    CHEAP = "cheap"
    MID = "mid"
    EXPENSIVE = "expensive"


class TurnRole(str, Enum):
    """Author of a conversation turn."""

    INITIATOR = "initiator"
    COUNTERPARTY = "counterparty"


class RoundPhase(str, Enum):
    """Negotiation phase a round belongs to."""

    INITIAL = "initial"
    POST_DISRUPTION = "post-disruption"


class RoundStatus(str, Enum):
    """Lifecycle of a single negotiation round."""

    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


class ModelTier(str, Enum):
    """Model tiers, each gated by its own concurrency limit."""

    FAST = "fast"
    REASONING = "reasoning"


class WeightingProfile(str, Enum):
    """Named scoring weight profiles selectable by the caller."""

    BALANCED = "balanced"
    COST = "cost"
    QUALITY = "quality"
    SPEED = "speed"
    CASHFLOW = "cashflow"


class NegotiationStatus(str, Enum):
    """Persisted status of a negotiation."""

    NEGOTIATING = "negotiating"
    DISRUPTION = "disruption"
    DECIDING = "deciding"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Inputs supplied by the catalog pipeline
# ---------------------------------------------------------------------------


class VolumeTier(BaseModel):
    """Alternate price point for a different order quantity."""

    model_config = ConfigDict(frozen=True)

    quantity: int
    unit_price: float
    total_price: float


class BaselineItem(BaseModel):
    """One line of the reference quotation."""

    model_config = ConfigDict(frozen=True)

    sku: str
    description: str = ""
    quantity: int = Field(..., gt=0)
    unit_price: float = Field(..., ge=0)
    total_price: float = 0.0
    volume_tiers: list[VolumeTier] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _fill_total(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("total_price"):
            quantity = data.get("quantity") or 0
            unit_price = data.get("unit_price") or 0
            data = {**data, "total_price": round(quantity * unit_price, 2)}
        return data


class CounterpartyProfile(BaseModel):
    """A counterparty taking part in the negotiation."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    code: str
    quality_rating: float = Field(..., ge=1, le=5)
    price_tier: PriceTier = PriceTier.MID
    lead_time_days: int = Field(..., ge=0)
    payment_terms: str
    is_simulated: bool = True


# ---------------------------------------------------------------------------
# Negotiation artefacts
# ---------------------------------------------------------------------------


class OfferItem(BaseModel):
    """Per-SKU price inside a structured offer."""

    model_config = ConfigDict(frozen=True)

    sku: str
    unit_price: float
    quantity: int
    volume_tiers: list[VolumeTier] = Field(default_factory=list)


class StructuredOffer(BaseModel):
    """A validated, internally consistent offer from one counterparty."""

    model_config = ConfigDict(frozen=True)

    total_cost: float
    items: list[OfferItem] = Field(default_factory=list)
    lead_time_days: int
    payment_terms: str
    concessions: list[str] = Field(default_factory=list)
    conditions: list[str] = Field(default_factory=list)


class ConversationTurn(BaseModel):
    """One message in a counterparty conversation."""

    model_config = ConfigDict(frozen=True)

    role: TurnRole
    content: str
    round_number: int = 0
    created_at: datetime = Field(default_factory=_utcnow)


class NegotiationRound(BaseModel):
    """One counterparty's turn within one round."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    negotiation_id: str
    counterparty_id: str
    round_number: int
    phase: RoundPhase = RoundPhase.INITIAL
    status: RoundStatus = RoundStatus.IN_PROGRESS
    turns: list[ConversationTurn] = Field(default_factory=list)
    offer: StructuredOffer | None = None
    error: str | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None


class Strategy(BaseModel):
    """One option for absorbing a supply disruption."""

    name: str
    description: str
    allocations: dict[str, float] = Field(
        default_factory=dict,
        description="Counterparty id -> percentage of the order.",
    )
    estimated_cost: float = 0.0
    pros: list[str] = Field(default_factory=list)
    cons: list[str] = Field(default_factory=list)


class DisruptionAnalysis(BaseModel):
    """Impact assessment produced once at the disruption checkpoint."""

    impact: str
    strategies: list[Strategy] = Field(..., min_length=2, max_length=3)
    recommendation: str


class Allocation(BaseModel):
    """Share of the order committed to one counterparty."""

    counterparty_id: str
    counterparty_name: str = ""
    allocation_pct: float
    agreed_cost: float = 0.0
    lead_time_days: int = 0
    payment_terms: str = ""
    items: list[BaselineItem] = Field(default_factory=list)


class Recommendation(BaseModel):
    """Committed recommendation inside a final decision."""

    primary_counterparty_id: str
    primary_counterparty_name: str = ""
    split_order: bool = False
    allocations: list[Allocation] = Field(default_factory=list)


class DimensionScores(BaseModel):
    """Normalized 0-100 scores for one counterparty."""

    counterparty_id: str
    counterparty_name: str = ""
    cost: float = Field(..., ge=0, le=100)
    quality: float = Field(..., ge=0, le=100)
    lead_time: float = Field(..., ge=0, le=100)
    terms: float = Field(..., ge=0, le=100)
    total: float = Field(..., ge=0, le=100)


class KeyPoint(BaseModel):
    """Per-dimension takeaway."""

    dimension: str
    winner: str = ""
    summary: str


class FinalDecision(BaseModel):
    """The single committed outcome of a negotiation."""

    negotiation_id: str
    recommendation: Recommendation
    scores: list[DimensionScores] = Field(default_factory=list)
    executive_summary: str = ""
    key_points: list[KeyPoint] = Field(default_factory=list)
    reasoning: str = ""
    tradeoffs: str = ""
    alternative_allocations: list[Allocation] = Field(default_factory=list)
    split_overridden: bool = False
    weighting_profile: WeightingProfile = WeightingProfile.BALANCED
    created_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Run configuration
# ---------------------------------------------------------------------------


class DisruptionConfig(BaseModel):
    """Where and how the mid-negotiation disruption lands.

    Unset fields fall back to :class:`~supplier_negotiation.config.Settings`.
    """

    counterparty_id: str | None = None
    capacity_pct: float | None = Field(None, gt=0, lt=100)
    after_round: int | None = Field(None, ge=1)
    description: str | None = None


class NegotiationConfig(BaseModel):
    """Everything needed to start one negotiation run."""

    negotiation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    baseline_items: list[BaselineItem] = Field(..., min_length=1)
    counterparties: list[CounterpartyProfile] = Field(..., min_length=1)
    reference_counterparty_id: str | None = None
    max_rounds: int | None = Field(None, ge=1)
    weighting_profile: WeightingProfile = WeightingProfile.BALANCED
    notes: str = ""
    disruption: DisruptionConfig | None = Field(default_factory=DisruptionConfig)

    @model_validator(mode="after")
    def _check_references(self) -> "NegotiationConfig":
        ids = [c.id for c in self.counterparties]
        if len(set(ids)) != len(ids):
            raise ValueError("counterparty ids must be unique")
        if self.reference_counterparty_id and self.reference_counterparty_id not in ids:
            raise ValueError(
                f"reference counterparty {self.reference_counterparty_id} is not a participant"
            )
        if (
            self.disruption
            and self.disruption.counterparty_id
            and self.disruption.counterparty_id not in ids
        ):
            raise ValueError(
                f"disruption counterparty {self.disruption.counterparty_id} is not a participant"
            )
        return self


# ---------------------------------------------------------------------------
# Usage accounting
# ---------------------------------------------------------------------------


class ModelUsage(BaseModel):
    """Token and cost totals for one model."""

    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0


class UsageSummary(BaseModel):
    """Usage accumulated over one negotiation."""

    total_calls: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost_usd: float = 0.0
    by_model: dict[str, ModelUsage] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Persistence records
# ---------------------------------------------------------------------------


class NegotiationRecord(BaseModel):
    """Persisted negotiation header."""

    id: str
    config: NegotiationConfig
    status: NegotiationStatus = NegotiationStatus.NEGOTIATING
    current_round: int = 0
    disruption_counterparty_id: str | None = None
    disruption_capacity_pct: float | None = None
    disruption_round: int | None = None
    disruption_description: str | None = None
    disruption_analysis: DisruptionAnalysis | None = None
    usage: UsageSummary = Field(default_factory=UsageSummary)
    error: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class DisruptionPhaseResult(BaseModel):
    """Outcome of one disruption phase run."""

    negotiation_id: str
    counterparty_id: str
    description: str
    analysis: DisruptionAnalysis | None = None
    rounds: list[NegotiationRound] = Field(default_factory=list)
    decision: FinalDecision | None = None


# ---------------------------------------------------------------------------
# SSE event model
# ---------------------------------------------------------------------------


class NegotiationEvent(BaseModel):
    """Server-Sent Event payload for negotiation progress."""

    event_type: str
    negotiation_id: str
    counterparty_id: str | None = None
    round_number: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        """Whether a subscriber should stop iterating after this event."""
        if self.event_type == "negotiation_complete":
            return True
        return self.event_type == "error" and bool(self.data.get("fatal"))


# ---------------------------------------------------------------------------
# Service responses
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Health check payload."""

    status: str
    service: str
    version: str


class ErrorResponse(BaseModel):
    """Error payload returned by the catch-all handler."""

    error: str
    detail: str | None = None
    status_code: int = 500
