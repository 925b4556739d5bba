"""Flow state dataclass for the negotiation orchestrator.

Holds the mutable state that flows through each stage of one
negotiation run, from initialization through the final decision.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from supplier_negotiation.models import (
    BaselineItem,
    ConversationTurn,
    CounterpartyProfile,
    DisruptionAnalysis,
    FinalDecision,
    StructuredOffer,
    WeightingProfile,
)


class FlowStage(str, Enum):
    """Orchestrator states."""

    INIT = "init"
    WAVE_ONE = "wave_1"
    WAVE_TWO = "wave_2"
    ROUND = "round"
    CONVERGENCE_CHECK = "convergence_check"
    DISRUPTION_CHECKPOINT = "disruption_checkpoint"
    DISRUPTION_ANALYSIS = "disruption_analysis"
    POST_DISRUPTION = "post_disruption"
    DECIDING = "deciding"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class RoundFailure:
    counterparty_id: str
    round_number: int
    error: str


@dataclass
class NegotiationFlowState:
    """Mutable state passed through the negotiation flow.

    Histories and offers are keyed by counterparty id. An offer is only
    replaced once a round for that counterparty has been sealed.
    """

    # Identity and inputs
    negotiation_id: str
    baseline: list[BaselineItem]
    counterparties: list[CounterpartyProfile]
    reference_id: str | None = None
    max_rounds: int = 3
    weighting_profile: WeightingProfile = WeightingProfile.BALANCED
    notes: str = ""

    stage: FlowStage = FlowStage.INIT
    current_round: int = 0

    # Conversation and offers
    histories: dict[str, list[ConversationTurn]] = field(default_factory=dict)
    offers: dict[str, StructuredOffer] = field(default_factory=dict)
    failures: list[RoundFailure] = field(default_factory=list)

    # Disruption
    disruption_counterparty_id: str | None = None
    disruption_capacity_pct: float | None = None
    disruption_description: str | None = None
    disruption_round: int | None = None
    disruption_analysis: DisruptionAnalysis | None = None

    # Outcome
    decision: FinalDecision | None = None
    error: str | None = None

    @property
    def profiles(self) -> dict[str, CounterpartyProfile]:
        return {c.id: c for c in self.counterparties}

    def disruption_for(self, counterparty_id: str) -> str | None:
        """Condition text for *counterparty_id*, if it is the disrupted one."""
        if counterparty_id != self.disruption_counterparty_id:
            return None
        return self.disruption_description

    def to_dict(self) -> dict[str, Any]:
        """Serialize the flow state to a dictionary.

        Returns:
            A JSON-serializable dictionary representation.
        """
        return {
            "negotiation_id": self.negotiation_id,
            "stage": self.stage.value,
            "current_round": self.current_round,
            "max_rounds": self.max_rounds,
            "reference_id": self.reference_id,
            "counterparties": [c.id for c in self.counterparties],
            "history_turns": {cid: len(turns) for cid, turns in self.histories.items()},
            "offers": {cid: o.model_dump(mode="json") for cid, o in self.offers.items()},
            "failures": [
                {"counterparty_id": f.counterparty_id, "round_number": f.round_number, "error": f.error}
                for f in self.failures
            ],
            "disruption_counterparty_id": self.disruption_counterparty_id,
            "disruption_round": self.disruption_round,
            "disruption_analysis": (
                self.disruption_analysis.model_dump(mode="json") if self.disruption_analysis else None
            ),
            "decision": self.decision.model_dump(mode="json") if self.decision else None,
            "error": self.error,
        }
