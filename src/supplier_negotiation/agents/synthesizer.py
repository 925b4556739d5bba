"""Synthesis agent.

Merges the three pillar briefs and the latest exchange into the one
message the buyer sends to a counterparty.
"""

from __future__ import annotations

import structlog

from supplier_negotiation.llm.provider import CompletionError, ModelGateway
from supplier_negotiation.llm.usage import UsageTracker
from supplier_negotiation.models import (
    BaselineItem,
    ConversationTurn,
    CounterpartyProfile,
    ModelTier,
)
from supplier_negotiation.tools.context_tools import format_currency, format_history

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# CrewAI-style agent metadata
# ---------------------------------------------------------------------------

ROLE = "Lead Procurement Negotiator"
GOAL = (
    "Turn the specialist briefs into one concise, specific message that "
    "moves the counterparty toward the best total-cost outcome."
)
BACKSTORY = (
    "You are Alex, a senior procurement specialist. You negotiate with "
    "several suppliers at once, quote exact numbers, never reveal competitor "
    "names or internal quality ratings, and keep every message short."
)

# Synthesis sees only the latest exchange; the pillars already read more.
RECENT_TURNS = 2


class SynthesisError(RuntimeError):
    """The outbound message could not be produced."""


def _tier_summary(baseline: list[BaselineItem]) -> str:
    totals: dict[int, float] = {}
    for item in baseline:
        totals[item.quantity] = totals.get(item.quantity, 0.0) + item.total_price
        for tier in item.volume_tiers:
            totals[tier.quantity] = totals.get(tier.quantity, 0.0) + tier.total_price
    return " | ".join(f"Qty {qty:,}: {format_currency(total)}" for qty, total in sorted(totals.items()))


class SynthesizerAgent:
    """Writes the buyer's outbound message from the pillar briefs."""

    def __init__(self, gateway: ModelGateway, max_words: int = 100) -> None:
        self.gateway = gateway
        self.max_words = max_words

    def _opening_guidance(
        self,
        history: list[ConversationTurn],
        is_reference: bool,
        baseline: list[BaselineItem],
        competing_offers: int,
        round_number: int,
    ) -> str:
        if not history:
            if is_reference:
                return (
                    "This counterparty already submitted the baseline quote. Acknowledge it "
                    f"and reference its pricing tiers ({_tier_summary(baseline)}). Do not push "
                    "on price yet; ask about lead time, payment terms and volume commitments."
                )
            return (
                "Opening message and request for quote. Introduce yourself, share the item "
                "list and quantities, and set competitive expectations."
            )
        if is_reference and round_number <= 2 and competing_offers == 0:
            return (
                "You are still gathering competing bids. Focus on terms, lead time and the "
                "relationship rather than aggressive price pressure."
            )
        return "Respond to the latest message. Acknowledge briefly, then push forward."

    async def synthesize(
        self,
        briefs: dict[str, str],
        counterparty: CounterpartyProfile,
        history: list[ConversationTurn],
        round_number: int,
        total_rounds: int,
        usage: UsageTracker,
        baseline: list[BaselineItem],
        is_reference: bool = False,
        competing_offers: int = 0,
        notes: str = "",
    ) -> str:
        """Produce the outbound message.

        Raises:
            SynthesisError: The provider failed or returned nothing usable.
        """
        recent = history[-RECENT_TURNS:]
        guidance = self._opening_guidance(
            history, is_reference, baseline, competing_offers, round_number
        )
        priorities = f"<internal_priorities>{notes}</internal_priorities>\n\n" if notes else ""
        system = (
            f"<role>{BACKSTORY} Round {round_number}/{total_rounds} with {counterparty.name}.</role>\n\n"
            f"<negotiation_strategy>\n{briefs.get('strategy', '(no strategy brief)')}\n</negotiation_strategy>\n\n"
            f"<risk_assessment>\n{briefs.get('risk', '(no risk assessment)')}\n</risk_assessment>\n\n"
            f"<cost_analysis>\n{briefs.get('cost', '(no cost analysis)')}\n</cost_analysis>\n\n"
            f"<latest_exchange>\n{format_history(recent, initiator_label='You')}\n</latest_exchange>\n\n"
            f"{priorities}"
            "<instructions>\n"
            "Merge the three analyses into ONE message to the counterparty.\n"
            f"{guidance}\n"
            f"Keep it under {self.max_words} words. Use specific numbers. Never name other "
            "suppliers and never reveal internal ratings.\n"
            "</instructions>"
        )
        try:
            message = await self.gateway.complete(
                purpose="synthesis",
                tier=ModelTier.FAST,
                system=system,
                messages=[{"role": "user", "content": f"Write the round {round_number} message to {counterparty.name}."}],
                usage=usage,
            )
        except CompletionError as exc:
            logger.error(
                "synthesis_failed",
                counterparty_id=counterparty.id,
                round_number=round_number,
                error=str(exc),
            )
            raise SynthesisError(f"Synthesis failed for {counterparty.name}: {exc}") from exc

        if not message.strip():
            raise SynthesisError(f"Synthesis returned an empty message for {counterparty.name}")
        return message.strip()
