"""Counterparty agents.

The orchestrator only depends on :class:`CounterpartyAgent`. The default
implementation role-plays a supplier sales representative whose
personality and price range follow its price tier. The reference
counterparty's opening reply is a plain restatement of the quotation it
already submitted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import structlog

from supplier_negotiation.config import Settings
from supplier_negotiation.llm.provider import CompletionError, ModelGateway
from supplier_negotiation.llm.usage import UsageTracker
from supplier_negotiation.models import (
    BaselineItem,
    ConversationTurn,
    CounterpartyProfile,
    ModelTier,
    PriceTier,
    TurnRole,
)
from supplier_negotiation.tools.calculations import baseline_total, price_range
from supplier_negotiation.tools.context_tools import (
    compress_history,
    format_baseline_lines,
    format_currency,
    tier_personality,
)

logger = structlog.get_logger(__name__)

DISRUPTION_TEMPLATE = (
    "Due to a raw material shortage, you can only fulfill ~{capacity:.0f}% of this "
    "order within the original timeline. The remaining {remainder:.0f}% would need "
    "3-4 extra weeks."
)


def disruption_condition(capacity_pct: float) -> str:
    """Capacity-constraint text injected into a counterparty's instructions."""
    return DISRUPTION_TEMPLATE.format(capacity=capacity_pct, remainder=100 - capacity_pct)


class CounterpartyError(RuntimeError):
    """The counterparty did not produce a reply."""


@dataclass(frozen=True)
class CounterpartyRequest:
    """Everything a counterparty needs to answer one buyer message."""

    profile: CounterpartyProfile
    baseline: list[BaselineItem]
    history: list[ConversationTurn]
    round_number: int
    total_rounds: int
    disruption: str | None = None
    quote_request: bool = False


class CounterpartyAgent(Protocol):
    """Produces the counterparty's reply to the latest buyer message."""

    async def respond(self, request: CounterpartyRequest, usage: UsageTracker) -> str: ...


# ---------------------------------------------------------------------------
# Reference quotation
# ---------------------------------------------------------------------------


def restate_baseline_quote(profile: CounterpartyProfile, baseline: list[BaselineItem]) -> str:
    """The reference counterparty's own quotation, restated verbatim."""
    lines = [f"Thanks for reaching out. As quoted, {profile.name} can supply:"]
    for item in baseline:
        label = f"{item.sku} ({item.description})" if item.description else item.sku
        lines.append(
            f"- {label} at {format_currency(item.unit_price)}/unit x {item.quantity} "
            f"= {format_currency(item.total_price)}"
        )
        for tier in item.volume_tiers:
            lines.append(
                f"  volume option: {tier.quantity} units, {format_currency(tier.unit_price)} each"
            )
    lines.append(f"Total: {format_currency(baseline_total(baseline))}.")
    lines.append(f"Lead time: {profile.lead_time_days} days. Payment terms: {profile.payment_terms}.")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Simulated counterparty
# ---------------------------------------------------------------------------


def _conversation_memory(history: list[ConversationTurn], tier: PriceTier) -> str:
    """Heuristic reminders of what this counterparty already conceded."""
    price_drops = 0
    concessions = 0
    for turn in history:
        if turn.role != TurnRole.COUNTERPARTY:
            continue
        lower = turn.content.lower()
        if any(word in lower for word in ("discount", "reduce", "lower", "% off")):
            price_drops += 1
        if any(phrase in lower for phrase in ("concession", "we can offer", "i can do", "we'll include")):
            concessions += 1

    competitor_mentions = sum(
        1
        for turn in history
        if turn.role == TurnRole.INITIATOR
        and any(label in turn.content.lower() for label in ("supplier a", "supplier b", "supplier c", "another supplier"))
    )

    notes: list[str] = []
    if price_drops:
        notes.append(
            f"You have referenced price reductions {price_drops} time(s). You are approaching "
            "your floor; be careful with further drops."
        )
    if concessions >= 2:
        notes.append(f"You have made about {concessions} concessions. Push back more firmly now.")
    if competitor_mentions:
        edge = {
            PriceTier.CHEAP: "your efficiency and track record",
            PriceTier.EXPENSIVE: "your quality premium and reliability",
        }.get(tier, "your speed and flexibility")
        notes.append(
            f"The buyer has cited competing offers {competitor_mentions} time(s). "
            f"Differentiate on {edge} before conceding."
        )
    return "\n".join(notes)


class SimulatedCounterpartyAgent:
    """LLM role-play of a supplier sales representative."""

    def __init__(self, gateway: ModelGateway, settings: Settings) -> None:
        self.gateway = gateway
        self.settings = settings

    def build_system_prompt(self, request: CounterpartyRequest) -> str:
        profile = request.profile
        total = baseline_total(request.baseline)
        low, high = price_range(profile.price_tier)
        sections = [
            "<company_profile>\n"
            f"Supplier: {profile.name}\n"
            f"Price tier: {profile.price_tier.value}\n"
            f"Quality Rating: {profile.quality_rating}/5\n"
            f"Lead Time: {profile.lead_time_days} days\n"
            f"Payment Terms: {profile.payment_terms}\n"
            "</company_profile>",
        ]
        if request.quote_request:
            sections.append(
                "<quote_request>\nThe buyer requests a quotation for these items "
                "(reference prices are market benchmarks, do not disclose them):\n"
                f"{format_baseline_lines(request.baseline)}\n</quote_request>"
            )
        else:
            sections.append(
                "<baseline_quotation>\nReference prices from the buyer's existing supplier quote:\n"
                f"{format_baseline_lines(request.baseline)}\n"
                f"Reference total: {format_currency(total)}\n</baseline_quotation>"
            )
        sections.append(
            "<pricing_constraints>\n"
            "STRICT PRICE RANGE (stay within these bounds):\n"
            f"- Minimum total (floor): {format_currency(total * low)} ({low}x reference)\n"
            f"- Maximum total (ceiling): {format_currency(total * high)} ({high}x reference)\n"
            f"- Opening offer near {format_currency(total * high)}; never below the floor.\n"
            "- Quote every SKU at the exact quantities requested as 'SKU at $X/unit'. "
            "Do not invent products.\n"
            "</pricing_constraints>"
        )
        sections.append(
            "<quantity_rules>\n"
            + "\n".join(f"  {item.sku}: Qty {item.quantity}" for item in request.baseline)
            + "\nYour primary offer MUST use these quantities. You may add a volume "
            "alternative after stating it.\n</quantity_rules>"
        )
        memory = _conversation_memory(request.history, profile.price_tier)
        if memory:
            sections.append(f"<conversation_memory>\n{memory}\n</conversation_memory>")
        sections.append(f"<personality>\n{tier_personality(profile.price_tier)}\n</personality>")
        sections.append(
            f"<role>\nYou are a sales rep at {profile.name} in a live negotiation with a "
            f"procurement specialist. This is round {request.round_number} of {request.total_rounds}.\n</role>"
        )
        if request.disruption:
            sections.append(
                f"<urgent_situation>\n{request.disruption}\n"
                "Reveal this naturally at the start of your reply, apologize, and propose "
                "partial fulfillment, split shipments or an extended timeline.\n</urgent_situation>"
            )
        sections.append(
            "<behavior>\n"
            "- 80-100 words, one short paragraph, plain text without markdown or email headers.\n"
            "- Include unit prices, the total, lead time and payment terms.\n"
            f"- Stay above {low}x of baseline pricing and push back before conceding.\n"
            "</behavior>"
        )
        return "\n\n".join(sections)

    async def respond(self, request: CounterpartyRequest, usage: UsageTracker) -> str:
        """Generate the counterparty reply.

        Raises:
            CounterpartyError: The provider failed or returned an empty reply.
        """
        messages = compress_history(
            request.history,
            keep_full=self.settings.history_keep_full_turns,
            truncate_chars=self.settings.history_truncate_chars,
        )
        if not messages or messages[-1]["role"] != "user":
            messages.append({"role": "user", "content": "Please share your offer."})
        try:
            reply = await self.gateway.complete(
                purpose="counterparty",
                tier=ModelTier.REASONING,
                system=self.build_system_prompt(request),
                messages=messages,
                usage=usage,
                max_tokens=self.settings.agent_max_tokens,
            )
        except CompletionError as exc:
            raise CounterpartyError(f"{request.profile.name} did not respond: {exc}") from exc
        if not reply.strip():
            raise CounterpartyError(f"{request.profile.name} returned an empty reply")
        logger.info(
            "counterparty_replied",
            counterparty_id=request.profile.id,
            round_number=request.round_number,
            words=len(reply.split()),
            disrupted=request.disruption is not None,
        )
        return reply.strip()
