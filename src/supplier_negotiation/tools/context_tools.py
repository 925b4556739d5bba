"""Context assembly for agent prompts.

Each pillar gets its own compact slice of the negotiation state instead
of the full context. Competitors are always anonymized, and price
discrepancies across the offer pool are flagged for the risk pillar.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from supplier_negotiation.models import (
    BaselineItem,
    ConversationTurn,
    CounterpartyProfile,
    PriceTier,
    StructuredOffer,
    TurnRole,
)
from supplier_negotiation.tools.calculations import (
    DEFAULT_ANNUAL_RATE,
    baseline_total,
    calculate_cash_flow_cost,
)

EXTREME_DISCREPANCY_RATIO = 2.0
LARGE_DISCREPANCY_RATIO = 1.5

# Baseline rows shown to the cost pillar before summarizing the rest
_MAX_SKU_LINES = 10


def format_currency(value: float) -> str:
    return f"${value:,.2f}"


def format_baseline_lines(items: list[BaselineItem]) -> str:
    """One pipe-separated row per baseline item."""
    return "\n".join(
        f"- {item.sku} | {item.description or 'n/a'} | qty {item.quantity} "
        f"| {format_currency(item.unit_price)}/unit | {format_currency(item.total_price)} total"
        for item in items
    )


def anonymized_label(
    counterparty_id: str,
    current_id: str,
    profiles: list[CounterpartyProfile],
) -> str:
    """Stable "Supplier A/B/C" label for a competitor of *current_id*."""
    others = sorted((p for p in profiles if p.id != current_id), key=lambda p: p.code)
    for index, profile in enumerate(others):
        if profile.id == counterparty_id:
            return f"Supplier {chr(ord('A') + index)}" if index < 26 else f"Supplier {index + 1}"
    return "another supplier"


# ---------------------------------------------------------------------------
# Price discrepancy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PriceDiscrepancy:
    """Spread between the cheapest and most expensive offer in the pool."""

    severity: str  # "extreme" or "large"
    ratio: float
    gap: float
    cheapest_id: str
    most_expensive_id: str


def detect_price_discrepancy(
    offers: dict[str, StructuredOffer],
) -> PriceDiscrepancy | None:
    """Flag pools whose most expensive total is far above the cheapest.

    Returns ``None`` for pools of fewer than two priced offers or when the
    ratio is below :data:`LARGE_DISCREPANCY_RATIO`.
    """
    priced = [(cid, o.total_cost) for cid, o in offers.items() if o.total_cost > 0]
    if len(priced) < 2:
        return None
    priced.sort(key=lambda entry: entry[1])
    cheapest_id, cheapest = priced[0]
    expensive_id, expensive = priced[-1]
    ratio = expensive / cheapest
    if ratio >= EXTREME_DISCREPANCY_RATIO:
        severity = "extreme"
    elif ratio >= LARGE_DISCREPANCY_RATIO:
        severity = "large"
    else:
        return None
    return PriceDiscrepancy(
        severity=severity,
        ratio=ratio,
        gap=expensive - cheapest,
        cheapest_id=cheapest_id,
        most_expensive_id=expensive_id,
    )


# ---------------------------------------------------------------------------
# Negotiation context
# ---------------------------------------------------------------------------


@dataclass
class NegotiationContext:
    """Snapshot of what the initiator knows when drafting one turn."""

    counterparty: CounterpartyProfile
    profiles: list[CounterpartyProfile]
    baseline: list[BaselineItem]
    offers: dict[str, StructuredOffer]
    history: list[ConversationTurn]
    round_number: int
    total_rounds: int
    notes: str = ""
    annual_rate: float = DEFAULT_ANNUAL_RATE

    def label_for(self, counterparty_id: str) -> str:
        if counterparty_id == self.counterparty.id:
            return self.counterparty.name
        return anonymized_label(counterparty_id, self.counterparty.id, self.profiles)

    @property
    def competitor_offers(self) -> dict[str, StructuredOffer]:
        return {cid: o for cid, o in self.offers.items() if cid != self.counterparty.id}


@dataclass(frozen=True)
class PillarContexts:
    """Distinct context slice for each specialist pillar."""

    strategy: str
    risk: str
    cost: str
    summary: dict[str, Any] = field(default_factory=dict)


def _current_offer_line(ctx: NegotiationContext) -> str:
    offer = ctx.offers.get(ctx.counterparty.id)
    name = ctx.counterparty.name
    if offer is None:
        return f"Baseline from {name}: {format_currency(baseline_total(ctx.baseline))} total"
    return (
        f"Current offer from {name}: {format_currency(offer.total_cost)} total, "
        f"{offer.lead_time_days}d lead, {offer.payment_terms} terms"
    )


def _competitive_summary(ctx: NegotiationContext) -> str:
    lines = [
        f"{ctx.label_for(cid)}: {format_currency(o.total_cost)} total, "
        f"{o.lead_time_days}d lead, {o.payment_terms} terms"
        for cid, o in sorted(ctx.competitor_offers.items(), key=lambda e: ctx.label_for(e[0]))
    ]
    if not lines:
        return "No competing offers yet."
    return "Competing offers:\n" + "\n".join(lines)


def _cash_flow_lines(ctx: NegotiationContext) -> list[str]:
    lines: list[str] = []
    total = baseline_total(ctx.baseline)
    profile = ctx.counterparty
    cf = calculate_cash_flow_cost(total, profile.payment_terms, profile.lead_time_days, ctx.annual_rate)
    lines.append(
        f"{profile.name} baseline: {format_currency(total)} FOB + {format_currency(cf)} cash flow cost "
        f"= {format_currency(total + cf)} landed ({profile.payment_terms} terms, {profile.lead_time_days}d lead)"
    )
    for cid, offer in ctx.offers.items():
        cf = calculate_cash_flow_cost(
            offer.total_cost, offer.payment_terms, offer.lead_time_days, ctx.annual_rate
        )
        lines.append(
            f"{ctx.label_for(cid)} offer: {format_currency(offer.total_cost)} FOB + {format_currency(cf)} "
            f"cash flow cost = {format_currency(offer.total_cost + cf)} landed "
            f"({offer.payment_terms} terms, {offer.lead_time_days}d lead)"
        )
    return lines


def discrepancy_line(ctx: NegotiationContext) -> str:
    flag = detect_price_discrepancy(ctx.offers)
    if flag is None:
        return ""
    cheap = ctx.label_for(flag.cheapest_id)
    expensive = ctx.label_for(flag.most_expensive_id)
    costs = {cid: o.total_cost for cid, o in ctx.offers.items()}
    if flag.severity == "extreme":
        return (
            f"EXTREME PRICE DISCREPANCY: {expensive} ({format_currency(costs[flag.most_expensive_id])}) is "
            f"{flag.ratio:.1f}x more expensive than {cheap} ({format_currency(costs[flag.cheapest_id])}), "
            f"a {format_currency(flag.gap)} gap. Check for different quantities, extra items or inflated unit prices."
        )
    return (
        f"LARGE PRICE GAP: {flag.ratio:.1f}x between cheapest and most expensive offers, "
        f"a {format_currency(flag.gap)} gap. Verify every counterparty quotes the same quantities and scope."
    )


def round_strategy(ctx: NegotiationContext) -> str:
    """Tactical instruction for this stage of the negotiation."""
    if not ctx.history:
        return (
            "Opening message. Introduce yourself, make clear several suppliers are being "
            "evaluated, and probe on price, lead time and terms."
        )
    if ctx.round_number >= ctx.total_rounds:
        return (
            "Final round. Present the best competing numbers and ask them to beat or match "
            "them to win the business. A decision is being made now."
        )
    if ctx.competitor_offers:
        return (
            "Use competing offers as leverage. Cite specific numbers, never names. Push on "
            "price first, then lead time, then terms."
        )
    return "Probe on price, lead time and terms. Other quotes are pending; ask for their best offer early."


def build_pillar_contexts(ctx: NegotiationContext) -> PillarContexts:
    """Build the strategy, risk and cost context slices for one turn."""
    profile = ctx.counterparty
    round_line = f"Round {ctx.round_number} of {ctx.total_rounds}"
    priority_line = f"Buyer priorities: {ctx.notes}" if ctx.notes else ""
    current_offer = _current_offer_line(ctx)
    competitive = _competitive_summary(ctx)
    total = baseline_total(ctx.baseline)

    profile_line = (
        f"{profile.name} ({profile.code}): [INTERNAL quality {profile.quality_rating}/5], "
        f"{profile.price_tier.value} price tier, {profile.lead_time_days}d lead, "
        f"{profile.payment_terms} terms"
    )
    strategy = "\n\n".join(
        part
        for part in (round_line, profile_line, current_offer, competitive, round_strategy(ctx), priority_line)
        if part
    )

    risk_rows = []
    for other in ctx.profiles:
        label = f"{other.name} (current)" if other.id == profile.id else ctx.label_for(other.id)
        offer = ctx.offers.get(other.id)
        offer_part = (
            f", current offer {format_currency(offer.total_cost)}, {offer.lead_time_days}d, {offer.payment_terms}"
            if offer
            else ""
        )
        risk_rows.append(
            f"{label}: [INTERNAL quality {other.quality_rating}/5], {other.price_tier.value} tier, "
            f"lead {other.lead_time_days}d, terms {other.payment_terms}{offer_part}"
        )
    flag = discrepancy_line(ctx)
    units = sum(item.quantity for item in ctx.baseline)
    risk = "\n\n".join(
        part
        for part in (
            round_line,
            "Counterparty risk metrics:\n" + "\n".join(risk_rows),
            current_offer,
            f"PRICE DISCREPANCY FLAGS:\n{flag}" if flag else "",
            f"Baseline total: {format_currency(total)} ({len(ctx.baseline)} items, {units:,} units)",
            priority_line,
        )
        if part
    )

    sku_lines = format_baseline_lines(ctx.baseline[:_MAX_SKU_LINES])
    if len(ctx.baseline) > _MAX_SKU_LINES:
        sku_lines += f"\n(+{len(ctx.baseline) - _MAX_SKU_LINES} more items, baseline total {format_currency(total)})"
    cost = "\n\n".join(
        part
        for part in (
            round_line,
            f"SKU pricing:\n{sku_lines}",
            current_offer,
            "Cash flow analysis:\n" + "\n".join(_cash_flow_lines(ctx)),
            competitive,
            priority_line,
        )
        if part
    )

    summary = {
        "counterparty": profile.name,
        "round": ctx.round_number,
        "total_rounds": ctx.total_rounds,
        "baseline_total": total,
        "competing_offers": len(ctx.competitor_offers),
        "history_turns": len(ctx.history),
        "discrepancy": flag or None,
        "strategy": round_strategy(ctx),
    }
    return PillarContexts(strategy=strategy, risk=risk, cost=cost, summary=summary)


# ---------------------------------------------------------------------------
# Conversation history
# ---------------------------------------------------------------------------


def format_history(turns: list[ConversationTurn], initiator_label: str = "Buyer") -> str:
    if not turns:
        return "(No prior conversation.)"
    return "\n\n".join(
        f"{initiator_label if t.role == TurnRole.INITIATOR else 'Supplier'}: {t.content}"
        for t in turns
    )


def compress_history(
    turns: list[ConversationTurn],
    keep_full: int = 2,
    truncate_chars: int = 120,
) -> list[dict[str, str]]:
    """Chat messages from the counterparty's point of view.

    The last *keep_full* turns are sent verbatim. Older turns are folded
    into one recap message, each truncated to *truncate_chars*.
    """

    def as_message(turn: ConversationTurn) -> dict[str, str]:
        role = "user" if turn.role == TurnRole.INITIATOR else "assistant"
        return {"role": role, "content": turn.content}

    if len(turns) <= keep_full:
        return [as_message(t) for t in turns]

    older = turns[:-keep_full] if keep_full else turns
    recent = turns[-keep_full:] if keep_full else []
    recap_lines = []
    for turn in older:
        speaker = "Buyer" if turn.role == TurnRole.INITIATOR else "You"
        text = turn.content
        if len(text) > truncate_chars:
            text = text[:truncate_chars] + "..."
        recap_lines.append(f"{speaker}: {text}")

    return [
        {
            "role": "user",
            "content": "[Prior conversation recap, context only]\n" + "\n".join(recap_lines),
        },
        {
            "role": "assistant",
            "content": "Understood. I have the context from our prior exchange.",
        },
        *(as_message(t) for t in recent),
    ]


def tier_personality(tier: PriceTier) -> str:
    """Negotiating style of a simulated counterparty by price tier."""
    if tier == PriceTier.CHEAP:
        return (
            "You are direct and price-focused. Concede 2-3% per round when pushed, and "
            "defend your low base price rather than adding extras."
        )
    if tier == PriceTier.EXPENSIVE:
        return (
            "You are premium-positioned and emphasize quality and reliability. Concede 3-5% "
            "per round only under real pressure, and prefer non-price concessions such as "
            "faster delivery, better payment terms or quality guarantees."
        )
    return (
        "You are flexible and solution-oriented. Prefer restructuring terms (payment "
        "schedule, lead time, volume tiers) over straight price cuts."
    )
