"""Business calculations shared by the decision engine and the agents.

Covers the time-value-of-money cost of payment terms, landed cost,
per-tier price ranges, split-order overhead evaluation, and baseline
quotation helpers.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

import structlog

from supplier_negotiation.models import BaselineItem, PriceTier, VolumeTier

logger = structlog.get_logger(__name__)

DAYS_PER_YEAR = 365
DEFAULT_ANNUAL_RATE = 0.08

# Multipliers on the baseline total a counterparty of each tier may quote
_PRICE_RANGES: dict[PriceTier, tuple[float, float]] = {
    PriceTier.CHEAP: (0.85, 1.0),
    PriceTier.MID: (0.95, 1.2),
    PriceTier.EXPENSIVE: (1.15, 1.4),
}

_NET_TERMS = re.compile(r"net[- ]?(\d+)", re.IGNORECASE)
_DAY_TERMS = re.compile(r"(\d+)[- ]?day", re.IGNORECASE)
_NUMERIC_PART = re.compile(r"^\s*\d+(?:\.\d+)?\s*$")


def calculate_cash_flow_cost(
    total_cost: float,
    payment_terms: str,
    lead_time_days: int,
    annual_rate: float = DEFAULT_ANNUAL_RATE,
) -> float:
    """Opportunity cost of capital locked up by *payment_terms*.

    Supported patterns:

    - ``"Net 30"`` / ``"net-30"``: paid after delivery, a saving (negative).
    - ``"45-day"``: same as net terms when no ``/`` is present.
    - ``"33/33/34"``, ``"40/60"``: installments spread evenly over the
      lead time; each part locks its share until delivery.
    - ``"100"``: fully prepaid, locked for the whole lead time.

    Anything else costs nothing.

    Args:
        total_cost: Order cost the terms apply to.
        payment_terms: Free-form payment terms string.
        lead_time_days: Production lead time in days.
        annual_rate: Annual cost of capital.

    Returns:
        Cost in currency units; negative values are savings.
    """
    daily_rate = annual_rate / DAYS_PER_YEAR
    terms = payment_terms.strip().lower()

    net_match = _NET_TERMS.search(terms)
    if net_match:
        return -(total_cost * int(net_match.group(1)) * daily_rate)

    day_match = _DAY_TERMS.search(terms)
    if day_match and "/" not in terms:
        return -(total_cost * int(day_match.group(1)) * daily_rate)

    parts = [
        float(part)
        for part in payment_terms.split("/")
        if _NUMERIC_PART.match(part) and float(part) > 0
    ]
    if not parts:
        return 0.0

    if len(parts) == 1 and parts[0] >= 100:
        return total_cost * lead_time_days * daily_rate

    cost = 0.0
    for index, pct in enumerate(parts):
        payment_day = (index / len(parts)) * lead_time_days
        days_locked = max(0.0, lead_time_days - payment_day)
        cost += total_cost * (pct / 100) * days_locked * daily_rate
    return cost


def landed_cost(
    fob_cost: float,
    payment_terms: str,
    lead_time_days: int,
    annual_rate: float = DEFAULT_ANNUAL_RATE,
) -> float:
    """FOB cost plus the cash-flow cost of the payment terms."""
    return fob_cost + calculate_cash_flow_cost(
        fob_cost, payment_terms, lead_time_days, annual_rate
    )


def price_range(tier: PriceTier) -> tuple[float, float]:
    """Allowed (low, high) multipliers on the baseline for *tier*."""
    return _PRICE_RANGES.get(tier, _PRICE_RANGES[PriceTier.MID])


def baseline_total(items: list[BaselineItem]) -> float:
    return round(sum(item.total_price for item in items), 2)


# ---------------------------------------------------------------------------
# Split-order evaluation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SplitLeg:
    """One counterparty's share of a proposed split."""

    counterparty_id: str
    score: float
    pct: float


@dataclass
class SplitEvaluation:
    """Result of comparing a split against the best single counterparty."""

    worth_it: bool
    split_score: float
    single_score: float
    adjusted_legs: list[SplitLeg] = field(default_factory=list)


def evaluate_split_overhead(
    single_best_score: float,
    legs: list[SplitLeg],
    overhead_penalty: float = 0.05,
) -> SplitEvaluation:
    """Decide whether a split earns its coordination overhead.

    Each leg's score is reduced by *overhead_penalty* and weighted by its
    percentage. The split is worth it only when that weighted score is
    strictly greater than the best single-counterparty score.
    """
    adjusted = [
        SplitLeg(leg.counterparty_id, leg.score * (1 - overhead_penalty), leg.pct)
        for leg in legs
    ]
    split_score = sum(leg.score * leg.pct / 100 for leg in adjusted)
    return SplitEvaluation(
        worth_it=split_score > single_best_score,
        split_score=split_score,
        single_score=single_best_score,
        adjusted_legs=adjusted,
    )


# ---------------------------------------------------------------------------
# Baseline helpers
# ---------------------------------------------------------------------------


def dedupe_baseline_items(items: list[BaselineItem]) -> list[BaselineItem]:
    """Collapse repeated SKUs into one item with volume tiers.

    Quotations often list the same SKU at several quantities. The row with
    the smallest quantity becomes the primary item; the remaining rows are
    attached as its volume tiers. First-seen SKU order is preserved.
    """
    grouped: dict[str, list[BaselineItem]] = {}
    for item in items:
        grouped.setdefault(item.sku.upper(), []).append(item)

    result: list[BaselineItem] = []
    for rows in grouped.values():
        if len(rows) == 1:
            result.append(rows[0])
            continue
        rows = sorted(rows, key=lambda r: r.quantity)
        primary = rows[0]
        tiers = [
            VolumeTier(quantity=r.quantity, unit_price=r.unit_price, total_price=r.total_price)
            for r in rows[1:]
        ]
        result.append(
            primary.model_copy(update={"volume_tiers": [*primary.volume_tiers, *tiers]})
        )
        logger.info("baseline_sku_deduplicated", sku=primary.sku, tiers=len(tiers))
    return result
