"""Line-item allocation across counterparties.

A greedy assignment of baseline items to counterparties that tracks
target percentages while preferring the lowest landed cost, plus the
reallocation used when a capacity-constrained counterparty must shed
volume.
"""

from __future__ import annotations

import structlog

from supplier_negotiation.models import BaselineItem, StructuredOffer
from supplier_negotiation.tools.calculations import DEFAULT_ANNUAL_RATE, landed_cost

logger = structlog.get_logger(__name__)

# Weight of the relative landed-cost penalty against distance-to-target
_COST_PENALTY_WEIGHT = 5.0


def _item_landed_costs(
    item: BaselineItem,
    offers: dict[str, StructuredOffer],
    annual_rate: float,
) -> dict[str, float]:
    """Landed cost of *item* at each counterparty that quoted its SKU."""
    costs: dict[str, float] = {}
    for counterparty_id, offer in offers.items():
        offer_item = next(
            (oi for oi in offer.items if oi.sku.upper() == item.sku.upper()),
            None,
        )
        if offer_item is None:
            continue
        fob = offer_item.unit_price * item.quantity
        costs[counterparty_id] = landed_cost(
            fob, offer.payment_terms, offer.lead_time_days, annual_rate
        )
    return costs


def allocate_items(
    items: list[BaselineItem],
    offers: dict[str, StructuredOffer],
    targets: dict[str, float],
    annual_rate: float = DEFAULT_ANNUAL_RATE,
) -> dict[str, list[BaselineItem]]:
    """Assign each item to one counterparty, realizing *targets* greedily.

    Items are placed in descending line value. For each item every target
    counterparty with a quote for the SKU is scored as
    ``-|target - pct_after| - 5 * landed / min_landed`` and the highest
    score wins.

    Args:
        items: Baseline items to place.
        offers: Final offer per counterparty id.
        targets: Counterparty id -> target percentage of the order value.
        annual_rate: Cost of capital used for landed cost.

    Returns:
        Counterparty id -> assigned items, with an entry for every target.
    """
    assignments: dict[str, list[BaselineItem]] = {cid: [] for cid in targets}
    running: dict[str, float] = {cid: 0.0 for cid in targets}
    order_value = sum(item.total_price for item in items)
    if order_value <= 0:
        return assignments

    for item in sorted(items, key=lambda i: i.total_price, reverse=True):
        costs = _item_landed_costs(item, offers, annual_rate)
        if not costs:
            logger.warning("allocation_item_unquoted", sku=item.sku)
            continue
        cheapest = min(costs.values())

        best_id: str | None = None
        best_score = float("-inf")
        for counterparty_id, target_pct in targets.items():
            if counterparty_id not in costs:
                continue
            after_pct = (running[counterparty_id] + item.total_price) / order_value * 100
            relative_cost = costs[counterparty_id] / cheapest if cheapest > 0 else 1.0
            score = -abs(target_pct - after_pct) - _COST_PENALTY_WEIGHT * relative_cost
            if score > best_score:
                best_score = score
                best_id = counterparty_id

        if best_id is None:
            logger.warning("allocation_no_eligible_target", sku=item.sku)
            continue
        assignments[best_id].append(item)
        running[best_id] += item.total_price

    return assignments


def reallocate_after_disruption(
    assignments: dict[str, list[BaselineItem]],
    affected_id: str,
    capacity_pct: float,
    offers: dict[str, StructuredOffer],
    annual_rate: float = DEFAULT_ANNUAL_RATE,
) -> dict[str, list[BaselineItem]]:
    """Shrink *affected_id* to its reduced capacity and redistribute the rest.

    The affected counterparty keeps its highest-value items while their
    value stays within ``capacity_pct`` of what it was assigned. Shed
    items are allocated greedily across the other counterparties with an
    even target split. Those are the other assigned counterparties, or
    every other counterparty with an offer when the affected one held the
    whole order.
    """
    affected_items = assignments.get(affected_id, [])
    assigned_value = sum(item.total_price for item in affected_items)
    max_value = assigned_value * capacity_pct / 100

    kept: list[BaselineItem] = []
    shed: list[BaselineItem] = []
    running = 0.0
    for item in sorted(affected_items, key=lambda i: i.total_price, reverse=True):
        if running + item.total_price <= max_value:
            kept.append(item)
            running += item.total_price
        else:
            shed.append(item)

    updated = {cid: list(items) for cid, items in assignments.items()}
    updated[affected_id] = kept
    if not shed:
        return updated

    others = [cid for cid in assignments if cid != affected_id]
    if not others:
        others = [cid for cid in offers if cid != affected_id]
    if not others:
        logger.warning("reallocation_no_alternatives", affected_id=affected_id)
        updated[affected_id] = affected_items
        return updated

    even_targets = {cid: 100 / len(others) for cid in others}
    redistributed = allocate_items(shed, offers, even_targets, annual_rate)
    for counterparty_id, items in redistributed.items():
        updated.setdefault(counterparty_id, []).extend(items)

    logger.info(
        "disruption_reallocation",
        affected_id=affected_id,
        kept=len(kept),
        shed=len(shed),
        recipients=len(others),
    )
    return updated


def percentages_from_values(values: dict[str, float]) -> dict[str, float]:
    """Whole-number percentages proportional to *values* summing to exactly 100.

    Uses largest-remainder rounding. Entries with zero value get 0.
    """
    total = sum(v for v in values.values() if v > 0)
    if total <= 0:
        return {cid: 0.0 for cid in values}

    raw = {cid: max(v, 0.0) / total * 100 for cid, v in values.items()}
    floors = {cid: int(pct) for cid, pct in raw.items()}
    remainder = 100 - sum(floors.values())
    by_fraction = sorted(raw, key=lambda cid: (raw[cid] - floors[cid], raw[cid]), reverse=True)
    for cid in by_fraction[:remainder]:
        floors[cid] += 1
    return {cid: float(pct) for cid, pct in floors.items()}
