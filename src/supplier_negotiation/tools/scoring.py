"""Scoring weights and deterministic per-round offer scoring.

The decision engine's four-dimension weights live here, together with a
model-free scorer that rates the current offer pool after every round so
progress can be reported before the final decision exists.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

from supplier_negotiation.models import (
    CounterpartyProfile,
    StructuredOffer,
    WeightingProfile,
)
from supplier_negotiation.tools.calculations import calculate_cash_flow_cost

# Decision weights: cost, quality, lead time, payment terms
WEIGHTING_PROFILES: dict[WeightingProfile, dict[str, float]] = {
    WeightingProfile.BALANCED: {"cost": 0.30, "quality": 0.25, "lead_time": 0.25, "terms": 0.20},
    WeightingProfile.COST: {"cost": 0.40, "quality": 0.15, "lead_time": 0.15, "terms": 0.20},
    WeightingProfile.QUALITY: {"cost": 0.15, "quality": 0.40, "lead_time": 0.15, "terms": 0.20},
    WeightingProfile.SPEED: {"cost": 0.15, "quality": 0.15, "lead_time": 0.40, "terms": 0.20},
    WeightingProfile.CASHFLOW: {"cost": 0.20, "quality": 0.15, "lead_time": 0.15, "terms": 0.40},
}

# Round-analysis weights: price, quality, lead time, cash flow, risk
_SNAPSHOT_WEIGHTS: dict[WeightingProfile, dict[str, float]] = {
    WeightingProfile.BALANCED: {"price": 0.25, "quality": 0.20, "lead_time": 0.20, "cash_flow": 0.15, "risk": 0.20},
    WeightingProfile.COST: {"price": 0.35, "quality": 0.15, "lead_time": 0.15, "cash_flow": 0.20, "risk": 0.15},
    WeightingProfile.QUALITY: {"price": 0.15, "quality": 0.35, "lead_time": 0.15, "cash_flow": 0.15, "risk": 0.20},
    WeightingProfile.SPEED: {"price": 0.15, "quality": 0.15, "lead_time": 0.35, "cash_flow": 0.15, "risk": 0.20},
    WeightingProfile.CASHFLOW: {"price": 0.20, "quality": 0.15, "lead_time": 0.15, "cash_flow": 0.35, "risk": 0.15},
}

# Score given to every offer when the pool shows no spread on a dimension
_NO_SPREAD_SCORE = 75


def weights_for(profile: WeightingProfile | str) -> dict[str, float]:
    """Decision weights for *profile*, defaulting to balanced."""
    try:
        return WEIGHTING_PROFILES[WeightingProfile(profile)]
    except ValueError:
        return WEIGHTING_PROFILES[WeightingProfile.BALANCED]


@dataclass(frozen=True)
class OfferScore:
    """0-100 dimension scores for one offer, relative to the pool."""

    price: int
    quality: int
    lead_time: int
    cash_flow: int
    risk: int
    weighted: int

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _normalize(value: float, low: float, high: float, invert: bool) -> int:
    if high == low:
        return _NO_SPREAD_SCORE
    ratio = (value - low) / (high - low)
    score = (1 - ratio) * 100 if invert else ratio * 100
    return max(0, min(100, round(score)))


def score_offers(
    offers: dict[str, StructuredOffer],
    profiles: dict[str, CounterpartyProfile],
    weighting: WeightingProfile = WeightingProfile.BALANCED,
) -> dict[str, OfferScore]:
    """Score every offer in the pool deterministically.

    Price, lead time and cash-flow cost are min-max normalized across the
    pool (lower is better). Quality comes from the profile rating. Risk
    blends quality (60%) with how close the profile lead time is to 15
    days (40%).

    Args:
        offers: Current offer per counterparty id.
        profiles: Counterparty profiles by id.
        weighting: Profile selecting the blend of the five dimensions.

    Returns:
        Counterparty id -> :class:`OfferScore`.
    """
    scored = {cid: offer for cid, offer in offers.items() if cid in profiles}
    if not scored:
        return {}

    cash_flow = {
        cid: calculate_cash_flow_cost(o.total_cost, o.payment_terms, o.lead_time_days)
        for cid, o in scored.items()
    }
    costs = [o.total_cost for o in scored.values()]
    leads = [o.lead_time_days for o in scored.values()]
    weights = _SNAPSHOT_WEIGHTS.get(weighting, _SNAPSHOT_WEIGHTS[WeightingProfile.BALANCED])

    results: dict[str, OfferScore] = {}
    for cid, offer in scored.items():
        profile = profiles[cid]
        price = _normalize(offer.total_cost, min(costs), max(costs), invert=True)
        lead_time = _normalize(offer.lead_time_days, min(leads), max(leads), invert=True)
        cash = _normalize(
            cash_flow[cid], min(cash_flow.values()), max(cash_flow.values()), invert=True
        )
        quality = round(profile.quality_rating / 5 * 100)
        lead_factor = max(0.0, min(1.0, 1 - (profile.lead_time_days - 15) / 50))
        risk = round((profile.quality_rating / 5 * 0.6 + lead_factor * 0.4) * 100)
        weighted = round(
            price * weights["price"]
            + quality * weights["quality"]
            + lead_time * weights["lead_time"]
            + cash * weights["cash_flow"]
            + risk * weights["risk"]
        )
        results[cid] = OfferScore(price, quality, lead_time, cash, risk, weighted)
    return results
