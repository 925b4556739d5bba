"""Default counterparty roster.

Three suppliers covering every price tier. The first one is the
reference counterparty whose quotation supplies the baseline; the other
two are simulated.
"""

from __future__ import annotations

from supplier_negotiation.models import CounterpartyProfile, PriceTier

REFERENCE_COUNTERPARTY_ID = "supplier-1"

DEFAULT_COUNTERPARTIES: list[CounterpartyProfile] = [
    CounterpartyProfile(
        id="supplier-1",
        name="Northbound Textiles",
        code="SUP-001",
        quality_rating=4.0,
        price_tier=PriceTier.CHEAP,
        lead_time_days=50,
        payment_terms="33/33/34",
        is_simulated=False,
    ),
    CounterpartyProfile(
        id="supplier-2",
        name="Alpine Premium",
        code="SUP-002",
        quality_rating=4.7,
        price_tier=PriceTier.EXPENSIVE,
        lead_time_days=25,
        payment_terms="40/60",
    ),
    CounterpartyProfile(
        id="supplier-3",
        name="RapidGear Co",
        code="SUP-003",
        quality_rating=4.0,
        price_tier=PriceTier.MID,
        lead_time_days=15,
        payment_terms="100",
    ),
]


def get_counterparty(counterparty_id: str) -> CounterpartyProfile | None:
    """Look up a default counterparty by id."""
    return next((c for c in DEFAULT_COUNTERPARTIES if c.id == counterparty_id), None)
