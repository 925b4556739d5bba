"""Tests for offer extraction and normalization."""

from __future__ import annotations

import pytest


def _defaults():
    from supplier_negotiation.agents.offer_extractor import CounterpartyDefaults
    from supplier_negotiation.models import PriceTier

    return CounterpartyDefaults(lead_time_days=25, payment_terms="40/60", price_tier=PriceTier.MID)


def _extractor(settings, provider):
    from supplier_negotiation.agents.offer_extractor import OfferExtractorAgent
    from supplier_negotiation.llm.provider import ModelGateway
    from supplier_negotiation.llm.rate_limiter import ModelRateLimiter

    gateway = ModelGateway(provider, ModelRateLimiter(), settings)
    return OfferExtractorAgent(gateway, settings)


def test_blanket_price_rescaled_to_stated_total():
    """One repeated price across every SKU is read as the order total."""
    from supplier_negotiation.agents.offer_extractor import (
        ExtractedItem,
        ExtractedOffer,
        normalize_offer,
    )
    from supplier_negotiation.mock_data.baseline import SAMPLE_BASELINE

    raw = ExtractedOffer(
        total_cost=80_000,
        items=[ExtractedItem(sku=i.sku, unit_price=80_000) for i in SAMPLE_BASELINE],
    )
    offer = normalize_offer(raw, SAMPLE_BASELINE, _defaults())

    ratio = 80_000 / 87_150
    for item, base in zip(offer.items, SAMPLE_BASELINE):
        assert item.unit_price == pytest.approx(base.unit_price * ratio, abs=0.01)
    assert offer.total_cost == pytest.approx(80_000, abs=5)


def test_total_is_recomputed_from_items():
    from supplier_negotiation.agents.offer_extractor import (
        ExtractedItem,
        ExtractedOffer,
        normalize_offer,
    )
    from supplier_negotiation.mock_data.baseline import SAMPLE_BASELINE

    raw = ExtractedOffer(
        total_cost=1.0,
        items=[ExtractedItem(sku=i.sku, unit_price=i.unit_price * 0.9) for i in SAMPLE_BASELINE],
    )
    offer = normalize_offer(raw, SAMPLE_BASELINE, _defaults())

    expected = round(sum(i.unit_price * i.quantity for i in offer.items), 2)
    assert offer.total_cost == expected


def test_quantities_forced_and_unknown_skus_dropped():
    from supplier_negotiation.agents.offer_extractor import (
        ExtractedItem,
        ExtractedOffer,
        normalize_offer,
    )
    from supplier_negotiation.mock_data.baseline import SAMPLE_BASELINE

    raw = ExtractedOffer(
        items=[
            ExtractedItem(sku="JKT-100", unit_price=140.0, quantity=999),
            ExtractedItem(sku="GLOVE-9", unit_price=12.0, quantity=50),
        ],
    )
    offer = normalize_offer(raw, SAMPLE_BASELINE, _defaults())

    assert [i.sku for i in offer.items] == [i.sku for i in SAMPLE_BASELINE]
    jacket = offer.items[0]
    assert jacket.quantity == 300
    assert jacket.unit_price == 140.0


def test_missing_skus_backfilled_at_baseline():
    from supplier_negotiation.agents.offer_extractor import (
        ExtractedItem,
        ExtractedOffer,
        normalize_offer,
    )
    from supplier_negotiation.mock_data.baseline import SAMPLE_BASELINE

    raw = ExtractedOffer(items=[ExtractedItem(sku="JKT-100", unit_price=145.0)])
    offer = normalize_offer(raw, SAMPLE_BASELINE, _defaults())

    assert len(offer.items) == len(SAMPLE_BASELINE)
    assert offer.total_cost == pytest.approx(87_150.0)
    assert offer.lead_time_days == 25
    assert offer.payment_terms == "40/60"


def test_outlier_price_snaps_to_baseline():
    from supplier_negotiation.agents.offer_extractor import (
        ExtractedItem,
        ExtractedOffer,
        normalize_offer,
    )
    from supplier_negotiation.mock_data.baseline import SAMPLE_BASELINE

    raw = ExtractedOffer(
        items=[
            ExtractedItem(sku="JKT-100", unit_price=150.0),
            ExtractedItem(sku="PNT-200", unit_price=1_000.0),
            ExtractedItem(sku="FLC-300", unit_price=5.0),
        ],
        lead_time_days=20,
        payment_terms="Net 30",
    )
    offer = normalize_offer(raw, SAMPLE_BASELINE, _defaults())
    prices = {i.sku: i.unit_price for i in offer.items}

    assert prices["JKT-100"] == 150.0
    assert prices["PNT-200"] == 62.5
    assert prices["FLC-300"] == 54.6
    assert offer.lead_time_days == 20
    assert offer.payment_terms == "Net 30"


def test_normalization_is_idempotent():
    from supplier_negotiation.agents.offer_extractor import (
        ExtractedItem,
        ExtractedOffer,
        normalize_offer,
        renormalize,
    )
    from supplier_negotiation.mock_data.baseline import SAMPLE_BASELINE

    raw = ExtractedOffer(
        total_cost=80_000,
        items=[ExtractedItem(sku=i.sku, unit_price=80_000) for i in SAMPLE_BASELINE],
    )
    once = normalize_offer(raw, SAMPLE_BASELINE, _defaults())
    twice = renormalize(once, SAMPLE_BASELINE, _defaults())

    assert twice.model_dump() == once.model_dump()


@pytest.mark.asyncio
async def test_reference_quote_extracts_to_baseline_total(settings, provider):
    """Extracting the restated reference quote reproduces the baseline."""
    from supplier_negotiation.agents.counterparty import restate_baseline_quote
    from supplier_negotiation.agents.offer_extractor import CounterpartyDefaults
    from supplier_negotiation.llm.usage import UsageTracker
    from supplier_negotiation.mock_data.baseline import SAMPLE_BASELINE
    from supplier_negotiation.mock_data.counterparties import get_counterparty

    profile = get_counterparty("supplier-1")
    text = restate_baseline_quote(profile, SAMPLE_BASELINE)
    extractor = _extractor(settings, provider)

    offer = await extractor.extract(
        text,
        SAMPLE_BASELINE,
        CounterpartyDefaults.from_profile(profile),
        UsageTracker("test"),
    )

    assert offer.total_cost == pytest.approx(87_150.0)
    assert offer.lead_time_days == 50
    assert offer.payment_terms == "33/33/34"


@pytest.mark.asyncio
async def test_extraction_failure_falls_back_to_baseline(settings):
    from supplier_negotiation.llm.mock_provider import MockProvider
    from supplier_negotiation.llm.usage import UsageTracker
    from supplier_negotiation.mock_data.baseline import SAMPLE_BASELINE

    provider = MockProvider(fail_purposes={"extraction"})
    extractor = _extractor(settings, provider)

    offer = await extractor.extract(
        "We can do JKT-100 at $120.00/unit.",
        SAMPLE_BASELINE,
        _defaults(),
        UsageTracker("test"),
        counterparty_id="supplier-2",
    )

    assert provider.calls.count("extraction") == settings.extraction_max_attempts
    assert offer.total_cost == pytest.approx(87_150.0)
    assert offer.payment_terms == "40/60"
