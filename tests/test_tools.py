"""Tests for the deterministic business tools."""

from __future__ import annotations

import pytest


def _offer(total: float, lead: int = 30, terms: str = "Net 30", items=None):
    from supplier_negotiation.models import StructuredOffer

    return StructuredOffer(
        total_cost=total,
        items=items or [],
        lead_time_days=lead,
        payment_terms=terms,
    )


def _priced_offer(multiplier: float, lead: int = 30, terms: str = "Net 30"):
    from supplier_negotiation.mock_data.baseline import SAMPLE_BASELINE
    from supplier_negotiation.models import OfferItem

    items = [
        OfferItem(sku=i.sku, unit_price=round(i.unit_price * multiplier, 2), quantity=i.quantity)
        for i in SAMPLE_BASELINE
    ]
    return _offer(
        round(sum(i.unit_price * i.quantity for i in items), 2),
        lead=lead,
        terms=terms,
        items=items,
    )


# ---------------------------------------------------------------------------
# Cash flow and split overhead
# ---------------------------------------------------------------------------


def test_net_terms_are_a_saving():
    from supplier_negotiation.tools.calculations import calculate_cash_flow_cost

    cost = calculate_cash_flow_cost(10_000, "Net 30", 45)
    assert cost == pytest.approx(-10_000 * 30 * 0.08 / 365)


def test_full_prepayment_locks_capital_for_lead_time():
    from supplier_negotiation.tools.calculations import calculate_cash_flow_cost

    cost = calculate_cash_flow_cost(10_000, "100", 30)
    assert cost == pytest.approx(10_000 * 30 * 0.08 / 365)


def test_installments_spread_over_lead_time():
    from supplier_negotiation.tools.calculations import calculate_cash_flow_cost

    # 40% paid on day 0 (locked 30 days), 60% on day 15 (locked 15 days)
    cost = calculate_cash_flow_cost(10_000, "40/60", 30)
    expected = (10_000 * 0.4 * 30 + 10_000 * 0.6 * 15) * 0.08 / 365
    assert cost == pytest.approx(expected)


def test_unrecognized_terms_cost_nothing():
    from supplier_negotiation.tools.calculations import calculate_cash_flow_cost

    assert calculate_cash_flow_cost(10_000, "on delivery", 30) == 0.0


def test_split_not_worth_its_overhead():
    from supplier_negotiation.tools.calculations import SplitLeg, evaluate_split_overhead

    evaluation = evaluate_split_overhead(
        72,
        [SplitLeg("a", 70, 50), SplitLeg("b", 60, 50)],
        overhead_penalty=0.05,
    )
    assert evaluation.split_score == pytest.approx(61.75)
    assert evaluation.worth_it is False


def test_split_worth_it_when_it_beats_single():
    from supplier_negotiation.tools.calculations import SplitLeg, evaluate_split_overhead

    evaluation = evaluate_split_overhead(
        70,
        [SplitLeg("a", 90, 60), SplitLeg("b", 85, 40)],
    )
    assert evaluation.worth_it is True


def test_dedupe_baseline_folds_repeated_skus_into_tiers():
    from supplier_negotiation.models import BaselineItem
    from supplier_negotiation.tools.calculations import dedupe_baseline_items

    items = [
        BaselineItem(sku="JKT-100", quantity=600, unit_price=138.0),
        BaselineItem(sku="PNT-200", quantity=400, unit_price=62.5),
        BaselineItem(sku="jkt-100", quantity=300, unit_price=145.0),
    ]
    result = dedupe_baseline_items(items)

    assert [i.sku.upper() for i in result] == ["JKT-100", "PNT-200"]
    jacket = result[0]
    assert jacket.quantity == 300
    assert jacket.total_price == 43_500.0
    assert [t.quantity for t in jacket.volume_tiers] == [600]


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------


def test_percentages_always_sum_to_100():
    from supplier_negotiation.tools.allocation import percentages_from_values

    pcts = percentages_from_values({"a": 1.0, "b": 1.0, "c": 1.0})
    assert sum(pcts.values()) == 100
    assert sorted(pcts.values()) == [33.0, 33.0, 34.0]

    pcts = percentages_from_values({"a": 43_500.0, "b": 43_650.0, "c": 0.0})
    assert sum(pcts.values()) == 100
    assert pcts["c"] == 0.0


def test_allocate_items_single_target_takes_everything():
    from supplier_negotiation.mock_data.baseline import SAMPLE_BASELINE
    from supplier_negotiation.tools.allocation import allocate_items

    offers = {"a": _priced_offer(1.0), "b": _priced_offer(0.9)}
    assignments = allocate_items(SAMPLE_BASELINE, offers, {"a": 100.0})

    assert len(assignments["a"]) == len(SAMPLE_BASELINE)


def test_allocate_items_tracks_split_targets():
    from supplier_negotiation.mock_data.baseline import SAMPLE_BASELINE
    from supplier_negotiation.tools.allocation import allocate_items

    offers = {"a": _priced_offer(1.0), "b": _priced_offer(1.0)}
    assignments = allocate_items(SAMPLE_BASELINE, offers, {"a": 50.0, "b": 50.0})

    assert assignments["a"] and assignments["b"]
    placed = sum(len(items) for items in assignments.values())
    assert placed == len(SAMPLE_BASELINE)


def test_reallocation_caps_affected_counterparty():
    from supplier_negotiation.mock_data.baseline import SAMPLE_BASELINE
    from supplier_negotiation.tools.allocation import reallocate_after_disruption

    offers = {"a": _priced_offer(1.0), "b": _priced_offer(1.05)}
    assignments = {"a": list(SAMPLE_BASELINE)}

    updated = reallocate_after_disruption(assignments, "a", 60.0, offers)

    kept_value = sum(i.total_price for i in updated["a"])
    assert kept_value <= 87_150 * 0.6
    assert {i.sku for i in updated["a"]} == {"JKT-100", "BNE-400"}
    assert {i.sku for i in updated["b"]} == {"PNT-200", "FLC-300"}


# ---------------------------------------------------------------------------
# Scoring and context
# ---------------------------------------------------------------------------


def test_unknown_weighting_profile_falls_back_to_balanced():
    from supplier_negotiation.models import WeightingProfile
    from supplier_negotiation.tools.scoring import WEIGHTING_PROFILES, weights_for

    assert weights_for("nonsense") == WEIGHTING_PROFILES[WeightingProfile.BALANCED]
    for weights in WEIGHTING_PROFILES.values():
        assert sum(weights.values()) == pytest.approx(1.0)


def test_score_offers_prefers_cheaper_offer_on_price():
    from supplier_negotiation.mock_data.counterparties import DEFAULT_COUNTERPARTIES
    from supplier_negotiation.tools.scoring import score_offers

    profiles = {c.id: c for c in DEFAULT_COUNTERPARTIES}
    scores = score_offers(
        {"supplier-1": _offer(80_000), "supplier-3": _offer(90_000)},
        profiles,
    )
    assert scores["supplier-1"].price == 100
    assert scores["supplier-3"].price == 0
    assert 0 <= scores["supplier-1"].weighted <= 100


def test_extreme_price_discrepancy_flagged():
    from supplier_negotiation.tools.context_tools import detect_price_discrepancy

    flag = detect_price_discrepancy({"a": _offer(700_000), "b": _offer(7_000_000)})

    assert flag is not None
    assert flag.severity == "extreme"
    assert flag.ratio == pytest.approx(10.0)
    assert flag.cheapest_id == "a"
    assert flag.most_expensive_id == "b"


def test_close_offers_not_flagged():
    from supplier_negotiation.tools.context_tools import detect_price_discrepancy

    assert detect_price_discrepancy({"a": _offer(80_000), "b": _offer(90_000)}) is None
    assert detect_price_discrepancy({"a": _offer(80_000)}) is None


def test_pillar_contexts_anonymize_competitors():
    from supplier_negotiation.mock_data.baseline import SAMPLE_BASELINE
    from supplier_negotiation.mock_data.counterparties import DEFAULT_COUNTERPARTIES
    from supplier_negotiation.tools.context_tools import NegotiationContext, build_pillar_contexts

    current = DEFAULT_COUNTERPARTIES[0]
    ctx = NegotiationContext(
        counterparty=current,
        profiles=list(DEFAULT_COUNTERPARTIES),
        baseline=list(SAMPLE_BASELINE),
        offers={"supplier-2": _offer(100_000), "supplier-3": _offer(86_000)},
        history=[],
        round_number=1,
        total_rounds=3,
    )
    contexts = build_pillar_contexts(ctx)

    for text in (contexts.strategy, contexts.cost):
        assert "Alpine Premium" not in text
        assert "RapidGear Co" not in text
    assert "Supplier A" in contexts.strategy
    assert "Cash flow analysis" in contexts.cost
    assert contexts.summary["competing_offers"] == 2


def test_compress_history_keeps_recent_turns_verbatim():
    from supplier_negotiation.models import ConversationTurn, TurnRole
    from supplier_negotiation.tools.context_tools import compress_history

    turns = [
        ConversationTurn(
            role=TurnRole.INITIATOR if i % 2 == 0 else TurnRole.COUNTERPARTY,
            content=f"message {i} " + "x" * 200,
        )
        for i in range(5)
    ]
    messages = compress_history(turns, keep_full=2, truncate_chars=50)

    assert len(messages) == 4
    assert messages[0]["content"].startswith("[Prior conversation recap")
    assert messages[-1]["content"] == turns[-1].content
    assert messages[-1]["role"] == "user"
