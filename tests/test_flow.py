"""End-to-end and routing tests for the negotiation flow."""

from __future__ import annotations

import pytest


async def _collect(service, config):
    return [event async for event in service.run_negotiation(config)]


def _index(events, event_type, counterparty_id=None, round_number=None):
    for i, event in enumerate(events):
        if event.event_type != event_type:
            continue
        if counterparty_id is not None and event.counterparty_id != counterparty_id:
            continue
        if round_number is not None and event.round_number != round_number:
            continue
        return i
    raise AssertionError(f"no {event_type} event for {counterparty_id} round {round_number}")


class FlakyCounterparty:
    """Restates the baseline quote, except for one counterparty that always fails."""

    def __init__(self, failing_id: str) -> None:
        self.failing_id = failing_id

    async def respond(self, request, usage):
        from supplier_negotiation.agents.counterparty import CounterpartyError, restate_baseline_quote

        if request.profile.id == self.failing_id:
            raise CounterpartyError(f"{request.profile.name} is unreachable")
        return restate_baseline_quote(request.profile, request.baseline)


# ---------------------------------------------------------------------------
# Routing conditions
# ---------------------------------------------------------------------------


def test_should_continue_uses_full_round_budget():
    from supplier_negotiation.flow.conditions import should_continue

    assert should_continue(3, 3) is True
    assert should_continue(4, 3) is False


def test_disruption_checkpoint_needs_a_remaining_round():
    from supplier_negotiation.flow.conditions import is_disruption_checkpoint

    assert is_disruption_checkpoint(1, 1, 3, already_triggered=False) is True
    assert is_disruption_checkpoint(1, 1, 3, already_triggered=True) is False
    assert is_disruption_checkpoint(2, 1, 3, already_triggered=False) is False
    assert is_disruption_checkpoint(3, 3, 3, already_triggered=False) is False


def test_round_one_stages_reference_last():
    from supplier_negotiation.flow.conditions import split_waves

    ids = ["supplier-1", "supplier-2", "supplier-3"]
    assert split_waves(ids, "supplier-1", 1) == [["supplier-2", "supplier-3"], ["supplier-1"]]
    assert split_waves(ids, "supplier-1", 2) == [ids]
    assert split_waves(ids, None, 1) == [ids]
    assert split_waves(["supplier-1"], "supplier-1", 1) == [["supplier-1"]]


def test_disruption_target_skips_reference():
    from supplier_negotiation.flow.conditions import pick_disruption_target
    from supplier_negotiation.mock_data.counterparties import DEFAULT_COUNTERPARTIES

    assert pick_disruption_target(DEFAULT_COUNTERPARTIES, "supplier-1") == "supplier-2"
    assert pick_disruption_target(DEFAULT_COUNTERPARTIES, "supplier-1", "supplier-3") == "supplier-3"
    assert pick_disruption_target(DEFAULT_COUNTERPARTIES[:1], "supplier-1") is None


# ---------------------------------------------------------------------------
# Full negotiation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_full_negotiation_event_sequence(service, config):
    events = await _collect(service, config)

    assert events[0].event_type == "negotiation_started"
    assert events[-1].event_type == "negotiation_complete"
    assert not any(e.event_type == "error" for e in events)

    # Round 1: the reference counterparty waits for both competitors
    reference_start = _index(events, "round_start", "supplier-1", 1)
    assert _index(events, "counterparty_waiting", "supplier-1", 1) < reference_start
    assert _index(events, "round_end", "supplier-2", 1) < reference_start
    assert _index(events, "round_end", "supplier-3", 1) < reference_start

    # Disruption lands between round 1 and round 2
    detected = _index(events, "disruption_detected")
    assert events[detected].counterparty_id == "supplier-2"
    assert _index(events, "round_end", "supplier-1", 1) < detected
    assert detected < _index(events, "disruption_analysis") < _index(events, "round_start", round_number=2)

    # The decision comes last, after every round
    assert _index(events, "round_end", round_number=3) < _index(events, "generating_decision")
    assert _index(events, "decision") < len(events) - 1


@pytest.mark.asyncio
async def test_full_negotiation_persists_rounds_and_decision(service, config):
    from supplier_negotiation.models import NegotiationStatus, RoundPhase, RoundStatus

    await _collect(service, config)
    negotiation_id = config.negotiation_id

    record = await service.get_negotiation(negotiation_id)
    assert record.status == NegotiationStatus.COMPLETED
    assert record.current_round == 3
    assert record.disruption_counterparty_id == "supplier-2"
    assert record.disruption_round == 1
    assert record.disruption_analysis is not None
    assert record.usage.total_calls > 0

    rounds = await service.list_rounds(negotiation_id)
    assert len(rounds) == 9
    assert all(r.status == RoundStatus.COMPLETE for r in rounds)
    assert {r.phase for r in rounds if r.round_number == 1} == {RoundPhase.INITIAL}
    assert {r.phase for r in rounds if r.round_number > 1} == {RoundPhase.POST_DISRUPTION}

    # The reference counterparty opens with its own quotation
    opening = next(r for r in rounds if r.counterparty_id == "supplier-1" and r.round_number == 1)
    assert opening.offer.total_cost == pytest.approx(87_150.0)

    # Only the disrupted counterparty is told about the shortage
    disrupted = next(r for r in rounds if r.counterparty_id == "supplier-2" and r.round_number == 2)
    assert "shortage" in disrupted.turns[-1].content
    other = next(r for r in rounds if r.counterparty_id == "supplier-3" and r.round_number == 2)
    assert "shortage" not in other.turns[-1].content

    decision = await service.get_final_decision(negotiation_id)
    assert decision is not None
    pcts = [a.allocation_pct for a in decision.recommendation.allocations]
    assert sum(pcts) == 100
    assert decision.recommendation.primary_counterparty_id in {"supplier-1", "supplier-2", "supplier-3"}
    assert decision.recommendation.split_order == (len(pcts) > 1)
    assert {s.counterparty_id for s in decision.scores} == {"supplier-1", "supplier-2", "supplier-3"}
    dimensions = {p.dimension for p in decision.key_points}
    assert {"price", "quality", "lead_time", "cash_flow", "risk"} <= dimensions


@pytest.mark.asyncio
async def test_negotiation_without_disruption(service, config):
    from supplier_negotiation.models import RoundPhase

    config = config.model_copy(update={"disruption": None, "max_rounds": 2})
    events = await _collect(service, config)

    assert not any(e.event_type.startswith("disruption") for e in events)
    rounds = await service.list_rounds(config.negotiation_id)
    assert len(rounds) == 6
    assert {r.phase for r in rounds} == {RoundPhase.INITIAL}


@pytest.mark.asyncio
async def test_failing_counterparty_does_not_stop_the_negotiation(settings, provider, config):
    from supplier_negotiation.models import NegotiationStatus, RoundStatus
    from supplier_negotiation.service import NegotiationService

    service = NegotiationService(
        settings, provider=provider, counterparty_agent=FlakyCounterparty("supplier-3")
    )
    events = await _collect(service, config)

    errors = [e for e in events if e.event_type == "error"]
    assert len(errors) == 3
    assert all(e.counterparty_id == "supplier-3" and not e.data["fatal"] for e in errors)
    assert events[-1].event_type == "negotiation_complete"

    rounds = await service.list_rounds(config.negotiation_id)
    failed = [r for r in rounds if r.status == RoundStatus.FAILED]
    assert {r.counterparty_id for r in failed} == {"supplier-3"}
    assert all(r.error for r in failed)

    record = await service.get_negotiation(config.negotiation_id)
    assert record.status == NegotiationStatus.COMPLETED
    decision = await service.get_final_decision(config.negotiation_id)
    allocated = {a.counterparty_id for a in decision.recommendation.allocations}
    assert "supplier-3" not in allocated


@pytest.mark.asyncio
async def test_scoring_failure_leaves_negotiation_deciding(settings, config):
    from supplier_negotiation.agents.decision_maker import DecisionError
    from supplier_negotiation.llm.mock_provider import MockProvider
    from supplier_negotiation.models import NegotiationStatus
    from supplier_negotiation.service import NegotiationService

    provider = MockProvider(fail_purposes={"scoring"})
    service = NegotiationService(settings, provider=provider)
    events = []

    with pytest.raises(DecisionError):
        async for event in service.run_negotiation(config):
            events.append(event)

    assert provider.calls.count("scoring") == settings.decision_max_attempts
    assert events[-1].event_type == "error"
    assert events[-1].data["fatal"] is True
    record = await service.get_negotiation(config.negotiation_id)
    assert record.status == NegotiationStatus.DECIDING
    assert record.error
    assert await service.get_final_decision(config.negotiation_id) is None


# ---------------------------------------------------------------------------
# Disruption phase on an existing negotiation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_disruption_phase_runs_extra_rounds(service, config):
    from supplier_negotiation.models import NegotiationStatus, RoundPhase

    config = config.model_copy(update={"disruption": None})
    await _collect(service, config)
    negotiation_id = config.negotiation_id

    result = await service.run_disruption_phase(negotiation_id, counterparty_id="supplier-3", rounds=1)

    assert result.counterparty_id == "supplier-3"
    assert result.analysis is not None
    assert len(result.rounds) == 3
    assert {r.round_number for r in result.rounds} == {4}
    assert {r.phase for r in result.rounds} == {RoundPhase.POST_DISRUPTION}

    record = await service.get_negotiation(negotiation_id)
    assert record.status == NegotiationStatus.COMPLETED
    assert record.disruption_counterparty_id == "supplier-3"
    assert record.current_round == 4

    # Re-entrant: a second phase continues from round 4
    again = await service.run_disruption_phase(negotiation_id, rounds=1)
    assert {r.round_number for r in again.rounds} == {5}


@pytest.mark.asyncio
async def test_disruption_phase_rejects_unknown_counterparty(service, config):
    config = config.model_copy(update={"disruption": None, "max_rounds": 1})
    await _collect(service, config)

    with pytest.raises(ValueError):
        await service.run_disruption_phase(config.negotiation_id, counterparty_id="nobody")


@pytest.mark.asyncio
async def test_disruption_phase_replaces_the_final_decision(service, config):
    config = config.model_copy(update={"disruption": None})
    await _collect(service, config)
    negotiation_id = config.negotiation_id
    before = await service.get_final_decision(negotiation_id)
    winner = before.recommendation.primary_counterparty_id

    result = await service.run_disruption_phase(
        negotiation_id, counterparty_id=winner, capacity_pct=50, rounds=1
    )

    after = await service.get_final_decision(negotiation_id)
    assert after is not None
    assert after == result.decision
    assert after.created_at >= before.created_at
    assert after is not before
    pcts = {a.counterparty_id: a.allocation_pct for a in after.recommendation.allocations}
    assert sum(pcts.values()) == 100
    assert pcts.get(winner, 0) <= 50


@pytest.mark.asyncio
async def test_late_subscriber_follows_disruption_phase_events(service, config):
    config = config.model_copy(update={"disruption": None, "max_rounds": 1})
    await _collect(service, config)
    negotiation_id = config.negotiation_id
    await service.run_disruption_phase(negotiation_id, counterparty_id="supplier-3")

    events = [e async for e in service.event_stream.subscribe(negotiation_id)]
    types = [e.event_type for e in events]

    first_complete = types.index("negotiation_complete")
    assert types.index("disruption_detected") > first_complete
    assert "disruption_analysis" in types[first_complete:]
    assert types.count("decision") == 2
    assert types[-1] == "negotiation_complete"


@pytest.mark.asyncio
async def test_slow_subscriber_is_released_when_the_negotiation_ends(settings, provider, config):
    import asyncio

    from supplier_negotiation.models import NegotiationStatus
    from supplier_negotiation.service import NegotiationService

    service = NegotiationService(
        settings.model_copy(update={"event_queue_size": 4}), provider=provider
    )
    stream = service.run_negotiation(config)

    first = await stream.__anext__()
    await service.tasks[config.negotiation_id]

    async def drain():
        return [event async for event in stream]

    rest = await asyncio.wait_for(drain(), timeout=2)

    assert first.event_type == "negotiation_started"
    assert len(rest) <= 4
    record = await service.get_negotiation(config.negotiation_id)
    assert record.status == NegotiationStatus.COMPLETED


@pytest.mark.asyncio
async def test_event_history_expires_after_completion(settings, provider, config):
    import asyncio

    from supplier_negotiation.service import NegotiationService

    service = NegotiationService(
        settings.model_copy(update={"event_history_ttl_seconds": 0.01}), provider=provider
    )
    await _collect(service, config)
    assert service.event_stream.get_history(config.negotiation_id)

    await asyncio.sleep(0.05)

    assert service.event_stream.get_history(config.negotiation_id) == []
    assert await service.get_final_decision(config.negotiation_id) is not None


@pytest.mark.asyncio
async def test_concurrent_disruption_phases_are_rejected(service, config):
    import asyncio

    from supplier_negotiation.service import NegotiationBusyError

    config = config.model_copy(update={"disruption": None, "max_rounds": 1})
    await _collect(service, config)
    negotiation_id = config.negotiation_id

    results = await asyncio.gather(
        service.run_disruption_phase(negotiation_id, counterparty_id="supplier-2"),
        service.run_disruption_phase(negotiation_id, counterparty_id="supplier-3"),
        return_exceptions=True,
    )

    busy = [r for r in results if isinstance(r, NegotiationBusyError)]
    done = [r for r in results if not isinstance(r, BaseException)]
    assert len(busy) == 1
    assert len(done) == 1
    rounds = await service.list_rounds(negotiation_id)
    assert max(r.round_number for r in rounds) == 2
    assert not service.is_running(negotiation_id)
