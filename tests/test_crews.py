"""Crew and agent tests for Supplier Negotiation Crew."""

from __future__ import annotations

import pytest


def _gateway(settings, provider):
    from supplier_negotiation.llm.provider import ModelGateway
    from supplier_negotiation.llm.rate_limiter import ModelRateLimiter

    return ModelGateway(provider, ModelRateLimiter(), settings)


def _context(round_number: int = 1):
    from supplier_negotiation.mock_data.baseline import SAMPLE_BASELINE
    from supplier_negotiation.mock_data.counterparties import DEFAULT_COUNTERPARTIES
    from supplier_negotiation.tools.context_tools import NegotiationContext

    return NegotiationContext(
        counterparty=DEFAULT_COUNTERPARTIES[1],
        profiles=list(DEFAULT_COUNTERPARTIES),
        baseline=list(SAMPLE_BASELINE),
        offers={},
        history=[],
        round_number=round_number,
        total_rounds=3,
    )


def _drafter(settings, provider):
    from supplier_negotiation.agents.pillars import default_pillars
    from supplier_negotiation.agents.synthesizer import SynthesizerAgent
    from supplier_negotiation.crews.turn_drafter import TurnDrafter

    gateway = _gateway(settings, provider)
    return TurnDrafter(default_pillars(gateway), SynthesizerAgent(gateway))


# ---------------------------------------------------------------------------
# Turn drafter
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_turn_drafter_runs_all_pillars(settings, provider):
    from supplier_negotiation.crews.turn_drafter import DrafterState
    from supplier_negotiation.llm.usage import UsageTracker
    from supplier_negotiation.streaming import NegotiationEventStream

    stream = NegotiationEventStream()
    drafter = _drafter(settings, provider)

    result = await drafter.kickoff(_context(), "neg-1", stream, UsageTracker("neg-1"))

    assert result.message
    assert result.failed_pillars == []
    assert drafter.state == DrafterState.DONE
    types = [e.event_type for e in stream.get_history("neg-1")]
    assert types.count("pillar_started") == 3
    assert types.count("pillar_complete") == 3
    assert {"pillar:strategy", "pillar:risk", "pillar:cost", "synthesis"} <= set(provider.calls)


@pytest.mark.asyncio
async def test_turn_drafter_survives_pillar_failures(settings):
    """Every pillar failing still yields a message from fallback briefs."""
    from supplier_negotiation.llm.mock_provider import MockProvider
    from supplier_negotiation.llm.usage import UsageTracker
    from supplier_negotiation.streaming import NegotiationEventStream

    provider = MockProvider(fail_purposes={"pillar"})
    stream = NegotiationEventStream()
    drafter = _drafter(settings, provider)

    result = await drafter.kickoff(_context(), "neg-1", stream, UsageTracker("neg-1"))

    assert result.message
    assert sorted(result.failed_pillars) == ["cost", "risk", "strategy"]
    completes = [e for e in stream.get_history("neg-1") if e.event_type == "pillar_complete"]
    assert all(e.data["failed"] for e in completes)


@pytest.mark.asyncio
async def test_turn_drafter_synthesis_failure_propagates(settings):
    from supplier_negotiation.agents.synthesizer import SynthesisError
    from supplier_negotiation.crews.turn_drafter import DrafterState
    from supplier_negotiation.llm.mock_provider import MockProvider
    from supplier_negotiation.llm.usage import UsageTracker
    from supplier_negotiation.streaming import NegotiationEventStream

    drafter = _drafter(settings, MockProvider(fail_purposes={"synthesis"}))

    with pytest.raises(SynthesisError):
        await drafter.kickoff(_context(), "neg-1", NegotiationEventStream(), UsageTracker("neg-1"))
    assert drafter.state == DrafterState.FAILED


# ---------------------------------------------------------------------------
# Counterparty agent
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_simulated_counterparty_reveals_disruption(settings, provider):
    from supplier_negotiation.agents.counterparty import (
        CounterpartyRequest,
        SimulatedCounterpartyAgent,
        disruption_condition,
    )
    from supplier_negotiation.llm.usage import UsageTracker
    from supplier_negotiation.mock_data.baseline import SAMPLE_BASELINE
    from supplier_negotiation.mock_data.counterparties import get_counterparty

    agent = SimulatedCounterpartyAgent(_gateway(settings, provider), settings)
    request = CounterpartyRequest(
        profile=get_counterparty("supplier-3"),
        baseline=list(SAMPLE_BASELINE),
        history=[],
        round_number=2,
        total_rounds=3,
        disruption=disruption_condition(60),
    )

    system = agent.build_system_prompt(request)
    reply = await agent.respond(request, UsageTracker("neg-1"))

    assert "<urgent_situation>" in system
    assert "60%" in reply
    assert "JKT-100 at $" in reply


@pytest.mark.asyncio
async def test_counterparty_provider_failure_raises(settings):
    from supplier_negotiation.agents.counterparty import (
        CounterpartyError,
        CounterpartyRequest,
        SimulatedCounterpartyAgent,
    )
    from supplier_negotiation.llm.mock_provider import MockProvider
    from supplier_negotiation.llm.usage import UsageTracker
    from supplier_negotiation.mock_data.baseline import SAMPLE_BASELINE
    from supplier_negotiation.mock_data.counterparties import get_counterparty

    gateway = _gateway(settings, MockProvider(fail_purposes={"counterparty"}))
    agent = SimulatedCounterpartyAgent(gateway, settings)

    with pytest.raises(CounterpartyError):
        await agent.respond(
            CounterpartyRequest(
                profile=get_counterparty("supplier-2"),
                baseline=list(SAMPLE_BASELINE),
                history=[],
                round_number=1,
                total_rounds=3,
                quote_request=True,
            ),
            UsageTracker("neg-1"),
        )


# ---------------------------------------------------------------------------
# Task group
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_all_isolates_failures():
    from supplier_negotiation.flow.task_group import run_all

    async def ok() -> int:
        return 1

    async def broken() -> int:
        raise ValueError("nope")

    outcomes = await run_all({"a": ok(), "b": broken(), "c": ok()})

    assert [o.key for o in outcomes] == ["a", "b", "c"]
    assert [o.ok for o in outcomes] == [True, False, True]
    assert isinstance(outcomes[1].error, ValueError)
    assert outcomes[2].value == 1
