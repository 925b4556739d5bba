"""Tests for the model access layer: rate limiting, usage, gateway."""

from __future__ import annotations

import asyncio

import pytest


@pytest.mark.asyncio
async def test_rate_limiter_caps_concurrency_per_tier():
    from supplier_negotiation.llm.rate_limiter import ModelRateLimiter
    from supplier_negotiation.models import ModelTier

    limiter = ModelRateLimiter(fast_limit=2, reasoning_limit=1)
    peak = {ModelTier.FAST: 0, ModelTier.REASONING: 0}

    async def call(tier: ModelTier) -> None:
        async with limiter.slot(tier):
            peak[tier] = max(peak[tier], limiter.in_flight(tier))
            await asyncio.sleep(0.01)

    await asyncio.gather(
        *(call(ModelTier.FAST) for _ in range(6)),
        *(call(ModelTier.REASONING) for _ in range(3)),
    )

    assert peak[ModelTier.FAST] == 2
    assert peak[ModelTier.REASONING] == 1
    assert limiter.in_flight(ModelTier.FAST) == 0


@pytest.mark.asyncio
async def test_rate_limiter_releases_slot_on_failure():
    from supplier_negotiation.llm.rate_limiter import ModelRateLimiter
    from supplier_negotiation.models import ModelTier

    limiter = ModelRateLimiter(fast_limit=1, reasoning_limit=1)

    with pytest.raises(RuntimeError):
        async with limiter.slot(ModelTier.FAST):
            raise RuntimeError("boom")

    assert limiter.in_flight(ModelTier.FAST) == 0
    async with limiter.slot(ModelTier.FAST):
        assert limiter.in_flight(ModelTier.FAST) == 1


def test_rate_limiter_rejects_zero_limit():
    from supplier_negotiation.llm.rate_limiter import ModelRateLimiter

    with pytest.raises(ValueError):
        ModelRateLimiter(fast_limit=0)


def test_usage_tracker_prices_known_and_unknown_models():
    from supplier_negotiation.llm.usage import UsageTracker

    usage = UsageTracker("neg-1")
    usage.track("gpt-4o-mini", 1_000_000, 0)
    usage.track("gpt-4o-mini", 0, 1_000_000)
    usage.track("some-local-model", 1_000_000, 1_000_000)
    summary = usage.summary()

    assert summary.total_calls == 3
    assert summary.by_model["gpt-4o-mini"].cost_usd == pytest.approx(0.75)
    assert summary.by_model["some-local-model"].cost_usd == pytest.approx(6.0)
    assert summary.total_cost_usd == pytest.approx(6.75)


def test_usage_tracker_resumes_from_summary():
    from supplier_negotiation.llm.usage import UsageTracker

    first = UsageTracker("neg-1")
    first.track("gpt-4o", 100, 50)
    resumed = UsageTracker.resume("neg-1", first.summary())
    resumed.track("gpt-4o", 100, 50)

    assert resumed.summary().total_calls == 2
    assert resumed.summary().total_input_tokens == 200


@pytest.mark.asyncio
async def test_gateway_tracks_usage_and_routes_tiers(settings, provider):
    from supplier_negotiation.llm.provider import ModelGateway
    from supplier_negotiation.llm.rate_limiter import ModelRateLimiter
    from supplier_negotiation.llm.usage import UsageTracker
    from supplier_negotiation.models import ModelTier

    gateway = ModelGateway(provider, ModelRateLimiter(), settings)
    usage = UsageTracker("neg-1")

    text = await gateway.complete(
        purpose="pillar:risk",
        tier=ModelTier.FAST,
        system="context",
        messages=[{"role": "user", "content": "Assess."}],
        usage=usage,
    )

    assert text
    assert gateway.model_for(ModelTier.REASONING) == settings.reasoning_model
    assert usage.summary().by_model[settings.fast_model].calls == 1


@pytest.mark.asyncio
async def test_mock_provider_fails_whole_purpose_family():
    from supplier_negotiation.llm.mock_provider import MockProvider
    from supplier_negotiation.llm.provider import CompletionError

    provider = MockProvider(fail_purposes={"pillar"})

    with pytest.raises(CompletionError):
        await provider.complete(
            purpose="pillar:cost",
            model="m",
            system="",
            messages=[],
            max_tokens=10,
            temperature=0.0,
        )
    result = await provider.complete(
        purpose="synthesis",
        model="m",
        system="",
        messages=[],
        max_tokens=10,
        temperature=0.0,
    )
    assert result.text


def test_build_provider_requires_key_for_openai(settings):
    from supplier_negotiation.llm.provider import build_provider

    with pytest.raises(ValueError):
        build_provider(settings.model_copy(update={"llm_provider": "openai", "openai_api_key": None}))
