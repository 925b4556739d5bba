"""Test fixtures for Supplier Negotiation Crew."""

from __future__ import annotations

import os

import pytest


@pytest.fixture(autouse=True)
def _test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set up test environment variables."""
    monkeypatch.setenv("ENVIRONMENT", "testing")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("LLM_PROVIDER", "mock")
    for key in ("OPENAI_API_KEY", "OPENAI_BASE_URL"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture()
def settings():
    """Create test settings."""
    os.environ.setdefault("ENVIRONMENT", "testing")
    from supplier_negotiation.config import Settings

    return Settings(
        environment="testing",
        log_level="DEBUG",
        llm_provider="mock",
        max_rounds=3,
        disruption_after_round=1,
    )


@pytest.fixture()
def provider():
    """Deterministic offline provider."""
    from supplier_negotiation.llm.mock_provider import MockProvider

    return MockProvider()


@pytest.fixture()
def service(settings, provider):
    """Negotiation service wired to the mock provider."""
    from supplier_negotiation.service import NegotiationService

    return NegotiationService(settings, provider=provider)


@pytest.fixture()
def config():
    """Default three-counterparty negotiation on the sample baseline."""
    from supplier_negotiation.mock_data.baseline import SAMPLE_BASELINE
    from supplier_negotiation.mock_data.counterparties import (
        DEFAULT_COUNTERPARTIES,
        REFERENCE_COUNTERPARTY_ID,
    )
    from supplier_negotiation.models import NegotiationConfig

    return NegotiationConfig(
        baseline_items=list(SAMPLE_BASELINE),
        counterparties=list(DEFAULT_COUNTERPARTIES),
        reference_counterparty_id=REFERENCE_COUNTERPARTY_ID,
    )


@pytest.fixture()
def app(settings, service):
    """Create a test FastAPI application."""
    from supplier_negotiation.api import create_app

    return create_app(settings, service=service)


@pytest.fixture()
def client(app):
    """Create an async test client."""
    from httpx import ASGITransport, AsyncClient

    transport = ASGITransport(app=app)
    return AsyncClient(transport=transport, base_url="http://test")
