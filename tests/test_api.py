"""API endpoint tests for Supplier Negotiation Crew."""

from __future__ import annotations

import pytest


async def _create(client, **body):
    resp = await client.post("/api/v1/negotiations", json=body)
    assert resp.status_code == 202
    return resp.json()["negotiation_id"]


@pytest.mark.asyncio
async def test_health(client):
    """Health endpoint returns service info."""
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["service"] == "supplier-negotiation-crew"


@pytest.mark.asyncio
async def test_defaults(client):
    """Built-in counterparties and the sample baseline."""
    resp = await client.get("/api/v1/defaults")
    assert resp.status_code == 200
    data = resp.json()
    assert len(data["counterparties"]) == 3
    assert data["reference_counterparty_id"] == "supplier-1"
    assert data["baseline_total"] == 87_150.0
    assert "balanced" in data["weighting_profiles"]


@pytest.mark.asyncio
async def test_create_negotiation(client, service):
    """Start a negotiation with default participants."""
    resp = await client.post("/api/v1/negotiations", json={"max_rounds": 2})
    assert resp.status_code == 202
    data = resp.json()
    assert "negotiation_id" in data
    assert data["stream_url"].endswith("/stream")

    state = await service.tasks[data["negotiation_id"]]
    assert state.reference_id == "supplier-1"
    assert state.decision is not None


@pytest.mark.asyncio
async def test_create_negotiation_rejects_unknown_reference(client):
    resp = await client.post(
        "/api/v1/negotiations",
        json={"reference_counterparty_id": "nobody"},
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_negotiation_lifecycle(client, service):
    """Create, wait for completion, then read the record and decision."""
    negotiation_id = await _create(client, max_rounds=2)
    await service.tasks[negotiation_id]

    resp = await client.get(f"/api/v1/negotiations/{negotiation_id}")
    assert resp.status_code == 200
    data = resp.json()
    assert data["id"] == negotiation_id
    assert data["status"] == "completed"
    assert data["running"] is False
    assert len(data["rounds"]) == 6

    resp = await client.get(f"/api/v1/negotiations/{negotiation_id}/decision")
    assert resp.status_code == 200
    decision = resp.json()
    pcts = [a["allocation_pct"] for a in decision["recommendation"]["allocations"]]
    assert sum(pcts) == 100

    resp = await client.get("/api/v1/negotiations")
    assert resp.status_code == 200
    listed = resp.json()
    assert negotiation_id in [n["id"] for n in listed["negotiations"]]


@pytest.mark.asyncio
async def test_get_nonexistent_negotiation(client):
    """404 for unknown negotiation."""
    resp = await client.get("/api/v1/negotiations/nonexistent-id")
    assert resp.status_code == 404
    resp = await client.get("/api/v1/negotiations/nonexistent-id/decision")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_decision_conflict_while_undecided(settings):
    """409 when the negotiation never produced a decision."""
    from httpx import ASGITransport, AsyncClient

    from supplier_negotiation.agents.decision_maker import DecisionError
    from supplier_negotiation.api import create_app
    from supplier_negotiation.llm.mock_provider import MockProvider
    from supplier_negotiation.service import NegotiationService

    service = NegotiationService(settings, provider=MockProvider(fail_purposes={"scoring"}))
    app = create_app(settings, service=service)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        negotiation_id = await _create(client, max_rounds=1, enable_disruption=False)
        with pytest.raises(DecisionError):
            await service.tasks[negotiation_id]

        resp = await client.get(f"/api/v1/negotiations/{negotiation_id}/decision")
        assert resp.status_code == 409
        resp = await client.get(f"/api/v1/negotiations/{negotiation_id}")
        assert resp.json()["status"] == "deciding"


@pytest.mark.asyncio
async def test_disruption_phase_endpoint(client, service):
    negotiation_id = await _create(client, max_rounds=1, enable_disruption=False)

    resp = await client.post(f"/api/v1/negotiations/{negotiation_id}/disruption", json={})
    assert resp.status_code == 409

    await service.tasks[negotiation_id]

    resp = await client.post(
        f"/api/v1/negotiations/{negotiation_id}/disruption",
        json={"counterparty_id": "supplier-3", "capacity_pct": 50},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["counterparty_id"] == "supplier-3"
    assert len(data["rounds"]) == 3
    assert "50%" in data["description"]
    assert data["decision"] is not None

    resp = await client.get(f"/api/v1/negotiations/{negotiation_id}/decision")
    assert resp.json() == data["decision"]

    resp = await client.post(
        f"/api/v1/negotiations/{negotiation_id}/disruption",
        json={"counterparty_id": "nobody"},
    )
    assert resp.status_code == 400
