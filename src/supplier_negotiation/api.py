"""FastAPI application for the Supplier Negotiation Crew.

Exposes REST endpoints for:
- Starting negotiations and listing them
- SSE streaming of negotiation events
- Final decision retrieval
- Re-entrant disruption phases
- Default counterparties and sample baseline
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
from sse_starlette.sse import EventSourceResponse

from supplier_negotiation.config import Settings
from supplier_negotiation.mock_data.baseline import SAMPLE_BASELINE
from supplier_negotiation.mock_data.counterparties import (
    DEFAULT_COUNTERPARTIES,
    REFERENCE_COUNTERPARTY_ID,
)
from supplier_negotiation.models import (
    BaselineItem,
    CounterpartyProfile,
    DisruptionConfig,
    ErrorResponse,
    HealthResponse,
    NegotiationConfig,
    WeightingProfile,
)
from supplier_negotiation.persistence import NegotiationNotFoundError
from supplier_negotiation.service import NegotiationBusyError, NegotiationService
from supplier_negotiation.tools.calculations import baseline_total
from supplier_negotiation.tools.scoring import WEIGHTING_PROFILES

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class NegotiationCreateRequest(BaseModel):
    """Request body for starting a negotiation.

    Omitted participants and baseline fall back to the built-in sample
    data.
    """

    baseline_items: list[BaselineItem] | None = Field(
        None, description="Reference quotation items (defaults to the sample baseline)."
    )
    counterparties: list[CounterpartyProfile] | None = Field(
        None, description="Participants (defaults to the built-in suppliers)."
    )
    reference_counterparty_id: str | None = Field(
        None, description="Counterparty whose quote produced the baseline."
    )
    max_rounds: int | None = Field(None, ge=1, le=10)
    weighting_profile: WeightingProfile | None = None
    notes: str = Field(default="", description="Buyer priorities passed to every turn.")
    disruption: DisruptionConfig | None = Field(default_factory=DisruptionConfig)
    enable_disruption: bool = True


class DisruptionRequest(BaseModel):
    """Request body for a standalone disruption phase."""

    counterparty_id: str | None = None
    description: str | None = None
    capacity_pct: float | None = Field(None, gt=0, lt=100)
    rounds: int = Field(default=1, ge=1, le=5)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Settings | None = None,
    service: NegotiationService | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or Settings()
    service = service or NegotiationService(settings)

    app = FastAPI(
        title="Supplier Negotiation Crew",
        description=(
            "Multi-round, multi-supplier procurement negotiation powered by "
            "CrewAI-style multi-agent orchestration. Runs parallel negotiation "
            "rounds, absorbs a supply disruption, and commits to a scored, "
            "SKU-level allocation."
        ),
        version=settings.service_version,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.service = service
    app.state.settings = settings

    async def _record_or_404(negotiation_id: str):  # type: ignore[no-untyped-def]
        try:
            return await service.get_negotiation(negotiation_id)
        except NegotiationNotFoundError:
            raise HTTPException(
                status_code=404, detail=f"Negotiation {negotiation_id} not found"
            ) from None

    # -------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            service=settings.service_name,
            version=settings.service_version,
        )

    # -------------------------------------------------------------------
    # Defaults
    # -------------------------------------------------------------------

    @app.get("/api/v1/defaults", tags=["defaults"])
    async def get_defaults() -> dict[str, Any]:
        """Built-in counterparties, sample baseline and weighting profiles."""
        return {
            "counterparties": [c.model_dump(mode="json") for c in DEFAULT_COUNTERPARTIES],
            "reference_counterparty_id": REFERENCE_COUNTERPARTY_ID,
            "baseline_items": [item.model_dump(mode="json") for item in SAMPLE_BASELINE],
            "baseline_total": baseline_total(SAMPLE_BASELINE),
            "weighting_profiles": {
                profile.value: weights for profile, weights in WEIGHTING_PROFILES.items()
            },
            "max_rounds": settings.max_rounds,
        }

    # -------------------------------------------------------------------
    # Negotiations
    # -------------------------------------------------------------------

    @app.post("/api/v1/negotiations", status_code=202, tags=["negotiations"])
    async def create_negotiation(req: NegotiationCreateRequest) -> dict[str, Any]:
        """Start a negotiation.

        The flow runs asynchronously. Use the ``/stream`` endpoint to
        follow progress.
        """
        counterparties = req.counterparties or list(DEFAULT_COUNTERPARTIES)
        reference_id = req.reference_counterparty_id
        if reference_id is None and req.counterparties is None:
            reference_id = REFERENCE_COUNTERPARTY_ID
        try:
            config = NegotiationConfig(
                baseline_items=req.baseline_items or list(SAMPLE_BASELINE),
                counterparties=counterparties,
                reference_counterparty_id=reference_id,
                max_rounds=req.max_rounds,
                weighting_profile=req.weighting_profile
                or WeightingProfile(settings.default_weighting_profile),
                notes=req.notes,
                disruption=req.disruption if req.enable_disruption else None,
            )
        except ValidationError as exc:
            raise HTTPException(
                status_code=422, detail=json.loads(exc.json(include_url=False))
            ) from None

        service.start_negotiation(config)
        logger.info("negotiation_submitted", negotiation_id=config.negotiation_id)
        return {
            "negotiation_id": config.negotiation_id,
            "status": "negotiating",
            "message": "Negotiation started.",
            "stream_url": f"/api/v1/negotiations/{config.negotiation_id}/stream",
        }

    @app.get("/api/v1/negotiations", tags=["negotiations"])
    async def list_negotiations() -> dict[str, Any]:
        """List all negotiations."""
        records = await service.list_negotiations()
        return {
            "negotiations": [
                {
                    "id": r.id,
                    "status": r.status.value,
                    "current_round": r.current_round,
                    "counterparties": [c.id for c in r.config.counterparties],
                    "created_at": r.created_at.isoformat(),
                    "updated_at": r.updated_at.isoformat(),
                }
                for r in records
            ],
            "total": len(records),
        }

    @app.get("/api/v1/negotiations/{negotiation_id}", tags=["negotiations"])
    async def get_negotiation(negotiation_id: str) -> dict[str, Any]:
        """Current state of a negotiation, rounds included."""
        record = await _record_or_404(negotiation_id)
        rounds = await service.list_rounds(negotiation_id)
        return {
            **record.model_dump(mode="json"),
            "running": service.is_running(negotiation_id),
            "rounds": [r.model_dump(mode="json") for r in rounds],
        }

    # -------------------------------------------------------------------
    # SSE streaming
    # -------------------------------------------------------------------

    @app.get("/api/v1/negotiations/{negotiation_id}/stream", tags=["negotiations"])
    async def stream_negotiation(negotiation_id: str) -> EventSourceResponse:
        """SSE stream of negotiation events."""
        if not service.is_running(negotiation_id):
            await _record_or_404(negotiation_id)

        async def event_generator():  # type: ignore[no-untyped-def]
            async for event in service.event_stream.subscribe(negotiation_id):
                yield {
                    "event": event.event_type,
                    "data": json.dumps(event.model_dump(mode="json"), default=str),
                }

        return EventSourceResponse(event_generator())

    # -------------------------------------------------------------------
    # Decision
    # -------------------------------------------------------------------

    @app.get("/api/v1/negotiations/{negotiation_id}/decision", tags=["decision"])
    async def get_decision(negotiation_id: str) -> dict[str, Any]:
        """The final decision; 409 while none has been produced."""
        record = await _record_or_404(negotiation_id)
        decision = await service.get_final_decision(negotiation_id)
        if decision is None:
            raise HTTPException(
                status_code=409,
                detail=(
                    f"Negotiation is in state '{record.status.value}', "
                    "no decision available yet."
                ),
            )
        return decision.model_dump(mode="json")

    # -------------------------------------------------------------------
    # Disruption
    # -------------------------------------------------------------------

    @app.post("/api/v1/negotiations/{negotiation_id}/disruption", tags=["disruption"])
    async def run_disruption(negotiation_id: str, req: DisruptionRequest) -> dict[str, Any]:
        """Inject a disruption and run post-disruption rounds."""
        if service.is_running(negotiation_id):
            raise HTTPException(
                status_code=409,
                detail="Negotiation is still running; wait for it to finish.",
            )
        await _record_or_404(negotiation_id)
        try:
            result = await service.run_disruption_phase(
                negotiation_id,
                counterparty_id=req.counterparty_id,
                description=req.description,
                rounds=req.rounds,
                capacity_pct=req.capacity_pct,
            )
        except NegotiationBusyError:
            raise HTTPException(
                status_code=409,
                detail="Negotiation is still running; wait for it to finish.",
            ) from None
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from None
        return result.model_dump(mode="json")

    # -------------------------------------------------------------------
    # Error handlers
    # -------------------------------------------------------------------

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Catch-all error handler."""
        logger.error(
            "unhandled_exception", error=str(exc), path=request.url.path
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="Internal server error",
                detail=str(exc),
                status_code=500,
            ).model_dump(),
        )

    return app
