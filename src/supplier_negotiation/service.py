"""Negotiation service facade.

Wires provider, rate limiter, repository, event stream and flow together
and exposes the operations collaborators call: run a negotiation as a
stream of events, run a disruption phase on an existing negotiation,
and re-fetch a final decision.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

import structlog

from supplier_negotiation.agents.counterparty import CounterpartyAgent
from supplier_negotiation.config import Settings
from supplier_negotiation.flow.negotiation_flow import NegotiationFlow
from supplier_negotiation.flow.state import NegotiationFlowState
from supplier_negotiation.llm.provider import CompletionProvider, ModelGateway, build_provider
from supplier_negotiation.llm.rate_limiter import ModelRateLimiter
from supplier_negotiation.models import (
    DisruptionPhaseResult,
    FinalDecision,
    NegotiationConfig,
    NegotiationEvent,
    NegotiationRecord,
    NegotiationRound,
)
from supplier_negotiation.persistence import InMemoryNegotiationRepository, NegotiationRepository
from supplier_negotiation.streaming import NegotiationEventStream

logger = structlog.get_logger(__name__)


class NegotiationBusyError(RuntimeError):
    """The negotiation is still running or already in a disruption phase."""

    def __init__(self, negotiation_id: str) -> None:
        super().__init__(f"Negotiation {negotiation_id} is still running")
        self.negotiation_id = negotiation_id


class NegotiationService:
    """Entry point for running and querying negotiations."""

    def __init__(
        self,
        settings: Settings,
        provider: CompletionProvider | None = None,
        repository: NegotiationRepository | None = None,
        event_stream: NegotiationEventStream | None = None,
        counterparty_agent: CounterpartyAgent | None = None,
    ) -> None:
        self.settings = settings
        self.limiter = ModelRateLimiter(
            fast_limit=settings.fast_tier_concurrency,
            reasoning_limit=settings.reasoning_tier_concurrency,
        )
        self.gateway = ModelGateway(provider or build_provider(settings), self.limiter, settings)
        self.repository = repository or InMemoryNegotiationRepository()
        self.event_stream = event_stream or NegotiationEventStream(settings.event_queue_size)
        self.flow = NegotiationFlow(
            self.gateway,
            self.repository,
            self.event_stream,
            settings,
            counterparty_agent=counterparty_agent,
        )
        self.tasks: dict[str, asyncio.Task[NegotiationFlowState]] = {}
        self._active_phases: set[str] = set()

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def start_negotiation(self, config: NegotiationConfig) -> asyncio.Task[NegotiationFlowState]:
        """Launch the flow in a background task and return the task."""
        negotiation_id = config.negotiation_id
        task = asyncio.create_task(self.flow.run(config), name=f"negotiation-{negotiation_id}")

        def _on_done(finished: asyncio.Task[NegotiationFlowState]) -> None:
            if not finished.cancelled() and finished.exception() is not None:
                logger.error(
                    "negotiation_task_failed",
                    negotiation_id=negotiation_id,
                    error=str(finished.exception()),
                )
            self._finish_stream(negotiation_id)

        task.add_done_callback(_on_done)
        self.tasks[negotiation_id] = task
        return task

    async def run_negotiation(self, config: NegotiationConfig) -> AsyncIterator[NegotiationEvent]:
        """Run a negotiation and yield its lifecycle events.

        The stream ends with ``negotiation_complete``, or with a fatal
        ``error`` event after which the failure is re-raised. Abandoning
        the iterator early stops delivery only; the negotiation keeps
        running to completion.
        """
        task = self.start_negotiation(config)
        async for event in self.event_stream.subscribe(config.negotiation_id):
            yield event
        await task

    def is_running(self, negotiation_id: str) -> bool:
        """Whether the negotiation or a disruption phase on it is in progress."""
        if negotiation_id in self._active_phases:
            return True
        task = self.tasks.get(negotiation_id)
        return task is not None and not task.done()

    async def run_disruption_phase(
        self,
        negotiation_id: str,
        counterparty_id: str | None = None,
        description: str | None = None,
        rounds: int | None = None,
        capacity_pct: float | None = None,
    ) -> DisruptionPhaseResult:
        """Inject a disruption and run post-disruption rounds. Re-entrant.

        Raises:
            NegotiationBusyError: The negotiation or another phase on it
                is still running.
        """
        # Claimed before the first await so concurrent callers see it
        if self.is_running(negotiation_id):
            raise NegotiationBusyError(negotiation_id)
        self._active_phases.add(negotiation_id)
        try:
            return await self.flow.run_disruption_phase(
                negotiation_id,
                counterparty_id=counterparty_id,
                description=description,
                rounds=rounds,
                capacity_pct=capacity_pct,
            )
        finally:
            self._active_phases.discard(negotiation_id)
            self._finish_stream(negotiation_id)

    def _finish_stream(self, negotiation_id: str) -> None:
        self.event_stream.close(negotiation_id)
        self.event_stream.expire(negotiation_id, self.settings.event_history_ttl_seconds)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_final_decision(self, negotiation_id: str) -> FinalDecision | None:
        """The committed decision, or ``None`` while none exists."""
        return await self.repository.get_decision(negotiation_id)

    async def get_negotiation(self, negotiation_id: str) -> NegotiationRecord:
        return await self.repository.get_negotiation(negotiation_id)

    async def list_negotiations(self) -> list[NegotiationRecord]:
        return await self.repository.list_negotiations()

    async def list_rounds(self, negotiation_id: str) -> list[NegotiationRound]:
        return await self.repository.list_rounds(negotiation_id)
