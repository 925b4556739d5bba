"""Round Scheduler - one counterparty's turn within one round.

A turn drafts the buyer's message, gets the counterparty's reply,
normalizes the offer and seals the round. Failures are contained at the
turn boundary: they become an ``error`` event and a failed round, and
never disturb sibling turns of the same wave.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from supplier_negotiation.agents.counterparty import (
    CounterpartyAgent,
    CounterpartyRequest,
    restate_baseline_quote,
)
from supplier_negotiation.agents.offer_extractor import (
    CounterpartyDefaults,
    OfferExtractorAgent,
    baseline_offer,
)
from supplier_negotiation.agents.pillars import PillarAgent
from supplier_negotiation.agents.synthesizer import SynthesizerAgent
from supplier_negotiation.config import Settings
from supplier_negotiation.crews.turn_drafter import TurnDrafter
from supplier_negotiation.flow.state import NegotiationFlowState
from supplier_negotiation.flow.task_group import run_all
from supplier_negotiation.llm.usage import UsageTracker
from supplier_negotiation.models import (
    ConversationTurn,
    CounterpartyProfile,
    NegotiationRound,
    RoundPhase,
    RoundStatus,
    StructuredOffer,
    TurnRole,
)
from supplier_negotiation.persistence import NegotiationRepository
from supplier_negotiation.streaming import (
    EVENT_CONTEXT_BUILT,
    EVENT_ERROR,
    EVENT_MESSAGE,
    EVENT_OFFER_EXTRACTED,
    EVENT_ROUND_END,
    EVENT_ROUND_START,
    NegotiationEventStream,
)
from supplier_negotiation.tools.context_tools import NegotiationContext, build_pillar_contexts

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TurnRequest:
    """Inputs of one turn, captured when its wave starts."""

    counterparty: CounterpartyProfile
    round_number: int
    phase: RoundPhase
    history: list[ConversationTurn] = field(default_factory=list)
    offers: dict[str, StructuredOffer] = field(default_factory=dict)
    is_reference: bool = False
    disruption: str | None = None


class RoundScheduler:
    """Executes turns and waves of turns for the orchestrator."""

    def __init__(
        self,
        pillars: list[PillarAgent],
        synthesizer: SynthesizerAgent,
        counterparty_agent: CounterpartyAgent,
        extractor: OfferExtractorAgent,
        repository: NegotiationRepository,
        event_stream: NegotiationEventStream,
        settings: Settings,
    ) -> None:
        self.pillars = pillars
        self.synthesizer = synthesizer
        self.counterparty_agent = counterparty_agent
        self.extractor = extractor
        self.repository = repository
        self.event_stream = event_stream
        self.settings = settings

    # ------------------------------------------------------------------
    # Waves
    # ------------------------------------------------------------------

    async def run_wave(
        self,
        state: NegotiationFlowState,
        counterparty_ids: list[str],
        round_number: int,
        phase: RoundPhase,
        usage: UsageTracker,
    ) -> dict[str, NegotiationRound]:
        """Run one turn per counterparty concurrently.

        Every turn sees the offers as they stood when the wave started.

        Returns:
            Counterparty id -> sealed round (complete or failed).
        """
        profiles = state.profiles
        offers = dict(state.offers)
        tasks = {
            cid: self.run_turn(
                state,
                TurnRequest(
                    counterparty=profiles[cid],
                    round_number=round_number,
                    phase=phase,
                    history=list(state.histories.get(cid, [])),
                    offers=offers,
                    is_reference=cid == state.reference_id,
                    disruption=state.disruption_for(cid),
                ),
                usage,
            )
            for cid in counterparty_ids
        }
        outcomes = await run_all(tasks)

        rounds: dict[str, NegotiationRound] = {}
        for outcome in outcomes:
            if outcome.ok and outcome.value is not None:
                rounds[outcome.key] = outcome.value
            else:
                # run_turn contains its own failures; this is a last resort
                logger.error(
                    "turn_task_crashed",
                    negotiation_id=state.negotiation_id,
                    counterparty_id=outcome.key,
                    error=str(outcome.error),
                )
        return rounds

    # ------------------------------------------------------------------
    # Single turn
    # ------------------------------------------------------------------

    async def run_turn(
        self,
        state: NegotiationFlowState,
        request: TurnRequest,
        usage: UsageTracker,
    ) -> NegotiationRound:
        """Execute one turn and seal its round. Never raises for turn failures."""
        negotiation_round = NegotiationRound(
            negotiation_id=state.negotiation_id,
            counterparty_id=request.counterparty.id,
            round_number=request.round_number,
            phase=request.phase,
        )
        try:
            return await self._execute(state, request, negotiation_round, usage)
        except Exception as exc:
            logger.error(
                "round_failed",
                negotiation_id=state.negotiation_id,
                counterparty_id=request.counterparty.id,
                round_number=request.round_number,
                error=str(exc),
            )
            negotiation_round.status = RoundStatus.FAILED
            negotiation_round.error = str(exc)
            negotiation_round.completed_at = datetime.now(tz=timezone.utc)
            await self.repository.save_round(negotiation_round)
            await self.event_stream.emit(
                state.negotiation_id,
                EVENT_ERROR,
                data={"error": str(exc), "fatal": False, "phase": request.phase.value},
                message=f"Round {request.round_number} with {request.counterparty.name} failed: {exc}",
                counterparty_id=request.counterparty.id,
                round_number=request.round_number,
            )
            return negotiation_round

    async def _execute(
        self,
        state: NegotiationFlowState,
        request: TurnRequest,
        negotiation_round: NegotiationRound,
        usage: UsageTracker,
    ) -> NegotiationRound:
        profile = request.counterparty
        negotiation_id = state.negotiation_id
        total_rounds = state.max_rounds
        opening_reference = request.is_reference and request.round_number == 1

        await self.repository.save_round(negotiation_round)
        await self.event_stream.emit(
            negotiation_id,
            EVENT_ROUND_START,
            data={"phase": request.phase.value, "round_id": negotiation_round.id},
            message=f"Round {request.round_number} with {profile.name} started.",
            counterparty_id=profile.id,
            round_number=request.round_number,
        )

        # Step 1: context
        ctx = NegotiationContext(
            counterparty=profile,
            profiles=state.counterparties,
            baseline=state.baseline,
            offers=request.offers,
            history=request.history,
            round_number=request.round_number,
            total_rounds=total_rounds,
            notes=state.notes,
            annual_rate=self.settings.annual_capital_rate,
        )
        contexts = build_pillar_contexts(ctx)
        await self.event_stream.emit(
            negotiation_id,
            EVENT_CONTEXT_BUILT,
            data=contexts.summary,
            message=f"Context ready for {profile.name}.",
            counterparty_id=profile.id,
            round_number=request.round_number,
        )

        # Step 2: outbound message
        drafter = TurnDrafter(
            self.pillars,
            self.synthesizer,
            output_event_chars=self.settings.pillar_output_event_chars,
        )
        draft = await drafter.kickoff(
            ctx,
            negotiation_id,
            self.event_stream,
            usage,
            is_reference=request.is_reference,
            contexts=contexts,
        )
        outbound = ConversationTurn(
            role=TurnRole.INITIATOR,
            content=draft.message,
            round_number=request.round_number,
        )
        negotiation_round.turns.append(outbound)
        await self.event_stream.emit(
            negotiation_id,
            EVENT_MESSAGE,
            data={"role": TurnRole.INITIATOR.value, "content": draft.message},
            message=f"Buyer message to {profile.name}.",
            counterparty_id=profile.id,
            round_number=request.round_number,
        )

        # Step 3: counterparty reply
        if opening_reference:
            reply = restate_baseline_quote(profile, state.baseline)
        else:
            reply = await self.counterparty_agent.respond(
                CounterpartyRequest(
                    profile=profile,
                    baseline=state.baseline,
                    history=[*request.history, outbound],
                    round_number=request.round_number,
                    total_rounds=total_rounds,
                    disruption=request.disruption,
                    quote_request=request.round_number == 1 and not request.is_reference,
                ),
                usage,
            )
        inbound = ConversationTurn(
            role=TurnRole.COUNTERPARTY,
            content=reply,
            round_number=request.round_number,
        )
        negotiation_round.turns.append(inbound)
        await self.event_stream.emit(
            negotiation_id,
            EVENT_MESSAGE,
            data={"role": TurnRole.COUNTERPARTY.value, "content": reply},
            message=f"{profile.name} replied.",
            counterparty_id=profile.id,
            round_number=request.round_number,
        )

        # Step 4: structured offer
        defaults = CounterpartyDefaults.from_profile(profile)
        if opening_reference:
            offer = baseline_offer(state.baseline, defaults)
        else:
            offer = await self.extractor.extract(
                reply, state.baseline, defaults, usage, counterparty_id=profile.id
            )
        await self.event_stream.emit(
            negotiation_id,
            EVENT_OFFER_EXTRACTED,
            data={"offer": offer.model_dump(mode="json")},
            message=f"{profile.name} offer: ${offer.total_cost:,.2f}.",
            counterparty_id=profile.id,
            round_number=request.round_number,
        )

        # Step 5: seal
        negotiation_round.offer = offer
        negotiation_round.status = RoundStatus.COMPLETE
        negotiation_round.completed_at = datetime.now(tz=timezone.utc)
        await self.repository.save_round(negotiation_round)
        await self.event_stream.emit(
            negotiation_id,
            EVENT_ROUND_END,
            data={
                "round_id": negotiation_round.id,
                "total_cost": offer.total_cost,
                "failed_pillars": draft.failed_pillars,
            },
            message=f"Round {request.round_number} with {profile.name} sealed.",
            counterparty_id=profile.id,
            round_number=request.round_number,
        )
        logger.info(
            "round_sealed",
            negotiation_id=negotiation_id,
            counterparty_id=profile.id,
            round_number=request.round_number,
            total_cost=offer.total_cost,
        )
        return negotiation_round
