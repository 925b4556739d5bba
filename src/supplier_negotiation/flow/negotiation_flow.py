"""Negotiation Flow - the orchestrator state machine.

Drives one negotiation from initialization through the final decision::

    init -> wave_1 (non-reference) -> wave_2 (reference)      [round 1]
         -> convergence_check -> round ... round              [rounds 2..N]
                  |
                  +-> disruption_checkpoint -> disruption_analysis
                            -> post_disruption rounds
         -> deciding -> complete

Rounds for one counterparty are strictly sequential: round N+1 starts
from round N's sealed offer. The full round budget is always used.
"""

from __future__ import annotations

import structlog

from supplier_negotiation.agents.counterparty import (
    CounterpartyAgent,
    SimulatedCounterpartyAgent,
    disruption_condition,
)
from supplier_negotiation.agents.decision_maker import DecisionError, DecisionMakerAgent
from supplier_negotiation.agents.offer_extractor import OfferExtractorAgent
from supplier_negotiation.agents.pillars import default_pillars
from supplier_negotiation.agents.synthesizer import SynthesizerAgent
from supplier_negotiation.config import Settings
from supplier_negotiation.flow.conditions import (
    is_disruption_checkpoint,
    pick_disruption_target,
    should_continue,
    split_waves,
)
from supplier_negotiation.flow.round_scheduler import RoundScheduler
from supplier_negotiation.flow.state import FlowStage, NegotiationFlowState, RoundFailure
from supplier_negotiation.llm.provider import ModelGateway
from supplier_negotiation.llm.usage import UsageTracker
from supplier_negotiation.models import (
    DisruptionAnalysis,
    DisruptionPhaseResult,
    NegotiationConfig,
    NegotiationRecord,
    NegotiationRound,
    NegotiationStatus,
    RoundPhase,
    RoundStatus,
)
from supplier_negotiation.persistence import NegotiationRepository, latest_offers
from supplier_negotiation.streaming import (
    EVENT_COUNTERPARTY_STARTED,
    EVENT_COUNTERPARTY_WAITING,
    EVENT_DECISION,
    EVENT_DISRUPTION_ANALYSIS,
    EVENT_DISRUPTION_DETECTED,
    EVENT_ERROR,
    EVENT_GENERATING_DECISION,
    EVENT_NEGOTIATION_COMPLETE,
    EVENT_NEGOTIATION_STARTED,
    EVENT_OFFERS_SNAPSHOT,
    EVENT_ROUND_ANALYSIS,
    NegotiationEventStream,
)
from supplier_negotiation.tools.calculations import baseline_total, dedupe_baseline_items
from supplier_negotiation.tools.context_tools import detect_price_discrepancy
from supplier_negotiation.tools.scoring import score_offers

logger = structlog.get_logger(__name__)


class NegotiationFlow:
    """Event-driven orchestration for one or more negotiations.

    Each step transitions the flow state, emits events, and delegates
    work to the round scheduler or the decision maker. Instances hold no
    per-negotiation state and can run several negotiations at once.
    """

    def __init__(
        self,
        gateway: ModelGateway,
        repository: NegotiationRepository,
        event_stream: NegotiationEventStream,
        settings: Settings,
        counterparty_agent: CounterpartyAgent | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.event_stream = event_stream
        self.decision_maker = DecisionMakerAgent(gateway, settings)
        self.scheduler = RoundScheduler(
            pillars=default_pillars(gateway),
            synthesizer=SynthesizerAgent(gateway),
            counterparty_agent=counterparty_agent or SimulatedCounterpartyAgent(gateway, settings),
            extractor=OfferExtractorAgent(gateway, settings),
            repository=repository,
            event_stream=event_stream,
            settings=settings,
        )

    def _initial_state(self, config: NegotiationConfig) -> NegotiationFlowState:
        return NegotiationFlowState(
            negotiation_id=config.negotiation_id,
            baseline=dedupe_baseline_items(config.baseline_items),
            counterparties=list(config.counterparties),
            reference_id=config.reference_counterparty_id,
            max_rounds=config.max_rounds or self.settings.max_rounds,
            weighting_profile=config.weighting_profile,
            notes=config.notes,
            histories={c.id: [] for c in config.counterparties},
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self, config: NegotiationConfig) -> NegotiationFlowState:
        """Run a complete negotiation.

        Args:
            config: Participants, baseline and policy for this run.

        Returns:
            The final :class:`NegotiationFlowState`, decision included.

        Raises:
            DecisionError: Scoring exhausted its attempts. The record is
                left in ``deciding`` for inspection.
            Exception: Any other fatal failure; the record is marked
                ``failed``.
        """
        state = self._initial_state(config)
        usage = UsageTracker(state.negotiation_id)

        try:
            await self.repository.create_negotiation(
                NegotiationRecord(id=state.negotiation_id, config=config)
            )
            await self._start(state)

            round_number = 1
            while should_continue(round_number, state.max_rounds):
                phase = (
                    RoundPhase.POST_DISRUPTION
                    if state.disruption_round is not None
                    else RoundPhase.INITIAL
                )
                await self._run_round(state, round_number, phase, usage)

                # @router(round): convergence_check
                state.stage = FlowStage.CONVERGENCE_CHECK
                if config.disruption is not None and is_disruption_checkpoint(
                    round_number,
                    config.disruption.after_round or self.settings.disruption_after_round,
                    state.max_rounds,
                    state.disruption_round is not None,
                ):
                    target = pick_disruption_target(
                        state.counterparties, state.reference_id, config.disruption.counterparty_id
                    )
                    if target is None:
                        logger.info("disruption_skipped_no_target", negotiation_id=state.negotiation_id)
                    else:
                        await self._disruption_checkpoint(
                            state,
                            target,
                            config.disruption.capacity_pct or self.settings.disruption_capacity_pct,
                            config.disruption.description,
                            usage,
                        )
                round_number += 1

            await self._decide(state, usage)
            await self._complete(state, usage)

        except Exception as exc:
            await self._fail(state, exc, usage)
            raise

        return state

    async def run_disruption_phase(
        self,
        negotiation_id: str,
        counterparty_id: str | None = None,
        description: str | None = None,
        rounds: int | None = None,
        capacity_pct: float | None = None,
    ) -> DisruptionPhaseResult:
        """Inject a disruption into an existing negotiation and keep negotiating.

        State is rebuilt from persistence, so the phase can be run again
        on the same negotiation. Each phase ends with a fresh decision that
        accounts for the reduced capacity, replacing the stored one.

        Args:
            negotiation_id: Existing negotiation.
            counterparty_id: Counterparty to disrupt. Defaults to the first
                non-reference counterparty.
            description: Extra text appended to the capacity condition.
            rounds: Post-disruption rounds to run (default 1).
            capacity_pct: Reduced capacity; defaults to settings.

        Raises:
            NegotiationNotFoundError: Unknown negotiation id.
            ValueError: No valid counterparty to disrupt.
            DecisionError: The post-disruption decision could not be made.
        """
        record = await self.repository.get_negotiation(negotiation_id)
        state = self._initial_state(record.config)
        previous_status = record.status

        sealed = await self.repository.list_rounds(negotiation_id)
        for negotiation_round in sealed:
            if negotiation_round.status == RoundStatus.COMPLETE:
                state.histories.setdefault(negotiation_round.counterparty_id, []).extend(
                    negotiation_round.turns
                )
        state.offers = latest_offers(sealed)
        state.current_round = max((r.round_number for r in sealed), default=0)
        usage = UsageTracker.resume(negotiation_id, record.usage)

        target = pick_disruption_target(state.counterparties, state.reference_id, counterparty_id)
        if target is None or target not in state.profiles:
            raise ValueError(f"No valid counterparty to disrupt in negotiation {negotiation_id}")

        extra_rounds = rounds or 1
        state.max_rounds = max(state.max_rounds, state.current_round + extra_rounds)
        capacity = capacity_pct or self.settings.disruption_capacity_pct

        new_rounds: list[NegotiationRound] = []
        try:
            analysis = await self._disruption_checkpoint(state, target, capacity, description, usage)
            for _ in range(extra_rounds):
                new_rounds.extend(
                    await self._run_round(
                        state, state.current_round + 1, RoundPhase.POST_DISRUPTION, usage
                    )
                )
            await self._decide(state, usage)
            await self._complete(state, usage)
        except Exception as exc:
            await self._fail(state, exc, usage)
            raise

        logger.info(
            "disruption_phase_complete",
            negotiation_id=negotiation_id,
            counterparty_id=target,
            rounds=len(new_rounds),
            previous_status=previous_status.value,
        )
        return DisruptionPhaseResult(
            negotiation_id=negotiation_id,
            counterparty_id=target,
            description=state.disruption_description or "",
            analysis=analysis,
            rounds=new_rounds,
            decision=state.decision,
        )

    # ------------------------------------------------------------------
    # Flow steps
    # ------------------------------------------------------------------

    async def _start(self, state: NegotiationFlowState) -> None:
        """@start - Announce the negotiation and its participants."""
        logger.info(
            "negotiation_started",
            negotiation_id=state.negotiation_id,
            counterparties=len(state.counterparties),
            max_rounds=state.max_rounds,
        )
        await self.event_stream.emit(
            state.negotiation_id,
            EVENT_NEGOTIATION_STARTED,
            data={
                "counterparties": [c.id for c in state.counterparties],
                "reference_id": state.reference_id,
                "max_rounds": state.max_rounds,
                "baseline_total": baseline_total(state.baseline),
                "items": len(state.baseline),
            },
            message=f"Negotiating with {len(state.counterparties)} counterparties.",
        )
        for counterparty in state.counterparties:
            await self.event_stream.emit(
                state.negotiation_id,
                EVENT_COUNTERPARTY_STARTED,
                data={"name": counterparty.name, "is_reference": counterparty.id == state.reference_id},
                message=f"{counterparty.name} joined the negotiation.",
                counterparty_id=counterparty.id,
            )

    async def _run_round(
        self,
        state: NegotiationFlowState,
        round_number: int,
        phase: RoundPhase,
        usage: UsageTracker,
    ) -> list[NegotiationRound]:
        """@listen(start) - Run every counterparty's turn for one round."""
        ids = [c.id for c in state.counterparties]
        waves = split_waves(ids, state.reference_id, round_number)
        staged = len(waves) > 1
        state.stage = FlowStage.ROUND

        if staged and state.reference_id:
            await self.event_stream.emit(
                state.negotiation_id,
                EVENT_COUNTERPARTY_WAITING,
                data={"waiting_for": waves[0]},
                message="Waiting for competing offers before engaging the reference counterparty.",
                counterparty_id=state.reference_id,
                round_number=round_number,
            )

        sealed: list[NegotiationRound] = []
        for index, wave in enumerate(waves):
            if staged:
                state.stage = FlowStage.WAVE_ONE if index == 0 else FlowStage.WAVE_TWO
            results = await self.scheduler.run_wave(state, wave, round_number, phase, usage)
            for counterparty_id in wave:
                negotiation_round = results.get(counterparty_id)
                if negotiation_round is not None and negotiation_round.status == RoundStatus.COMPLETE:
                    state.histories.setdefault(counterparty_id, []).extend(negotiation_round.turns)
                    if negotiation_round.offer is not None:
                        state.offers[counterparty_id] = negotiation_round.offer
                else:
                    error = negotiation_round.error if negotiation_round else "turn crashed"
                    state.failures.append(RoundFailure(counterparty_id, round_number, error or ""))
            sealed.extend(results.values())

        state.current_round = round_number
        await self.repository.update_negotiation(state.negotiation_id, current_round=round_number)
        await self._emit_round_analysis(state, round_number)
        return sealed

    async def _emit_round_analysis(self, state: NegotiationFlowState, round_number: int) -> None:
        """Deterministic scoring of the offer pool after a round."""
        snapshot = {
            cid: {
                "total_cost": offer.total_cost,
                "lead_time_days": offer.lead_time_days,
                "payment_terms": offer.payment_terms,
            }
            for cid, offer in state.offers.items()
        }
        await self.event_stream.emit(
            state.negotiation_id,
            EVENT_OFFERS_SNAPSHOT,
            data={"offers": snapshot},
            message=f"{len(snapshot)} offers on the table after round {round_number}.",
            round_number=round_number,
        )

        scores = score_offers(state.offers, state.profiles, state.weighting_profile)
        if not scores:
            return
        leader = max(scores, key=lambda cid: scores[cid].weighted)
        flag = detect_price_discrepancy(state.offers)
        await self.event_stream.emit(
            state.negotiation_id,
            EVENT_ROUND_ANALYSIS,
            data={
                "scores": {cid: score.to_dict() for cid, score in scores.items()},
                "leader": leader,
                "discrepancy": (
                    {"severity": flag.severity, "ratio": round(flag.ratio, 2)} if flag else None
                ),
            },
            message=f"Round {round_number} leader: {state.profiles[leader].name}.",
            round_number=round_number,
        )

    async def _disruption_checkpoint(
        self,
        state: NegotiationFlowState,
        target: str,
        capacity_pct: float,
        description: str | None,
        usage: UsageTracker,
    ) -> DisruptionAnalysis | None:
        """@listen(convergence_check, "disruption") - Inject and analyze the disruption."""
        state.stage = FlowStage.DISRUPTION_CHECKPOINT
        condition = disruption_condition(capacity_pct)
        if description:
            condition = f"{condition} {description}"
        state.disruption_counterparty_id = target
        state.disruption_capacity_pct = capacity_pct
        state.disruption_description = condition
        state.disruption_round = state.current_round

        logger.warning(
            "disruption_injected",
            negotiation_id=state.negotiation_id,
            counterparty_id=target,
            capacity_pct=capacity_pct,
            after_round=state.current_round,
        )
        await self.repository.update_negotiation(
            state.negotiation_id,
            status=NegotiationStatus.DISRUPTION,
            disruption_counterparty_id=target,
            disruption_capacity_pct=capacity_pct,
            disruption_round=state.current_round,
            disruption_description=condition,
        )
        await self.event_stream.emit(
            state.negotiation_id,
            EVENT_DISRUPTION_DETECTED,
            data={"capacity_pct": capacity_pct, "description": condition},
            message=f"Supply disruption at {state.profiles[target].name}.",
            counterparty_id=target,
            round_number=state.current_round,
        )

        state.stage = FlowStage.DISRUPTION_ANALYSIS
        analysis = await self.decision_maker.analyze_disruption(
            target, capacity_pct, condition, state.offers, state.profiles, usage
        )
        state.disruption_analysis = analysis
        await self.repository.update_negotiation(
            state.negotiation_id,
            status=NegotiationStatus.NEGOTIATING,
            disruption_analysis=analysis,
        )
        await self.event_stream.emit(
            state.negotiation_id,
            EVENT_DISRUPTION_ANALYSIS,
            data={"analysis": analysis.model_dump(mode="json") if analysis else None},
            message=(
                f"Disruption analysis recommends: {analysis.recommendation}"
                if analysis
                else "Disruption analysis unavailable; continuing without it."
            ),
            counterparty_id=target,
            round_number=state.current_round,
        )
        state.stage = FlowStage.POST_DISRUPTION
        return analysis

    async def _decide(self, state: NegotiationFlowState, usage: UsageTracker) -> None:
        """@listen(convergence_check, "done") - Score final offers and allocate."""
        state.stage = FlowStage.DECIDING
        await self.repository.update_negotiation(
            state.negotiation_id, status=NegotiationStatus.DECIDING
        )
        await self.event_stream.emit(
            state.negotiation_id,
            EVENT_GENERATING_DECISION,
            data={"offers": len(state.offers)},
            message="Scoring final offers.",
        )
        if not state.offers:
            raise DecisionError("No counterparty produced an offer")

        disruption = None
        if state.disruption_counterparty_id and state.disruption_capacity_pct is not None:
            disruption = (state.disruption_counterparty_id, state.disruption_capacity_pct)
        decision = await self.decision_maker.decide(
            state.negotiation_id,
            state.baseline,
            state.offers,
            state.profiles,
            usage,
            weighting=state.weighting_profile,
            disruption=disruption,
        )
        state.decision = decision
        await self.repository.save_decision(decision)
        await self.event_stream.emit(
            state.negotiation_id,
            EVENT_DECISION,
            data=decision.model_dump(mode="json"),
            message=decision.executive_summary,
        )

    async def _complete(self, state: NegotiationFlowState, usage: UsageTracker) -> None:
        state.stage = FlowStage.COMPLETE
        usage.log_summary()
        summary = usage.summary()
        await self.repository.update_negotiation(
            state.negotiation_id,
            status=NegotiationStatus.COMPLETED,
            usage=summary,
        )
        decision = state.decision
        await self.event_stream.emit(
            state.negotiation_id,
            EVENT_NEGOTIATION_COMPLETE,
            data={
                "rounds": state.current_round,
                "failed_rounds": len(state.failures),
                "primary_counterparty_id": (
                    decision.recommendation.primary_counterparty_id if decision else None
                ),
                "usage": summary.model_dump(mode="json"),
            },
            message="Negotiation complete.",
        )
        logger.info(
            "negotiation_complete",
            negotiation_id=state.negotiation_id,
            rounds=state.current_round,
            failed_rounds=len(state.failures),
        )

    async def _fail(self, state: NegotiationFlowState, exc: Exception, usage: UsageTracker) -> None:
        """Record a fatal failure and tell subscribers before re-raising."""
        logger.error(
            "flow_error",
            negotiation_id=state.negotiation_id,
            stage=state.stage.value,
            error=str(exc),
        )
        state.error = str(exc)
        status = (
            NegotiationStatus.DECIDING
            if isinstance(exc, DecisionError)
            else NegotiationStatus.FAILED
        )
        if status == NegotiationStatus.FAILED:
            state.stage = FlowStage.FAILED
        try:
            await self.repository.update_negotiation(
                state.negotiation_id, status=status, error=str(exc), usage=usage.summary()
            )
        except Exception as persist_exc:
            logger.error(
                "flow_error_not_persisted",
                negotiation_id=state.negotiation_id,
                error=str(persist_exc),
            )
        await self.event_stream.emit(
            state.negotiation_id,
            EVENT_ERROR,
            data={"error": str(exc), "fatal": True, "stage": state.stage.value},
            message=f"Negotiation failed: {exc}",
        )

