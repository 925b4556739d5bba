"""Turn Drafter - parallel analysis crew joined into one synthesis step.

Drafts the buyer's single outbound message for one counterparty in one
round. The three pillar agents run concurrently on their own context
slices; a failing pillar contributes its fallback text instead of
failing the turn. Synthesis waits for all three to settle and is the
only step whose failure propagates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import structlog

from supplier_negotiation.agents.pillars import PillarAgent
from supplier_negotiation.agents.synthesizer import SynthesisError, SynthesizerAgent
from supplier_negotiation.flow.task_group import run_all
from supplier_negotiation.llm.usage import UsageTracker
from supplier_negotiation.models import TurnRole
from supplier_negotiation.streaming import (
    EVENT_PILLAR_COMPLETE,
    EVENT_PILLAR_STARTED,
    NegotiationEventStream,
)
from supplier_negotiation.tools.context_tools import (
    NegotiationContext,
    PillarContexts,
    build_pillar_contexts,
)

logger = structlog.get_logger(__name__)


class DrafterState(str, Enum):
    """States of one drafting run."""

    DISPATCH = "dispatch"
    AWAITING = "awaiting"
    SYNTHESIZING = "synthesizing"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class PillarOutcome:
    """A pillar's brief, or its fallback text when the call failed."""

    pillar: str
    text: str
    failed: bool = False


@dataclass
class DraftResult:
    message: str
    pillars: list[PillarOutcome] = field(default_factory=list)

    @property
    def failed_pillars(self) -> list[str]:
        return [p.pillar for p in self.pillars if p.failed]


class TurnDrafter:
    """Crew that drafts one outbound message.

    Agents:
        - Strategy, Risk and Cost pillars (parallel)
        - Synthesizer (sequential, after all pillars settle)

    Process: ``"parallel"`` fan-out followed by a hard join.

    A drafter runs one turn; create a new one per turn.
    """

    def __init__(
        self,
        pillars: list[PillarAgent],
        synthesizer: SynthesizerAgent,
        output_event_chars: int = 1500,
    ) -> None:
        self.pillars = pillars
        self.synthesizer = synthesizer
        self.output_event_chars = output_event_chars
        self.process = "parallel"
        self.state = DrafterState.DISPATCH

    def _transition(self, state: DrafterState, ctx: NegotiationContext) -> None:
        logger.debug(
            "drafter_transition",
            counterparty_id=ctx.counterparty.id,
            round_number=ctx.round_number,
            from_state=self.state.value,
            to_state=state.value,
        )
        self.state = state

    async def _run_pillar(
        self,
        pillar: PillarAgent,
        context: str,
        ctx: NegotiationContext,
        latest_reply: str | None,
        negotiation_id: str,
        event_stream: NegotiationEventStream,
        usage: UsageTracker,
    ) -> PillarOutcome:
        await event_stream.emit(
            negotiation_id,
            EVENT_PILLAR_STARTED,
            data={"pillar": pillar.NAME},
            message=f"{pillar.ROLE} is analyzing.",
            counterparty_id=ctx.counterparty.id,
            round_number=ctx.round_number,
        )
        try:
            text = await pillar.analyze(context, ctx.round_number, latest_reply, usage)
            if not text.strip():
                raise ValueError("empty brief")
            outcome = PillarOutcome(pillar.NAME, text.strip())
        except Exception as exc:
            logger.warning(
                "pillar_failed",
                pillar=pillar.NAME,
                counterparty_id=ctx.counterparty.id,
                round_number=ctx.round_number,
                error=str(exc),
            )
            outcome = PillarOutcome(pillar.NAME, pillar.FALLBACK, failed=True)

        await event_stream.emit(
            negotiation_id,
            EVENT_PILLAR_COMPLETE,
            data={
                "pillar": pillar.NAME,
                "output": outcome.text[: self.output_event_chars],
                "failed": outcome.failed,
            },
            message=f"{pillar.ROLE} {'fell back' if outcome.failed else 'finished'}.",
            counterparty_id=ctx.counterparty.id,
            round_number=ctx.round_number,
        )
        return outcome

    async def kickoff(
        self,
        ctx: NegotiationContext,
        negotiation_id: str,
        event_stream: NegotiationEventStream,
        usage: UsageTracker,
        is_reference: bool = False,
        contexts: PillarContexts | None = None,
    ) -> DraftResult:
        """Execute the crew and return the outbound message.

        Raises:
            SynthesisError: The synthesis step failed; the turn cannot
                proceed without a message.
        """
        contexts = contexts or build_pillar_contexts(ctx)
        latest_reply = next(
            (t.content for t in reversed(ctx.history) if t.role == TurnRole.COUNTERPARTY),
            None,
        )

        self._transition(DrafterState.DISPATCH, ctx)
        tasks = {
            pillar.NAME: self._run_pillar(
                pillar,
                getattr(contexts, pillar.NAME, contexts.strategy),
                ctx,
                latest_reply,
                negotiation_id,
                event_stream,
                usage,
            )
            for pillar in self.pillars
        }
        self._transition(DrafterState.AWAITING, ctx)
        outcomes = await run_all(tasks)

        pillar_outcomes: list[PillarOutcome] = []
        for pillar, settled in zip(self.pillars, outcomes):
            if settled.ok and settled.value is not None:
                pillar_outcomes.append(settled.value)
            else:
                # Event emission itself failed; the brief is still replaced
                pillar_outcomes.append(PillarOutcome(pillar.NAME, pillar.FALLBACK, failed=True))

        self._transition(DrafterState.SYNTHESIZING, ctx)
        try:
            message = await self.synthesizer.synthesize(
                briefs={p.pillar: p.text for p in pillar_outcomes},
                counterparty=ctx.counterparty,
                history=ctx.history,
                round_number=ctx.round_number,
                total_rounds=ctx.total_rounds,
                usage=usage,
                baseline=ctx.baseline,
                is_reference=is_reference,
                competing_offers=len(ctx.competitor_offers),
                notes=ctx.notes,
            )
        except SynthesisError:
            self._transition(DrafterState.FAILED, ctx)
            raise

        self._transition(DrafterState.DONE, ctx)
        result = DraftResult(message=message, pillars=pillar_outcomes)
        logger.info(
            "turn_drafted",
            counterparty_id=ctx.counterparty.id,
            round_number=ctx.round_number,
            failed_pillars=result.failed_pillars,
            words=len(message.split()),
        )
        return result
