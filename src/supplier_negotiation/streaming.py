"""SSE streaming channel for real-time negotiation updates.

Provides a bounded event channel that the orchestrator, round scheduler,
and turn drafter write to and that API endpoints consume via
``async for`` iteration. Emission never waits on a consumer.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import structlog

from supplier_negotiation.models import NegotiationEvent

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Canonical event type constants
# ---------------------------------------------------------------------------

EVENT_NEGOTIATION_STARTED = "negotiation_started"
EVENT_COUNTERPARTY_STARTED = "counterparty_started"
EVENT_COUNTERPARTY_WAITING = "counterparty_waiting"
EVENT_ROUND_START = "round_start"
EVENT_CONTEXT_BUILT = "context_built"
EVENT_PILLAR_STARTED = "pillar_started"
EVENT_PILLAR_COMPLETE = "pillar_complete"
EVENT_MESSAGE = "message"
EVENT_OFFER_EXTRACTED = "offer_extracted"
EVENT_ROUND_END = "round_end"
EVENT_OFFERS_SNAPSHOT = "offers_snapshot"
EVENT_ROUND_ANALYSIS = "round_analysis"
EVENT_DISRUPTION_DETECTED = "disruption_detected"
EVENT_DISRUPTION_ANALYSIS = "disruption_analysis"
EVENT_GENERATING_DECISION = "generating_decision"
EVENT_DECISION = "decision"
EVENT_ERROR = "error"
EVENT_NEGOTIATION_COMPLETE = "negotiation_complete"


class NegotiationEventStream:
    """In-memory pub/sub for negotiation lifecycle events.

    Each subscriber gets its own bounded ``asyncio.Queue``. A slow or
    disconnected subscriber loses events once its queue fills up; the
    publisher is never blocked.
    """

    def __init__(self, max_queue_size: int = 256) -> None:
        self._queues: dict[str, list[asyncio.Queue[NegotiationEvent | None]]] = {}
        self._max_queue_size = max_queue_size
        self._history: dict[str, list[NegotiationEvent]] = {}
        self._expiry: dict[str, asyncio.TimerHandle] = {}

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def emit(
        self,
        negotiation_id: str,
        event_type: str,
        data: dict[str, Any] | None = None,
        message: str = "",
        counterparty_id: str | None = None,
        round_number: int | None = None,
    ) -> NegotiationEvent:
        """Push an event to all subscribers of *negotiation_id*.

        Returns the constructed :class:`NegotiationEvent` for convenience.
        """
        event = NegotiationEvent(
            event_type=event_type,
            negotiation_id=negotiation_id,
            counterparty_id=counterparty_id,
            round_number=round_number,
            data=data or {},
            message=message,
        )

        self._cancel_expiry(negotiation_id)
        self._history.setdefault(negotiation_id, []).append(event)

        queues = self._queues.get(negotiation_id, [])
        for queue in queues:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "event_queue_full",
                    negotiation_id=negotiation_id,
                    event_type=event_type,
                )

        logger.debug(
            "event_emitted",
            negotiation_id=negotiation_id,
            event_type=event_type,
            counterparty_id=counterparty_id,
            round_number=round_number,
            subscribers=len(queues),
        )
        return event

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------

    async def subscribe(self, negotiation_id: str) -> AsyncIterator[NegotiationEvent]:
        """Yield events for *negotiation_id* as they arrive.

        Past events are replayed first so late joiners catch up. Events
        recorded after a terminal event belong to a later phase of the
        same negotiation (a disruption phase), so the whole history is
        replayed and iteration only ends there when the history itself
        ends on a terminal event. Live iteration terminates after a
        terminal event, or when ``close(negotiation_id)`` pushes the
        ``None`` sentinel.
        """
        queue: asyncio.Queue[NegotiationEvent | None] = asyncio.Queue(
            maxsize=self._max_queue_size
        )
        self._queues.setdefault(negotiation_id, []).append(queue)
        # Snapshot taken with the queue registered: later events go to the queue only
        replay = list(self._history.get(negotiation_id, []))

        try:
            for past_event in replay:
                yield past_event
            if replay and replay[-1].is_terminal:
                return

            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
                if event.is_terminal:
                    break
        finally:
            subscriber_queues = self._queues.get(negotiation_id, [])
            if queue in subscriber_queues:
                subscriber_queues.remove(queue)

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def close(self, negotiation_id: str) -> None:
        """Signal all subscribers of *negotiation_id* to stop iterating.

        A full queue gives up its oldest pending event so the sentinel
        always lands.
        """
        for queue in self._queues.pop(negotiation_id, []):
            if queue.full():
                dropped = queue.get_nowait()
                logger.warning(
                    "event_queue_full_on_close",
                    negotiation_id=negotiation_id,
                    dropped_event_type=dropped.event_type if dropped else None,
                )
            queue.put_nowait(None)

    def expire(self, negotiation_id: str, delay: float) -> None:
        """Drop the history of *negotiation_id* after *delay* seconds.

        Any later ``emit`` for the negotiation cancels the pending expiry,
        so a negotiation that becomes active again keeps its history.
        """
        self._cancel_expiry(negotiation_id)
        loop = asyncio.get_running_loop()
        self._expiry[negotiation_id] = loop.call_later(
            delay, self._expire_now, negotiation_id, delay
        )

    def _expire_now(self, negotiation_id: str, delay: float) -> None:
        self._expiry.pop(negotiation_id, None)
        if self._queues.get(negotiation_id):
            # Still being read
            self.expire(negotiation_id, delay)
            return
        self._history.pop(negotiation_id, None)
        logger.debug("event_history_expired", negotiation_id=negotiation_id)

    def _cancel_expiry(self, negotiation_id: str) -> None:
        handle = self._expiry.pop(negotiation_id, None)
        if handle is not None:
            handle.cancel()

    def get_history(self, negotiation_id: str) -> list[NegotiationEvent]:
        """Return all events emitted for a given negotiation."""
        return list(self._history.get(negotiation_id, []))

    def clear(self, negotiation_id: str) -> None:
        """Remove all state associated with a negotiation."""
        self._cancel_expiry(negotiation_id)
        self.close(negotiation_id)
        self._history.pop(negotiation_id, None)
