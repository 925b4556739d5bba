"""Negotiation persistence.

The orchestrator talks to storage through :class:`NegotiationRepository`
with simple create/update calls keyed by negotiation id. The in-memory
implementation backs the API server and the tests.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Protocol

import structlog

from supplier_negotiation.models import (
    FinalDecision,
    NegotiationRecord,
    NegotiationRound,
    RoundPhase,
    RoundStatus,
    StructuredOffer,
)

logger = structlog.get_logger(__name__)


class NegotiationNotFoundError(KeyError):
    """Raised when a negotiation id is unknown to the repository."""


class NegotiationRepository(Protocol):
    """Storage boundary used at round and decision boundaries."""

    async def create_negotiation(self, record: NegotiationRecord) -> NegotiationRecord: ...

    async def get_negotiation(self, negotiation_id: str) -> NegotiationRecord: ...

    async def update_negotiation(self, negotiation_id: str, **fields: Any) -> NegotiationRecord: ...

    async def list_negotiations(self) -> list[NegotiationRecord]: ...

    async def save_round(self, negotiation_round: NegotiationRound) -> NegotiationRound: ...

    async def list_rounds(
        self, negotiation_id: str, counterparty_id: str | None = None
    ) -> list[NegotiationRound]: ...

    async def save_decision(self, decision: FinalDecision) -> FinalDecision: ...

    async def get_decision(self, negotiation_id: str) -> FinalDecision | None: ...


class InMemoryNegotiationRepository:
    """Dictionary-backed repository for a single process."""

    def __init__(self) -> None:
        self._negotiations: dict[str, NegotiationRecord] = {}
        self._rounds: dict[str, dict[str, NegotiationRound]] = {}
        self._decisions: dict[str, FinalDecision] = {}

    # ------------------------------------------------------------------
    # Negotiations
    # ------------------------------------------------------------------

    async def create_negotiation(self, record: NegotiationRecord) -> NegotiationRecord:
        self._negotiations[record.id] = record
        self._rounds.setdefault(record.id, {})
        logger.info("negotiation_created", negotiation_id=record.id)
        return record

    async def get_negotiation(self, negotiation_id: str) -> NegotiationRecord:
        record = self._negotiations.get(negotiation_id)
        if record is None:
            raise NegotiationNotFoundError(negotiation_id)
        return record

    async def update_negotiation(self, negotiation_id: str, **fields: Any) -> NegotiationRecord:
        record = await self.get_negotiation(negotiation_id)
        updated = record.model_copy(
            update={**fields, "updated_at": datetime.now(tz=timezone.utc)}
        )
        self._negotiations[negotiation_id] = updated
        return updated

    async def list_negotiations(self) -> list[NegotiationRecord]:
        return list(self._negotiations.values())

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    async def save_round(self, negotiation_round: NegotiationRound) -> NegotiationRound:
        """Insert or replace a round by its id."""
        if negotiation_round.negotiation_id not in self._negotiations:
            raise NegotiationNotFoundError(negotiation_round.negotiation_id)
        self._rounds[negotiation_round.negotiation_id][negotiation_round.id] = negotiation_round
        return negotiation_round

    async def list_rounds(
        self, negotiation_id: str, counterparty_id: str | None = None
    ) -> list[NegotiationRound]:
        if negotiation_id not in self._negotiations:
            raise NegotiationNotFoundError(negotiation_id)
        rounds = [
            r
            for r in self._rounds.get(negotiation_id, {}).values()
            if counterparty_id is None or r.counterparty_id == counterparty_id
        ]
        return sorted(rounds, key=lambda r: (r.round_number, r.started_at))

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    async def save_decision(self, decision: FinalDecision) -> FinalDecision:
        if decision.negotiation_id not in self._negotiations:
            raise NegotiationNotFoundError(decision.negotiation_id)
        self._decisions[decision.negotiation_id] = decision
        return decision

    async def get_decision(self, negotiation_id: str) -> FinalDecision | None:
        if negotiation_id not in self._negotiations:
            raise NegotiationNotFoundError(negotiation_id)
        return self._decisions.get(negotiation_id)


def latest_offers(rounds: list[NegotiationRound]) -> dict[str, StructuredOffer]:
    """Return each counterparty's most recent sealed offer.

    Post-disruption offers supersede initial-phase offers for the same
    counterparty because they carry later round numbers.
    """
    offers: dict[str, StructuredOffer] = {}
    for negotiation_round in sorted(rounds, key=lambda r: (r.round_number, r.phase != RoundPhase.INITIAL)):
        if negotiation_round.status == RoundStatus.COMPLETE and negotiation_round.offer:
            offers[negotiation_round.counterparty_id] = negotiation_round.offer
    return offers
