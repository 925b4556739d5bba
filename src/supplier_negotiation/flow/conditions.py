"""Routing condition functions for the negotiation flow.

Pure functions the orchestrator uses to decide whether another round
runs, when the disruption checkpoint fires, and how round 1 is staged.
"""

from __future__ import annotations

from supplier_negotiation.models import CounterpartyProfile


def should_continue(current_round: int, max_rounds: int) -> bool:
    """Whether round *current_round* still runs.

    Purely round-count based; there is no early exit on convergence.
    """
    return current_round <= max_rounds


def is_disruption_checkpoint(
    completed_round: int,
    after_round: int,
    max_rounds: int,
    already_triggered: bool,
) -> bool:
    """Check if the disruption fires after *completed_round*.

    It fires once, and only if at least one round remains to negotiate
    under the new condition.

    Args:
        completed_round: Round that was just sealed.
        after_round: Round boundary the disruption is scheduled at.
        max_rounds: The configured maximum rounds.
        already_triggered: Whether the disruption has already fired.

    Returns:
        ``True`` if the checkpoint should run now.
    """
    if already_triggered:
        return False
    return completed_round == after_round and completed_round < max_rounds


def split_waves(
    counterparty_ids: list[str],
    reference_id: str | None,
    round_number: int,
) -> list[list[str]]:
    """Group counterparties into the waves of one round.

    In round 1 the non-reference counterparties go first so their offers
    are leverage for the reference counterparty's turn. Every other round
    is a single wave.
    """
    if round_number != 1 or reference_id not in counterparty_ids:
        return [list(counterparty_ids)]
    others = [cid for cid in counterparty_ids if cid != reference_id]
    if not others:
        return [[reference_id]]
    return [others, [reference_id]]


def pick_disruption_target(
    counterparties: list[CounterpartyProfile],
    reference_id: str | None,
    nominated: str | None = None,
) -> str | None:
    """Counterparty hit by the disruption.

    Returns:
        *nominated* when given, else the first non-reference
        counterparty, else ``None`` (nobody to disrupt).
    """
    if nominated:
        return nominated
    for counterparty in counterparties:
        if counterparty.id != reference_id:
            return counterparty.id
    return None
