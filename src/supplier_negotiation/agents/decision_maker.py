"""Decision Maker agent.

Owns the two complex-reasoning calls of a negotiation, the disruption
impact analysis and the final offer scoring, plus the deterministic
decision engine that turns the scores into a committed SKU-level
allocation.
"""

from __future__ import annotations

import structlog
from pydantic import BaseModel, Field, ValidationError

from supplier_negotiation.config import Settings
from supplier_negotiation.llm.provider import CompletionError, ModelGateway
from supplier_negotiation.llm.usage import UsageTracker
from supplier_negotiation.models import (
    Allocation,
    BaselineItem,
    CounterpartyProfile,
    DimensionScores,
    DisruptionAnalysis,
    FinalDecision,
    KeyPoint,
    ModelTier,
    Recommendation,
    StructuredOffer,
    WeightingProfile,
)
from supplier_negotiation.tools.allocation import (
    allocate_items,
    percentages_from_values,
    reallocate_after_disruption,
)
from supplier_negotiation.tools.calculations import (
    SplitLeg,
    baseline_total,
    calculate_cash_flow_cost,
    evaluate_split_overhead,
)
from supplier_negotiation.tools.context_tools import format_currency
from supplier_negotiation.tools.scoring import score_offers, weights_for

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# CrewAI-style agent metadata
# ---------------------------------------------------------------------------

ROLE = "Chief Procurement Decision Maker"
GOAL = (
    "Compare every final offer on identical volumes, score them on cost, "
    "quality, lead time and payment terms, and commit to one allocation."
)
BACKSTORY = (
    "You chair the sourcing committee of a mid-size apparel brand. You have "
    "awarded hundreds of orders, you distrust volume-inflated savings, and "
    "you only split an order when the numbers clearly justify it."
)


class DecisionError(RuntimeError):
    """No decision could be produced."""


# ---------------------------------------------------------------------------
# Scoring schema
# ---------------------------------------------------------------------------


class CounterpartyScore(BaseModel):
    """Model-assigned 0-100 scores for one counterparty."""

    counterparty_id: str
    cost: float = Field(..., ge=0, le=100)
    quality: float = Field(..., ge=0, le=100)
    lead_time: float = Field(..., ge=0, le=100)
    terms: float = Field(..., ge=0, le=100)


class ProposedAllocation(BaseModel):
    counterparty_id: str
    allocation_pct: float = Field(..., ge=0, le=100)


class ScoringResponse(BaseModel):
    """Structured output of the scoring call."""

    scores: list[CounterpartyScore] = Field(..., min_length=1)
    primary_counterparty_id: str
    allocations: list[ProposedAllocation] = Field(..., min_length=1)
    executive_summary: str = ""
    key_points: list[KeyPoint] = Field(default_factory=list)
    reasoning: str = ""
    tradeoffs: str = ""


# ---------------------------------------------------------------------------
# Prompt helpers
# ---------------------------------------------------------------------------


def offer_lines(
    offers: dict[str, StructuredOffer],
    profiles: dict[str, CounterpartyProfile],
) -> str:
    """One ``OFFER`` row per counterparty followed by its per-SKU prices."""
    lines: list[str] = []
    for counterparty_id, offer in offers.items():
        profile = profiles.get(counterparty_id)
        name = profile.name if profile else counterparty_id
        quality = profile.quality_rating if profile else 3.0
        lines.append(
            f"OFFER | id={counterparty_id} | name={name} | total={offer.total_cost:.2f} "
            f"| lead={offer.lead_time_days} | terms={offer.payment_terms} | quality={quality}"
        )
        for item in offer.items:
            lines.append(f"    {item.sku}: {format_currency(item.unit_price)}/unit x {item.quantity}")
        if offer.concessions:
            lines.append(f"    concessions: {'; '.join(offer.concessions)}")
    return "\n".join(lines)


def _retry_directive(attempt: int, error: str, expected_ids: list[str]) -> str:
    if attempt == 2:
        return (
            "\n\n<correction>\nYour previous answer was rejected: "
            f"{error[:300]}\nReturn a complete JSON object with a score entry for every "
            f"counterparty: {', '.join(expected_ids)}.\n</correction>"
        )
    return (
        "\n\n<correction>\nFINAL ATTEMPT. Return EXACTLY "
        f"{len(expected_ids)} score entries, one for each of: {', '.join(expected_ids)}. "
        "Every score is a number between 0 and 100. Allocation percentages must be "
        "whole numbers that sum to 100. Do not omit any field.\n</correction>"
    )


class DecisionMakerAgent:
    """Runs disruption analysis, offer scoring and the decision engine."""

    def __init__(self, gateway: ModelGateway, settings: Settings) -> None:
        self.role = ROLE
        self.goal = GOAL
        self.backstory = BACKSTORY
        self.gateway = gateway
        self.settings = settings

    # ------------------------------------------------------------------
    # Disruption analysis
    # ------------------------------------------------------------------

    async def analyze_disruption(
        self,
        affected_id: str,
        capacity_pct: float,
        description: str,
        offers: dict[str, StructuredOffer],
        profiles: dict[str, CounterpartyProfile],
        usage: UsageTracker,
    ) -> DisruptionAnalysis | None:
        """Assess the disruption and propose 2-3 mitigation strategies.

        Returns ``None`` once every attempt failed; the negotiation then
        continues without a formal analysis.
        """
        base_prompt = (
            f"<role>{BACKSTORY}</role>\n\n"
            "<disruption>\n"
            f"Affected counterparty: id={affected_id}\n"
            f"Capacity: {capacity_pct:.0f}% of the order on the original timeline.\n"
            f"{description}\n"
            "</disruption>\n\n"
            f"<current_offers>\n{offer_lines(offers, profiles)}\n</current_offers>\n\n"
            "<instructions>\n"
            "Assess the impact on cost and timeline. Propose 2 or 3 strategies, each with "
            "allocation percentages keyed by counterparty id, an estimated total cost, pros "
            "and cons. Name the strategy you recommend.\n"
            "</instructions>"
        )
        max_attempts = max(1, self.settings.disruption_analysis_max_attempts)
        prompt = base_prompt
        for attempt in range(1, max_attempts + 1):
            try:
                analysis = await self.gateway.generate(
                    purpose="disruption",
                    tier=ModelTier.REASONING,
                    prompt=prompt,
                    schema=DisruptionAnalysis,
                    usage=usage,
                )
            except (CompletionError, ValidationError) as exc:
                logger.warning(
                    "disruption_analysis_attempt_failed",
                    affected_id=affected_id,
                    attempt=attempt,
                    error=str(exc)[:200],
                )
                prompt = base_prompt + (
                    "\n\n<correction>\nYour previous answer was invalid. Return JSON with "
                    "'impact', 'recommendation' and a 'strategies' list of 2 or 3 entries, each "
                    "with 'name', 'description' and 'allocations'.\n</correction>"
                )
                continue
            logger.info(
                "disruption_analysis_complete",
                affected_id=affected_id,
                strategies=len(analysis.strategies),
                attempt=attempt,
            )
            return analysis

        logger.error("disruption_analysis_exhausted", affected_id=affected_id, attempts=max_attempts)
        return None

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def build_scoring_prompt(
        self,
        offers: dict[str, StructuredOffer],
        profiles: dict[str, CounterpartyProfile],
        weighting: WeightingProfile,
        baseline: list[BaselineItem],
    ) -> str:
        weights = weights_for(weighting)
        return (
            f"<role>{BACKSTORY}</role>\n\n"
            f"<baseline>Reference total {format_currency(baseline_total(baseline))} for "
            f"{sum(item.quantity for item in baseline):,} units across {len(baseline)} SKUs.</baseline>\n\n"
            f"<final_offers>\n{offer_lines(offers, profiles)}\n</final_offers>\n\n"
            f"Weights: cost={weights['cost']} quality={weights['quality']} "
            f"lead_time={weights['lead_time']} terms={weights['terms']}\n\n"
            "<instructions>\n"
            "Score every counterparty from 0 to 100 on cost, quality, lead_time and terms.\n"
            "Compare cost per unit for each SKU at the quantities shown. Never reward or "
            "penalize an offer for quoting a different volume.\n"
            "Recommend a primary counterparty and allocation percentages summing to 100. "
            "Only split the order if the combined value clearly beats the best single "
            "counterparty after coordination overhead.\n"
            "</instructions>"
        )

    async def score(
        self,
        offers: dict[str, StructuredOffer],
        profiles: dict[str, CounterpartyProfile],
        weighting: WeightingProfile,
        baseline: list[BaselineItem],
        usage: UsageTracker,
    ) -> ScoringResponse:
        """Score all final offers.

        A response that leaves out a counterparty counts as a failed
        attempt.

        Raises:
            DecisionError: Every attempt failed.
        """
        expected = list(offers)
        base_prompt = self.build_scoring_prompt(offers, profiles, weighting, baseline)
        max_attempts = max(1, self.settings.decision_max_attempts)
        prompt = base_prompt
        last_error = ""
        for attempt in range(1, max_attempts + 1):
            try:
                response = await self.gateway.generate(
                    purpose="scoring",
                    tier=ModelTier.REASONING,
                    prompt=prompt,
                    schema=ScoringResponse,
                    usage=usage,
                )
                missing = set(expected) - {s.counterparty_id for s in response.scores}
                if missing:
                    raise DecisionError(f"scores missing for {sorted(missing)}")
            except (CompletionError, ValidationError, DecisionError) as exc:
                last_error = str(exc)
                logger.warning("scoring_attempt_failed", attempt=attempt, error=last_error[:200])
                prompt = base_prompt + _retry_directive(attempt + 1, last_error, expected)
                continue
            logger.info("scoring_complete", attempt=attempt, counterparties=len(response.scores))
            return response

        raise DecisionError(f"Scoring failed after {max_attempts} attempts: {last_error}")

    # ------------------------------------------------------------------
    # Decision engine
    # ------------------------------------------------------------------

    async def decide(
        self,
        negotiation_id: str,
        baseline: list[BaselineItem],
        offers: dict[str, StructuredOffer],
        profiles: dict[str, CounterpartyProfile],
        usage: UsageTracker,
        weighting: WeightingProfile = WeightingProfile.BALANCED,
        disruption: tuple[str, float] | None = None,
    ) -> FinalDecision:
        """Produce the committed decision for the final offer set.

        Args:
            negotiation_id: Negotiation being decided.
            baseline: Baseline items to allocate.
            offers: Final offer per counterparty id.
            profiles: Counterparty profiles by id.
            usage: Usage accumulator of this negotiation.
            weighting: Named weighting profile.
            disruption: ``(counterparty_id, capacity_pct)`` when a
                counterparty is capacity constrained.

        Raises:
            DecisionError: No offers, or scoring exhausted its attempts.
        """
        if not offers:
            raise DecisionError("No offers to decide on")

        response = await self.score(offers, profiles, weighting, baseline, usage)
        weights = weights_for(weighting)

        scores: list[DimensionScores] = []
        totals: dict[str, float] = {}
        for entry in response.scores:
            if entry.counterparty_id not in offers or entry.counterparty_id in totals:
                continue
            total = round(
                entry.cost * weights["cost"]
                + entry.quality * weights["quality"]
                + entry.lead_time * weights["lead_time"]
                + entry.terms * weights["terms"],
                2,
            )
            totals[entry.counterparty_id] = total
            profile = profiles.get(entry.counterparty_id)
            scores.append(
                DimensionScores(
                    counterparty_id=entry.counterparty_id,
                    counterparty_name=profile.name if profile else entry.counterparty_id,
                    cost=entry.cost,
                    quality=entry.quality,
                    lead_time=entry.lead_time,
                    terms=entry.terms,
                    total=total,
                )
            )
        best_id = max(totals, key=lambda cid: totals[cid])

        # Proposed targets, unknown ids dropped and renormalized to 100
        proposed: dict[str, float] = {}
        for allocation in response.allocations:
            if allocation.counterparty_id in offers and allocation.allocation_pct > 0:
                proposed[allocation.counterparty_id] = (
                    proposed.get(allocation.counterparty_id, 0.0) + allocation.allocation_pct
                )
        if not proposed:
            primary = response.primary_counterparty_id
            proposed = {primary if primary in offers else best_id: 100.0}
        targets = {cid: pct for cid, pct in percentages_from_values(proposed).items() if pct > 0}

        split_overridden = False
        if len(targets) > 1:
            evaluation = evaluate_split_overhead(
                totals[best_id],
                [SplitLeg(cid, totals.get(cid, 0.0), pct) for cid, pct in targets.items()],
                self.settings.split_overhead_penalty,
            )
            if not evaluation.worth_it:
                logger.info(
                    "split_overridden",
                    negotiation_id=negotiation_id,
                    split_score=round(evaluation.split_score, 2),
                    single_score=evaluation.single_score,
                    single_id=best_id,
                )
                targets = {best_id: 100.0}
                split_overridden = True

        rate = self.settings.annual_capital_rate
        assignments = allocate_items(baseline, offers, targets, rate)
        if disruption is not None:
            affected_id, capacity_pct = disruption
            if assignments.get(affected_id):
                assignments = reallocate_after_disruption(
                    assignments, affected_id, capacity_pct, offers, rate
                )

        values = {
            cid: sum(item.total_price for item in items)
            for cid, items in assignments.items()
            if items
        }
        pcts = percentages_from_values(values) if values else targets

        allocations: list[Allocation] = []
        for counterparty_id, pct in sorted(pcts.items(), key=lambda kv: kv[1], reverse=True):
            items = assignments.get(counterparty_id, [])
            offer = offers[counterparty_id]
            allocations.append(
                Allocation(
                    counterparty_id=counterparty_id,
                    counterparty_name=self._name(counterparty_id, profiles),
                    allocation_pct=pct,
                    agreed_cost=self._agreed_cost(items, offer) if items else offer.total_cost,
                    lead_time_days=offer.lead_time_days,
                    payment_terms=offer.payment_terms,
                    items=list(items),
                )
            )

        allocated_ids = {a.counterparty_id for a in allocations}
        alternatives = [
            Allocation(
                counterparty_id=cid,
                counterparty_name=self._name(cid, profiles),
                allocation_pct=0.0,
                agreed_cost=offer.total_cost,
                lead_time_days=offer.lead_time_days,
                payment_terms=offer.payment_terms,
            )
            for cid, offer in offers.items()
            if cid not in allocated_ids
        ]

        if split_overridden or response.primary_counterparty_id not in allocated_ids:
            primary_id = allocations[0].counterparty_id
        else:
            primary_id = response.primary_counterparty_id

        decision = FinalDecision(
            negotiation_id=negotiation_id,
            recommendation=Recommendation(
                primary_counterparty_id=primary_id,
                primary_counterparty_name=self._name(primary_id, profiles),
                split_order=len(allocations) > 1,
                allocations=allocations,
            ),
            scores=scores,
            executive_summary=response.executive_summary
            or self._fallback_summary(allocations),
            key_points=self._key_points(offers, profiles, weighting, response.key_points),
            reasoning=response.reasoning,
            tradeoffs=response.tradeoffs,
            alternative_allocations=alternatives,
            split_overridden=split_overridden,
            weighting_profile=weighting,
        )
        logger.info(
            "decision_made",
            negotiation_id=negotiation_id,
            primary=primary_id,
            split=decision.recommendation.split_order,
            split_overridden=split_overridden,
            allocations={a.counterparty_id: a.allocation_pct for a in allocations},
        )
        return decision

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _name(counterparty_id: str, profiles: dict[str, CounterpartyProfile]) -> str:
        profile = profiles.get(counterparty_id)
        return profile.name if profile else counterparty_id

    @staticmethod
    def _agreed_cost(items: list[BaselineItem], offer: StructuredOffer) -> float:
        prices = {oi.sku.upper(): oi.unit_price for oi in offer.items}
        return round(
            sum(prices.get(item.sku.upper(), item.unit_price) * item.quantity for item in items),
            2,
        )

    @staticmethod
    def _fallback_summary(allocations: list[Allocation]) -> str:
        parts = [
            f"{a.counterparty_name} {a.allocation_pct:.0f}% ({format_currency(a.agreed_cost)})"
            for a in allocations
        ]
        return "Recommended allocation: " + ", ".join(parts) + "."

    def _key_points(
        self,
        offers: dict[str, StructuredOffer],
        profiles: dict[str, CounterpartyProfile],
        weighting: WeightingProfile,
        model_points: list[KeyPoint],
    ) -> list[KeyPoint]:
        snapshot = score_offers(offers, profiles, weighting)
        if not snapshot:
            return list(model_points)

        def winner(dimension: str) -> str:
            best = max(snapshot, key=lambda cid: getattr(snapshot[cid], dimension))
            return self._name(best, profiles)

        cheapest = min(offers, key=lambda cid: offers[cid].total_cost)
        fastest = min(offers, key=lambda cid: offers[cid].lead_time_days)
        capital = {
            cid: calculate_cash_flow_cost(
                o.total_cost, o.payment_terms, o.lead_time_days, self.settings.annual_capital_rate
            )
            for cid, o in offers.items()
        }
        lightest = min(capital, key=lambda cid: capital[cid])
        points = [
            KeyPoint(
                dimension="price",
                winner=self._name(cheapest, profiles),
                summary=f"Lowest total at {format_currency(offers[cheapest].total_cost)}.",
            ),
            KeyPoint(
                dimension="quality",
                winner=winner("quality"),
                summary="Highest quality rating among the final offers.",
            ),
            KeyPoint(
                dimension="lead_time",
                winner=self._name(fastest, profiles),
                summary=f"Fastest delivery at {offers[fastest].lead_time_days} days.",
            ),
            KeyPoint(
                dimension="cash_flow",
                winner=self._name(lightest, profiles),
                summary=f"Lowest cost of capital ({format_currency(capital[lightest])}) from payment terms.",
            ),
            KeyPoint(
                dimension="risk",
                winner=winner("risk"),
                summary="Best blend of quality and delivery reliability.",
            ),
        ]
        covered = {p.dimension for p in points}
        points.extend(p for p in model_points if p.dimension not in covered)
        return points
