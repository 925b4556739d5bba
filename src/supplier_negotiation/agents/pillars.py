"""Specialist pillar agents.

Three analysts brief the lead negotiator before every outbound message:
the strategy specialist (competitive leverage), the risk analyst
(reliability and pricing anomalies), and the cost specialist (SKU-level
pricing and cash flow). Each sees only its own context slice and writes
an internal brief, never the counterparty-facing message.
"""

from __future__ import annotations

import structlog

from supplier_negotiation.llm.provider import ModelGateway
from supplier_negotiation.llm.usage import UsageTracker
from supplier_negotiation.models import ModelTier

logger = structlog.get_logger(__name__)


class PillarAgent:
    """Base class for a pillar analyst.

    Subclasses set the CrewAI-style metadata plus the instructions and the
    fallback text used when the analysis cannot be produced.
    """

    NAME = "pillar"
    ROLE = ""
    GOAL = ""
    INSTRUCTIONS = ""
    FALLBACK = "[Pillar failed. Fall back to generic guidance.]"

    def __init__(self, gateway: ModelGateway) -> None:
        self.gateway = gateway

    def build_prompt(self, context: str) -> str:
        return (
            f"<role>You are the {self.ROLE} on a procurement team. {self.GOAL}</role>\n\n"
            f"<context>\n{context}\n</context>\n\n"
            f"<instructions>\n{self.INSTRUCTIONS}\n</instructions>"
        )

    def kickoff_message(self, round_number: int, latest_reply: str | None) -> str:
        if latest_reply is None:
            return "This is the opening round. Provide your opening brief."
        return f"Round {round_number}. Latest counterparty message: \"{latest_reply}\""

    async def analyze(
        self,
        context: str,
        round_number: int,
        latest_reply: str | None,
        usage: UsageTracker,
    ) -> str:
        """Produce this pillar's brief. Raises on provider failure."""
        logger.debug("pillar_analyze", pillar=self.NAME, round_number=round_number)
        return await self.gateway.complete(
            purpose=f"pillar:{self.NAME}",
            tier=ModelTier.FAST,
            system=self.build_prompt(context),
            messages=[{"role": "user", "content": self.kickoff_message(round_number, latest_reply)}],
            usage=usage,
            max_tokens=600,
            temperature=0.5,
        )


class StrategyPillar(PillarAgent):
    """Competitive bidding and leverage."""

    NAME = "strategy"
    ROLE = "Negotiation Specialist"
    GOAL = "Your job is to produce a negotiation strategy brief."
    INSTRUCTIONS = (
        "Write a 2-3 paragraph strategy brief focused on competitive bidding and leverage.\n"
        "- Identify the strongest leverage points from competing offers.\n"
        "- Suggest counter-offer language that uses exact numbers from competing bids.\n"
        "- Propose concrete price targets, lead time asks and payment term demands.\n"
        "- In the opening round, set the competitive tone. In later rounds, escalate using "
        "the movement (or lack of it) since the previous round.\n"
        "- Be skeptical of 'order more to save' offers that inflate total spend.\n"
        "Do NOT write the counterparty message itself."
    )
    FALLBACK = "[Strategy pillar failed. Fall back to general competitive pressure.]"


class RiskPillar(PillarAgent):
    """Supplier reliability, concentration risk and pricing anomalies."""

    NAME = "risk"
    ROLE = "Risk Analyst"
    GOAL = "Your job is to assess reliability, supply chain risk and pricing anomalies."
    INSTRUCTIONS = (
        "Write a concise risk assessment (1-2 paragraphs).\n"
        "- Compare lead time reliability and quality against the other counterparties.\n"
        "- Identify concentration risk and say whether a multi-supplier split is warranted.\n"
        "- If a supply disruption has occurred, assess its impact and recommend contingencies.\n"
        "- Flag any price discrepancy flag in the context. A total 2x or more above another "
        "counterparty's usually means different quantities or scope, and an apples-to-apples "
        "comparison must be demanded before proceeding.\n"
        "Do NOT write the counterparty message itself."
    )
    FALLBACK = "[Risk pillar failed. Proceed with caution and fall back to generic guidance.]"

    def kickoff_message(self, round_number: int, latest_reply: str | None) -> str:
        if latest_reply is None:
            return "Opening round. Provide the initial risk assessment for this counterparty."
        return f"Round {round_number}. Assess ongoing risks."


class CostPillar(PillarAgent):
    """SKU-level pricing and landed cost."""

    NAME = "cost"
    ROLE = "Product & Cost Specialist"
    GOAL = "Your job is to analyze pricing at the SKU level and total landed cost."
    INSTRUCTIONS = (
        "Write a concise financial analysis (1-2 paragraphs).\n"
        "- Identify SKUs priced well above or below baseline.\n"
        "- Compute effective landed cost including the cash flow cost of payment terms "
        "at an 8% annual rate.\n"
        "- Compare upfront and split payment terms on total cost of capital.\n"
        "- Give per-SKU dollar targets the negotiator can cite.\n"
        "Do NOT write the counterparty message itself."
    )
    FALLBACK = "[Cost pillar failed. Fall back to baseline numbers.]"

    def kickoff_message(self, round_number: int, latest_reply: str | None) -> str:
        if latest_reply is None:
            return "Opening round. Provide the initial cost and product analysis."
        return f"Round {round_number}. Update the cost analysis based on the latest offers."


def default_pillars(gateway: ModelGateway) -> list[PillarAgent]:
    """The three pillars in dispatch order."""
    return [StrategyPillar(gateway), RiskPillar(gateway), CostPillar(gateway)]
