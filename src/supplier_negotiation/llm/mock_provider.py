"""Deterministic offline provider.

Used when ``LLM_PROVIDER=mock`` and throughout the test-suite. Responses
are derived from the prompts themselves, so a full negotiation runs end
to end without network access: counterparties quote every baseline SKU
at a tier-dependent multiplier that eases off round by round, extraction
reads those quotes back, and scoring picks the best weighted offer.
"""

from __future__ import annotations

import re
from typing import Any

import structlog
from pydantic import BaseModel

from supplier_negotiation.llm.provider import (
    Completion,
    CompletionError,
    StructuredCompletion,
    T,
)

logger = structlog.get_logger(__name__)

# (opening multiplier, closing multiplier) applied to baseline unit prices
_TIER_MULTIPLIERS: dict[str, tuple[float, float]] = {
    "cheap": (0.98, 0.88),
    "mid": (1.15, 0.99),
    "expensive": (1.35, 1.18),
}

_TIER_PITCH = {
    "cheap": "We run a lean operation, so these prices are already sharp.",
    "mid": "We can ship quickly and stay flexible on scheduling.",
    "expensive": "Our premium materials and QA justify the pricing.",
}

_BASELINE_ROW = re.compile(
    r"^- (?P<sku>\S+) \| (?P<desc>.*?) \| qty (?P<qty>\d+) \| \$(?P<price>[\d,]+(?:\.\d+)?)/unit",
    re.MULTILINE,
)
_QUOTE = re.compile(
    r"(?P<sku>[A-Za-z0-9][\w\-.]*)(?: \([^)]*\))? at \$(?P<price>[\d,]+(?:\.\d+)?)/unit"
)
_TOTAL = re.compile(r"Total:\s*\$(?P<total>[\d,]+(?:\.\d+)?)", re.IGNORECASE)
_LEAD = re.compile(r"Lead time:\s*(?P<days>\d+)\s*days", re.IGNORECASE)
_TERMS = re.compile(r"Payment terms:\s*(?P<terms>[^\n]+?)\.?\s*$", re.IGNORECASE | re.MULTILINE)
_ROUND = re.compile(r"This is round (?P<round>\d+) of (?P<total>\d+)")
_CAPACITY = re.compile(r"fulfill ~(?P<pct>\d+(?:\.\d+)?)%")
_OFFER_LINE = re.compile(
    r"^OFFER \| id=(?P<id>[^|]+?) \| name=(?P<name>[^|]*?) \| total=(?P<total>[\d.]+) "
    r"\| lead=(?P<lead>\d+) \| terms=(?P<terms>[^|]*?) \| quality=(?P<quality>[\d.]+)",
    re.MULTILINE,
)
_WEIGHTS = re.compile(
    r"Weights: cost=(?P<cost>[\d.]+) quality=(?P<quality>[\d.]+) "
    r"lead_time=(?P<lead_time>[\d.]+) terms=(?P<terms>[\d.]+)"
)
_AFFECTED = re.compile(r"Affected counterparty: id=(?P<id>\S+)")


def _number(text: str) -> float:
    return float(text.replace(",", ""))


def _field(pattern: re.Pattern[str], text: str, default: str = "") -> str:
    match = pattern.search(text)
    return match.group(1) if match else default


def _estimate_tokens(text: str) -> int:
    return max(1, len(text) // 4)


class MockProvider:
    """Prompt-driven fake of :class:`~supplier_negotiation.llm.provider.CompletionProvider`.

    Args:
        fail_purposes: Purposes (or purpose prefixes such as ``"pillar"``)
            that raise :class:`CompletionError` instead of answering.
    """

    def __init__(self, fail_purposes: set[str] | None = None) -> None:
        self.fail_purposes = set(fail_purposes or ())
        self.calls: list[str] = []

    def _check_failure(self, purpose: str) -> None:
        self.calls.append(purpose)
        family = purpose.split(":", 1)[0]
        if purpose in self.fail_purposes or family in self.fail_purposes:
            raise CompletionError(f"{purpose}: simulated provider failure")

    # ------------------------------------------------------------------
    # Free text
    # ------------------------------------------------------------------

    async def complete(
        self,
        *,
        purpose: str,
        model: str,
        system: str,
        messages: list[dict[str, str]],
        max_tokens: int,
        temperature: float,
    ) -> Completion:
        self._check_failure(purpose)
        if purpose == "counterparty":
            text = self._counterparty_reply(system)
        elif purpose == "synthesis":
            text = self._buyer_message(system)
        elif purpose.startswith("pillar:"):
            text = self._pillar_brief(purpose.split(":", 1)[1])
        else:
            text = f"Acknowledged ({purpose})."
        prompt_chars = len(system) + sum(len(m.get("content", "")) for m in messages)
        return Completion(
            text=text,
            model=model,
            input_tokens=max(1, prompt_chars // 4),
            output_tokens=_estimate_tokens(text),
        )

    def _counterparty_reply(self, system: str) -> str:
        name = _field(re.compile(r"Supplier: (.+)"), system, "our company").strip()
        tier = _field(re.compile(r"Price tier: (\w+)"), system, "mid")
        lead = int(_field(re.compile(r"Lead Time: (\d+) days"), system, "30"))
        terms = _field(re.compile(r"Payment Terms: (.+)"), system, "Net 30").strip()

        round_match = _ROUND.search(system)
        round_number = int(round_match.group("round")) if round_match else 1
        total_rounds = int(round_match.group("total")) if round_match else 1
        opening, closing = _TIER_MULTIPLIERS.get(tier, _TIER_MULTIPLIERS["mid"])
        progress = (round_number - 1) / max(total_rounds - 1, 1)
        multiplier = opening + (closing - opening) * min(progress, 1.0)

        lines: list[str] = []
        if "<urgent_situation>" in system:
            capacity = _field(_CAPACITY, system, "60")
            lines.append(
                f"Apologies, a raw material shortage means we can only ship about {capacity}% "
                "on the original timeline; the rest would follow 3-4 weeks later."
            )
        lines.append(f"Thanks for the message. {name} can offer:")

        total = 0.0
        for row in _BASELINE_ROW.finditer(system):
            price = round(_number(row.group("price")) * multiplier, 2)
            qty = int(row.group("qty"))
            total += price * qty
            lines.append(f"{row.group('sku')} at ${price:,.2f}/unit for {qty} units")
        lines.append(f"Total: ${total:,.2f}")
        lines.append(f"Lead time: {lead} days")
        lines.append(f"Payment terms: {terms}")
        lines.append(_TIER_PITCH.get(tier, _TIER_PITCH["mid"]))
        return "\n".join(lines)

    def _buyer_message(self, system: str) -> str:
        round_match = re.search(r"Round (\d+)/(\d+) with (.+?)\.</role>", system)
        if round_match:
            round_number, _, name = round_match.groups()
        else:
            round_number, name = "1", "your team"
        return (
            f"Hi {name}, this is Alex from procurement (round {round_number}). We are comparing "
            "several quotes on identical quantities. Please confirm per-SKU pricing, your best "
            "lead time and payment terms, and any volume concessions you can offer."
        )

    def _pillar_brief(self, pillar: str) -> str:
        briefs = {
            "strategy": (
                "Use competing bids as leverage. Ask for a 5% reduction on the largest SKUs "
                "and a shorter lead time."
            ),
            "risk": "No critical risks. Watch lead time reliability and concentration on one supplier.",
            "cost": "Largest savings sit in the highest-volume SKUs. Prefer split payment terms.",
        }
        return briefs.get(pillar, f"No additional guidance from {pillar}.")

    # ------------------------------------------------------------------
    # Structured
    # ------------------------------------------------------------------

    async def generate_object(
        self,
        *,
        purpose: str,
        model: str,
        prompt: str,
        schema: type[T],
    ) -> StructuredCompletion[T]:
        self._check_failure(purpose)
        if purpose == "extraction":
            payload = self._extract(prompt)
        elif purpose == "scoring":
            payload = self._score(prompt)
        elif purpose == "disruption":
            payload = self._disruption(prompt)
        else:
            raise CompletionError(f"{purpose}: mock provider has no structured response")
        value = schema.model_validate(payload)
        return StructuredCompletion(
            value=value,
            model=model,
            input_tokens=_estimate_tokens(prompt),
            output_tokens=_estimate_tokens(value.model_dump_json() if isinstance(value, BaseModel) else ""),
        )

    def _extract(self, prompt: str) -> dict[str, Any]:
        match = re.search(r"<counterparty_message>\n(.*?)\n</counterparty_message>", prompt, re.DOTALL)
        message = match.group(1) if match else prompt
        items = [
            {"sku": quote.group("sku"), "unit_price": _number(quote.group("price"))}
            for quote in _QUOTE.finditer(message)
        ]
        total = _field(_TOTAL, message)
        lead = _field(_LEAD, message)
        terms = _field(_TERMS, message).strip()
        return {
            "total_cost": _number(total) if total else None,
            "items": items,
            "lead_time_days": int(lead) if lead else None,
            "payment_terms": terms or None,
            "concessions": [],
            "conditions": [],
        }

    @staticmethod
    def _offers(prompt: str) -> list[dict[str, Any]]:
        return [
            {
                "id": m.group("id").strip(),
                "name": m.group("name").strip(),
                "total": float(m.group("total")),
                "lead": int(m.group("lead")),
                "terms": m.group("terms").strip(),
                "quality": float(m.group("quality")),
            }
            for m in _OFFER_LINE.finditer(prompt)
        ]

    def _score(self, prompt: str) -> dict[str, Any]:
        offers = self._offers(prompt)
        if not offers:
            raise CompletionError("scoring: no offers found in prompt")
        weights_match = _WEIGHTS.search(prompt)
        weights = (
            {k: float(v) for k, v in weights_match.groupdict().items()}
            if weights_match
            else {"cost": 0.4, "quality": 0.25, "lead_time": 0.2, "terms": 0.15}
        )
        cheapest = min(o["total"] for o in offers)
        fastest = min(o["lead"] for o in offers)

        scores = []
        for offer in offers:
            dims = {
                "cost": round(100 * cheapest / offer["total"], 1) if offer["total"] > 0 else 0.0,
                "quality": round(min(offer["quality"] * 20, 100), 1),
                "lead_time": round(100 * max(fastest, 1) / max(offer["lead"], 1), 1),
                "terms": 70.0,
            }
            scores.append({"counterparty_id": offer["id"], **dims})

        def weighted(entry: dict[str, Any]) -> float:
            return sum(entry[dim] * weight for dim, weight in weights.items())

        best = max(scores, key=weighted)
        best_offer = next(o for o in offers if o["id"] == best["counterparty_id"])
        return {
            "scores": scores,
            "primary_counterparty_id": best["counterparty_id"],
            "allocations": [{"counterparty_id": best["counterparty_id"], "allocation_pct": 100}],
            "executive_summary": (
                f"Award the full order to {best_offer['name']} at ${best_offer['total']:,.2f}."
            ),
            "key_points": [
                {"dimension": "cost", "winner": best_offer["name"], "summary": "Best weighted value."},
            ],
            "reasoning": f"{best_offer['name']} has the highest weighted score.",
            "tradeoffs": "A single supplier concentrates supply risk.",
        }

    def _disruption(self, prompt: str) -> dict[str, Any]:
        offers = self._offers(prompt)
        affected = _field(_AFFECTED, prompt)
        others = [o for o in offers if o["id"] != affected]
        if not affected or not others:
            raise CompletionError("disruption: need an affected counterparty and an alternative")
        backup = min(others, key=lambda o: o["total"])
        share = round(100 / len(offers), 1)
        return {
            "impact": f"{affected} can only ship part of the order on time.",
            "strategies": [
                {
                    "name": "Shift remainder",
                    "description": f"Keep the on-time share with {affected} and move the rest to {backup['name']}.",
                    "allocations": {affected: 60, backup["id"]: 40},
                    "estimated_cost": backup["total"],
                    "pros": ["Keeps timeline"],
                    "cons": ["Two suppliers to manage"],
                },
                {
                    "name": "Even split",
                    "description": "Spread the order across every counterparty.",
                    "allocations": {o["id"]: share for o in offers},
                    "estimated_cost": round(sum(o["total"] for o in offers) / len(offers), 2),
                    "pros": ["Lowest concentration risk"],
                    "cons": ["Higher coordination overhead"],
                },
            ],
            "recommendation": "Shift remainder",
        }
