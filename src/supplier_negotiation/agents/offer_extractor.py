"""Offer extraction and normalization.

Turns a free-form counterparty reply into a :class:`StructuredOffer`
that can be compared apples-to-apples with every other offer. The model
only proposes per-SKU prices; quantities, totals and coverage are fixed
up deterministically against the baseline quotation:

1. Quantities are forced to the baseline quantity for each SKU.
2. A single price repeated across most items (a blanket quote) is
   replaced by the baseline prices scaled to the stated total.
3. Per-item outliers far from the baseline price snap back to it.
4. Missing SKUs are backfilled at baseline price.
5. The total is recomputed from the items; the stated total is ignored.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass

import structlog
from pydantic import BaseModel, Field, ValidationError

from supplier_negotiation.config import Settings
from supplier_negotiation.llm.provider import CompletionError, ModelGateway
from supplier_negotiation.llm.usage import UsageTracker
from supplier_negotiation.models import (
    BaselineItem,
    CounterpartyProfile,
    ModelTier,
    OfferItem,
    PriceTier,
    StructuredOffer,
    VolumeTier,
)
from supplier_negotiation.tools.calculations import baseline_total, price_range
from supplier_negotiation.tools.context_tools import format_baseline_lines

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Extraction schema
# ---------------------------------------------------------------------------


class ExtractedItem(BaseModel):
    """Per-SKU price as read from the counterparty's text."""

    sku: str
    unit_price: float
    quantity: float | None = None
    volume_tiers: list[VolumeTier] = Field(default_factory=list)


class ExtractedOffer(BaseModel):
    """Raw extraction result, before any normalization."""

    total_cost: float | None = Field(None, description="Total the counterparty stated, if any.")
    items: list[ExtractedItem] = Field(default_factory=list)
    lead_time_days: int | None = None
    payment_terms: str | None = None
    concessions: list[str] = Field(default_factory=list)
    conditions: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CounterpartyDefaults:
    """Values used when the reply does not state them."""

    lead_time_days: int
    payment_terms: str
    price_tier: PriceTier | None = None

    @classmethod
    def from_profile(cls, profile: CounterpartyProfile) -> "CounterpartyDefaults":
        return cls(profile.lead_time_days, profile.payment_terms, profile.price_tier)


@dataclass(frozen=True)
class NormalizerThresholds:
    """Tunable limits for blanket-price and outlier correction."""

    blanket_price_share: float = 0.7
    blanket_baseline_match_share: float = 0.3
    blanket_price_match_tolerance: float = 0.10
    blanket_ratio_floor: float = 0.5
    blanket_ratio_ceiling: float = 2.0
    outlier_high_ratio: float = 3.0
    outlier_low_ratio: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> "NormalizerThresholds":
        return cls(
            blanket_price_share=settings.blanket_price_share,
            blanket_baseline_match_share=settings.blanket_baseline_match_share,
            blanket_price_match_tolerance=settings.blanket_price_match_tolerance,
            blanket_ratio_floor=settings.blanket_ratio_floor,
            blanket_ratio_ceiling=settings.blanket_ratio_ceiling,
            outlier_high_ratio=settings.outlier_high_ratio,
            outlier_low_ratio=settings.outlier_low_ratio,
        )


def baseline_offer(baseline: list[BaselineItem], defaults: CounterpartyDefaults) -> StructuredOffer:
    """An offer identical to the baseline quotation."""
    return StructuredOffer(
        total_cost=baseline_total(baseline),
        items=[
            OfferItem(
                sku=item.sku,
                unit_price=item.unit_price,
                quantity=item.quantity,
                volume_tiers=list(item.volume_tiers),
            )
            for item in baseline
        ],
        lead_time_days=defaults.lead_time_days,
        payment_terms=defaults.payment_terms,
    )


def _is_blanket_price(
    prices: list[float],
    baseline: list[BaselineItem],
    thresholds: NormalizerThresholds,
) -> float | None:
    """Return the repeated price if *prices* look like one undifferentiated quote."""
    if len(prices) < 2:
        return None
    price, count = Counter(round(p, 2) for p in prices).most_common(1)[0]
    if count / len(prices) < thresholds.blanket_price_share:
        return None
    plausible = sum(
        1
        for item in baseline
        if item.unit_price > 0
        and abs(price - item.unit_price) / item.unit_price <= thresholds.blanket_price_match_tolerance
    )
    if plausible / len(baseline) >= thresholds.blanket_baseline_match_share:
        return None
    return price


def normalize_offer(
    raw: ExtractedOffer,
    baseline: list[BaselineItem],
    defaults: CounterpartyDefaults,
    thresholds: NormalizerThresholds | None = None,
) -> StructuredOffer:
    """Apply the deterministic repair pipeline to an extraction result.

    Items whose SKU is not in the baseline are dropped. The returned items
    follow baseline order and cover every baseline SKU.
    """
    thresholds = thresholds or NormalizerThresholds()
    by_sku = {item.sku.upper(): item for item in baseline}

    prices: dict[str, float] = {}
    tiers: dict[str, list[VolumeTier]] = {}
    for extracted in raw.items:
        key = extracted.sku.strip().upper()
        if key not in by_sku:
            logger.warning("offer_item_unknown_sku", sku=extracted.sku)
            continue
        if key in prices:
            continue
        prices[key] = extracted.unit_price
        tiers[key] = list(extracted.volume_tiers)
        if extracted.quantity is not None and extracted.quantity != by_sku[key].quantity:
            logger.info(
                "offer_quantity_normalized",
                sku=by_sku[key].sku,
                extracted=extracted.quantity,
                baseline=by_sku[key].quantity,
            )

    blanket = _is_blanket_price(list(prices.values()), baseline, thresholds)
    if blanket is not None:
        reference_total = baseline_total(baseline)
        stated = raw.total_cost if raw.total_cost and raw.total_cost > 0 else blanket * sum(
            item.quantity for item in baseline
        )
        ratio = min(
            max(stated / reference_total, thresholds.blanket_ratio_floor),
            thresholds.blanket_ratio_ceiling,
        ) if reference_total > 0 else 1.0
        logger.warning(
            "offer_blanket_price_rescaled",
            blanket_price=blanket,
            stated_total=stated,
            ratio=round(ratio, 4),
        )
        prices = {key: round(by_sku[key].unit_price * ratio, 2) for key in prices}

    for key, price in prices.items():
        reference = by_sku[key].unit_price
        if reference <= 0:
            continue
        ratio = price / reference
        if ratio > thresholds.outlier_high_ratio or ratio < thresholds.outlier_low_ratio:
            logger.warning(
                "offer_price_outlier_snapped",
                sku=by_sku[key].sku,
                price=price,
                baseline_price=reference,
            )
            prices[key] = reference

    items: list[OfferItem] = []
    for item in baseline:
        key = item.sku.upper()
        if key in prices:
            items.append(
                OfferItem(
                    sku=item.sku,
                    unit_price=prices[key],
                    quantity=item.quantity,
                    volume_tiers=tiers[key],
                )
            )
        else:
            logger.info("offer_item_backfilled", sku=item.sku)
            items.append(
                OfferItem(
                    sku=item.sku,
                    unit_price=item.unit_price,
                    quantity=item.quantity,
                    volume_tiers=list(item.volume_tiers),
                )
            )

    valid = [i for i in items if i.sku and i.quantity > 0 and i.unit_price > 0]
    total = round(sum(i.unit_price * i.quantity for i in valid), 2) if valid else baseline_total(baseline)
    if raw.total_cost is not None and abs(raw.total_cost - total) > 1:
        logger.info("offer_total_overridden", stated=raw.total_cost, computed=total)

    if defaults.price_tier is not None:
        reference_total = baseline_total(baseline)
        low, high = price_range(defaults.price_tier)
        if not reference_total * low <= total <= reference_total * high:
            logger.warning(
                "offer_outside_price_range",
                total=total,
                low=round(reference_total * low, 2),
                high=round(reference_total * high, 2),
            )

    return StructuredOffer(
        total_cost=total,
        items=items,
        lead_time_days=raw.lead_time_days if raw.lead_time_days and raw.lead_time_days > 0 else defaults.lead_time_days,
        payment_terms=(raw.payment_terms or "").strip() or defaults.payment_terms,
        concessions=list(raw.concessions),
        conditions=list(raw.conditions),
    )


def renormalize(
    offer: StructuredOffer,
    baseline: list[BaselineItem],
    defaults: CounterpartyDefaults,
    thresholds: NormalizerThresholds | None = None,
) -> StructuredOffer:
    """Run an existing structured offer through the pipeline again."""
    raw = ExtractedOffer(
        total_cost=offer.total_cost,
        items=[
            ExtractedItem(
                sku=i.sku,
                unit_price=i.unit_price,
                quantity=i.quantity,
                volume_tiers=list(i.volume_tiers),
            )
            for i in offer.items
        ],
        lead_time_days=offer.lead_time_days,
        payment_terms=offer.payment_terms,
        concessions=list(offer.concessions),
        conditions=list(offer.conditions),
    )
    return normalize_offer(raw, baseline, defaults, thresholds)


class OfferExtractorAgent:
    """Extracts structured offers from counterparty replies."""

    def __init__(self, gateway: ModelGateway, settings: Settings) -> None:
        self.gateway = gateway
        self.thresholds = NormalizerThresholds.from_settings(settings)
        self.max_attempts = max(1, settings.extraction_max_attempts)

    def build_prompt(self, text: str, baseline: list[BaselineItem]) -> str:
        return (
            "<role>You extract structured offers from supplier messages.</role>\n\n"
            f"<baseline_items>\n{format_baseline_lines(baseline)}\n</baseline_items>\n\n"
            f"<counterparty_message>\n{text}\n</counterparty_message>\n\n"
            "<instructions>\n"
            "Return every SKU the supplier priced, using the SKU codes from baseline_items, "
            "with its unit price in dollars. Include the stated total, lead time in days, "
            "payment terms, concessions and conditions when mentioned. Use null for values "
            "the message does not state. Do not compute anything that is not in the message.\n"
            "</instructions>"
        )

    async def extract(
        self,
        text: str,
        baseline: list[BaselineItem],
        defaults: CounterpartyDefaults,
        usage: UsageTracker,
        counterparty_id: str | None = None,
    ) -> StructuredOffer:
        """Extract and normalize an offer. Never raises for model failures.

        After ``max_attempts`` failed extractions the baseline offer is
        returned so the round still ends with a usable offer.
        """
        prompt = self.build_prompt(text, baseline)
        for attempt in range(1, self.max_attempts + 1):
            try:
                raw = await self.gateway.generate(
                    purpose="extraction",
                    tier=ModelTier.FAST,
                    prompt=prompt,
                    schema=ExtractedOffer,
                    usage=usage,
                )
            except (CompletionError, ValidationError) as exc:
                logger.warning(
                    "offer_extraction_failed",
                    counterparty_id=counterparty_id,
                    attempt=attempt,
                    error=str(exc)[:200],
                )
                continue
            offer = normalize_offer(raw, baseline, defaults, self.thresholds)
            logger.info(
                "offer_extracted",
                counterparty_id=counterparty_id,
                total_cost=offer.total_cost,
                items=len(offer.items),
                concessions=len(offer.concessions),
            )
            return offer

        logger.error("offer_extraction_fallback_to_baseline", counterparty_id=counterparty_id)
        return baseline_offer(baseline, defaults)
