"""Per-negotiation token and cost accounting."""

from __future__ import annotations

import structlog

from supplier_negotiation.models import ModelUsage, UsageSummary

logger = structlog.get_logger(__name__)

# USD per one million tokens: (input, output)
_MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
    "claude-haiku-4-5": (1.00, 5.00),
    "claude-sonnet-4-5": (3.00, 15.00),
}
_DEFAULT_PRICING = (1.00, 5.00)


class UsageTracker:
    """Accumulates usage for one negotiation.

    Created when a negotiation starts and handed to every model call
    site; :meth:`summary` is persisted when the negotiation ends.
    """

    def __init__(self, negotiation_id: str) -> None:
        self.negotiation_id = negotiation_id
        self._by_model: dict[str, ModelUsage] = {}

    @classmethod
    def resume(cls, negotiation_id: str, previous: UsageSummary) -> "UsageTracker":
        """Continue accumulating on top of a persisted summary."""
        tracker = cls(negotiation_id)
        tracker._by_model = dict(previous.by_model)
        return tracker

    def track(self, model: str, input_tokens: int, output_tokens: int) -> None:
        """Record one completed call."""
        input_price, output_price = _MODEL_PRICING.get(model, _DEFAULT_PRICING)
        cost = (input_tokens * input_price + output_tokens * output_price) / 1_000_000

        current = self._by_model.get(model, ModelUsage())
        self._by_model[model] = ModelUsage(
            calls=current.calls + 1,
            input_tokens=current.input_tokens + input_tokens,
            output_tokens=current.output_tokens + output_tokens,
            cost_usd=current.cost_usd + cost,
        )

    def summary(self) -> UsageSummary:
        by_model = dict(self._by_model)
        return UsageSummary(
            total_calls=sum(u.calls for u in by_model.values()),
            total_input_tokens=sum(u.input_tokens for u in by_model.values()),
            total_output_tokens=sum(u.output_tokens for u in by_model.values()),
            total_cost_usd=round(sum(u.cost_usd for u in by_model.values()), 6),
            by_model=by_model,
        )

    def log_summary(self) -> None:
        summary = self.summary()
        logger.info(
            "usage_summary",
            negotiation_id=self.negotiation_id,
            calls=summary.total_calls,
            input_tokens=summary.total_input_tokens,
            output_tokens=summary.total_output_tokens,
            cost_usd=summary.total_cost_usd,
        )
