"""Routing cost calculation."""

from agent_router.models import CostBreakdown, TokenUsage

# Flat blended rate for the routing model, USD per token.
DEFAULT_PRICE_PER_TOKEN = 0.00000025


class CostTracker:
    """Converts classifier token usage into dollars. Pure and deterministic."""

    def __init__(self, price_per_token: float = DEFAULT_PRICE_PER_TOKEN):
        if price_per_token < 0:
            raise ValueError(f"price_per_token must be >= 0, got {price_per_token}")
        self.price_per_token = price_per_token

    def cost(self, usage: TokenUsage | None) -> CostBreakdown:
        if usage is None:
            return CostBreakdown()
        if min(usage.input_tokens, usage.output_tokens, usage.total_tokens) < 0:
            raise ValueError(f"Token counts must be non-negative: {usage}")
        return CostBreakdown(
            tokens_used=usage.total_tokens,
            cost_usd=usage.total_tokens * self.price_per_token,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )
