# =============================================================================
# Pricing Registry — Per-Model Cost Calculation
# =============================================================================
#
# Rates are USD per 1,000 tokens, split into input (prompt) and output
# (completion). Lookup order for a model name:
#   1. exact match
#   2. longest registered family prefix ("gpt-4o-2024-08-06" → "gpt-4o")
#   3. DEFAULT_PRICING, with a warning
#
# Costs are rounded to 6 decimals: sub-cent amounts add up across many
# turns and must not be lost to float noise.
#
# Pricing is approximate. Update as providers change their rates.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

COST_PRECISION = 6


@dataclass(frozen=True)
class ModelPricing:
    """Per-1k-token costs for a model."""

    input_per_1k: float
    output_per_1k: float
    provider_label: str = ""


DEFAULT_PRICING = ModelPricing(0.01, 0.03, "default")


PRICING_REGISTRY: dict[str, ModelPricing] = {
    # --- OpenAI ---
    "gpt-4": ModelPricing(0.03, 0.06, "OpenAI"),
    "gpt-4-32k": ModelPricing(0.06, 0.12, "OpenAI"),
    "gpt-4-turbo": ModelPricing(0.01, 0.03, "OpenAI"),
    "gpt-4o": ModelPricing(0.0025, 0.01, "OpenAI"),
    "gpt-4o-mini": ModelPricing(0.00015, 0.0006, "OpenAI"),
    "gpt-3.5-turbo": ModelPricing(0.0005, 0.0015, "OpenAI"),

    # --- Anthropic ---
    "claude-3-opus": ModelPricing(0.015, 0.075, "Anthropic"),
    "claude-3-sonnet": ModelPricing(0.003, 0.015, "Anthropic"),
    "claude-3-haiku": ModelPricing(0.00025, 0.00125, "Anthropic"),
    "claude-sonnet-4-6": ModelPricing(0.003, 0.015, "Anthropic"),
    "claude-opus-4-6": ModelPricing(0.015, 0.075, "Anthropic"),
    "claude-haiku-4-5": ModelPricing(0.0008, 0.004, "Anthropic"),

    # --- OpenAI-compatible ---
    "deepseek-chat": ModelPricing(0.00014, 0.00028, "DeepSeek"),
    "deepseek-reasoner": ModelPricing(0.00055, 0.00219, "DeepSeek"),
    "qwen-plus": ModelPricing(0.00011, 0.00044, "Alibaba Cloud"),
    "qwen-max": ModelPricing(0.0016, 0.0064, "Alibaba Cloud"),
    "glm-5": ModelPricing(0.001, 0.0032, "Zhipu AI"),
}


class CostCalculator:
    """
    Computes monetary cost from token counts.

    Each instance owns a copy of the registry, so `set_pricing()` overrides
    stay local to the instance.
    """

    def __init__(self, registry: dict[str, ModelPricing] | None = None) -> None:
        self._registry = dict(PRICING_REGISTRY if registry is None else registry)

    def get_pricing(self, model: str) -> ModelPricing:
        pricing = self._registry.get(model)
        if pricing is not None:
            return pricing

        for family in sorted(self._registry, key=len, reverse=True):
            if model.startswith(family):
                return self._registry[family]

        logger.warning(
            "No pricing for model %s, using default rate (%.4f/%.4f per 1k)",
            model, DEFAULT_PRICING.input_per_1k, DEFAULT_PRICING.output_per_1k,
        )
        return DEFAULT_PRICING

    def cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        return self.cost_breakdown(model, prompt_tokens, completion_tokens)["total_cost"]

    def cost_breakdown(
        self,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
    ) -> dict[str, float]:
        """Input, output and total cost in USD, each rounded to 6 decimals."""
        pricing = self.get_pricing(model)
        input_cost = prompt_tokens / 1000 * pricing.input_per_1k
        output_cost = completion_tokens / 1000 * pricing.output_per_1k
        return {
            "input_cost": round(input_cost, COST_PRECISION),
            "output_cost": round(output_cost, COST_PRECISION),
            "total_cost": round(input_cost + output_cost, COST_PRECISION),
        }

    def set_pricing(self, model: str, pricing: ModelPricing) -> None:
        """Register or override a model's rate."""
        self._registry[model] = pricing
