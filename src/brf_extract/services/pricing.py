# [Shared: External Collaborators]
"""
Price Oracle: resolves per-token prices for a model.

Resolution falls through three tiers:
  1. an exact catalog entry for the model id
  2. a provider default keyed by the ``provider/`` prefix
  3. a deliberately expensive global default

Prices are USD per token.
"""
from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol, Tuple

from brf_extract.models.schemas import CostBreakdown, CostQuote, PriceQuote

logger = logging.getLogger(__name__)


class PriceOracle(Protocol):
    def price_for(self, model: str) -> PriceQuote: ...

    def cost(self, model: str, input_tokens: int, output_tokens: int) -> CostQuote: ...


# (input, output) USD per 1M tokens
MODEL_PRICES_PER_MILLION: Dict[str, Tuple[float, float]] = {
    "google/gemini-2.5-pro": (1.25, 10.0),
    "google/gemini-2.5-flash": (0.30, 2.50),
    "openai/gpt-4o": (2.50, 10.0),
    "openai/gpt-4o-mini": (0.15, 0.60),
    "anthropic/claude-3.5-sonnet": (3.0, 15.0),
    "qwen/qwen3-vl-235b-a22b-instruct": (0.30, 1.20),
}

PROVIDER_PRICES_PER_MILLION: Dict[str, Tuple[float, float]] = {
    "google": (1.25, 10.0),
    "openai": (2.50, 10.0),
    "anthropic": (3.0, 15.0),
    "qwen": (0.50, 2.0),
}

FALLBACK_PRICE_PER_MILLION: Tuple[float, float] = (5.0, 15.0)


class StaticPriceOracle:
    """Price oracle backed by static tables."""

    def __init__(
        self,
        models: Optional[Dict[str, Tuple[float, float]]] = None,
        providers: Optional[Dict[str, Tuple[float, float]]] = None,
        fallback: Tuple[float, float] = FALLBACK_PRICE_PER_MILLION,
    ):
        self._models = MODEL_PRICES_PER_MILLION if models is None else models
        self._providers = PROVIDER_PRICES_PER_MILLION if providers is None else providers
        self._fallback = fallback

    def price_for(self, model: str) -> PriceQuote:
        if model in self._models:
            prices, source, confidence = self._models[model], "catalog", "high"
        else:
            provider = model.split("/", 1)[0] if "/" in model else ""
            if provider in self._providers:
                prices, source, confidence = self._providers[provider], "provider_default", "medium"
            else:
                logger.warning(f"No price known for model '{model}', using fallback tier")
                prices, source, confidence = self._fallback, "fallback", "low"
        return PriceQuote(
            input_price_per_token=prices[0] / 1_000_000,
            output_price_per_token=prices[1] / 1_000_000,
            source=source,
            confidence=confidence,
        )

    def cost(self, model: str, input_tokens: int, output_tokens: int) -> CostQuote:
        quote = self.price_for(model)
        input_cost = input_tokens * quote.input_price_per_token
        output_cost = output_tokens * quote.output_price_per_token
        return CostQuote(
            cost=input_cost + output_cost,
            breakdown=CostBreakdown(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                input_cost=input_cost,
                output_cost=output_cost,
                source=quote.source,
            ),
        )
