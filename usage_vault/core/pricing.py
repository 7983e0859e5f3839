"""
Pricing calculations and tier resolution.

Maps cumulative token volume, model and markup to a unit price per 1K
tokens. All arithmetic is Decimal so results are identical everywhere.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, ROUND_UP
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

# Ledger amounts carry 8 decimal places
PRICE_QUANTUM = Decimal("0.00000001")

MIN_MARKUP_PCT = Decimal("0")
MAX_MARKUP_PCT = Decimal("500")
DEFAULT_MARKUP_PCT = Decimal("100")


@dataclass(frozen=True)
class PricingTier:
    """Token-volume bracket ``[token_range_low, token_range_high)``.

    ``token_range_high`` of None means the tier is open-ended.
    """
    name: str
    token_range_low: int
    token_range_high: Optional[int]
    base_price_per_1k: Decimal
    volume_discount: Decimal = Decimal("0")

    def __post_init__(self):
        """Validate tier bounds and discount."""
        if self.token_range_low < 0:
            raise ValueError(f"tier '{self.name}' token_range_low cannot be negative")
        if self.token_range_high is not None and self.token_range_high <= self.token_range_low:
            raise ValueError(f"tier '{self.name}' token_range_high must be > token_range_low")
        if self.base_price_per_1k < 0:
            raise ValueError(f"tier '{self.name}' base_price_per_1k cannot be negative")
        if not (Decimal("0") <= self.volume_discount < Decimal("1")):
            raise ValueError(f"tier '{self.name}' volume_discount must be in [0, 1)")

    def contains(self, tokens: int) -> bool:
        if tokens < self.token_range_low:
            return False
        return self.token_range_high is None or tokens < self.token_range_high


@dataclass(frozen=True)
class PricingTable:
    """Ordered tiers plus model multipliers."""
    tiers: Tuple[PricingTier, ...]
    model_multipliers: Dict[str, Decimal] = field(default_factory=dict)

    def __post_init__(self):
        """Validate that tiers are contiguous and cover [0, inf)."""
        if not self.tiers:
            raise ValueError("pricing table needs at least one tier")
        if self.tiers[0].token_range_low != 0:
            raise ValueError("first tier must start at 0 tokens")
        for lower, upper in zip(self.tiers, self.tiers[1:]):
            if lower.token_range_high != upper.token_range_low:
                raise ValueError(
                    f"tiers '{lower.name}' and '{upper.name}' are not contiguous"
                )
        if self.tiers[-1].token_range_high is not None:
            raise ValueError("last tier must be open-ended")
        for model, multiplier in self.model_multipliers.items():
            if multiplier < 0:
                raise ValueError(f"multiplier for '{model}' cannot be negative")

    def get_tier(self, cumulative_tokens: int) -> PricingTier:
        """Tier whose range contains ``cumulative_tokens``; boundaries go to the upper tier."""
        if cumulative_tokens < 0:
            raise ValueError("cumulative_tokens cannot be negative")
        for tier in self.tiers:
            if tier.contains(cumulative_tokens):
                return tier
        # Unreachable for a validated table
        raise ValueError(f"No tier covers {cumulative_tokens} tokens")

    def get_multiplier(self, model_id: Optional[str]) -> Decimal:
        """Model multiplier, 1.0 for unknown models."""
        if model_id is None:
            return Decimal("1")
        return self.model_multipliers.get(model_id, Decimal("1"))


DEFAULT_PRICING_TABLE = PricingTable(
    tiers=(
        PricingTier("Starter", 0, 100_000, Decimal("0.020"), Decimal("0.0")),
        PricingTier("Growth", 100_000, 1_000_000, Decimal("0.015"), Decimal("0.1")),
        PricingTier("Scale", 1_000_000, 10_000_000, Decimal("0.010"), Decimal("0.2")),
        PricingTier("Enterprise", 10_000_000, None, Decimal("0.008"), Decimal("0.3")),
    ),
    model_multipliers={
        "gpt-4": Decimal("1.5"),
        "gpt-3.5-turbo": Decimal("0.8"),
        "claude-3-sonnet": Decimal("1.2"),
        "llama-2-70b": Decimal("0.6"),
        "gemini": Decimal("1.0"),
        "palm": Decimal("0.9"),
    },
)


def clamp_markup(markup_pct) -> Decimal:
    """Validate a markup percentage and clamp it to [0, 500].

    Raises:
        ValueError: If markup_pct is not numeric
    """
    if isinstance(markup_pct, bool):
        raise ValueError(f"markup_pct must be numeric, got {markup_pct!r}")
    try:
        value = Decimal(str(markup_pct))
    except (InvalidOperation, ValueError):
        raise ValueError(f"markup_pct must be numeric, got {markup_pct!r}") from None
    if not value.is_finite():
        raise ValueError(f"markup_pct must be finite, got {markup_pct!r}")

    clamped = min(max(value, MIN_MARKUP_PCT), MAX_MARKUP_PCT)
    if clamped != value:
        logger.warning("markup_pct %s out of range, clamped to %s", value, clamped)
    return clamped


def price(
    cumulative_tokens: int,
    model_id: Optional[str],
    markup_pct=DEFAULT_MARKUP_PCT,
    table: PricingTable = DEFAULT_PRICING_TABLE,
) -> Decimal:
    """Effective unit price per 1K tokens.

    base * (1 + markup/100) * model multiplier * (1 - volume discount),
    rounded half-up to 8 decimal places.
    """
    tier = table.get_tier(cumulative_tokens)
    markup = clamp_markup(markup_pct)

    with_markup = tier.base_price_per_1k * (Decimal("1") + markup / Decimal("100"))
    with_model = with_markup * table.get_multiplier(model_id)
    final = with_model * (Decimal("1") - tier.volume_discount)
    return final.quantize(PRICE_QUANTUM, rounding=ROUND_HALF_UP)


def calculate_cost(
    tokens: int,
    cumulative_tokens: int,
    model_id: Optional[str],
    markup_pct=DEFAULT_MARKUP_PCT,
    table: PricingTable = DEFAULT_PRICING_TABLE,
) -> Decimal:
    """Cost of ``tokens`` priced at the tier reached by ``cumulative_tokens``.

    Rounded UP to 8 decimal places so billing never under-charges by rounding.
    """
    if tokens < 0:
        raise ValueError("tokens cannot be negative")
    unit = price(cumulative_tokens, model_id, markup_pct, table)
    cost = (Decimal(tokens) / Decimal("1000")) * unit
    return cost.quantize(PRICE_QUANTUM, rounding=ROUND_UP)
