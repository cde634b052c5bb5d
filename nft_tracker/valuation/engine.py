"""Deterministic rarity scoring and value estimation.

Pure functions only: no I/O and no shared state, so they are safe to call
from any task. Pass ``now`` to ``estimated_value`` for reproducible results.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

# Estimate used when a token has no positive mint-implied value
DEFAULT_ESTIMATE = 5000
MIN_ESTIMATE = 1000
MINT_VALUE_SCALE = 1000

TRAIT_COUNT_WEIGHT = 0.15
ULTRA_RARE_BONUS = 0.25  # rarity < 1
RARE_BONUS = 0.10  # 1 <= rarity < 5
UNCOMMON_BONUS = 0.05  # 5 <= rarity < 15
MAX_MULTIPLIER = 2.5

RECENT_SALE_WINDOW = timedelta(days=60)
MODEL_WEIGHT = 0.3
RECENT_SALES_WEIGHT = 0.7

_EMPTY_TRAIT_VALUES = {"-", "none"}


@dataclass(frozen=True)
class Trait:
    name: str
    value: Optional[str]
    rarity: float  # percentile of tokens sharing this value; lower is rarer


@dataclass(frozen=True)
class Sale:
    price: float
    sale_date: datetime


@dataclass(frozen=True)
class TokenValuationInput:
    """Everything the estimator needs for one token."""

    token_id: int
    mint_implied_value: Optional[float]
    traits: Sequence[Trait] = field(default_factory=tuple)
    sales: Sequence[Sale] = field(default_factory=tuple)


@dataclass(frozen=True)
class RarityTier:
    key: str
    label: str
    min_rank: int
    max_rank: int
    color: str

    def contains(self, rank: int) -> bool:
        return self.min_rank <= rank <= self.max_rank


LEGENDARY = RarityTier("LEGENDARY", "Legendary", 1, 100, "#F59E0B")
EPIC = RarityTier("EPIC", "Epic", 101, 500, "#8B5CF6")
RARE = RarityTier("RARE", "Rare", 501, 1500, "#06B6D4")
UNCOMMON = RarityTier("UNCOMMON", "Uncommon", 1501, 5000, "#10B981")
COMMON = RarityTier("COMMON", "Common", 5001, 10000, "#6B7280")

RARITY_TIERS = (LEGENDARY, EPIC, RARE, UNCOMMON, COMMON)


def is_valid_trait(trait: Trait) -> bool:
    """A trait counts only if it has a real value (not empty, "-" or "none")."""
    if not trait.value:
        return False
    value = trait.value.strip()
    return bool(value) and value.lower() not in _EMPTY_TRAIT_VALUES


def rarity_score(traits: Sequence[Trait]) -> float:
    """Mean of ``100 - rarity`` over valid traits; 0.0 when there are none."""
    valid = [t for t in traits or () if is_valid_trait(t)]
    if not valid:
        return 0.0
    return sum(100 - t.rarity for t in valid) / len(valid)


def trait_multiplier(traits: Sequence[Trait]) -> float:
    """
    Value multiplier from trait count and rarity bands, capped at 2.5.

    Args:
        traits: All traits of the token; invalid ones are ignored

    Returns:
        Multiplier in ``[1.0, 2.5]``
    """
    valid = [t for t in traits or () if is_valid_trait(t)]

    multiplier = 1 + math.log(len(valid) + 1) * TRAIT_COUNT_WEIGHT

    ultra_rare = sum(1 for t in valid if t.rarity < 1)
    rare = sum(1 for t in valid if 1 <= t.rarity < 5)
    uncommon = sum(1 for t in valid if 5 <= t.rarity < 15)

    multiplier *= 1 + ultra_rare * ULTRA_RARE_BONUS
    multiplier *= 1 + rare * RARE_BONUS
    multiplier *= 1 + uncommon * UNCOMMON_BONUS

    return min(multiplier, MAX_MULTIPLIER)


def _fallback_value(mint_value: Optional[float]) -> int:
    try:
        return int(max(float(mint_value or 1) * MINT_VALUE_SCALE, MIN_ESTIMATE))
    except (TypeError, ValueError, OverflowError):
        return MIN_ESTIMATE


def estimated_value(
    token: TokenValuationInput,
    similar_tokens: Sequence[TokenValuationInput] = (),
    now: Optional[datetime] = None,
) -> int:
    """
    Estimate a token's value as an integer, never below 1000.

    Blends the trait-adjusted mint value with the mean of sales from the last
    60 days (30/70). Falls back to the scaled mint value if anything in the
    computation fails; this function does not raise.

    ``similar_tokens`` is accepted for callers that already have peers
    loaded; it does not currently affect the estimate.
    """
    try:
        mint_value = float(token.mint_implied_value or 0)
        if mint_value <= 0:
            return DEFAULT_ESTIMATE

        base = max(mint_value * MINT_VALUE_SCALE, MIN_ESTIMATE)
        estimate = base * trait_multiplier(token.traits)

        now = now or datetime.utcnow()
        recent = [
            float(sale.price)
            for sale in token.sales or ()
            if now - sale.sale_date <= RECENT_SALE_WINDOW
        ]
        if recent:
            estimate = estimate * MODEL_WEIGHT + (sum(recent) / len(recent)) * RECENT_SALES_WEIGHT

        # Half-up rounding, not banker's rounding
        return max(math.floor(estimate + 0.5), MIN_ESTIMATE)
    except Exception as e:
        logger.warning(f"Valuation failed for token {token.token_id}: {e}")
        return _fallback_value(getattr(token, "mint_implied_value", None))


def rarity_tier(rank: Optional[int]) -> RarityTier:
    """Tier for a rarity rank; ranks outside every tier are Common."""
    if rank is not None:
        for tier in RARITY_TIERS:
            if tier.contains(rank):
                return tier
    return COMMON
