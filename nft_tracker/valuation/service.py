"""Loads catalog and sales data and runs the valuation engine."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from nft_tracker.db.models import SalesRecord, Token
from nft_tracker.valuation.engine import (
    RarityTier,
    Sale,
    TokenValuationInput,
    Trait,
    estimated_value,
    rarity_score,
    rarity_tier,
    trait_multiplier,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenValuation:
    token_id: int
    rarity_rank: Optional[int]
    tier: RarityTier
    rarity_score: float
    trait_multiplier: float
    estimated_value: int


def build_input(token: Token, sales: Sequence[SalesRecord]) -> TokenValuationInput:
    """Convert catalog rows into the engine's input type."""
    return TokenValuationInput(
        token_id=token.token_id,
        mint_implied_value=(
            float(token.mint_implied_value) if token.mint_implied_value is not None else None
        ),
        traits=tuple(
            Trait(name=t.trait_name, value=t.trait_value, rarity=float(t.rarity))
            for t in token.traits
        ),
        sales=tuple(Sale(price=float(s.sale_price), sale_date=s.sale_date) for s in sales),
    )


class ValuationService:
    """Values catalog tokens using their traits and recorded sales."""

    async def value_token(
        self,
        db: AsyncSession,
        token_id: int,
        now: Optional[datetime] = None,
    ) -> Optional[TokenValuation]:
        """
        Value a single token.

        Args:
            db: Database session
            token_id: Token to value
            now: Reference time for the recent-sales window

        Returns:
            TokenValuation, or None if the token is not in the catalog
        """
        result = await db.execute(
            select(Token).options(selectinload(Token.traits)).where(Token.token_id == token_id)
        )
        token = result.scalar_one_or_none()
        if token is None:
            return None

        sales_result = await db.execute(
            select(SalesRecord)
            .where(SalesRecord.token_id == token_id)
            .order_by(SalesRecord.sale_date.desc())
        )
        token_input = build_input(token, sales_result.scalars().all())

        return TokenValuation(
            token_id=token_id,
            rarity_rank=token.rarity_rank,
            tier=rarity_tier(token.rarity_rank),
            rarity_score=rarity_score(token_input.traits),
            trait_multiplier=trait_multiplier(token_input.traits),
            estimated_value=estimated_value(token_input, now=now),
        )


valuation_service = ValuationService()
