"""Collection stats and token valuation API endpoints."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nft_tracker.api.deps import get_database
from nft_tracker.db.models import CollectionStats
from nft_tracker.valuation.service import valuation_service

router = APIRouter(tags=["collection"])


class CollectionStatsResponse(BaseModel):
    """Response model for collection stats."""
    total_supply: int
    total_minted: int
    total_holders: int
    average_holding: float
    last_synced_at: datetime

    class Config:
        from_attributes = True


class RarityTierResponse(BaseModel):
    key: str
    label: str
    min_rank: int
    max_rank: int
    color: str


class TokenValuationResponse(BaseModel):
    """Response model for a token valuation."""
    token_id: int
    rarity_rank: Optional[int]
    tier: RarityTierResponse
    rarity_score: float
    trait_multiplier: float
    estimated_value: int


@router.get("/api/collection/stats", response_model=CollectionStatsResponse)
async def get_collection_stats(db: AsyncSession = Depends(get_database)):
    """Latest collection stats from the ownership sync."""
    result = await db.execute(select(CollectionStats).limit(1))
    stats = result.scalar_one_or_none()
    if stats is None:
        raise HTTPException(status_code=404, detail="Collection stats not available yet")
    return stats


@router.get("/api/tokens/{token_id}/valuation", response_model=TokenValuationResponse)
async def get_token_valuation(token_id: int, db: AsyncSession = Depends(get_database)):
    """Rarity tier, scores and estimated value for one token."""
    valuation = await valuation_service.value_token(db, token_id)
    if valuation is None:
        raise HTTPException(status_code=404, detail=f"Token {token_id} not found")

    return TokenValuationResponse(
        token_id=valuation.token_id,
        rarity_rank=valuation.rarity_rank,
        tier=RarityTierResponse(
            key=valuation.tier.key,
            label=valuation.tier.label,
            min_rank=valuation.tier.min_rank,
            max_rank=valuation.tier.max_rank,
            color=valuation.tier.color,
        ),
        rarity_score=valuation.rarity_score,
        trait_multiplier=valuation.trait_multiplier,
        estimated_value=valuation.estimated_value,
    )
