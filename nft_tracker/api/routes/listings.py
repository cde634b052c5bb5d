"""Listing and sales history API endpoints."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from nft_tracker.api.deps import get_database, get_store, require_admin_api_key
from nft_tracker.db.models import (
    CLOSED_STATUSES,
    MANUAL_CLOSE_STATUSES,
    STATUS_ACTIVE,
    Listing,
    SalesRecord,
)
from nft_tracker.db.store import SyncStore
from nft_tracker.errors import ImmutableListingError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/listings", tags=["listings"])

ADMIN_ACTOR = "admin_api"


# Response models
class ListingResponse(BaseModel):
    """Response model for a listing."""
    id: int
    token_id: int
    total_price: Decimal
    seller_address: str
    source: str
    status: str
    external_order_id: Optional[str]
    created_at: datetime
    external_created_at: Optional[datetime]
    deactivated_at: Optional[datetime]
    deactivated_by: Optional[str]

    class Config:
        from_attributes = True


class SaleResponse(BaseModel):
    """Response model for a recorded sale."""
    id: str
    token_id: int
    sale_price: Decimal
    sale_date: datetime
    listing_id: Optional[int]

    class Config:
        from_attributes = True


class ManualListingRequest(BaseModel):
    """Request model for entering a listing by hand."""
    token_id: int = Field(..., gt=0)
    total_price: Decimal = Field(..., ge=0)
    seller_address: str = Field(..., min_length=1)


class ManualCloseRequest(BaseModel):
    """Request model for closing a listing by hand."""
    status: str = "manually_removed"


@router.get("", response_model=List[ListingResponse])
async def list_active_listings(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_database),
):
    """List active listings, cheapest first."""
    query = (
        select(Listing)
        .where(Listing.status == STATUS_ACTIVE)
        .order_by(Listing.total_price.asc(), Listing.token_id.asc())
        .offset(offset)
        .limit(limit)
    )
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/historical", response_model=List[ListingResponse])
async def list_historical_listings(
    status: Optional[str] = None,
    token_id: Optional[int] = None,
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_database),
):
    """List closed listings, most recently closed first."""
    if status and status not in CLOSED_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown closed status: {status}")

    query = (
        select(Listing)
        .where(Listing.status != STATUS_ACTIVE)
        .order_by(Listing.deactivated_at.desc())
        .limit(limit)
    )
    if status:
        query = query.where(Listing.status == status)
    if token_id is not None:
        query = query.where(Listing.token_id == token_id)

    result = await db.execute(query)
    return result.scalars().all()


@router.get("/sales-history", response_model=List[SaleResponse])
async def list_sales(
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_database),
):
    """List recorded sales, newest first."""
    result = await db.execute(
        select(SalesRecord).order_by(SalesRecord.sale_date.desc()).limit(limit)
    )
    return result.scalars().all()


@router.get("/sales-history/{token_id}", response_model=List[SaleResponse])
async def list_token_sales(
    token_id: int,
    db: AsyncSession = Depends(get_database),
):
    """List recorded sales for one token, newest first."""
    result = await db.execute(
        select(SalesRecord)
        .where(SalesRecord.token_id == token_id)
        .order_by(SalesRecord.sale_date.desc())
    )
    return result.scalars().all()


@router.post("/manual", response_model=ListingResponse, status_code=201)
async def create_manual_listing(
    request: ManualListingRequest,
    store: SyncStore = Depends(get_store),
    _admin: None = Depends(require_admin_api_key),
):
    """Create an active manual listing (admin only). Sync never modifies it."""
    try:
        return await store.create_manual_listing(
            token_id=request.token_id,
            total_price=request.total_price,
            seller_address=request.seller_address.strip(),
            actor=ADMIN_ACTOR,
        )
    except IntegrityError:
        raise HTTPException(
            status_code=409,
            detail=f"Token {request.token_id} already has an active listing",
        )


@router.post("/{listing_id}/manual-close", response_model=ListingResponse)
async def close_listing_manually(
    listing_id: int,
    request: ManualCloseRequest,
    store: SyncStore = Depends(get_store),
    _admin: None = Depends(require_admin_api_key),
):
    """Close an active listing by hand (admin only)."""
    if request.status not in MANUAL_CLOSE_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"status must be one of {', '.join(MANUAL_CLOSE_STATUSES)}",
        )

    try:
        listing = await store.close_listing_manually(listing_id, request.status, actor=ADMIN_ACTOR)
    except ImmutableListingError as e:
        raise HTTPException(status_code=409, detail=str(e))

    logger.info(f"Listing {listing_id} closed manually as {request.status}")
    return listing
