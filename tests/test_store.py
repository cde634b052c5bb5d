"""Tests for the datastore client and listing write guards."""

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from nft_tracker.db.models import (
    STATUS_ACTIVE,
    STATUS_MANUALLY_REMOVED,
    STATUS_SOLD,
    CollectionStats,
    Listing,
    SalesRecord,
)
from nft_tracker.db.store import OwnershipRow
from nft_tracker.errors import ImmutableListingError


async def _insert(store, token_id=1, price="100", seller="kaspa:seller"):
    return await store.transaction(
        lambda session: store.insert_listing(
            session,
            token_id=token_id,
            total_price=Decimal(price),
            seller_address=seller,
            external_order_id=f"order-{token_id}-{price}",
        )
    )


@pytest.mark.asyncio
async def test_second_active_listing_for_token_is_rejected(store):
    await _insert(store, token_id=1)

    with pytest.raises(IntegrityError):
        await _insert(store, token_id=1, price="90")

    assert await store.count_active_listings() == 1


@pytest.mark.asyncio
async def test_close_sets_deactivation_fields(store):
    listing = await _insert(store)

    closed = await store.transaction(
        lambda session: store.close_listing(session, listing.id, STATUS_SOLD, deactivated_by="test")
    )

    assert closed.status == STATUS_SOLD
    assert closed.deactivated_at is not None
    assert closed.deactivated_by == "test"
    assert closed.total_price == Decimal("100")
    assert await store.count_active_listings() == 0


@pytest.mark.asyncio
async def test_closed_listing_cannot_be_closed_again(store):
    listing = await _insert(store)
    await store.close_listing_manually(listing.id, STATUS_MANUALLY_REMOVED, actor="admin")

    with pytest.raises(ImmutableListingError):
        await store.close_listing_manually(listing.id, STATUS_MANUALLY_REMOVED, actor="admin")


@pytest.mark.asyncio
async def test_listing_terms_cannot_be_rewritten(store, session_factory):
    listing = await _insert(store)

    async with session_factory() as session:
        row = await session.get(Listing, listing.id)
        row.total_price = Decimal("1")
        with pytest.raises(ImmutableListingError):
            await session.flush()
        await session.rollback()

    assert (await store.get_active_listing(1)).total_price == Decimal("100")


@pytest.mark.asyncio
async def test_closed_listing_rejects_any_update(store, session_factory):
    listing = await _insert(store)
    await store.close_listing_manually(listing.id, STATUS_MANUALLY_REMOVED, actor="admin")

    async with session_factory() as session:
        row = await session.get(Listing, listing.id)
        row.deactivated_by = "someone else"
        with pytest.raises(ImmutableListingError):
            await session.flush()
        await session.rollback()


@pytest.mark.asyncio
async def test_manual_close_requires_manual_status(store):
    listing = await _insert(store)

    with pytest.raises(ValueError):
        await store.close_listing_manually(listing.id, STATUS_SOLD, actor="admin")

    assert (await store.get_active_listing(1)).status == STATUS_ACTIVE


@pytest.mark.asyncio
async def test_sale_insert_is_idempotent(store, db_session):
    listing = await _insert(store)

    async def record(session):
        return await store.insert_sale_if_absent(
            session,
            order_id="order-xyz",
            token_id=1,
            sale_price=Decimal("100"),
            sale_date=datetime(2025, 1, 1),
            listing_id=listing.id,
        )

    assert await store.transaction(record) is True
    assert await store.transaction(record) is False

    count = await db_session.scalar(select(func.count()).select_from(SalesRecord))
    assert count == 1


@pytest.mark.asyncio
async def test_ownership_upsert_counts_new_and_existing(store):
    first = await store.upsert_ownership([OwnershipRow(1, "a"), OwnershipRow(2, "b")])
    assert (first.added, first.updated) == (2, 0)

    second = await store.upsert_ownership([OwnershipRow(2, "c"), OwnershipRow(3, "c")])
    assert (second.added, second.updated) == (1, 1)

    assert await store.ownership_totals() == (3, 2)


@pytest.mark.asyncio
async def test_collection_stats_row_is_replaced(store, db_session):
    for holders in (10, 20):
        await store.replace_collection_stats(
            total_supply=1000,
            total_minted=1000,
            total_holders=holders,
            average_holding=Decimal(1000) / Decimal(holders),
        )

    rows = (await db_session.execute(select(CollectionStats))).scalars().all()
    assert len(rows) == 1
    assert rows[0].total_holders == 20

    stats = await store.get_collection_stats()
    assert stats["total_holders"] == 20
    assert stats["average_holding"] == pytest.approx(50.0)
