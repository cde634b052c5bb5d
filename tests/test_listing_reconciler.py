"""Tests for listing reconciliation."""

import random
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select

from nft_tracker.db.models import (
    SOURCE_EXTERNAL_FEED,
    SOURCE_MANUAL,
    STATUS_ACTIVE,
    STATUS_API_SYNC_REMOVED,
    STATUS_MANUALLY_REMOVED,
    STATUS_PRICE_CHANGED,
    STATUS_SOLD,
    Listing,
    SalesRecord,
)
from nft_tracker.errors import FeedIncompleteError, RetryExhaustedError
from nft_tracker.sync.listing_reconciler import ListingReconciler, match_sale
from nft_tracker.ingest.base import CompletedOrder

SELLER = "kaspa:qqseller"


def order(token_id, price, seller=SELLER, order_id=None, created_at="2025-01-01T00:00:00Z"):
    return {
        "id": order_id or f"o-{token_id}-{price}",
        "tokenId": token_id,
        "totalPrice": price,
        "sellerWalletAddress": seller,
        "createdAt": created_at,
    }


def completed(token_id, price, order_id, fulfilled_at):
    return {
        "id": order_id,
        "tokenId": token_id,
        "totalPrice": price,
        "fullfillmentTimestamp": fulfilled_at.isoformat() + "Z",
    }


def make_client(active=None, completed_orders=None):
    client = MagicMock()
    client.fetch_active_orders = AsyncMock(return_value=active or [])
    client.fetch_completed_orders = AsyncMock(return_value=completed_orders or [])
    client.fetch_active_order_for_token = AsyncMock(return_value=None)
    return client


async def all_listings(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(Listing).order_by(Listing.id))
        return result.scalars().all()


async def sales(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(SalesRecord))
        return result.scalars().all()


async def assert_one_active_per_token(session_factory):
    async with session_factory() as session:
        result = await session.execute(
            select(Listing.token_id, func.count())
            .where(Listing.status == STATUS_ACTIVE)
            .group_by(Listing.token_id)
            .having(func.count() > 1)
        )
        assert result.all() == []


@pytest.mark.asyncio
async def test_new_feed_listings_are_added(store, session_factory, test_settings):
    client = make_client(active=[order(1, 100), order(2, 150)])

    summary = await ListingReconciler(store, client, test_settings).reconcile()

    assert summary.added == 2
    assert summary.errors == 0
    assert summary.final_count == 2
    rows = await all_listings(session_factory)
    assert {r.token_id for r in rows} == {1, 2}
    assert all(r.source == SOURCE_EXTERNAL_FEED and r.status == STATUS_ACTIVE for r in rows)
    assert rows[0].external_order_id == "o-1-100"
    assert rows[0].external_created_at == datetime(2025, 1, 1)


@pytest.mark.asyncio
async def test_repeat_run_with_same_feed_changes_nothing(store, session_factory, test_settings):
    client = make_client(active=[order(1, 100), order(2, 150)])
    reconciler = ListingReconciler(store, client, test_settings)

    await reconciler.reconcile()
    summary = await reconciler.reconcile()

    assert (summary.added, summary.updated, summary.removed) == (0, 0, 0)
    assert summary.no_change == 2
    assert summary.final_count == 2
    assert len(await all_listings(session_factory)) == 2


@pytest.mark.asyncio
async def test_repeat_run_with_over_precise_price_changes_nothing(store, session_factory, test_settings):
    client = make_client(active=[order(7, 0.1 + 0.2), order(8, "12.123456789")])
    reconciler = ListingReconciler(store, client, test_settings)

    await reconciler.reconcile()
    summary = await reconciler.reconcile()

    assert (summary.added, summary.updated, summary.removed) == (0, 0, 0)
    assert summary.no_change == 2
    rows = await all_listings(session_factory)
    assert [(r.status, r.total_price) for r in rows] == [
        (STATUS_ACTIVE, Decimal("0.30000000")),
        (STATUS_ACTIVE, Decimal("12.12345679")),
    ]


@pytest.mark.asyncio
async def test_delisted_without_sale_is_api_sync_removed(store, session_factory, test_settings):
    client = make_client(active=[order(1, 100), order(2, 150)])
    reconciler = ListingReconciler(store, client, test_settings)
    await reconciler.reconcile()

    client.fetch_active_orders.return_value = [order(2, 150)]
    summary = await reconciler.reconcile()

    assert summary.removed == 1
    assert summary.no_change == 1
    assert summary.final_count == 1
    closed = [r for r in await all_listings(session_factory) if r.token_id == 1][0]
    assert closed.status == STATUS_API_SYNC_REMOVED
    assert closed.deactivated_at is not None
    assert closed.deactivated_by == "listing_sync"
    assert await sales(session_factory) == []


@pytest.mark.asyncio
async def test_delisted_with_matching_order_is_sold(store, session_factory, test_settings):
    client = make_client(active=[order(1, 100, order_id="order-1")])
    reconciler = ListingReconciler(store, client, test_settings)
    await reconciler.reconcile()

    fulfilled = datetime(2025, 1, 2, 8, 30)
    client.fetch_active_orders.return_value = []
    client.fetch_completed_orders.return_value = [completed(1, 100, "order-1", fulfilled)]
    summary = await reconciler.reconcile()

    assert summary.updated == 1
    assert summary.final_count == 0
    listing = (await all_listings(session_factory))[0]
    assert listing.status == STATUS_SOLD
    recorded = await sales(session_factory)
    assert len(recorded) == 1
    assert recorded[0].id == "order-1"
    assert recorded[0].listing_id == listing.id
    assert recorded[0].sale_date == fulfilled
    assert recorded[0].sale_price == Decimal("100")


@pytest.mark.asyncio
async def test_price_change_closes_and_reinserts(store, session_factory, test_settings):
    client = make_client(active=[order(1, 100)])
    reconciler = ListingReconciler(store, client, test_settings)
    await reconciler.reconcile()

    client.fetch_active_orders.return_value = [order(1, 90)]
    summary = await reconciler.reconcile()

    assert summary.updated == 1
    assert summary.final_count == 1
    old, new = await all_listings(session_factory)
    assert old.status == STATUS_PRICE_CHANGED
    assert old.total_price == Decimal("100")
    assert new.status == STATUS_ACTIVE
    assert new.total_price == Decimal("90")
    await assert_one_active_per_token(session_factory)


@pytest.mark.asyncio
async def test_seller_change_closes_and_reinserts(store, session_factory, test_settings):
    client = make_client(active=[order(1, 100, seller="kaspa:alice")])
    reconciler = ListingReconciler(store, client, test_settings)
    await reconciler.reconcile()

    client.fetch_active_orders.return_value = [order(1, 100, seller="kaspa:bob")]
    summary = await reconciler.reconcile()

    assert summary.updated == 1
    old, new = await all_listings(session_factory)
    assert old.status == STATUS_PRICE_CHANGED
    assert old.seller_address == "kaspa:alice"
    assert new.seller_address == "kaspa:bob"


@pytest.mark.asyncio
async def test_manual_listing_survives_feed_absence(store, session_factory, test_settings):
    manual = await store.create_manual_listing(5, Decimal("500"), "kaspa:manual", actor="admin")

    reconciler = ListingReconciler(store, make_client(active=[]), test_settings)
    summary = await reconciler.reconcile()

    assert summary.no_change == 1
    assert summary.removed == 0
    rows = await all_listings(session_factory)
    assert len(rows) == 1
    assert rows[0].id == manual.id
    assert rows[0].source == SOURCE_MANUAL
    assert rows[0].status == STATUS_ACTIVE


@pytest.mark.asyncio
async def test_manual_listing_with_same_feed_terms_is_kept(store, session_factory, test_settings):
    await store.create_manual_listing(5, Decimal("500"), SELLER, actor="admin")

    summary = await ListingReconciler(store, make_client(active=[order(5, 500)]), test_settings).reconcile()

    assert summary.no_change == 1
    assert summary.added == 0
    rows = await all_listings(session_factory)
    assert [(r.source, r.status) for r in rows] == [(SOURCE_MANUAL, STATUS_ACTIVE)]


@pytest.mark.asyncio
async def test_manual_listing_is_replaced_when_feed_terms_differ(store, session_factory, test_settings):
    manual = await store.create_manual_listing(9, Decimal("100"), "kaspa:manual", actor="admin")

    summary = await ListingReconciler(store, make_client(active=[order(9, 250)]), test_settings).reconcile()

    assert summary.updated == 1
    assert summary.no_change == 0
    old, new = await all_listings(session_factory)
    assert old.id == manual.id
    assert old.status == STATUS_PRICE_CHANGED
    assert old.total_price == Decimal("100")
    assert new.source == SOURCE_EXTERNAL_FEED
    assert new.status == STATUS_ACTIVE
    assert new.total_price == Decimal("250")
    await assert_one_active_per_token(session_factory)


@pytest.mark.asyncio
async def test_malformed_entries_are_counted_and_skipped(store, session_factory, test_settings):
    client = make_client(
        active=[
            order(1, 100),
            {"id": "bad-1", "tokenId": "abc", "totalPrice": 5, "sellerWalletAddress": SELLER},
            {"id": "bad-2", "tokenId": 3, "totalPrice": 5},
            {"id": "bad-3", "tokenId": 4, "totalPrice": -1, "sellerWalletAddress": SELLER},
        ]
    )

    summary = await ListingReconciler(store, client, test_settings).reconcile()

    assert summary.added == 1
    assert summary.errors == 3
    assert [r.token_id for r in await all_listings(session_factory)] == [1]


@pytest.mark.asyncio
async def test_duplicate_feed_entries_keep_cheapest(store, session_factory, test_settings):
    client = make_client(active=[order(1, 80, order_id="cheap"), order(1, 120, order_id="dear")])

    summary = await ListingReconciler(store, client, test_settings).reconcile()

    assert summary.added == 1
    rows = await all_listings(session_factory)
    assert len(rows) == 1
    assert rows[0].external_order_id == "cheap"


@pytest.mark.asyncio
async def test_incomplete_active_feed_makes_no_writes(store, session_factory, test_settings):
    client = make_client(active=[order(1, 100), order(2, 150)])
    reconciler = ListingReconciler(store, client, test_settings)
    await reconciler.reconcile()

    client.fetch_active_orders.side_effect = FeedIncompleteError("page limit")
    summary = await reconciler.reconcile()

    assert summary.errors == 1
    assert summary.final_count == 2
    assert (summary.added, summary.updated, summary.removed) == (0, 0, 0)
    assert all(r.status == STATUS_ACTIVE for r in await all_listings(session_factory))


@pytest.mark.asyncio
async def test_completed_feed_failure_makes_no_writes(store, session_factory, test_settings):
    client = make_client(active=[order(1, 100)])
    reconciler = ListingReconciler(store, client, test_settings)
    await reconciler.reconcile()

    client.fetch_active_orders.return_value = []
    client.fetch_completed_orders.side_effect = RetryExhaustedError(
        "fetch_completed_orders", 3, ConnectionError("reset")
    )
    summary = await reconciler.reconcile()

    assert summary.errors == 1
    assert summary.final_count == 1
    assert (await all_listings(session_factory))[0].status == STATUS_ACTIVE


@pytest.mark.asyncio
async def test_failed_token_write_does_not_stop_run(store, session_factory, test_settings):
    client = make_client(active=[order(1, 100)])
    reconciler = ListingReconciler(store, client, test_settings)
    await reconciler.reconcile()

    # Snapshot goes stale: listing closed by an operator after the read
    stale = await store.get_active_listings()
    await store.close_listing_manually(stale[1].id, STATUS_MANUALLY_REMOVED, actor="admin")
    store.get_active_listings = AsyncMock(return_value=stale)

    client.fetch_active_orders.return_value = [order(2, 200)]
    summary = await reconciler.reconcile()

    assert summary.errors == 1
    assert summary.added == 1
    statuses = {r.token_id: r.status for r in await all_listings(session_factory)}
    assert statuses == {1: STATUS_MANUALLY_REMOVED, 2: STATUS_ACTIVE}


@pytest.mark.asyncio
async def test_mixed_runs_keep_one_active_per_token(store, session_factory, test_settings):
    client = make_client()
    reconciler = ListingReconciler(store, client, test_settings)
    feeds = [
        [order(1, 100), order(2, 200), order(3, 300)],
        [order(1, 90), order(3, 300), order(4, 50)],
        [order(1, 90), order(2, 210), order(4, 55)],
        [],
        [order(2, 200)],
    ]
    for feed in feeds:
        client.fetch_active_orders.return_value = feed
        summary = await reconciler.reconcile()
        assert summary.errors == 0
        assert summary.final_count == len(feed)
        await assert_one_active_per_token(session_factory)


def _listing(created_at, external_order_id=None):
    return Listing(
        id=1,
        token_id=9,
        total_price=Decimal("100"),
        seller_address=SELLER,
        source=SOURCE_EXTERNAL_FEED,
        status=STATUS_ACTIVE,
        external_order_id=external_order_id,
        created_at=created_at,
    )


def _completed_order(order_id, fulfilled_at):
    return CompletedOrder(order_id, 9, Decimal("100"), fulfilled_at)


def test_match_sale_by_order_id():
    created = datetime(2025, 3, 1)
    listing = _listing(created, external_order_id="abc")
    orders = [
        _completed_order("other", created + timedelta(hours=1)),
        _completed_order("abc", created - timedelta(days=30)),
    ]
    assert match_sale(listing, orders, set(), timedelta(minutes=5)).order_id == "abc"


def test_match_sale_single_candidate_after_listing():
    created = datetime(2025, 3, 1)
    listing = _listing(created)
    orders = [
        _completed_order("old", created - timedelta(days=2)),
        _completed_order("new", created + timedelta(hours=3)),
    ]
    assert match_sale(listing, orders, set(), timedelta(minutes=5)).order_id == "new"


def test_match_sale_within_grace_window():
    created = datetime(2025, 3, 1)
    listing = _listing(created)
    orders = [_completed_order("skewed", created - timedelta(minutes=2))]
    assert match_sale(listing, orders, set(), timedelta(minutes=5)).order_id == "skewed"


def test_match_sale_ambiguous_candidates_is_no_match():
    created = datetime(2025, 3, 1)
    listing = _listing(created)
    orders = [
        _completed_order("a", created + timedelta(hours=1)),
        _completed_order("b", created + timedelta(hours=2)),
    ]
    assert match_sale(listing, orders, set(), timedelta(minutes=5)) is None


def test_match_sale_ignores_recorded_orders():
    created = datetime(2025, 3, 1)
    listing = _listing(created)
    orders = [
        _completed_order("a", created + timedelta(hours=1)),
        _completed_order("b", created + timedelta(hours=2)),
    ]
    assert match_sale(listing, orders, {"a"}, timedelta(minutes=5)).order_id == "b"


def test_match_sale_none_when_only_older_orders():
    created = datetime(2025, 3, 1)
    listing = _listing(created)
    orders = [_completed_order("old", created - timedelta(hours=1))]
    assert match_sale(listing, orders, set(), timedelta(minutes=5)) is None


@pytest.mark.asyncio
async def test_verify_sample_reports_discrepancies(store, test_settings):
    client = make_client(active=[order(1, 100), order(2, 200)])
    reconciler = ListingReconciler(store, client, test_settings, rng=random.Random(0))
    await reconciler.reconcile()

    lookups = {1: order(1, 100), 2: order(2, 250)}
    client.fetch_active_order_for_token.side_effect = lambda token_id: lookups[token_id]

    report = await reconciler.verify_sample(10)

    assert report.sample_size == 2
    assert report.verified == 1
    assert report.discrepancies == 1
    assert report.errors == 0


@pytest.mark.asyncio
async def test_summary_dict_uses_camel_case(store, test_settings):
    summary = await ListingReconciler(store, make_client(), test_settings).reconcile()

    assert set(summary.as_dict()) == {
        "added", "updated", "removed", "noChange", "errors", "finalCount", "durationSeconds",
    }


@pytest.mark.asyncio
async def test_reconcile_token_adds_and_replaces(store, session_factory, test_settings):
    client = make_client()
    reconciler = ListingReconciler(store, client, test_settings)

    client.fetch_active_order_for_token.return_value = order(3, 100)
    assert await reconciler.reconcile_token(3) == "added"
    assert await reconciler.reconcile_token(3) == "no_change"

    client.fetch_active_order_for_token.return_value = order(3, 80)
    assert await reconciler.reconcile_token(3) == "updated"

    old, new = await all_listings(session_factory)
    assert old.status == STATUS_PRICE_CHANGED
    assert new.total_price == Decimal("80")
    client.fetch_completed_orders.assert_not_awaited()


@pytest.mark.asyncio
async def test_reconcile_token_records_sale_when_gone(store, session_factory, test_settings):
    client = make_client()
    reconciler = ListingReconciler(store, client, test_settings)
    client.fetch_active_order_for_token.return_value = order(4, 100, order_id="order-4")
    await reconciler.reconcile_token(4)

    client.fetch_active_order_for_token.return_value = None
    client.fetch_completed_orders.return_value = [
        completed(4, 100, "order-4", datetime(2025, 1, 3)),
        completed(5, 70, "order-5", datetime(2025, 1, 3)),
    ]
    assert await reconciler.reconcile_token(4) == "updated"

    listing = (await all_listings(session_factory))[0]
    assert listing.status == STATUS_SOLD
    assert [s.id for s in await sales(session_factory)] == ["order-4"]


@pytest.mark.asyncio
async def test_reconcile_token_without_listing_or_order(store, session_factory, test_settings):
    client = make_client()

    assert await ListingReconciler(store, client, test_settings).reconcile_token(6) == "no_change"
    assert await all_listings(session_factory) == []


@pytest.mark.asyncio
async def test_reconcile_token_feed_error_writes_nothing(store, session_factory, test_settings):
    client = make_client()
    client.fetch_active_order_for_token.side_effect = RetryExhaustedError(
        "fetch_token_order", 3, TimeoutError("timed out")
    )

    with pytest.raises(RetryExhaustedError):
        await ListingReconciler(store, client, test_settings).reconcile_token(6)
    assert await all_listings(session_factory) == []
