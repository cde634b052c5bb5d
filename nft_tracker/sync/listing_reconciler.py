"""Listing reconciliation against the marketplace order feed.

One pass fetches the full active-listing snapshot and the recent
completed-order window, then walks every token in (feed ∪ local active set)
in ascending token order. Each token's writes commit in their own
transaction so a failure on one token never rolls back another.
"""

import logging
import random
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from nft_tracker.db.models import (
    SOURCE_MANUAL,
    SOURCE_EXTERNAL_FEED,
    STATUS_API_SYNC_REMOVED,
    STATUS_PRICE_CHANGED,
    STATUS_SOLD,
    Listing,
)
from nft_tracker.db.store import SyncStore
from nft_tracker.errors import (
    FeedError,
    ImmutableListingError,
    MalformedRecordError,
    RetryExhaustedError,
)
from nft_tracker.ingest.base import CompletedOrder, FeedListing, quantize_price
from nft_tracker.ingest.marketplace_client import MarketplaceClient

logger = logging.getLogger(__name__)

# Actor tag written to deactivated_by for closes made by this job
SYNC_ACTOR = "listing_sync"

OUTCOME_ADDED = "added"
OUTCOME_UPDATED = "updated"
OUTCOME_REMOVED = "removed"
OUTCOME_NO_CHANGE = "no_change"

# Failures that cost one token, not the run
TOKEN_ERRORS = (RetryExhaustedError, SQLAlchemyError, ImmutableListingError)


@dataclass
class ListingSyncSummary:
    added: int = 0
    updated: int = 0
    removed: int = 0
    no_change: int = 0
    errors: int = 0
    final_count: int = 0
    duration_seconds: float = 0.0

    def count(self, outcome: str):
        setattr(self, outcome, getattr(self, outcome) + 1)

    def as_dict(self) -> dict[str, Any]:
        return {
            "added": self.added,
            "updated": self.updated,
            "removed": self.removed,
            "noChange": self.no_change,
            "errors": self.errors,
            "finalCount": self.final_count,
            "durationSeconds": round(self.duration_seconds, 3),
        }


@dataclass
class VerificationReport:
    sample_size: int = 0
    verified: int = 0
    discrepancies: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "sampleSize": self.sample_size,
            "verified": self.verified,
            "discrepancies": self.discrepancies,
            "errors": self.errors,
        }


def same_terms(listing: Listing, entry: FeedListing) -> bool:
    """True if the stored offer has the feed entry's price and seller."""
    return (
        quantize_price(listing.total_price) == quantize_price(entry.total_price)
        and listing.seller_address == entry.seller_address
    )


def match_sale(
    listing: Listing,
    orders: Iterable[CompletedOrder],
    recorded_order_ids: set[str],
    grace: timedelta,
) -> Optional[CompletedOrder]:
    """
    Find the completed order that closed ``listing``, if one can be identified.

    An order whose id equals the listing's external order id always matches.
    Otherwise exactly one not-yet-recorded order fulfilled at or after the
    listing's creation time (minus ``grace``) must exist; zero or several
    candidates are treated as no match.
    """
    orders = list(orders)
    if listing.external_order_id:
        for order in orders:
            if order.order_id == listing.external_order_id:
                return order

    threshold = listing.listed_since - grace
    candidates = [
        order
        for order in orders
        if order.order_id not in recorded_order_ids and order.fulfilled_at >= threshold
    ]
    if len(candidates) == 1:
        return candidates[0]
    if len(candidates) > 1:
        logger.info(
            f"Token {listing.token_id}: {len(candidates)} completed orders after listing "
            f"{listing.id}; not attributing a sale"
        )
    return None


class ListingReconciler:
    """
    Diffs the marketplace's active listings against the local active set.

    Args:
        store: Datastore client; every write goes through its retry policy
        client: Marketplace feed client
        settings: Application settings
        rng: Random source used to pick the verification sample
    """

    def __init__(
        self,
        store: SyncStore,
        client: MarketplaceClient,
        settings,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.client = client
        self.settings = settings
        self.sale_match_grace = timedelta(seconds=settings.sale_match_grace_seconds)
        self._rng = rng or random.Random()

    async def reconcile(self) -> ListingSyncSummary:
        """
        Run one reconciliation pass.

        Returns:
            ListingSyncSummary; feed failures are reported as ``errors=1``
            with no writes rather than raised
        """
        start = time.monotonic()
        summary = ListingSyncSummary()

        try:
            raw_active = await self.client.fetch_active_orders()
            raw_completed = await self.client.fetch_completed_orders()
        except (FeedError, RetryExhaustedError) as e:
            logger.error(f"Listing feed could not be fetched completely, no changes made: {e}")
            return await self._aborted(summary, start)

        feed = self._index_active(raw_active, summary)
        completed = self._index_completed(raw_completed, summary)

        try:
            local = await self.store.get_active_listings()
            missing_from_feed = [t for t in local if t not in feed]
            recorded = await self.store.get_recorded_sale_ids(missing_from_feed)
        except TOKEN_ERRORS as e:
            logger.error(f"Could not read local listings, no changes made: {e}")
            return await self._aborted(summary, start)

        for token_id in sorted(set(feed) | set(local)):
            try:
                outcome = await self._reconcile_token(
                    token_id,
                    entry=feed.get(token_id),
                    listing=local.get(token_id),
                    orders=completed.get(token_id, []),
                    recorded=recorded,
                )
            except TOKEN_ERRORS as e:
                summary.errors += 1
                logger.warning(f"Token {token_id}: listing write failed: {type(e).__name__}: {e}")
                continue
            summary.count(outcome)

        summary.final_count = await self._final_count(summary)
        summary.duration_seconds = time.monotonic() - start

        logger.info(
            f"Listing sync complete: {summary.added} added, {summary.updated} updated, "
            f"{summary.removed} removed, {summary.no_change} unchanged, "
            f"{summary.errors} errors, {summary.final_count} active"
        )
        return summary

    async def reconcile_token(self, token_id: int) -> str:
        """
        Reconcile one token against the per-token feed lookup.

        The completed-order window is only fetched when the token has no
        active order, to decide between sold and removed.

        Returns:
            The outcome (added, updated, removed or no_change)

        Raises:
            FeedError, RetryExhaustedError, MalformedRecordError: If the feed
                cannot be read; nothing is written
            ImmutableListingError, SQLAlchemyError: If the write fails
        """
        raw = await self.client.fetch_active_order_for_token(token_id)
        entry = FeedListing.from_payload(raw) if raw is not None else None
        if entry is not None and entry.token_id != token_id:
            raise MalformedRecordError(
                f"Lookup for token {token_id} returned order for token {entry.token_id}"
            )

        orders: list[CompletedOrder] = []
        if entry is None:
            raw_completed = await self.client.fetch_completed_orders()
            completed = self._index_completed(raw_completed, ListingSyncSummary())
            orders = completed.get(token_id, [])

        listing = await self.store.get_active_listing(token_id)
        recorded = await self.store.get_recorded_sale_ids([token_id]) if listing else set()

        outcome = await self._reconcile_token(token_id, entry, listing, orders, recorded)
        logger.info(f"Token {token_id} reconciled: {outcome}")
        return outcome

    async def _aborted(self, summary: ListingSyncSummary, start: float) -> ListingSyncSummary:
        summary.errors = 1
        summary.final_count = await self._final_count(summary)
        summary.duration_seconds = time.monotonic() - start
        return summary

    async def _final_count(self, summary: ListingSyncSummary) -> int:
        try:
            return await self.store.count_active_listings()
        except TOKEN_ERRORS as e:
            logger.error(f"Could not count active listings: {e}")
            summary.errors += 1
            return 0

    def _index_active(self, raw_orders: list[Any], summary: ListingSyncSummary) -> dict[int, FeedListing]:
        """Parse the active feed; first entry per token wins (feed is price ascending)."""
        feed: dict[int, FeedListing] = {}
        for raw in raw_orders:
            try:
                entry = FeedListing.from_payload(raw)
            except MalformedRecordError as e:
                summary.errors += 1
                logger.warning(f"Skipping malformed listed order: {e}")
                continue

            if entry.token_id in feed:
                logger.info(
                    f"Token {entry.token_id}: ignoring duplicate order {entry.order_id} "
                    f"(keeping {feed[entry.token_id].order_id})"
                )
                continue
            feed[entry.token_id] = entry
        return feed

    def _index_completed(
        self, raw_orders: list[Any], summary: ListingSyncSummary
    ) -> dict[int, list[CompletedOrder]]:
        completed: dict[int, list[CompletedOrder]] = {}
        seen: set[str] = set()
        for raw in raw_orders:
            try:
                order = CompletedOrder.from_payload(raw)
            except MalformedRecordError as e:
                summary.errors += 1
                logger.warning(f"Skipping malformed completed order: {e}")
                continue
            if order.order_id in seen:
                continue
            seen.add(order.order_id)
            completed.setdefault(order.token_id, []).append(order)
        return completed

    async def _reconcile_token(
        self,
        token_id: int,
        entry: Optional[FeedListing],
        listing: Optional[Listing],
        orders: list[CompletedOrder],
        recorded: set[str],
    ) -> str:
        if listing is None:
            if entry is None:
                return OUTCOME_NO_CHANGE
            await self.store.transaction(
                lambda session: self._insert_from_feed(session, entry),
                operation="insert_listing",
            )
            logger.debug(f"Token {token_id}: new listing at {entry.total_price}")
            return OUTCOME_ADDED

        if entry is None:
            # Feed absence never closes a manual listing
            if listing.source == SOURCE_MANUAL:
                return OUTCOME_NO_CHANGE

            sale = match_sale(listing, orders, recorded, self.sale_match_grace)
            if sale is not None:
                await self.store.transaction(
                    lambda session: self._close_as_sold(session, listing, sale),
                    operation="record_sale",
                )
                recorded.add(sale.order_id)
                logger.info(f"Token {token_id}: sold for {sale.total_price} (order {sale.order_id})")
                return OUTCOME_UPDATED

            await self.store.transaction(
                lambda session: self.store.close_listing(
                    session, listing.id, STATUS_API_SYNC_REMOVED, deactivated_by=SYNC_ACTOR
                ),
                operation="close_listing",
            )
            logger.debug(f"Token {token_id}: listing {listing.id} no longer in feed")
            return OUTCOME_REMOVED

        if same_terms(listing, entry):
            return OUTCOME_NO_CHANGE

        await self.store.transaction(
            lambda session: self._replace_listing(session, listing, entry),
            operation="replace_listing",
        )
        logger.debug(
            f"Token {token_id}: price/seller changed {listing.total_price} -> {entry.total_price}"
        )
        return OUTCOME_UPDATED

    async def _insert_from_feed(self, session, entry: FeedListing) -> Listing:
        return await self.store.insert_listing(
            session,
            token_id=entry.token_id,
            total_price=entry.total_price,
            seller_address=entry.seller_address,
            external_order_id=entry.order_id,
            external_created_at=entry.created_at,
            source=SOURCE_EXTERNAL_FEED,
        )

    async def _close_as_sold(self, session, listing: Listing, sale: CompletedOrder):
        await self.store.close_listing(session, listing.id, STATUS_SOLD, deactivated_by=SYNC_ACTOR)
        await self.store.insert_sale_if_absent(
            session,
            order_id=sale.order_id,
            token_id=listing.token_id,
            sale_price=sale.total_price,
            sale_date=sale.fulfilled_at,
            listing_id=listing.id,
        )

    async def _replace_listing(self, session, listing: Listing, entry: FeedListing) -> Listing:
        # Close first so the active-per-token index never sees two rows
        await self.store.close_listing(
            session, listing.id, STATUS_PRICE_CHANGED, deactivated_by=SYNC_ACTOR
        )
        return await self._insert_from_feed(session, entry)

    async def verify_sample(self, sample_size: int) -> VerificationReport:
        """
        Spot-check random active feed listings against the per-token lookup.

        Read-only: discrepancies are logged and counted, and the next
        reconciliation pass corrects them.
        """
        report = VerificationReport()
        if sample_size <= 0:
            return report

        try:
            local = await self.store.get_active_listings()
        except TOKEN_ERRORS as e:
            logger.error(f"Verification skipped, could not read listings: {e}")
            report.errors += 1
            return report

        candidates = sorted(
            (l for l in local.values() if l.source == SOURCE_EXTERNAL_FEED),
            key=lambda l: l.token_id,
        )
        sample = self._rng.sample(candidates, min(sample_size, len(candidates)))
        report.sample_size = len(sample)

        for listing in sample:
            try:
                raw = await self.client.fetch_active_order_for_token(listing.token_id)
                entry = FeedListing.from_payload(raw) if raw is not None else None
            except (FeedError, RetryExhaustedError, MalformedRecordError) as e:
                report.errors += 1
                logger.warning(f"Verification of token {listing.token_id} failed: {e}")
                continue

            if entry is not None and same_terms(listing, entry):
                report.verified += 1
            else:
                report.discrepancies += 1
                logger.warning(
                    f"Verification discrepancy for token {listing.token_id}: stored "
                    f"{listing.total_price} from {listing.seller_address}, feed "
                    f"{'none' if entry is None else f'{entry.total_price} from {entry.seller_address}'}"
                )

        logger.info(
            f"Listing verification: {report.verified}/{report.sample_size} verified, "
            f"{report.discrepancies} discrepancies, {report.errors} errors"
        )
        return report
