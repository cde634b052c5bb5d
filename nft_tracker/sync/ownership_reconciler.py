"""Ownership reconciliation: token holder snapshot and collection stats."""

import logging
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from nft_tracker.db.store import OwnershipRow, SyncStore
from nft_tracker.errors import FeedError, MalformedRecordError, RetryExhaustedError
from nft_tracker.ingest.base import HolderRecord
from nft_tracker.ingest.ownership_client import OwnershipClient

logger = logging.getLogger(__name__)

PAGE_ERRORS = (RetryExhaustedError, SQLAlchemyError)


@dataclass
class OwnershipSyncSummary:
    total_holders: int = 0
    processed_holders: int = 0
    added_holders: int = 0
    updated_holders: int = 0
    errors: int = 0
    duration_seconds: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "totalHolders": self.total_holders,
            "processedHolders": self.processed_holders,
            "addedHolders": self.added_holders,
            "updatedHolders": self.updated_holders,
            "errors": self.errors,
            "durationSeconds": round(self.duration_seconds, 3),
        }


def normalize_page(entries: list[Any]) -> tuple[list[OwnershipRow], int]:
    """
    Validate and de-duplicate one page of holder records.

    Returns:
        (rows unique by token id with the last occurrence kept, malformed count)
    """
    rows: dict[int, OwnershipRow] = {}
    malformed = 0
    for raw in entries:
        try:
            record = HolderRecord.from_payload(raw)
        except MalformedRecordError as e:
            malformed += 1
            logger.warning(f"Skipping invalid ownership record: {e}")
            continue
        rows[record.token_id] = OwnershipRow(record.token_id, record.wallet_address)
    return list(rows.values()), malformed


def average_holding(total_supply: int, total_holders: int) -> Decimal:
    if total_holders <= 0:
        return Decimal("0")
    return (Decimal(total_supply) / Decimal(total_holders)).quantize(
        Decimal("0.0001"), rounding=ROUND_HALF_UP
    )


class OwnershipReconciler:
    """Upserts the holder feed page by page, then rewrites collection stats."""

    def __init__(self, store: SyncStore, client: OwnershipClient, settings):
        self.store = store
        self.client = client
        self.settings = settings

    async def reconcile(self) -> OwnershipSyncSummary:
        start = time.monotonic()
        summary = OwnershipSyncSummary()
        feed_supply: Optional[int] = None
        feed_minted: Optional[int] = None

        try:
            async for page in self.client.iter_pages():
                feed_supply = page.total_supply or feed_supply
                feed_minted = page.total_minted or feed_minted

                rows, malformed = normalize_page(page.entries)
                summary.errors += malformed
                if not rows:
                    continue

                try:
                    result = await self.store.upsert_ownership(rows)
                except PAGE_ERRORS as e:
                    summary.errors += len(rows)
                    logger.error(f"Ownership page of {len(rows)} records failed: {e}")
                    continue

                summary.processed_holders += len(rows)
                summary.added_holders += result.added
                summary.updated_holders += result.updated
        except (FeedError, RetryExhaustedError) as e:
            summary.errors += 1
            logger.error(f"Ownership feed failed, stopping after {summary.processed_holders} records: {e}")

        await self._refresh_stats(summary, feed_supply, feed_minted)
        summary.duration_seconds = time.monotonic() - start

        logger.info(
            f"Ownership sync complete: {summary.processed_holders} processed "
            f"({summary.added_holders} new, {summary.updated_holders} updated), "
            f"{summary.total_holders} holders, {summary.errors} errors"
        )
        return summary

    async def _refresh_stats(
        self,
        summary: OwnershipSyncSummary,
        feed_supply: Optional[int],
        feed_minted: Optional[int],
    ):
        try:
            owned_tokens, holders = await self.store.ownership_totals()
            total_supply = feed_supply or self.settings.collection_total_supply or owned_tokens
            await self.store.replace_collection_stats(
                total_supply=total_supply,
                total_minted=feed_minted or owned_tokens,
                total_holders=holders,
                average_holding=average_holding(total_supply, holders),
            )
            summary.total_holders = holders
        except PAGE_ERRORS as e:
            summary.errors += 1
            logger.error(f"Collection stats update failed: {e}")
