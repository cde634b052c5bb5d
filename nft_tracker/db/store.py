"""Datastore client used by the reconcilers.

Every public coroutine runs in its own short transaction through the
configured ``RetryPolicy``; callers never hold a session across feed I/O.
Readers therefore only ever observe committed per-token or per-page writes.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nft_tracker.db.models import (
    CLOSED_STATUSES,
    MANUAL_CLOSE_STATUSES,
    SOURCE_EXTERNAL_FEED,
    SOURCE_MANUAL,
    STATUS_ACTIVE,
    CollectionStats,
    Listing,
    SalesRecord,
    TokenOwnership,
)
from nft_tracker.errors import ImmutableListingError
from nft_tracker.worker.retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class OwnershipRow:
    """Normalised ``token_id -> wallet`` pair ready for upsert."""

    token_id: int
    wallet_address: str


@dataclass(frozen=True)
class UpsertResult:
    added: int
    updated: int


def dialect_insert(session: AsyncSession, model):
    """Return the dialect-specific INSERT construct supporting ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Upsert not supported for dialect '{dialect}'")


class SyncStore:
    """
    Upsert-by-key, single-row reads and close/insert writes for the sync core.

    Args:
        session_factory: ``async_sessionmaker`` bound to the target database
        retry_policy: Policy applied to every transaction
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.session_factory = session_factory
        self.retry_policy = retry_policy or RetryPolicy()

    async def transaction(
        self,
        fn: Callable[[AsyncSession], Awaitable[T]],
        operation: str = "db_transaction",
    ) -> T:
        """Run ``fn`` in a fresh committed transaction, retried on transient errors."""

        async def attempt() -> T:
            async with self.session_factory() as session:
                async with session.begin():
                    return await fn(session)

        return await self.retry_policy.run(attempt, operation=operation)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_active_listings(self) -> dict[int, Listing]:
        """All active listings keyed by token id."""

        async def read(session: AsyncSession) -> dict[int, Listing]:
            result = await session.execute(
                select(Listing).where(Listing.status == STATUS_ACTIVE)
            )
            return {listing.token_id: listing for listing in result.scalars().all()}

        return await self.transaction(read, operation="read_active_listings")

    async def get_active_listing(self, token_id: int) -> Optional[Listing]:
        """The active listing for a token, if any."""

        async def read(session: AsyncSession) -> Optional[Listing]:
            result = await session.execute(
                select(Listing).where(
                    Listing.token_id == token_id,
                    Listing.status == STATUS_ACTIVE,
                )
            )
            return result.scalar_one_or_none()

        return await self.transaction(read, operation="read_active_listing")

    async def count_active_listings(self) -> int:
        async def read(session: AsyncSession) -> int:
            result = await session.execute(
                select(func.count()).select_from(Listing).where(Listing.status == STATUS_ACTIVE)
            )
            return int(result.scalar_one())

        return await self.transaction(read, operation="count_active_listings")

    async def get_recorded_sale_ids(self, token_ids: Iterable[int]) -> set[str]:
        """External order ids already stored as sales for the given tokens."""
        token_ids = list(token_ids)
        if not token_ids:
            return set()

        async def read(session: AsyncSession) -> set[str]:
            result = await session.execute(
                select(SalesRecord.id).where(SalesRecord.token_id.in_(token_ids))
            )
            return set(result.scalars().all())

        return await self.transaction(read, operation="read_sale_ids")

    # ------------------------------------------------------------------
    # Listing writes (call inside ``transaction``)
    # ------------------------------------------------------------------

    @staticmethod
    async def insert_listing(
        session: AsyncSession,
        *,
        token_id: int,
        total_price: Decimal,
        seller_address: str,
        external_order_id: Optional[str] = None,
        external_created_at: Optional[datetime] = None,
        source: str = SOURCE_EXTERNAL_FEED,
        now: Optional[datetime] = None,
    ) -> Listing:
        """Insert a new active listing. The partial unique index rejects a second active row."""
        listing = Listing(
            token_id=token_id,
            total_price=total_price,
            seller_address=seller_address,
            external_order_id=external_order_id,
            external_created_at=external_created_at,
            source=source,
            status=STATUS_ACTIVE,
            created_at=now or datetime.utcnow(),
        )
        session.add(listing)
        await session.flush()
        return listing

    @staticmethod
    async def close_listing(
        session: AsyncSession,
        listing_id: int,
        status: str,
        deactivated_by: str,
        now: Optional[datetime] = None,
    ) -> Listing:
        """
        Close an active listing, leaving its terms untouched.

        Raises:
            ImmutableListingError: If the listing is missing or already closed
            ValueError: If ``status`` is not a closed status
        """
        if status not in CLOSED_STATUSES:
            raise ValueError(f"Cannot close listing with status '{status}'")

        listing = await session.get(Listing, listing_id, with_for_update=True)
        if listing is None:
            raise ImmutableListingError(f"Listing {listing_id} not found")
        if listing.status != STATUS_ACTIVE:
            raise ImmutableListingError(
                f"Listing {listing_id} already closed ({listing.status})"
            )

        listing.status = status
        listing.deactivated_at = now or datetime.utcnow()
        listing.deactivated_by = deactivated_by
        await session.flush()
        return listing

    @staticmethod
    async def insert_sale_if_absent(
        session: AsyncSession,
        *,
        order_id: str,
        token_id: int,
        sale_price: Decimal,
        sale_date: datetime,
        listing_id: Optional[int] = None,
    ) -> bool:
        """Insert a sales record keyed by order id. Returns False if it already existed."""
        stmt = dialect_insert(session, SalesRecord).values(
            id=order_id,
            token_id=token_id,
            sale_price=sale_price,
            sale_date=sale_date,
            listing_id=listing_id,
            created_at=datetime.utcnow(),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=[SalesRecord.id])
        result = await session.execute(stmt)
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Manual listing operations (admin surface)
    # ------------------------------------------------------------------

    async def create_manual_listing(
        self,
        token_id: int,
        total_price: Decimal,
        seller_address: str,
        actor: str,
    ) -> Listing:
        """Create an active listing entered by an operator."""

        async def write(session: AsyncSession) -> Listing:
            listing = await self.insert_listing(
                session,
                token_id=token_id,
                total_price=total_price,
                seller_address=seller_address,
                source=SOURCE_MANUAL,
            )
            logger.info(f"Manual listing {listing.id} created for token {token_id} by {actor}")
            return listing

        return await self.transaction(write, operation="create_manual_listing")

    async def close_listing_manually(self, listing_id: int, status: str, actor: str) -> Listing:
        """Close a listing through an explicit operator action."""
        if status not in MANUAL_CLOSE_STATUSES:
            raise ValueError(f"Manual close must be one of {MANUAL_CLOSE_STATUSES}")

        async def write(session: AsyncSession) -> Listing:
            return await self.close_listing(session, listing_id, status, deactivated_by=actor)

        return await self.transaction(write, operation="close_listing_manually")

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    async def upsert_ownership(
        self,
        rows: list[OwnershipRow],
        now: Optional[datetime] = None,
    ) -> UpsertResult:
        """
        Bulk upsert one page of ownership rows keyed on token id.

        Rows must already be unique per token id (one statement cannot touch
        the same row twice on PostgreSQL).
        """
        if not rows:
            return UpsertResult(added=0, updated=0)
        now = now or datetime.utcnow()
        token_ids = [row.token_id for row in rows]

        async def write(session: AsyncSession) -> UpsertResult:
            existing = await session.execute(
                select(TokenOwnership.token_id).where(TokenOwnership.token_id.in_(token_ids))
            )
            existing_ids = set(existing.scalars().all())

            stmt = dialect_insert(session, TokenOwnership).values([
                {
                    "token_id": row.token_id,
                    "wallet_address": row.wallet_address,
                    "created_at": now,
                    "updated_at": now,
                }
                for row in rows
            ])
            stmt = stmt.on_conflict_do_update(
                index_elements=[TokenOwnership.token_id],
                set_={
                    "wallet_address": stmt.excluded.wallet_address,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            await session.execute(stmt)

            updated = len(existing_ids)
            return UpsertResult(added=len(rows) - updated, updated=updated)

        return await self.transaction(write, operation="upsert_ownership")

    async def ownership_totals(self) -> tuple[int, int]:
        """Return ``(owned_token_count, distinct_wallet_count)``."""

        async def read(session: AsyncSession) -> tuple[int, int]:
            result = await session.execute(
                select(
                    func.count(TokenOwnership.token_id),
                    func.count(func.distinct(TokenOwnership.wallet_address)),
                )
            )
            tokens, wallets = result.one()
            return int(tokens), int(wallets)

        return await self.transaction(read, operation="read_ownership_totals")

    async def replace_collection_stats(
        self,
        *,
        total_supply: int,
        total_minted: int,
        total_holders: int,
        average_holding: Decimal,
        synced_at: Optional[datetime] = None,
    ) -> None:
        """Replace the single collection stats row."""

        async def write(session: AsyncSession) -> None:
            await session.execute(delete(CollectionStats))
            session.add(
                CollectionStats(
                    total_supply=total_supply,
                    total_minted=total_minted,
                    total_holders=total_holders,
                    average_holding=average_holding,
                    last_synced_at=synced_at or datetime.utcnow(),
                )
            )

        await self.transaction(write, operation="replace_collection_stats")

    async def get_collection_stats(self) -> Optional[dict[str, Any]]:
        async def read(session: AsyncSession) -> Optional[dict[str, Any]]:
            result = await session.execute(select(CollectionStats).limit(1))
            stats = result.scalar_one_or_none()
            if stats is None:
                return None
            return {
                "total_supply": stats.total_supply,
                "total_minted": stats.total_minted,
                "total_holders": stats.total_holders,
                "average_holding": float(stats.average_holding),
                "last_synced_at": stats.last_synced_at,
            }

        return await self.transaction(read, operation="read_collection_stats")
