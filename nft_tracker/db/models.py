"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    event,
    inspect,
    select,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from nft_tracker.errors import ImmutableListingError


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


# Listing status values
STATUS_ACTIVE = "active"
STATUS_SOLD = "sold"
STATUS_CANCELLED = "cancelled"
STATUS_EXPIRED = "expired"
STATUS_MANUALLY_REMOVED = "manually_removed"
STATUS_API_SYNC_REMOVED = "api_sync_removed"
STATUS_PRICE_CHANGED = "price_changed"
STATUS_MANUALLY_UPDATED = "manually_updated"
STATUS_UNKNOWN = "unknown"

LISTING_STATUSES = (
    STATUS_ACTIVE,
    STATUS_SOLD,
    STATUS_CANCELLED,
    STATUS_EXPIRED,
    STATUS_MANUALLY_REMOVED,
    STATUS_API_SYNC_REMOVED,
    STATUS_PRICE_CHANGED,
    STATUS_MANUALLY_UPDATED,
    STATUS_UNKNOWN,
)
CLOSED_STATUSES = tuple(s for s in LISTING_STATUSES if s != STATUS_ACTIVE)
MANUAL_CLOSE_STATUSES = (STATUS_MANUALLY_REMOVED, STATUS_MANUALLY_UPDATED)

SOURCE_MANUAL = "manual"
SOURCE_EXTERNAL_FEED = "external_feed"
LISTING_SOURCES = (SOURCE_MANUAL, SOURCE_EXTERNAL_FEED)


def _in_list(column: str, values: tuple[str, ...]) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


class Listing(Base):
    """One marketplace offer for a token. Immutable once closed."""

    __tablename__ = "listings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_order_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True, index=True)
    token_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    total_price: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    seller_address: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(String(32), default=SOURCE_EXTERNAL_FEED, nullable=False)
    status: Mapped[str] = mapped_column(String(32), default=STATUS_ACTIVE, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    external_created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )  # Creation time reported by the marketplace
    deactivated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    deactivated_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        CheckConstraint("total_price >= 0", name="ck_listings_price_non_negative"),
        CheckConstraint(_in_list("status", LISTING_STATUSES), name="ck_listings_status"),
        CheckConstraint(_in_list("source", LISTING_SOURCES), name="ck_listings_source"),
        CheckConstraint(
            "(status = 'active') = (deactivated_at IS NULL)",
            name="ck_listings_deactivated_iff_closed",
        ),
        # One active listing per token
        Index(
            "uq_listings_active_token",
            "token_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    @property
    def listed_since(self) -> datetime:
        """Best known creation time: marketplace-reported if available."""
        return self.external_created_at or self.created_at


# Columns that define the offer itself; never rewritten after insert
_LISTING_TERMS = ("token_id", "total_price", "seller_address", "external_order_id", "source")


@event.listens_for(Listing, "before_update")
def _guard_listing_update(mapper, connection, target: Listing) -> None:
    """Reject any UPDATE other than closing an active listing."""
    state = inspect(target)

    status_history = state.attrs.status.history
    if status_history.deleted:
        previous_status = status_history.deleted[0]
    elif status_history.added:
        # Status was assigned without the old value loaded
        previous_status = connection.execute(
            select(Listing.status).where(Listing.id == target.id)
        ).scalar_one()
    else:
        previous_status = target.status
    if previous_status != STATUS_ACTIVE:
        raise ImmutableListingError(
            f"Listing {target.id} is closed ({previous_status}) and cannot be modified"
        )

    for name in _LISTING_TERMS:
        if state.attrs[name].history.has_changes():
            raise ImmutableListingError(
                f"Listing {target.id}: '{name}' cannot change; close it and insert a new listing"
            )


class SalesRecord(Base):
    """A completed sale. Keyed by the marketplace's order id (opaque text)."""

    __tablename__ = "sales_history"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    token_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    sale_price: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    sale_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    listing_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("listings.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("sale_price >= 0", name="ck_sales_price_non_negative"),
        Index("idx_sales_history_token_date", "token_id", "sale_date"),
    )


class TokenOwnership(Base):
    """Current holder of a token. Overwritten on every ownership sync."""

    __tablename__ = "token_ownership"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    token_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    wallet_address: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class CollectionStats(Base):
    """Point-in-time collection aggregate. A single row, replaced each sync."""

    __tablename__ = "collection_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    total_supply: Mapped[int] = mapped_column(Integer, nullable=False)
    total_minted: Mapped[int] = mapped_column(Integer, nullable=False)
    total_holders: Mapped[int] = mapped_column(Integer, nullable=False)
    average_holding: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    last_synced_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class Token(Base):
    """Catalog entry for a token. Maintained by the catalog loader; read-only here."""

    __tablename__ = "tokens"

    token_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    rarity_rank: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    mint_implied_value: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(24, 8), nullable=True
    )
    is_legendary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    traits: Mapped[list["TraitData"]] = relationship(
        "TraitData", back_populates="token", cascade="all, delete-orphan"
    )


class TraitData(Base):
    """Descriptive trait of a token with its rarity percentile (lower = rarer)."""

    __tablename__ = "trait_data"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    token_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tokens.token_id"), nullable=False, index=True
    )
    trait_name: Mapped[str] = mapped_column(String(64), nullable=False)
    trait_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rarity: Mapped[float] = mapped_column(Float, nullable=False)

    token: Mapped["Token"] = relationship("Token", back_populates="traits")


class SyncRun(Base):
    """Tracks reconciliation runs and their summaries."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    job_type: Mapped[str] = mapped_column(String(32), nullable=False)  # 'listings' | 'ownership'
    trigger: Mapped[str] = mapped_column(String(32), nullable=False)  # 'scheduled' | 'startup' | 'manual'
    status: Mapped[str] = mapped_column(String(20), default="running", nullable=False)  # running, completed, failed
    started_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    summary: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
