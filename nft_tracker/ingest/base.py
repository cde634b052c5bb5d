"""Feed record types and payload parsing shared by the feed clients."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional, Union

from nft_tracker.errors import MalformedRecordError


def parse_token_id(value: Any) -> int:
    """Parse a token id; must be an integer greater than zero."""
    if isinstance(value, bool) or value is None:
        raise MalformedRecordError(f"Invalid token id: {value!r}")
    try:
        token_id = int(str(value).strip())
    except (TypeError, ValueError):
        raise MalformedRecordError(f"Invalid token id: {value!r}")
    if token_id <= 0:
        raise MalformedRecordError(f"Invalid token id: {value!r}")
    return token_id


# Matches the scale of the price columns (Numeric(24, 8))
PRICE_QUANT = Decimal("0.00000001")


def quantize_price(value: Any) -> Decimal:
    """Round a price to the stored scale, half up."""
    return Decimal(str(value)).quantize(PRICE_QUANT, rounding=ROUND_HALF_UP)


def parse_price(value: Any) -> Decimal:
    """Parse a non-negative price, rounded to the stored scale."""
    if isinstance(value, bool) or value is None:
        raise MalformedRecordError(f"Invalid price: {value!r}")
    try:
        price = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise MalformedRecordError(f"Invalid price: {value!r}")
    if not price.is_finite() or price < 0:
        raise MalformedRecordError(f"Invalid price: {value!r}")
    try:
        return quantize_price(price)
    except InvalidOperation:
        raise MalformedRecordError(f"Price out of range: {value!r}")


def normalize_address(value: Any) -> str:
    """Trim and lower-case a wallet address."""
    if not isinstance(value, str) or not value.strip():
        raise MalformedRecordError(f"Invalid wallet address: {value!r}")
    return value.strip().lower()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a feed timestamp into a naive UTC datetime.

    Accepts ISO-8601 strings and epoch numbers (seconds or milliseconds).
    Returns None for missing or unparseable values.
    """
    if value is None or isinstance(value, bool) or value == "":
        return None

    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            value = int(text)
        else:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
            return parsed

    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 10**11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None

    return None


def _order_id(data: dict) -> str:
    order_id = data.get("id")
    if order_id is None or str(order_id).strip() == "":
        raise MalformedRecordError(f"Order without id: {data!r}")
    return str(order_id)


@dataclass(frozen=True)
class FeedListing:
    """An active offer as reported by the marketplace."""

    order_id: str
    token_id: int
    total_price: Decimal
    seller_address: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, data: Any) -> "FeedListing":
        """
        Build from a listed-order payload.

        Raises:
            MalformedRecordError: If id, tokenId, totalPrice or sellerWalletAddress is invalid
        """
        if not isinstance(data, dict):
            raise MalformedRecordError(f"Order is not an object: {data!r}")
        seller = data.get("sellerWalletAddress")
        if not isinstance(seller, str) or not seller.strip():
            raise MalformedRecordError(f"Order without seller: {data!r}")
        return cls(
            order_id=_order_id(data),
            token_id=parse_token_id(data.get("tokenId")),
            total_price=parse_price(data.get("totalPrice")),
            seller_address=seller.strip(),
            created_at=parse_timestamp(data.get("createdAt")),
        )


@dataclass(frozen=True)
class CompletedOrder:
    """A fulfilled order from the completed-order feed."""

    order_id: str
    token_id: int
    total_price: Decimal
    fulfilled_at: datetime

    @classmethod
    def from_payload(cls, data: Any) -> "CompletedOrder":
        if not isinstance(data, dict):
            raise MalformedRecordError(f"Order is not an object: {data!r}")
        fulfilled_at = parse_timestamp(data.get("fullfillmentTimestamp"))
        if fulfilled_at is None:
            raise MalformedRecordError(f"Completed order without fulfillment time: {data!r}")
        return cls(
            order_id=_order_id(data),
            token_id=parse_token_id(data.get("tokenId")),
            total_price=parse_price(data.get("totalPrice")),
            fulfilled_at=fulfilled_at,
        )


# Field pairs accepted for ownership records, in lookup order
_HOLDER_FIELDS = (
    ("tokenId", "owner"),
    ("token_id", "wallet_address"),
    ("id", "address"),
)


@dataclass(frozen=True)
class HolderRecord:
    """Normalised token holder entry."""

    token_id: int
    wallet_address: str

    @classmethod
    def from_payload(cls, data: Any) -> "HolderRecord":
        """
        Build from any of the supported ownership record shapes.

        Raises:
            MalformedRecordError: If no shape matches or values are invalid
        """
        if not isinstance(data, dict):
            raise MalformedRecordError(f"Holder record is not an object: {data!r}")
        for token_key, wallet_key in _HOLDER_FIELDS:
            if token_key in data and wallet_key in data:
                return cls(
                    token_id=parse_token_id(data[token_key]),
                    wallet_address=normalize_address(data[wallet_key]),
                )
        raise MalformedRecordError(f"Unrecognised holder record: {data!r}")


@dataclass
class HolderPage:
    """One page of the ownership feed, entries left raw for per-record validation."""

    entries: list[Any] = field(default_factory=list)
    next_offset: Optional[Union[int, str]] = None
    total_supply: Optional[int] = None
    total_minted: Optional[int] = None
