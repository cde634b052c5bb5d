"""Marketplace order feed client (active listings and completed orders)."""

import asyncio
import logging
from typing import Any, Optional

import httpx

from nft_tracker.errors import ConfigurationError, FeedError, FeedIncompleteError
from nft_tracker.worker.retry import RetryPolicy

logger = logging.getLogger(__name__)


class MarketplaceClient:
    """
    Pages through the marketplace's listed-order endpoint.

    Every page request runs through the retry policy. A page that still fails
    raises ``RetryExhaustedError`` (transient) or ``FeedError`` (permanent);
    the caller decides whether the snapshot is usable.
    """

    def __init__(
        self,
        settings,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize marketplace client.

        Args:
            settings: Application settings (URLs, ticker, paging limits)
            retry_policy: Policy applied to each page request
            http_client: Optional pre-built client (tests inject a MockTransport)
        """
        self.settings = settings
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self._http_client = http_client
        self._owns_client = http_client is None

    def validate_config(self):
        if not self.settings.marketplace_orders_url:
            raise ConfigurationError("marketplace_orders_url is not configured")
        if not self.settings.collection_ticker:
            raise ConfigurationError("collection_ticker is not configured")

    @property
    def orders_endpoint(self) -> str:
        return f"{self.settings.marketplace_orders_url.rstrip('/')}/{self.settings.collection_ticker}"

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "nft-tracker/0.1.0",
        }
        if self.settings.marketplace_api_key:
            headers["Authorization"] = f"Bearer {self.settings.marketplace_api_key}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.settings.http_timeout_seconds,
                follow_redirects=True,
                headers=self._headers(),
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _post_orders(self, body: dict[str, Any], operation: str) -> dict[str, Any]:
        client = await self._get_client()

        async def request() -> dict[str, Any]:
            response = await client.post(self.orders_endpoint, json=body, headers=self._headers())
            if response.status_code >= 400:
                raise FeedError(
                    f"Orders feed returned {response.status_code}",
                    status_code=response.status_code,
                )
            try:
                data = response.json()
            except ValueError as e:
                raise FeedError(f"Orders feed returned invalid JSON: {e}")
            if not isinstance(data, dict) or not data.get("success"):
                raise FeedError(f"Orders feed reported failure: {str(data)[:200]}")
            return data

        return await self.retry_policy.run(request, operation=operation)

    async def _page_delay(self):
        if self.settings.feed_page_delay_seconds > 0:
            await asyncio.sleep(self.settings.feed_page_delay_seconds)

    async def fetch_active_orders(self) -> list[Any]:
        """
        Fetch every active listed order, sorted by price ascending.

        Returns:
            Raw order payloads in feed order

        Raises:
            FeedIncompleteError: If the page safety limit is reached before the end
        """
        page_size = self.settings.feed_page_size
        orders: list[Any] = []
        offset = 0

        for page in range(1, self.settings.feed_max_pages + 1):
            data = await self._post_orders(
                {
                    "pagination": {"offset": offset, "limit": page_size},
                    "sort": {"field": "totalPrice", "direction": "asc"},
                },
                operation="fetch_active_orders",
            )
            batch = data.get("orders") or []
            total_count = data.get("totalCount")
            orders.extend(batch)
            offset += len(batch)

            logger.debug(f"Active orders page {page}: {len(batch)} orders (total {total_count})")

            if len(batch) < page_size:
                break
            if isinstance(total_count, int) and offset >= total_count:
                break
            await self._page_delay()
        else:
            raise FeedIncompleteError(
                f"Active order feed exceeded {self.settings.feed_max_pages} pages"
            )

        logger.info(f"Fetched {len(orders)} active orders")
        return orders

    async def fetch_completed_orders(self) -> list[Any]:
        """
        Fetch recent completed orders, newest fulfillment first.

        Stops at ``completed_orders_max_pages``; older history beyond that
        window is not needed for matching currently active listings.
        """
        page_size = self.settings.feed_page_size
        orders: list[Any] = []
        offset = 0

        for page in range(1, self.settings.completed_orders_max_pages + 1):
            data = await self._post_orders(
                {
                    "pagination": {"offset": offset, "limit": page_size},
                    "sort": {"field": "fullfillmentTimestamp", "direction": "desc"},
                    "completedOrders": True,
                },
                operation="fetch_completed_orders",
            )
            batch = data.get("orders") or []
            orders.extend(batch)
            offset += len(batch)

            if len(batch) < page_size:
                break
            total_count = data.get("totalCount")
            if isinstance(total_count, int) and offset >= total_count:
                break
            await self._page_delay()

        logger.info(f"Fetched {len(orders)} completed orders")
        return orders

    async def fetch_active_order_for_token(self, token_id: int) -> Optional[Any]:
        """Cheapest active order for a single token, or None."""
        data = await self._post_orders(
            {
                "pagination": {"offset": 0, "limit": 1},
                "sort": {"field": "totalPrice", "direction": "asc"},
                "tokenId": str(token_id),
            },
            operation="fetch_token_order",
        )
        orders = data.get("orders") or []
        return orders[0] if orders else None
