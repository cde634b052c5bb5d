"""Token holder feed client."""

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Union

import httpx

from nft_tracker.errors import ConfigurationError, FeedError
from nft_tracker.ingest.base import HolderPage
from nft_tracker.worker.retry import RetryPolicy

logger = logging.getLogger(__name__)


def _optional_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def parse_holder_page(data: Any, offset: Union[int, str, None]) -> HolderPage:
    """
    Extract records and the next offset from an ownership feed response.

    Records may sit under ``result``, ``owners`` or be the top-level list.
    The next page comes from ``next`` or, failing that, ``hasMore``.
    """
    if isinstance(data, list):
        return HolderPage(entries=data)
    if not isinstance(data, dict):
        raise FeedError(f"Ownership feed returned unexpected payload: {str(data)[:200]}")

    entries: list[Any] = []
    for key in ("result", "owners"):
        if isinstance(data.get(key), list):
            entries = data[key]
            break

    next_offset: Optional[Union[int, str]] = None
    if data.get("next") is not None:
        next_offset = data["next"]
    elif data.get("hasMore") is True and entries:
        next_offset = (_optional_int(offset) or 0) + len(entries)

    return HolderPage(
        entries=entries,
        next_offset=next_offset,
        total_supply=_optional_int(data.get("totalSupply")),
        total_minted=_optional_int(data.get("totalMinted")),
    )


class OwnershipClient:
    """Pages through the collection's holder feed."""

    def __init__(
        self,
        settings,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self._http_client = http_client
        self._owns_client = http_client is None

    def validate_config(self):
        if not self.settings.ownership_api_url:
            raise ConfigurationError("ownership_api_url is not configured")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.settings.http_timeout_seconds,
                follow_redirects=True,
                headers={"Accept": "application/json", "User-Agent": "nft-tracker/0.1.0"},
            )
        return self._http_client

    async def close(self):
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def fetch_page(self, offset: Union[int, str, None] = None) -> HolderPage:
        """Fetch and parse one holder page, retried on transient failure."""
        client = await self._get_client()
        params = {"offset": offset} if offset is not None else None

        async def request() -> HolderPage:
            response = await client.get(self.settings.ownership_api_url, params=params)
            if response.status_code >= 400:
                raise FeedError(
                    f"Ownership feed returned {response.status_code}",
                    status_code=response.status_code,
                )
            try:
                data = response.json()
            except ValueError as e:
                raise FeedError(f"Ownership feed returned invalid JSON: {e}")
            return parse_holder_page(data, offset)

        return await self.retry_policy.run(request, operation="fetch_holder_page")

    async def iter_pages(self) -> AsyncIterator[HolderPage]:
        """Yield holder pages until the feed ends or the page limit is reached."""
        offset: Union[int, str, None] = None
        for page_number in range(1, self.settings.ownership_max_pages + 1):
            page = await self.fetch_page(offset)
            logger.debug(f"Holder page {page_number}: {len(page.entries)} records")
            yield page

            if page.next_offset is None or not page.entries:
                return
            offset = page.next_offset
            if self.settings.feed_page_delay_seconds > 0:
                await asyncio.sleep(self.settings.feed_page_delay_seconds)

        logger.warning(
            f"Ownership feed paging stopped at limit of {self.settings.ownership_max_pages} pages"
        )
