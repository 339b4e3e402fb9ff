import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

import httpx

from pricedrop.core.config import Settings, get_settings
from pricedrop.core.exceptions import ServerCallError, TransientCallError
from pricedrop.models.types import to_money
from .token_manager import AccessCredential
from .trading import classify_http_error

logger = logging.getLogger(__name__)


class EbayBrowseClient:
    """
    Client for the eBay Browse API.
    Supplies comparable prices for market-based pricing.
    """

    def __init__(self, settings: Optional[Settings] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings()
        self.marketplace_id = self.settings.EBAY_MARKETPLACE_ID
        self.currency = self.settings.EBAY_CURRENCY
        self.BROWSE_API = self.settings.browse_url
        self.http_client = http_client

    def _get_headers(self, credential: AccessCredential) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {credential.token}",
            "X-EBAY-C-MARKETPLACE-ID": self.marketplace_id,
            "Accept": "application/json",
        }

    async def _get(self, url: str, headers: Dict[str, str], params: Dict) -> httpx.Response:
        if self.http_client is not None:
            return await self.http_client.get(url, headers=headers, params=params)
        async with httpx.AsyncClient(timeout=self.settings.HTTP_TIMEOUT_SECONDS) as client:
            return await client.get(url, headers=headers, params=params)

    async def search_comparables(
        self,
        credential: AccessCredential,
        query: str,
        exclude_item_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[Decimal]:
        """
        Snapshot of comparable prices for a listing title.

        Args:
            credential: Access credential of the owning account
            query: Search keywords, normally the listing title
            exclude_item_id: The listing's own item, left out of the sample
            limit: Maximum number of results

        Returns:
            List[Decimal]: Prices in the configured currency

        Raises:
            CallError: classified failure of the search call
        """
        url = f"{self.BROWSE_API}/item_summary/search"
        params = {"q": query, "limit": str(limit), "filter": "buyingOptions:{FIXED_PRICE}"}

        try:
            response = await self._get(url, self._get_headers(credential), params)
        except httpx.TimeoutException as e:
            raise TransientCallError(f"Browse search timed out: {type(e).__name__}", code="timeout")
        except httpx.RequestError as e:
            raise TransientCallError(f"Browse search network error: {type(e).__name__}", code="network")

        if response.status_code != 200:
            error = classify_http_error(response, "Browse search")
            logger.warning(f"Browse search failed: {error.classification} ({error.code})")
            raise error

        try:
            summaries = response.json().get("itemSummaries", []) or []
        except ValueError:
            raise ServerCallError("Browse search returned malformed JSON", code=str(response.status_code))

        prices = []
        for summary in summaries:
            if exclude_item_id and exclude_item_id in str(summary.get("itemId", "")):
                continue
            price = summary.get("price") or {}
            if price.get("currency") != self.currency or not price.get("value"):
                continue
            try:
                value = Decimal(str(price["value"]))
            except InvalidOperation:
                value = None
            if value is None or not value.is_finite():
                logger.debug(f"Skipping comparable {summary.get('itemId')} with unparseable price {price['value']!r}")
                continue
            if value > 0:
                prices.append(to_money(value))

        logger.debug(f"Browse search '{query}' returned {len(prices)} comparable prices")
        return prices
