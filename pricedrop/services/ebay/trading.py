# pricedrop/services/ebay/trading.py
"""
eBay Trading API calls used by the price reduction service.

Every method takes the AccessCredential explicitly and raises a classified
CallError on failure; retry decisions belong to the RateLimitedCaller.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional
from xml.parsers.expat import ExpatError
from xml.sax.saxutils import escape

import httpx
import xmltodict

from pricedrop.core.config import Settings, get_settings
from pricedrop.core.exceptions import (
    AuthCallError,
    CallError,
    ClientCallError,
    RateLimitedError,
    ServerCallError,
    TransientCallError,
)
from pricedrop.models.types import to_money
from .token_manager import AccessCredential

logger = logging.getLogger(__name__)

# Trading API error codes that are not the caller's fault
AUTH_ERROR_CODES = {"931", "932", "16110", "17470"}
RATE_LIMIT_ERROR_CODES = {"518", "18000"}
SERVER_ERROR_CODES = {"10007"}


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def classify_http_error(response: httpx.Response, context: str) -> CallError:
    """Map a non-2xx HTTP response to the matching CallError."""
    status = response.status_code
    message = f"{context} returned HTTP {status}"
    if status == 429:
        return RateLimitedError(
            message, code=str(status),
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
        )
    if status == 401:
        return AuthCallError(message, code=str(status))
    if status >= 500:
        return ServerCallError(message, code=str(status))
    return ClientCallError(message, code=str(status))


def _as_list(value) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def classify_trading_errors(errors: List[Dict[str, Any]], context: str) -> CallError:
    """Map the Errors block of a failed Trading response to a CallError."""
    blocking = [e for e in errors if e.get("SeverityCode", "Error") == "Error"] or errors
    codes = [str(e.get("ErrorCode", "")) for e in blocking]
    message = "; ".join(str(e.get("ShortMessage") or e.get("LongMessage") or "") for e in blocking)
    message = f"{context} failed: {message}" if message else f"{context} failed"
    code = codes[0] if codes else None

    if any(c in AUTH_ERROR_CODES for c in codes):
        return AuthCallError(message, code=code)
    if any(c in RATE_LIMIT_ERROR_CODES for c in codes):
        return RateLimitedError(message, code=code)
    if any(c in SERVER_ERROR_CODES for c in codes):
        return ServerCallError(message, code=code)
    return ClientCallError(message, code=code)


class EbayTradingClient:
    def __init__(self, settings: Optional[Settings] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings()
        self.site_id = self.settings.EBAY_SITE_ID
        self.compatibility_level = self.settings.EBAY_COMPATIBILITY_LEVEL
        self.currency = self.settings.EBAY_CURRENCY
        self.endpoint = self.settings.trading_url
        self.http_client = http_client

    def _headers(self, call_name: str, credential: AccessCredential) -> Dict[str, str]:
        return {
            "X-EBAY-API-CALL-NAME": call_name,
            "X-EBAY-API-SITEID": self.site_id,
            "X-EBAY-API-COMPATIBILITY-LEVEL": self.compatibility_level,
            "X-EBAY-API-IAF-TOKEN": credential.token,
            "Content-Type": "text/xml",
        }

    async def _post(self, headers: Dict[str, str], body: str) -> httpx.Response:
        if self.http_client is not None:
            return await self.http_client.post(self.endpoint, headers=headers, content=body)
        async with httpx.AsyncClient(timeout=self.settings.HTTP_TIMEOUT_SECONDS) as client:
            return await client.post(self.endpoint, headers=headers, content=body)

    async def _make_request(self, call_name: str, xml_request: str, credential: AccessCredential) -> Dict[str, Any]:
        """Post a Trading call and return the parsed <CallNameResponse> body."""
        headers = self._headers(call_name, credential)
        try:
            response = await self._post(headers, xml_request)
        except httpx.TimeoutException as e:
            raise TransientCallError(f"{call_name} timed out: {type(e).__name__}", code="timeout")
        except httpx.RequestError as e:
            raise TransientCallError(f"{call_name} network error: {type(e).__name__}", code="network")

        if response.status_code != 200:
            error = classify_http_error(response, call_name)
            logger.warning(f"{call_name} failed: {error.classification} ({error.code})")
            raise error

        try:
            response_dict = xmltodict.parse(response.text)
        except ExpatError as e:
            raise ServerCallError(f"{call_name} returned unparseable XML: {type(e).__name__}")

        body = response_dict.get(f"{call_name}Response")
        if body is None:
            raise ServerCallError(f"{call_name} response missing {call_name}Response element")

        ack = body.get("Ack")
        if ack not in ("Success", "Warning"):
            error = classify_trading_errors(_as_list(body.get("Errors")), call_name)
            logger.warning(f"{call_name} Ack={ack}: {error.classification} ({error.code})")
            raise error

        if ack == "Warning":
            for warning in _as_list(body.get("Errors")):
                logger.info(f"{call_name} warning {warning.get('ErrorCode')}: {warning.get('ShortMessage')}")

        return body

    async def revise_price(self, credential: AccessCredential, item_id: str, price: Decimal) -> Decimal:
        """
        Set the item's price to an absolute value.

        Replaying the call with the same price is harmless, which is what lets
        the caller retry a submission whose outcome it never saw.
        """
        price = to_money(price)
        xml_request = f"""<?xml version="1.0" encoding="utf-8"?>
        <ReviseInventoryStatusRequest xmlns="urn:ebay:apis:eBLBaseComponents">
            <InventoryStatus>
                <ItemID>{escape(str(item_id))}</ItemID>
                <StartPrice currencyID="{self.currency}">{price}</StartPrice>
            </InventoryStatus>
            <ErrorLanguage>en_GB</ErrorLanguage>
            <WarningLevel>High</WarningLevel>
        </ReviseInventoryStatusRequest>"""

        await self._make_request("ReviseInventoryStatus", xml_request, credential)
        logger.info(f"Revised price of item {item_id} to {price}")
        return price

    async def get_item_price(self, credential: AccessCredential, item_id: str) -> Decimal:
        """Read the item's live price (used to reconcile interrupted claims)."""
        xml_request = f"""<?xml version="1.0" encoding="utf-8"?>
        <GetItemRequest xmlns="urn:ebay:apis:eBLBaseComponents">
            <ItemID>{escape(str(item_id))}</ItemID>
            <OutputSelector>Item.ItemID</OutputSelector>
            <OutputSelector>Item.StartPrice</OutputSelector>
            <OutputSelector>Item.SellingStatus.CurrentPrice</OutputSelector>
        </GetItemRequest>"""

        body = await self._make_request("GetItem", xml_request, credential)
        item = body.get("Item") or {}
        price = _price_value(item.get("StartPrice")) or _price_value(
            (item.get("SellingStatus") or {}).get("CurrentPrice")
        )
        if price is None:
            raise ServerCallError(f"GetItem returned no price for item {item_id}")
        return price

    async def get_active_listings(
        self, credential: AccessCredential, page_num: int = 1, items_per_page: int = 200
    ) -> Dict[str, Any]:
        """
        Get one page of the seller's active listings.

        Returns:
            {"items": [{"item_id", "sku", "title", "price", "listed_at"}, ...],
             "total_pages": int}
        """
        xml_request = f"""<?xml version="1.0" encoding="utf-8"?>
        <GetMyeBaySellingRequest xmlns="urn:ebay:apis:eBLBaseComponents">
            <ActiveList>
                <Include>true</Include>
                <Pagination>
                    <EntriesPerPage>{items_per_page}</EntriesPerPage>
                    <PageNumber>{page_num}</PageNumber>
                </Pagination>
            </ActiveList>
            <DetailLevel>ReturnAll</DetailLevel>
        </GetMyeBaySellingRequest>"""

        body = await self._make_request("GetMyeBaySelling", xml_request, credential)
        active_list = body.get("ActiveList") or {}

        total_pages = 1
        pagination = active_list.get("PaginationResult") or {}
        if pagination.get("TotalNumberOfPages"):
            total_pages = int(pagination["TotalNumberOfPages"])

        items = []
        for item in _as_list((active_list.get("ItemArray") or {}).get("Item")):
            selling_status = item.get("SellingStatus") or {}
            price = _price_value(selling_status.get("CurrentPrice")) or _price_value(item.get("StartPrice"))
            if price is None or not item.get("ItemID"):
                logger.warning(f"Skipping active listing without id or price: {item.get('ItemID')}")
                continue
            items.append({
                "item_id": str(item["ItemID"]),
                "sku": item.get("SKU"),
                "title": item.get("Title"),
                "price": price,
                "listed_at": (item.get("ListingDetails") or {}).get("StartTime"),
            })

        return {"items": items, "total_pages": total_pages}


def _price_value(node) -> Optional[Decimal]:
    """Amounts come back either as plain text or as {'@currencyID': .., '#text': ..}"""
    if node is None:
        return None
    if isinstance(node, dict):
        node = node.get("#text")
    if node in (None, ""):
        return None
    return to_money(str(node))
