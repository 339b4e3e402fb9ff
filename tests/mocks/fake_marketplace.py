import asyncio
import time
from collections import defaultdict
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from pricedrop.core.exceptions import RefreshRejectedError
from pricedrop.models.types import to_money, utcnow
from pricedrop.services.ebay.token_manager import AccessCredential


class FakeTokenManager:
    """Hands out access credentials without a token endpoint"""

    def __init__(self):
        self.calls: Dict[str, int] = defaultdict(int)
        self.errors: Dict[str, Exception] = {}  # account_id -> error raised on every call
        self.error_queue: Dict[str, List[Exception]] = defaultdict(list)  # raised once each, in order

    async def get_access_credential(self, account_id: str) -> AccessCredential:
        self.calls[account_id] += 1
        if self.error_queue[account_id]:
            raise self.error_queue[account_id].pop(0)
        if account_id in self.errors:
            raise self.errors[account_id]
        return AccessCredential(
            account_id=account_id,
            token=f"access-{account_id}-{self.calls[account_id]}",
            expires_at=utcnow() + timedelta(hours=2),
        )


class FakeMarketplace:
    """In-memory stand-in for the Trading API calls the tick makes"""

    def __init__(self, latency: float = 0.0):
        self.prices: Dict[str, Decimal] = {}
        self.revise_calls: List[dict] = []
        self.call_times: Dict[str, List[float]] = defaultdict(list)
        self.failures: Dict[str, List[Exception]] = defaultdict(list)  # item_id -> errors raised in order
        self.latency = latency
        self.active_listings: List[dict] = []

    async def revise_price(self, credential: AccessCredential, item_id: str, price: Decimal) -> Decimal:
        self.call_times[credential.account_id].append(time.monotonic())
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.failures[item_id]:
            raise self.failures[item_id].pop(0)
        price = to_money(price)
        self.revise_calls.append(
            {"account_id": credential.account_id, "item_id": item_id, "price": price, "token": credential.token}
        )
        self.prices[item_id] = price
        return price

    async def get_item_price(self, credential: AccessCredential, item_id: str) -> Decimal:
        self.call_times[credential.account_id].append(time.monotonic())
        if self.failures[item_id]:
            raise self.failures[item_id].pop(0)
        return self.prices[item_id]

    async def get_active_listings(self, credential: AccessCredential, page_num: int = 1, items_per_page: int = 200):
        start = (page_num - 1) * items_per_page
        page = self.active_listings[start:start + items_per_page]
        total_pages = max(1, -(-len(self.active_listings) // items_per_page))
        return {"items": page, "total_pages": total_pages}

    def calls_for(self, item_id: str) -> List[dict]:
        return [c for c in self.revise_calls if c["item_id"] == item_id]


def rejected(account_id: str) -> RefreshRejectedError:
    return RefreshRejectedError(f"Refresh credential for account {account_id} was rejected", code="invalid_grant")
