"""
Usage Rates and Guard

Billable features price their work against the admin-managed usage rates
and charge the caller's ledger through LedgerEngine.consume. A failed
charge blocks the action.

Usage:
    guard = UsageGuard(db)
    charge = await guard.charge(user_id, {"per_image_request": 1}, action="image_search")
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Dict

from pymongo import ReturnDocument

from .balance_store import BalanceStore
from .config import DEFAULT_USAGE_RATES
from .engine import LedgerEngine
from .errors import InvalidDelta, NotFound
from .models import UsageRates, UsageRatesUpdate, UsageEstimate, UsageCharge

logger = logging.getLogger(__name__)


class UsageRatesExist(InvalidDelta):
    """Raised when creating a second usage-rates document."""


class UsageRatesService:
    """Single admin-managed document of per-action credit costs."""

    def __init__(self, db):
        self.db = db
        self.collection = db.usage_rates

    async def get(self) -> UsageRates:
        doc = await self.collection.find_one({}, {"_id": 0})
        if not doc:
            return UsageRates(**DEFAULT_USAGE_RATES)
        return UsageRates(**{k: doc.get(k, v) for k, v in DEFAULT_USAGE_RATES.items()})

    async def create(self, rates: UsageRates) -> UsageRates:
        if await self.collection.count_documents({}) > 0:
            raise UsageRatesExist("Usage rates already exist")

        now = datetime.now(timezone.utc).isoformat()
        await self.collection.insert_one({**rates.model_dump(), "created_at": now, "updated_at": now})
        return rates

    async def update(self, body: UsageRatesUpdate) -> UsageRates:
        updates = body.model_dump(exclude_none=True)
        if not updates:
            raise InvalidDelta("No valid fields provided.")

        updates["updated_at"] = datetime.now(timezone.utc).isoformat()
        doc = await self.collection.find_one_and_update(
            {},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NotFound("usage rates", "default")
        return UsageRates(**{k: doc.get(k, v) for k, v in DEFAULT_USAGE_RATES.items()})


class UsageGuard:
    """Prices and charges billable actions."""

    def __init__(self, db):
        self.db = db
        self.rates = UsageRatesService(db)
        self.engine = LedgerEngine(db)
        self.store = BalanceStore(db)

    async def price(self, items: Dict[str, int]) -> int:
        rates = (await self.rates.get()).model_dump()
        cost = 0
        for name, quantity in items.items():
            if name not in rates:
                raise InvalidDelta(f"Unknown usage rate: {name}")
            if quantity < 0:
                raise InvalidDelta(f"Quantity for {name} must be >= 0")
            cost += rates[name] * quantity
        return cost

    async def estimate(self, user_id: str, items: Dict[str, int]) -> UsageEstimate:
        """Price items against the current balance without deducting."""
        cost = await self.price(items)
        balance = await self.store.available(user_id)
        return UsageEstimate(
            items=items,
            cost=cost,
            current_balance=balance,
            sufficient_balance=balance >= cost,
        )

    async def charge(self, user_id: str, items: Dict[str, int], action: str) -> UsageCharge:
        """
        Charge the priced items to the user's ledger.

        Raises InsufficientBalance; the caller must not perform (or deliver)
        the action in that case. A zero-cost charge writes nothing.
        """
        request_id = str(uuid.uuid4())
        cost = await self.price(items)

        if cost == 0:
            return UsageCharge(
                request_id=request_id,
                action=action,
                cost=0,
                remaining_balance=await self.store.available(user_id),
            )

        ledger = await self.engine.consume(
            user_id,
            cost,
            reference=request_id,
            details={"action": action, "items": items},
        )
        return UsageCharge(
            request_id=request_id,
            action=action,
            cost=cost,
            remaining_balance=ledger.available_credits,
        )
