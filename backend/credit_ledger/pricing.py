"""
Pricing Catalog

Purchasable credit packs in `pricing_plans` and the pricing rule that turns
a paid order into a number of credits.
"""

import logging
import math
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Dict, Any

from pymongo import ReturnDocument

from .config import CREDITS_PER_CURRENCY_UNIT
from .errors import NotFound
from .models import Order, PricingPlan, PricingPlanCreate, PricingPlanUpdate

logger = logging.getLogger(__name__)


def _to_doc(fields: Dict[str, Any]) -> Dict[str, Any]:
    if fields.get("amount") is not None:
        fields["amount"] = str(fields["amount"])
    return fields


class PricingCatalog:
    """CRUD over pricing plans plus the credit pricing rule."""

    def __init__(self, db):
        self.db = db
        self.collection = db.pricing_plans

    async def create(self, body: PricingPlanCreate) -> PricingPlan:
        now = datetime.now(timezone.utc).isoformat()
        plan = PricingPlan(pricing_id=str(uuid.uuid4()), created_at=now, updated_at=now, **body.model_dump())
        await self.collection.insert_one(_to_doc(plan.model_dump()))
        logger.info(f"Created pricing plan {plan.pricing_id} ({plan.tokens} tokens for {plan.amount})")
        return plan

    async def list(self) -> List[PricingPlan]:
        docs = await self.collection.find({}, {"_id": 0}).sort("created_at", 1).to_list(length=None)
        return [PricingPlan(**d) for d in docs]

    async def get(self, pricing_id: str) -> Optional[PricingPlan]:
        doc = await self.collection.find_one({"pricing_id": pricing_id}, {"_id": 0})
        return PricingPlan(**doc) if doc else None

    async def require(self, pricing_id: str) -> PricingPlan:
        plan = await self.get(pricing_id)
        if plan is None:
            raise NotFound("pricing plan", pricing_id)
        return plan

    async def update(self, pricing_id: str, body: PricingPlanUpdate) -> PricingPlan:
        updates = _to_doc(body.model_dump(exclude_none=True))
        updates["updated_at"] = datetime.now(timezone.utc).isoformat()

        doc = await self.collection.find_one_and_update(
            {"pricing_id": pricing_id},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NotFound("pricing plan", pricing_id)
        return PricingPlan(**doc)

    async def delete(self, pricing_id: str) -> None:
        result = await self.collection.delete_one({"pricing_id": pricing_id})
        if result.deleted_count == 0:
            raise NotFound("pricing plan", pricing_id)

    async def credits_for(self, order: Order) -> int:
        """
        Pricing rule for a paid order.

        1. The plan the order was checked out against
        2. A plan with exactly the order amount
        3. amount * CREDITS_PER_CURRENCY_UNIT, rounded down
        """
        if order.pricing_id:
            plan = await self.get(order.pricing_id)
            if plan:
                return plan.tokens
            logger.warning(f"Pricing plan {order.pricing_id} for order {order.order_id} no longer exists")

        for plan in await self.list():
            if Decimal(plan.amount) == Decimal(order.amount):
                return plan.tokens

        return math.floor(Decimal(order.amount) * CREDITS_PER_CURRENCY_UNIT)
