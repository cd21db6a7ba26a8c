"""
Order Ledger

Durable checkout orders in `payment_orders`, keyed by the Wallee
transaction id. The reconciler is the only writer of `fulfillment_state`.

State machine: pending -> fulfilled | failed. Both terminal states are
absorbing; every transition is a conditional update on
`fulfillment_state == "pending"`.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, List

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .errors import DuplicateOrder, NotFound
from .models import Order, FulfillmentTransition

logger = logging.getLogger(__name__)


class OrderLedger:
    """Store for payment orders."""

    def __init__(self, db):
        self.db = db
        self.collection = db.payment_orders

    async def create(self, order: Order) -> Order:
        now = datetime.now(timezone.utc).isoformat()
        order = order.model_copy(update={
            "fulfillment_state": "pending",
            "created_at": now,
            "updated_at": now,
        })

        try:
            await self.collection.insert_one(order.to_doc())
        except DuplicateKeyError:
            raise DuplicateOrder(order.order_id)

        logger.info(f"Created order {order.order_id} for user {order.buyer_user_id} ({order.amount} {order.currency})")
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        doc = await self.collection.find_one({"order_id": order_id}, {"_id": 0})
        return Order.from_doc(doc) if doc else None

    async def list_for_user(self, user_id: str, limit: int = 50) -> List[Order]:
        cursor = self.collection.find(
            {"buyer_user_id": user_id},
            {"_id": 0}
        ).sort("created_at", -1).limit(limit)
        return [Order.from_doc(d) for d in await cursor.to_list(length=limit)]

    async def try_set_fulfilled(self, order_id: str) -> FulfillmentTransition:
        """
        Move a pending order to fulfilled.

        Exactly one concurrent caller observes transitioned=True. A failed
        order is left failed.
        """
        now = datetime.now(timezone.utc).isoformat()
        doc = await self.collection.find_one_and_update(
            {"order_id": order_id, "fulfillment_state": "pending"},
            {"$set": {"fulfillment_state": "fulfilled", "fulfilled_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            return FulfillmentTransition(was_already_fulfilled=False, transitioned=True, state="fulfilled")

        current = await self.get(order_id)
        if current is None:
            raise NotFound("order", order_id)

        return FulfillmentTransition(
            was_already_fulfilled=current.fulfillment_state == "fulfilled",
            transitioned=False,
            state=current.fulfillment_state,
        )

    async def set_failed(self, order_id: str) -> Order:
        """Move a pending order to failed. Terminal orders are returned unchanged."""
        now = datetime.now(timezone.utc).isoformat()
        doc = await self.collection.find_one_and_update(
            {"order_id": order_id, "fulfillment_state": "pending"},
            {"$set": {"fulfillment_state": "failed", "failed_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            return Order.from_doc(doc)

        current = await self.get(order_id)
        if current is None:
            raise NotFound("order", order_id)
        return current

    async def record_provider_state(self, order_id: str, provider_state: str):
        """Remember the last state read from the provider (audit only)."""
        await self.collection.update_one(
            {"order_id": order_id},
            {"$set": {"provider_state": provider_state, "updated_at": datetime.now(timezone.utc).isoformat()}}
        )

    async def mark_credited(self, order_id: str, credits: int):
        await self.collection.update_one(
            {"order_id": order_id},
            {
                "$set": {"credits_granted": credits, "credited_at": datetime.now(timezone.utc).isoformat()},
                "$unset": {"credit_failed_at": "", "credit_error": ""}
            }
        )

    async def mark_credit_failed(self, order_id: str, error: str):
        """Flag a fulfilled order whose credit grant did not complete."""
        await self.collection.update_one(
            {"order_id": order_id, "credited_at": None},
            {"$set": {"credit_failed_at": datetime.now(timezone.utc).isoformat(), "credit_error": error}}
        )

    async def claim_credit_retry(self, order_id: str) -> bool:
        """
        Take ownership of retrying a failed credit grant.

        Clears the failure flag in the same conditional update, so exactly
        one concurrent caller gets True.
        """
        doc = await self.collection.find_one_and_update(
            {
                "order_id": order_id,
                "fulfillment_state": "fulfilled",
                "credited_at": None,
                "credit_failed_at": {"$ne": None},
            },
            {"$set": {"credit_failed_at": None, "updated_at": datetime.now(timezone.utc).isoformat()}},
            return_document=ReturnDocument.AFTER,
        )
        return doc is not None
