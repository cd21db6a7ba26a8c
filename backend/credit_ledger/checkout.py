"""
Checkout Service

Creates the Wallee transaction and the pending order that the reconciler
later settles.
"""

import logging
import time
from decimal import Decimal
from typing import Optional

from .config import CHECKOUT_DEFAULTS
from .errors import InvalidDelta
from .models import CheckoutRequest, CheckoutResponse, Order
from .order_ledger import OrderLedger
from .pricing import PricingCatalog

logger = logging.getLogger(__name__)


class CheckoutService:
    """Starts a hosted-payment-page checkout for a buyer."""

    def __init__(self, db, provider):
        self.db = db
        self.provider = provider
        self.orders = OrderLedger(db)
        self.pricing = PricingCatalog(db)

    async def create(self, buyer_user_id: Optional[str], body: CheckoutRequest) -> CheckoutResponse:
        """
        Flow:
        1. Resolve the amount (explicit, or from the pricing plan)
        2. Create the Wallee transaction
        3. Persist the order as pending, keyed by the transaction id
        """
        amount: Optional[Decimal] = body.amount
        if body.pricing_id:
            plan = await self.pricing.require(body.pricing_id)
            amount = Decimal(plan.amount)

        if amount is None or amount <= 0:
            raise InvalidDelta("amount is required")

        currency = body.currency or CHECKOUT_DEFAULTS["currency"]
        reference = body.reference or f"order-{int(time.time() * 1000)}"

        created = await self.provider.create_transaction(
            amount=amount,
            currency=currency,
            reference=reference,
            name=body.name or CHECKOUT_DEFAULTS["name"],
            sku=body.sku or CHECKOUT_DEFAULTS["sku"],
        )

        await self.orders.create(Order(
            order_id=created["transaction_id"],
            buyer_user_id=buyer_user_id,
            reference=reference,
            amount=amount,
            currency=currency,
            pricing_id=body.pricing_id,
        ))

        logger.info(f"[Checkout] Created tx {created['transaction_id']} ({reference}, {amount} {currency})")
        return CheckoutResponse(
            payment_page_url=created["payment_page_url"],
            transaction_id=created["transaction_id"],
        )
