"""
Fulfillment Reconciler

Maps the Wallee state of a transaction onto its order and grants credits
at most once. The same algorithm serves all three triggers: the fulfill
call from the success page, the webhook, and the long-poll wait.

Correctness rests only on OrderLedger.try_set_fulfilled: whichever caller
moves the order out of pending performs the grant; everyone else reports
the settled state. A grant that fails after the transition is recorded on
the order (credit_failed_at) and retried by the next trigger.
"""

import asyncio
import logging
from typing import Optional

from .config import SUCCESS_STATES, FAILURE_STATES, WAIT_TIMEOUT_SECONDS, WAIT_POLL_INTERVAL_SECONDS
from .engine import LedgerEngine
from .errors import NotFound
from .models import Order, FulfillmentResult
from .order_ledger import OrderLedger
from .pricing import PricingCatalog

logger = logging.getLogger(__name__)


def classify(provider_state: str) -> str:
    """Map a provider state code to success, failure or pending."""
    state = (provider_state or "").upper()
    if state in SUCCESS_STATES:
        return "success"
    if state in FAILURE_STATES:
        return "failure"
    return "pending"


def _log_detached_failure(task: asyncio.Future):
    if not task.cancelled() and task.exception() is not None:
        logger.error(f"[wait] Detached reconciliation failed: {task.exception()}")


class FulfillmentReconciler:
    """Idempotent order fulfillment."""

    def __init__(self, db, provider, pricing: Optional[PricingCatalog] = None):
        self.db = db
        self.provider = provider
        self.orders = OrderLedger(db)
        self.engine = LedgerEngine(db)
        self.pricing = pricing or PricingCatalog(db)

    async def reconcile(self, order_id: str, trigger: str = "fulfill") -> FulfillmentResult:
        """
        Run one reconciliation attempt.

        Terminal orders are reported without asking the provider again,
        except that a fulfilled order whose credit grant failed earlier gets
        the grant retried. Raises NotFound for unknown orders and
        ProviderUnavailable when the provider cannot be read.
        """
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFound("order", order_id)

        if order.fulfillment_state == "fulfilled" and order.credit_failed_at and not order.credited_at:
            return await self._retry_credit(order, trigger)

        if order.fulfillment_state != "pending":
            logger.info(f"[{trigger}] Order {order_id} already settled ({order.fulfillment_state})")
            return self._settled(order)

        provider_state = await self.provider.read_transaction_state(order_id)
        await self.orders.record_provider_state(order_id, provider_state)
        outcome = classify(provider_state)

        if outcome == "success":
            return await self._fulfill(order, provider_state, trigger)

        if outcome == "failure":
            failed = await self.orders.set_failed(order_id)
            if failed.fulfillment_state == "fulfilled":
                # Another trigger settled it first
                return self._settled(failed, provider_state)
            logger.info(f"[{trigger}] Payment failed for order {order_id} (state={provider_state})")
            return FulfillmentResult(
                order_id=order_id,
                outcome="failure",
                provider_state=provider_state,
                fulfillment_state="failed",
            )

        logger.info(f"[{trigger}] Payment pending for order {order_id} (state={provider_state})")
        return FulfillmentResult(
            order_id=order_id,
            outcome="pending",
            provider_state=provider_state,
            fulfillment_state="pending",
        )

    async def retry_credit(self, order_id: str) -> FulfillmentResult:
        """Flag a fulfilled, uncredited order for a new grant attempt and run it."""
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFound("order", order_id)
        if order.fulfillment_state == "fulfilled" and not order.credited_at:
            await self.orders.mark_credit_failed(order_id, "manual retry")
        return await self.reconcile(order_id, trigger="admin")

    async def _fulfill(self, order: Order, provider_state: str, trigger: str) -> FulfillmentResult:
        # Priced first: a pricing failure must leave the order pending so a redelivery can retry
        credits = await self.pricing.credits_for(order)

        transition = await self.orders.try_set_fulfilled(order.order_id)
        if not transition.transitioned:
            settled = await self.orders.get(order.order_id)
            logger.info(f"[{trigger}] Order {order.order_id} already settled ({transition.state})")
            return self._settled(settled, provider_state)

        granted = await self._grant(order, credits, provider_state, trigger)
        return FulfillmentResult(
            order_id=order.order_id,
            outcome="success",
            provider_state=provider_state,
            fulfillment_state="fulfilled",
            credits_granted=granted,
        )

    async def _retry_credit(self, order: Order, trigger: str) -> FulfillmentResult:
        if not await self.orders.claim_credit_retry(order.order_id):
            # Someone else is retrying, or the grant has landed meanwhile
            return self._settled(await self.orders.get(order.order_id))

        logger.info(f"[{trigger}] Retrying credit grant for order {order.order_id} ({order.credit_error})")
        try:
            existing = await self.engine.find_transaction(order.order_id, "purchase")
            if existing is not None:
                # The grant committed but the order was never marked
                credits = existing["available_delta"]
                await self.orders.mark_credited(order.order_id, credits)
            else:
                credits = await self.pricing.credits_for(order)
        except Exception as e:
            await self.orders.mark_credit_failed(order.order_id, str(e))
            logger.error(f"[{trigger}] Credit retry failed for order {order.order_id}: {e}")
            raise

        if existing is not None:
            granted = credits
        else:
            granted = await self._grant(order, credits, order.provider_state, trigger)

        return FulfillmentResult(
            order_id=order.order_id,
            outcome="success",
            provider_state=order.provider_state,
            fulfillment_state="fulfilled",
            credits_granted=granted,
        )

    async def _grant(self, order: Order, credits: int, provider_state: Optional[str], trigger: str) -> int:
        """Credit the buyer of a freshly fulfilled order and mark the order credited."""
        if not order.buyer_user_id:
            logger.warning(f"[{trigger}] Fulfilled order {order.order_id} without a credit grant (no buyer)")
            credits = 0
        elif credits <= 0:
            logger.warning(
                f"[{trigger}] Fulfilled order {order.order_id} without a credit grant "
                f"(pricing rule gave 0 credits for {order.amount} {order.currency})"
            )
            credits = 0

        try:
            if credits > 0:
                await self.engine.grant(
                    order.buyer_user_id,
                    credits,
                    cash_spent=order.amount,
                    kind="purchase",
                    reference=order.order_id,
                    details={
                        "reference": order.reference,
                        "amount": str(order.amount),
                        "currency": order.currency,
                        "provider_state": provider_state,
                        "trigger": trigger,
                    }
                )
            await self.orders.mark_credited(order.order_id, credits)
        except Exception as e:
            await self.orders.mark_credit_failed(order.order_id, str(e))
            logger.error(f"[{trigger}] Credit grant failed for fulfilled order {order.order_id}: {e}")
            raise

        if credits:
            logger.info(f"[{trigger}] Fulfilled order {order.order_id}: {credits} credits to user {order.buyer_user_id}")
        return credits

    def _settled(self, order: Order, provider_state: Optional[str] = None) -> FulfillmentResult:
        fulfilled = order.fulfillment_state == "fulfilled"
        credit_pending = fulfilled and not order.credited_at
        if credit_pending:
            logger.error(
                f"Order {order.order_id} is fulfilled but not credited"
                f" (last error: {order.credit_error or 'none recorded'})"
            )
        return FulfillmentResult(
            order_id=order.order_id,
            outcome="success" if fulfilled else "failure",
            provider_state=provider_state or order.provider_state,
            fulfillment_state=order.fulfillment_state,
            already_settled=True,
            credit_pending=credit_pending,
        )

    async def wait(
        self,
        order_id: str,
        timeout: float = WAIT_TIMEOUT_SECONDS,
        interval: float = WAIT_POLL_INTERVAL_SECONDS
    ) -> FulfillmentResult:
        """
        Long-poll: reconcile every `interval` seconds until the order settles
        or `timeout` elapses, then report pending with timeout=True.

        An attempt still in flight at the deadline is shielded and keeps
        running; it may still credit the order.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        last: Optional[FulfillmentResult] = None

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break

            attempt = asyncio.ensure_future(self.reconcile(order_id, trigger="wait"))
            try:
                last = await asyncio.wait_for(asyncio.shield(attempt), timeout=remaining)
            except asyncio.TimeoutError:
                logger.info(f"[wait] Deadline reached with attempt in flight for order {order_id}")
                attempt.add_done_callback(_log_detached_failure)
                break

            if last.outcome != "pending":
                return last

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(interval, remaining))

        return FulfillmentResult(
            order_id=order_id,
            outcome="pending",
            provider_state=last.provider_state if last else None,
            fulfillment_state="pending",
            timeout=True,
        )
