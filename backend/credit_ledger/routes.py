"""
Credit Ledger API Routes

Endpoints:
- GET  /api/tokens - Current user's ledger
- GET  /api/tokens/history - Ledger mutation history
- POST /api/tokens/consume - Debit credits
- POST /api/tokens/estimate - Price usage without charging
- POST /api/tokens/charge - Charge usage for a billable feature
- /api/tokens/admin/* - Ledger and usage-rate administration
- /api/pricing - Credit pack catalog
- GET  /api/images - Metered product image search
- /api/payments/wallee/* - Checkout, fulfillment, webhook and credit retry
- /api/seo - Metered SEO copy generation and run count
"""

import logging
from typing import List, Optional

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse

from database import db
from utils.auth import get_current_user, get_admin_user
from credit_ledger.balance_store import BalanceStore
from credit_ledger.checkout import CheckoutService
from credit_ledger.config import ERROR_CODES
from credit_ledger.engine import LedgerEngine
from credit_ledger.errors import (
    LedgerError,
    InsufficientBalance,
    DuplicateOrder,
    ProviderUnavailable,
    NotFound,
)
from credit_ledger.image_search import ImageSearchClient
from credit_ledger.models import (
    Ledger,
    LedgerDelta,
    LedgerPage,
    CheckoutRequest,
    CheckoutResponse,
    ConsumeRequest,
    ExpirationUpdate,
    PricingPlan,
    PricingPlanCreate,
    PricingPlanUpdate,
    UsageRates,
    UsageRatesUpdate,
    UsageEstimate,
    UsageCharge,
    UsageChargeRequest,
    SeoGenerateRequest,
    SeoGenerateResponse,
    GenerationCount,
)
from credit_ledger.order_ledger import OrderLedger
from credit_ledger.pricing import PricingCatalog
from credit_ledger.reconciler import FulfillmentReconciler
from credit_ledger.seo_generator import GenerationCounter, SeoGenerator
from credit_ledger.usage import UsageGuard, UsageRatesService
from credit_ledger.wallee_service import WalleeService

logger = logging.getLogger(__name__)

credit_router = APIRouter(prefix="/tokens", tags=["Credits"])
pricing_router = APIRouter(prefix="/pricing", tags=["Pricing"])
images_router = APIRouter(prefix="/images", tags=["Images"])
payments_router = APIRouter(prefix="/payments", tags=["Payments"])
seo_router = APIRouter(prefix="/seo", tags=["SEO"])

wallee_service = WalleeService()
image_search_client = ImageSearchClient()
seo_generator = SeoGenerator()

_STATUS_CODES = {
    InsufficientBalance: 402,
    DuplicateOrder: 409,
    ProviderUnavailable: 502,
    NotFound: 404,
}


def http_error(e: LedgerError) -> HTTPException:
    """Translate a ledger error into an HTTP error."""
    status_code = next((code for cls, code in _STATUS_CODES.items() if isinstance(e, cls)), 400)
    detail = {"error_code": e.code, "message": ERROR_CODES.get(e.code, str(e))}
    if isinstance(e, InsufficientBalance):
        detail["remaining_balance"] = e.available or 0
    elif status_code == 400:
        detail["message"] = str(e)
    return HTTPException(status_code=status_code, detail=detail)


# ==================== LEDGER ENDPOINTS ====================

@credit_router.get("", response_model=Ledger)
async def get_my_ledger(user: dict = Depends(get_current_user)):
    """Get the current user's ledger. Users without one see zero balances."""
    ledger = await BalanceStore(db).get(user["id"])
    return ledger or Ledger(user_id=user["id"])


@credit_router.get("/history")
async def get_history(
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user)
):
    """Get ledger history: usage, purchases, grants and adjustments."""
    entries = await LedgerEngine(db).get_history(user["id"], limit)
    return {
        "entries": entries,
        "count": len(entries)
    }


@credit_router.post("/consume", response_model=Ledger)
async def consume_tokens(body: ConsumeRequest, user: dict = Depends(get_current_user)):
    """Debit credits from the current user. Fails with 402 if the balance is too low."""
    try:
        return await LedgerEngine(db).consume(user["id"], body.amount, details={"source": "api"})
    except LedgerError as e:
        raise http_error(e)


@credit_router.post("/estimate", response_model=UsageEstimate)
async def estimate_usage(body: UsageChargeRequest, user: dict = Depends(get_current_user)):
    """
    Price billable usage against the current balance.

    Does NOT deduct any credits.
    """
    try:
        return await UsageGuard(db).estimate(user["id"], body.items)
    except LedgerError as e:
        raise http_error(e)


@credit_router.post("/charge", response_model=UsageCharge)
async def charge_usage(body: UsageChargeRequest, user: dict = Depends(get_current_user)):
    """Charge billable usage (e.g. SEO generation) to the current user."""
    try:
        return await UsageGuard(db).charge(user["id"], body.items, action=body.action)
    except LedgerError as e:
        raise http_error(e)


# ==================== ADMIN ENDPOINTS ====================

@credit_router.get("/admin/ledgers", response_model=LedgerPage)
async def list_ledgers(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort: Optional[str] = Query(None, description="e.g. available_credits:desc,expiration:asc"),
    admin: dict = Depends(get_admin_user)
):
    return await BalanceStore(db).list(page=page, limit=limit, sort=sort)


@credit_router.get("/admin/ledgers/{user_id}", response_model=Ledger)
async def get_ledger(user_id: str, admin: dict = Depends(get_admin_user)):
    try:
        return await BalanceStore(db).require(user_id)
    except LedgerError as e:
        raise http_error(e)


@credit_router.post("/admin/ledgers/{user_id}/increment", response_model=Ledger)
async def increment_ledger(user_id: str, delta: LedgerDelta, admin: dict = Depends(get_admin_user)):
    """Apply a set of deltas to a user's ledger (admin only)."""
    try:
        return await LedgerEngine(db).apply_delta(
            user_id, delta,
            kind="adjustment",
            details={"admin": admin.get("email") or admin["id"]}
        )
    except LedgerError as e:
        raise http_error(e)


@credit_router.patch("/admin/ledgers/{user_id}/expiration", response_model=Ledger)
async def set_expiration(user_id: str, body: ExpirationUpdate, admin: dict = Depends(get_admin_user)):
    try:
        return await BalanceStore(db).set_expiration(user_id, body.expiration)
    except LedgerError as e:
        raise http_error(e)


@credit_router.delete("/admin/ledgers/{user_id}")
async def delete_ledger(user_id: str, admin: dict = Depends(get_admin_user)):
    try:
        await BalanceStore(db).delete(user_id)
    except LedgerError as e:
        raise http_error(e)
    return {"success": True, "message": f"Ledger for user {user_id} deleted"}


@credit_router.get("/admin/usage-rates", response_model=UsageRates)
async def get_usage_rates(admin: dict = Depends(get_admin_user)):
    return await UsageRatesService(db).get()


@credit_router.post("/admin/usage-rates", response_model=UsageRates, status_code=201)
async def create_usage_rates(body: UsageRates, admin: dict = Depends(get_admin_user)):
    try:
        return await UsageRatesService(db).create(body)
    except LedgerError as e:
        raise http_error(e)


@credit_router.patch("/admin/usage-rates", response_model=UsageRates)
async def update_usage_rates(body: UsageRatesUpdate, admin: dict = Depends(get_admin_user)):
    try:
        return await UsageRatesService(db).update(body)
    except LedgerError as e:
        raise http_error(e)


# ==================== PRICING ====================

@pricing_router.get("", response_model=List[PricingPlan])
async def list_pricing():
    return await PricingCatalog(db).list()


@pricing_router.get("/{pricing_id}", response_model=PricingPlan)
async def get_pricing(pricing_id: str):
    try:
        return await PricingCatalog(db).require(pricing_id)
    except LedgerError as e:
        raise http_error(e)


@pricing_router.post("", response_model=PricingPlan, status_code=201)
async def create_pricing(body: PricingPlanCreate, admin: dict = Depends(get_admin_user)):
    return await PricingCatalog(db).create(body)


@pricing_router.patch("/{pricing_id}", response_model=PricingPlan)
async def update_pricing(pricing_id: str, body: PricingPlanUpdate, admin: dict = Depends(get_admin_user)):
    try:
        return await PricingCatalog(db).update(pricing_id, body)
    except LedgerError as e:
        raise http_error(e)


@pricing_router.delete("/{pricing_id}", status_code=204)
async def delete_pricing(pricing_id: str, admin: dict = Depends(get_admin_user)):
    try:
        await PricingCatalog(db).delete(pricing_id)
    except LedgerError as e:
        raise http_error(e)
    return Response(status_code=204)


# ==================== IMAGE SEARCH ====================

@images_router.get("")
async def search_images(
    q: str = Query(..., min_length=1, description="Barcode, description or any product field"),
    num: Optional[int] = Query(None, ge=1, le=10),
    user: dict = Depends(get_current_user)
):
    """
    Search product images.

    Charges per_image_request, plus per_image when anything was found.
    Results are withheld if the charge fails.
    """
    guard = UsageGuard(db)
    try:
        estimate = await guard.estimate(user["id"], {"per_image_request": 1})
    except LedgerError as e:
        raise http_error(e)
    if not estimate.sufficient_balance:
        raise http_error(InsufficientBalance(user["id"], estimate.cost, estimate.current_balance))

    try:
        urls = await image_search_client.search(q, num)
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        logger.error(f"Google image search error: {status} {e.response.text}")
        message = "Rate limit exceeded. Please try again later or contact support." if status == 429 \
            else "Server error. Please try again later."
        raise HTTPException(status_code=status, detail={"success": False, "error": message, "data": []})
    except httpx.HTTPError as e:
        logger.error(f"Google image search error: {e}")
        raise HTTPException(status_code=502, detail={"success": False, "error": "Image search unavailable", "data": []})

    items = {"per_image_request": 1, "per_image": 1 if urls else 0}
    try:
        charge = await guard.charge(user["id"], items, action="image_search")
    except LedgerError as e:
        raise http_error(e)

    return {"success": True, "data": urls, "tokens_used": charge.cost, "remaining_balance": charge.remaining_balance}


# ==================== WALLEE PAYMENTS ====================

def _fulfillment_response(result) -> JSONResponse:
    if result.credit_pending:
        # Paid, but the credits have not landed yet
        status_code = 202
    else:
        status_code = {"success": 200, "failure": 400, "pending": 202}[result.outcome]
    return JSONResponse(
        status_code=status_code,
        content={"ok": result.outcome == "success" and not result.credit_pending, **result.model_dump(mode="json")}
    )


async def _require_own_order(transaction_id: str, user: dict):
    """The order must belong to the caller; admins may read any order."""
    order = await OrderLedger(db).get(transaction_id)
    if order is None or (order.buyer_user_id != user["id"] and not user.get("is_admin")):
        raise http_error(NotFound("order", transaction_id))
    return order


@payments_router.post("/wallee/checkout", response_model=CheckoutResponse)
async def wallee_checkout(body: CheckoutRequest, user: dict = Depends(get_current_user)):
    """
    Create a Wallee transaction and return the hosted payment page.

    Payment happens on Wallee; use /fulfill, /wait or the webhook to settle.
    """
    try:
        return await CheckoutService(db, wallee_service).create(user["id"], body)
    except LedgerError as e:
        raise http_error(e)


@payments_router.get("/wallee/status/{transaction_id}")
async def wallee_status(transaction_id: str, user: dict = Depends(get_current_user)):
    """Quick read of a transaction state."""
    await _require_own_order(transaction_id, user)
    try:
        state = await wallee_service.read_transaction_state(transaction_id)
    except LedgerError as e:
        raise http_error(e)
    return {"id": transaction_id, "state": state}


@payments_router.post("/wallee/fulfill/{transaction_id}")
async def wallee_fulfill(transaction_id: str, user: dict = Depends(get_current_user)):
    """Verify the transaction with Wallee and settle the order once."""
    await _require_own_order(transaction_id, user)
    try:
        result = await FulfillmentReconciler(db, wallee_service).reconcile(transaction_id, trigger="fulfill")
    except LedgerError as e:
        raise http_error(e)
    return _fulfillment_response(result)


@payments_router.post("/wallee/wait/{transaction_id}")
async def wallee_wait(transaction_id: str, user: dict = Depends(get_current_user)):
    """Long-poll until the transaction settles or the wait ceiling is reached."""
    await _require_own_order(transaction_id, user)
    try:
        result = await FulfillmentReconciler(db, wallee_service).wait(transaction_id)
    except LedgerError as e:
        raise http_error(e)
    return _fulfillment_response(result)


@payments_router.post("/wallee/orders/{transaction_id}/retry-credit")
async def retry_order_credit(transaction_id: str, admin: dict = Depends(get_admin_user)):
    """Re-run the credit grant of a fulfilled order that was never credited."""
    try:
        result = await FulfillmentReconciler(db, wallee_service).retry_credit(transaction_id)
    except LedgerError as e:
        raise http_error(e)
    logger.info(f"Admin {admin['id']} retried credit for order {transaction_id}: {result.credits_granted} credits")
    return _fulfillment_response(result)


async def reconcile_from_webhook(transaction_id: str):
    try:
        result = await FulfillmentReconciler(db, wallee_service).reconcile(transaction_id, trigger="webhook")
        logger.info(f"[Webhook] tx={transaction_id} outcome={result.outcome} settled={result.already_settled}")
    except NotFound:
        logger.warning(f"[Webhook] No order for tx={transaction_id}")
    except ProviderUnavailable as e:
        logger.error(f"[Webhook] Could not read tx={transaction_id}: {e}")
    except Exception as e:
        # Order stays pending or flagged credit_failed_at; the next trigger retries
        logger.error(f"[Webhook] Reconciliation failed for tx={transaction_id}: {e}")


@payments_router.post("/wallee/webhook")
async def wallee_webhook(request: Request, background_tasks: BackgroundTasks):
    """
    Handle Wallee transaction notifications.

    The payload is only a hint: the transaction is re-read from Wallee.
    Acknowledged immediately; reconciliation runs in the background.
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    entity_id = payload.get("entityId") if isinstance(payload, dict) else None
    if not entity_id:
        logger.warning("Wallee webhook: missing entityId")
        raise HTTPException(status_code=400, detail="Missing entityId")

    logger.info(f"Received Wallee webhook for tx={entity_id}")
    background_tasks.add_task(reconcile_from_webhook, str(entity_id))
    return {"status": "received"}


@payments_router.get("/orders")
async def list_my_orders(
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user)
):
    orders = await OrderLedger(db).list_for_user(user["id"], limit)
    return {
        "orders": [o.model_dump(mode="json") for o in orders],
        "count": len(orders)
    }


# ==================== SEO GENERATION ====================

@seo_router.post("/generate", response_model=SeoGenerateResponse)
async def generate_seo(body: SeoGenerateRequest, user: dict = Depends(get_current_user)):
    """
    Generate SEO titles and descriptions for product rows.

    Charges per_seo_input for every product before calling the model, then
    per_seo_output for every row returned. Results are withheld if the
    output charge fails.
    """
    if not seo_generator.configured:
        raise HTTPException(
            status_code=503,
            detail={"error_code": "SEO_UNAVAILABLE", "message": ERROR_CODES["SEO_UNAVAILABLE"]}
        )

    guard = UsageGuard(db)
    products = len(body.products)
    try:
        estimate = await guard.estimate(user["id"], {"per_seo_input": products, "per_seo_output": products})
        if not estimate.sufficient_balance:
            raise InsufficientBalance(user["id"], estimate.cost, estimate.current_balance)
        input_charge = await guard.charge(user["id"], {"per_seo_input": products}, action="seo_generation")
    except LedgerError as e:
        raise http_error(e)

    rows = await seo_generator.generate(body.products, body.seo_targets, body.lang)

    try:
        output_charge = await guard.charge(user["id"], {"per_seo_output": len(rows)}, action="seo_generation")
    except LedgerError as e:
        logger.warning(f"SEO output charge failed for user {user['id']}; {len(rows)} rows withheld")
        raise http_error(e)

    counter = GenerationCounter(db)
    count = await counter.increment(user["id"]) if rows else (await counter.get(user["id"])).count

    return SeoGenerateResponse(
        data=rows,
        tokens_used=input_charge.cost + output_charge.cost,
        remaining_balance=output_charge.remaining_balance,
        generation_count=count,
    )


@seo_router.get("/file-count", response_model=GenerationCount)
async def get_generation_count(user: dict = Depends(get_current_user)):
    """Number of SEO generation runs the caller has completed."""
    return await GenerationCounter(db).get(user["id"])
