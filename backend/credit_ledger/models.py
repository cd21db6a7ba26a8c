"""
Credit Ledger Data Models

Pydantic models for ledger operations.
These define the structure of documents stored in MongoDB collections
and the request/response bodies of the API.
"""

from decimal import Decimal
from typing import Optional, List, Literal, Dict, Any

from pydantic import BaseModel, Field


FulfillmentState = Literal["pending", "fulfilled", "failed"]
Outcome = Literal["success", "failure", "pending"]
TransactionKind = Literal["usage", "grant", "purchase", "adjustment"]


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents or 0) / 100).quantize(Decimal("0.01"))


def decimal_to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


# ==================== LEDGER MODELS ====================

class Ledger(BaseModel):
    """User's credit ledger"""
    user_id: str
    available_credits: int = 0
    lifetime_granted: int = 0
    lifetime_spent: int = 0
    lifetime_cash_spent: Decimal = Decimal("0.00")
    expiration: Optional[int] = None  # epoch marker, stored only
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Ledger":
        return cls(
            user_id=doc["user_id"],
            available_credits=doc.get("available_credits", 0),
            lifetime_granted=doc.get("lifetime_granted", 0),
            lifetime_spent=doc.get("lifetime_spent", 0),
            lifetime_cash_spent=cents_to_decimal(doc.get("lifetime_cash_spent_cents", 0)),
            expiration=doc.get("expiration"),
            created_at=doc.get("created_at"),
            updated_at=doc.get("updated_at"),
        )


class LedgerDelta(BaseModel):
    """Deltas applied together to one ledger"""
    available_delta: int = 0
    lifetime_granted_delta: int = 0
    lifetime_spent_delta: int = 0
    lifetime_cash_delta: Decimal = Decimal("0")


class CreditTransaction(BaseModel):
    """Immutable history entry for a committed ledger mutation"""
    user_id: str
    kind: TransactionKind
    available_delta: int
    lifetime_granted_delta: int = 0
    lifetime_spent_delta: int = 0
    lifetime_cash_delta: str = "0.00"
    reference: Optional[str] = None
    request_id: str
    timestamp: str
    details: Optional[dict] = None


class LedgerPage(BaseModel):
    items: List[Ledger]
    page: int
    limit: int
    total: int
    pages: int


# ==================== ORDER MODELS ====================

class Order(BaseModel):
    """Checkout order keyed by the provider transaction id"""
    order_id: str
    buyer_user_id: Optional[str] = None
    reference: str
    amount: Decimal
    currency: str
    pricing_id: Optional[str] = None
    fulfillment_state: FulfillmentState = "pending"
    provider_state: Optional[str] = None
    credits_granted: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    fulfilled_at: Optional[str] = None
    failed_at: Optional[str] = None
    credited_at: Optional[str] = None
    credit_failed_at: Optional[str] = None
    credit_error: Optional[str] = None

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Order":
        data = {k: v for k, v in doc.items() if k != "_id"}
        return cls(**data)

    def to_doc(self) -> Dict[str, Any]:
        doc = self.model_dump()
        doc["amount"] = str(self.amount)
        doc["_id"] = self.order_id
        return doc


class FulfillmentTransition(BaseModel):
    """Result of OrderLedger.try_set_fulfilled"""
    was_already_fulfilled: bool
    transitioned: bool
    state: FulfillmentState


class FulfillmentResult(BaseModel):
    """Outcome of one reconciliation attempt"""
    order_id: str
    outcome: Outcome
    provider_state: Optional[str] = None
    fulfillment_state: FulfillmentState
    already_settled: bool = False
    credits_granted: int = 0
    timeout: bool = False
    credit_pending: bool = False


class CheckoutRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0, description="Charged amount; optional when pricing_id is given")
    pricing_id: Optional[str] = None
    currency: Optional[str] = None
    name: Optional[str] = None
    sku: Optional[str] = None
    reference: Optional[str] = None


class CheckoutResponse(BaseModel):
    payment_page_url: str
    transaction_id: str


# ==================== PRICING MODELS ====================

class PricingPlanCreate(BaseModel):
    title: str = Field(..., min_length=1)
    short_description: str = Field(..., min_length=1)
    tokens: int = Field(..., ge=0)
    amount: Decimal = Field(..., ge=0)
    features: List[str] = Field(default_factory=list)


class PricingPlanUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    short_description: Optional[str] = Field(None, min_length=1)
    tokens: Optional[int] = Field(None, ge=0)
    amount: Optional[Decimal] = Field(None, ge=0)
    features: Optional[List[str]] = None


class PricingPlan(PricingPlanCreate):
    pricing_id: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# ==================== USAGE MODELS ====================

class UsageRates(BaseModel):
    """Per-action credit costs"""
    per_image_request: int = Field(..., ge=0)
    per_image: int = Field(..., ge=0)
    per_seo_input: int = Field(..., ge=0)
    per_seo_output: int = Field(..., ge=0)


class UsageRatesUpdate(BaseModel):
    per_image_request: Optional[int] = Field(None, ge=0)
    per_image: Optional[int] = Field(None, ge=0)
    per_seo_input: Optional[int] = Field(None, ge=0)
    per_seo_output: Optional[int] = Field(None, ge=0)


class UsageEstimate(BaseModel):
    items: Dict[str, int]
    cost: int
    current_balance: int
    sufficient_balance: bool


class UsageCharge(BaseModel):
    request_id: str
    action: str
    cost: int
    remaining_balance: int


# ==================== REQUEST BODIES ====================

class ConsumeRequest(BaseModel):
    amount: int = Field(..., gt=0)


class UsageChargeRequest(BaseModel):
    action: str = Field("usage", description="Billable feature name, e.g. seo_generation")
    items: Dict[str, int] = Field(..., description="Rate name to quantity, e.g. {'per_seo_input': 3}")


class ExpirationUpdate(BaseModel):
    expiration: int


# ==================== SEO GENERATION MODELS ====================

SeoTarget = Literal["title", "short description", "long description"]


class SeoGenerateRequest(BaseModel):
    products: List[Dict[str, Any]] = Field(..., min_length=1, description="Product rows; `id` is echoed back")
    seo_targets: List[SeoTarget] = Field(
        default_factory=lambda: ["title", "short description", "long description"],
        min_length=1
    )
    lang: str = "EN"


class SeoGenerateResponse(BaseModel):
    data: List[Dict[str, Any]]
    tokens_used: int
    remaining_balance: int
    generation_count: int


class GenerationCount(BaseModel):
    user_id: str
    count: int = 0
    updated_at: Optional[str] = None
