"""
Credit Ledger Errors

Raised by the services and translated to HTTP responses in routes.py.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for credit ledger errors."""
    code = "LEDGER_ERROR"


class InsufficientBalance(LedgerError):
    """Raised when a debit would take available credits below zero."""
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, user_id: str, requested: int, available: Optional[int] = None):
        self.user_id = user_id
        self.requested = requested
        self.available = available
        super().__init__(f"Insufficient balance for user {user_id}: requested {requested}")


class DuplicateOrder(LedgerError):
    """Raised when an order id already exists."""
    code = "DUPLICATE_ORDER"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} already exists")


class ProviderUnavailable(LedgerError):
    """Raised when the payment provider call fails. Retryable by the caller."""
    code = "PROVIDER_UNAVAILABLE"

    def __init__(self, operation: str, details: Optional[str] = None):
        self.operation = operation
        self.details = details
        super().__init__(f"Payment provider {operation} failed: {details}")


class NotFound(LedgerError):
    """Raised when a user ledger, order or plan does not exist."""
    code = "NOT_FOUND"

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class InvalidDelta(LedgerError, ValueError):
    """Raised for non-positive amounts or negative lifetime deltas."""
    code = "INVALID_DELTA"
