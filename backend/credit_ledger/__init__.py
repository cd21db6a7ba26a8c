"""
Credit Ledger Module
Token-credit metering and payment settlement for the enrichment API

This module provides:
- Per-user credit ledgers (available balance + lifetime totals)
- Atomic, conditional debits that can never overdraw a ledger
- Durable order records for Wallee checkout transactions
- Idempotent order fulfillment (webhook, fulfill call and long-poll wait)
- Usage pricing for billable features (image search, SEO generation)

Collections used:
- credit_ledgers: One balance document per user
- credit_transactions: Immutable mutation log
- payment_orders: Checkout orders keyed by the Wallee transaction id
- pricing_plans: Purchasable credit packs
- usage_rates: Admin-managed per-action costs
"""

__version__ = "1.0.0"
