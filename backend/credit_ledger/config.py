"""
Credit Ledger Configuration and Constants

Provider state classification, long-poll timing, pricing fallbacks,
usage rates and SEO generation settings are defined here.
"""

import os


def _states_from_env(var: str, default: set) -> frozenset:
    raw = os.environ.get(var, "")
    states = {s.strip().upper() for s in raw.split(",") if s.strip()}
    return frozenset(states or default)


# ==================== WALLEE STATE CLASSIFICATION ====================
# Anything outside both sets is treated as pending
SUCCESS_STATES = _states_from_env("WALLEE_SUCCESS_STATES", {"AUTHORIZED", "COMPLETED", "FULFILL"})
FAILURE_STATES = _states_from_env("WALLEE_FAILURE_STATES", {"FAILED", "DECLINE", "VOIDED"})

# ==================== LONG-POLL ====================
WAIT_TIMEOUT_SECONDS = 60
WAIT_POLL_INTERVAL_SECONDS = 2

# ==================== CHECKOUT DEFAULTS ====================
CHECKOUT_DEFAULTS = {
    "currency": "EUR",
    "name": "Token Pack",
    "sku": "token-pack",
}

# Fallback when no pricing plan matches an order amount
CREDITS_PER_CURRENCY_UNIT = int(os.environ.get("CREDITS_PER_CURRENCY_UNIT", "100"))

# ==================== USAGE RATES ====================
# Costs in credits, overridable through the admin usage-rates document
DEFAULT_USAGE_RATES = {
    "per_image_request": 2,   # every image search
    "per_image": 6,           # surcharge when at least one image was found
    "per_seo_input": 1,       # per product sent to SEO generation
    "per_seo_output": 1,      # per generated SEO row
}

# ==================== IMAGE SEARCH ====================
IMAGE_SEARCH_CONFIG = {
    "endpoint": "https://www.googleapis.com/customsearch/v1",
    "default_num": int(os.environ.get("MAX_IMAGES_PER_QUERY", "5")),
    "max_num": 10,
    "timeout_seconds": 10,
    "backoff_retries": 5,
    "backoff_initial_seconds": 2,
}

# ==================== SEO GENERATION ====================
SEO_CONFIG = {
    "model": os.environ.get("SEO_MODEL", "gpt-4.1"),
    "temperature": 0.6,
    "batch_size": 50,
    "max_title": 60,
    "max_short": 120,
    "max_long": 220,
}

# ==================== WALLEE CONFIGURATION ====================
WALLEE_CONFIG = {
    "api_base": os.environ.get("WALLEE_API_BASE", "https://app-wallee.com"),
    "mac_version": "1",
    "timeout_seconds": 15,
}

# ==================== LEDGER ADMIN ====================
LEDGER_PAGE_LIMITS = {
    "default": 20,
    "max": 100,
}

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "INSUFFICIENT_BALANCE": "Not enough available tokens.",
    "DUPLICATE_ORDER": "An order with this transaction id already exists.",
    "PROVIDER_UNAVAILABLE": "Payment provider could not be reached. Please try again.",
    "NOT_FOUND": "Record not found.",
    "INVALID_DELTA": "Invalid ledger operation.",
    "SEO_UNAVAILABLE": "SEO generation is not configured.",
}
