"""
Environment Configuration Utility

ENVIRONMENT values:
- production: Webhook/provider credentials are required at startup
- development: Missing provider credentials only log a warning
- test: Automated tests
"""
import os
import logging

VALID_ENVIRONMENTS = {"production", "development", "test"}

# Default to development
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development").lower()

if ENVIRONMENT not in VALID_ENVIRONMENTS:
    logging.warning(f"Invalid ENVIRONMENT '{ENVIRONMENT}', defaulting to 'development'")
    ENVIRONMENT = "development"

PROVIDER_ENV_VARS = ["WALLEE_SPACE_ID", "WALLEE_USER_ID", "WALLEE_AUTH_KEY", "FRONTEND_BASE_URL"]


def is_production() -> bool:
    return ENVIRONMENT == "production"


def missing_provider_settings() -> list:
    """Names of payment provider variables that are not set."""
    return [var for var in PROVIDER_ENV_VARS if not os.environ.get(var)]


def check_provider_settings():
    """
    Validate payment provider settings.

    In production: raises RuntimeError when any are missing
    Elsewhere: logs a warning; checkout calls will fail at the provider
    """
    missing = missing_provider_settings()
    if not missing:
        return

    message = f"Missing payment provider settings: {', '.join(missing)}"
    if is_production():
        raise RuntimeError(message)
    logging.warning(message)
