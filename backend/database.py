"""
Database connection and configuration

Environment validation for the credit ledger API.
Fails fast with clear error messages if required variables are missing.
"""
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

REQUIRED_ENV_VARS = {
    "MONGO_URL": "MongoDB connection string (e.g., mongodb://localhost:27017)",
    "DB_NAME": "Database name (e.g., enrichment_credits)"
}


def validate_required_env_vars():
    """
    Raise ValueError listing every required variable that is not set.
    """
    missing = [
        f"  - {var}: {description}"
        for var, description in REQUIRED_ENV_VARS.items()
        if not os.environ.get(var)
    ]

    if missing:
        raise ValueError(
            "\n" + "=" * 60 + "\n"
            "CRITICAL: Missing required environment variables!\n"
            + "=" * 60 + "\n"
            + "\n".join(missing) + "\n\n"
            "Please check backend/.env or the deployment environment.\n"
            + "=" * 60
        )


validate_required_env_vars()

# Writes must be acknowledged by the primary so conditional updates are authoritative
client = AsyncIOMotorClient(
    os.environ['MONGO_URL'],
    maxPoolSize=50,
    connectTimeoutMS=5000,
    serverSelectionTimeoutMS=5000,
    retryWrites=True,
    w="majority"
)

db = client[os.environ['DB_NAME']]


async def check_db_connection():
    """
    Ping the server.

    Returns:
        Tuple[bool, Optional[str]]: (success, error_message)
    """
    try:
        await client.admin.command('ping')
        logger.info(f"Database connected successfully: {os.environ['DB_NAME']}")
        return True, None
    except Exception as e:
        error_msg = f"Database connection failed: {e}"
        logger.error(error_msg)
        return False, error_msg
