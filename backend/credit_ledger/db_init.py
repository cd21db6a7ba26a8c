"""
Credit Ledger Database Initialization Script

Rules:
1. Environment guard - production requires CREDIT_LEDGER_INIT_CONFIRM=YES
2. Idempotent - running multiple times must not duplicate anything
3. No destructive operations - no dropping, deleting, truncation
4. Ledgers are created lazily on first use, not here
5. "Index already exists" is handled gracefully
6. --dry-run prints what it would do
7. Version stamp in credit_ledger_meta

Usage:
    python -m credit_ledger.db_init
    python -m credit_ledger.db_init --dry-run
    APP_ENV=production CREDIT_LEDGER_INIT_CONFIRM=YES python -m credit_ledger.db_init
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid, OperationFailure

logger = logging.getLogger(__name__)

INIT_VERSION = "v1.1.0"

REQUIRED_COLLECTIONS = [
    "credit_ledgers",
    "credit_transactions",
    "payment_orders",
    "pricing_plans",
    "usage_rates",
    "generation_counts",
    "credit_ledger_meta",
]

# (collection, index_spec, options)
REQUIRED_INDEXES = [
    # One ledger per user; concurrent lazy creation relies on this
    ("credit_ledgers", [("user_id", 1)], {"unique": True, "name": "idx_user_id_unique"}),
    ("credit_ledgers", [("created_at", -1)], {"name": "idx_created_at"}),

    ("credit_transactions", [("user_id", 1), ("timestamp", -1)], {"name": "idx_user_timestamp"}),
    ("credit_transactions", [("reference", 1)], {"sparse": True, "name": "idx_reference"}),

    ("payment_orders", [("order_id", 1)], {"unique": True, "name": "idx_order_id_unique"}),
    ("payment_orders", [("buyer_user_id", 1), ("created_at", -1)], {"name": "idx_buyer_created"}),
    ("payment_orders", [("fulfillment_state", 1)], {"name": "idx_fulfillment_state"}),

    ("pricing_plans", [("pricing_id", 1)], {"unique": True, "name": "idx_pricing_id_unique"}),

    ("generation_counts", [("user_id", 1)], {"unique": True, "name": "idx_generation_user_unique"}),
]


def check_environment() -> Tuple[bool, str]:
    """
    Check environment and confirm if production execution is allowed.

    Returns:
        Tuple of (allowed, message)
    """
    app_env = os.environ.get("APP_ENV", os.environ.get("ENVIRONMENT", "development"))

    if app_env.lower() == "production":
        confirm = os.environ.get("CREDIT_LEDGER_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run init in production, set: CREDIT_LEDGER_INIT_CONFIRM=YES\n"
                f"Current value: CREDIT_LEDGER_INIT_CONFIRM='{confirm}'"
            )

    return True, f"Environment: {app_env}"


async def create_collection_if_not_exists(db, collection_name: str, dry_run: bool = False) -> str:
    existing = await db.list_collection_names()

    if collection_name in existing:
        return f"  [SKIP] Collection '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create collection '{collection_name}'"

    try:
        await db.create_collection(collection_name)
        return f"  [CREATE] Created collection '{collection_name}'"
    except CollectionInvalid:
        return f"  [SKIP] Collection '{collection_name}' already exists (race)"


async def create_index_if_not_exists(
    db,
    collection_name: str,
    index_spec: List[Tuple],
    options: dict,
    dry_run: bool = False
) -> str:
    collection = db[collection_name]
    index_name = options.get("name", str(index_spec))

    existing_indexes = await collection.index_information()
    if index_name in existing_indexes:
        return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create index '{index_name}' on '{collection_name}'"

    try:
        await collection.create_index(index_spec, **options)
        return f"  [CREATE] Created index '{index_name}' on '{collection_name}'"
    except OperationFailure as e:
        if "already exists" in str(e).lower():
            return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists (race)"
        raise


async def ensure_indexes(db) -> List[str]:
    """Create any missing indexes. Called from the server startup hook."""
    results = []
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        results.append(await create_index_if_not_exists(db, collection_name, index_spec, options))
    return results


async def update_version_stamp(db, dry_run: bool = False) -> str:
    if dry_run:
        return f"  [DRY-RUN] Would update version stamp to {INIT_VERSION}"

    await db.credit_ledger_meta.update_one(
        {"_id": "credit_ledger_init"},
        {
            "$set": {
                "version": INIT_VERSION,
                "applied_at": datetime.now(timezone.utc).isoformat()
            }
        },
        upsert=True
    )
    return f"  [UPDATE] Version stamp updated to {INIT_VERSION}"


async def run_init(db, dry_run: bool = False):
    """Create collections, indexes and the version stamp on `db`."""
    logger.info("=== Collections ===")
    for collection_name in REQUIRED_COLLECTIONS:
        logger.info(await create_collection_if_not_exists(db, collection_name, dry_run))

    logger.info("=== Indexes ===")
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        logger.info(await create_index_if_not_exists(db, collection_name, index_spec, options, dry_run))

    logger.info("=== Version Stamp ===")
    logger.info(await update_version_stamp(db, dry_run))


async def main_async(dry_run: bool):
    from dotenv import load_dotenv

    load_dotenv(Path(__file__).parent.parent / '.env')

    allowed, env_message = check_environment()
    logger.info(env_message)
    if not allowed:
        logger.error(env_message)
        sys.exit(1)

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')
    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        sys.exit(1)

    logger.info(f"Database: {db_name} | Dry Run: {dry_run}")

    client = AsyncIOMotorClient(mongo_url)
    try:
        await client.admin.command('ping')
        await run_init(client[db_name], dry_run)
    finally:
        client.close()

    logger.info("SUCCESS: Credit ledger DB init completed")


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    parser = argparse.ArgumentParser(description="Credit Ledger Database Initialization")
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )
    args = parser.parse_args()

    asyncio.run(main_async(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
