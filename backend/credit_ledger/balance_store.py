"""
Balance Store

One credit ledger document per user in `credit_ledgers`.
Reads, lazy creation and administrative operations live here; every
balance-affecting write goes through LedgerEngine.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .config import LEDGER_PAGE_LIMITS
from .errors import NotFound
from .models import Ledger, LedgerPage

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = {
    "available_credits",
    "lifetime_granted",
    "lifetime_spent",
    "expiration",
    "created_at",
    "updated_at",
}


def default_ledger_fields(now: str) -> Dict[str, Any]:
    """Fields written once when a ledger is created lazily."""
    return {
        "expiration": None,
        "created_at": now,
    }


def zero_balances() -> Dict[str, int]:
    return {
        "available_credits": 0,
        "lifetime_granted": 0,
        "lifetime_spent": 0,
        "lifetime_cash_spent_cents": 0,
    }


def parse_sort(sort: Optional[str]) -> List[Tuple[str, int]]:
    """
    Parse "field:dir,field:dir" into a pymongo sort spec.

    Unknown fields are ignored; the default is newest first.
    """
    spec = []
    for pair in (sort or "").split(","):
        key, _, direction = pair.partition(":")
        key = key.strip()
        if key not in SORTABLE_FIELDS:
            continue
        spec.append((key, -1 if direction.strip().lower() == "desc" else 1))
    return spec or [("created_at", -1)]


class BalanceStore:
    """Durable store for user credit ledgers."""

    def __init__(self, db):
        self.db = db
        self.collection = db.credit_ledgers

    async def get(self, user_id: str) -> Optional[Ledger]:
        doc = await self.collection.find_one({"user_id": user_id}, {"_id": 0})
        return Ledger.from_doc(doc) if doc else None

    async def require(self, user_id: str) -> Ledger:
        ledger = await self.get(user_id)
        if ledger is None:
            raise NotFound("ledger", user_id)
        return ledger

    async def upsert_default(self, user_id: str) -> Ledger:
        """Return the user's ledger, creating a zeroed one if missing."""
        now = datetime.now(timezone.utc).isoformat()
        try:
            doc = await self.collection.find_one_and_update(
                {"user_id": user_id},
                {"$setOnInsert": {**zero_balances(), **default_ledger_fields(now), "updated_at": now}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # Concurrent upsert won the insert
            doc = await self.collection.find_one({"user_id": user_id}, {"_id": 0})
        return Ledger.from_doc(doc)

    async def available(self, user_id: str) -> int:
        ledger = await self.get(user_id)
        return ledger.available_credits if ledger else 0

    async def list(self, page: int = 1, limit: int = LEDGER_PAGE_LIMITS["default"],
                   sort: Optional[str] = None) -> LedgerPage:
        page = max(page, 1)
        limit = min(max(limit, 1), LEDGER_PAGE_LIMITS["max"])
        skip = (page - 1) * limit

        cursor = self.collection.find({}, {"_id": 0}).sort(parse_sort(sort)).skip(skip).limit(limit)
        docs = await cursor.to_list(length=limit)
        total = await self.collection.count_documents({})

        return LedgerPage(
            items=[Ledger.from_doc(d) for d in docs],
            page=page,
            limit=limit,
            total=total,
            pages=max(math.ceil(total / limit), 1),
        )

    async def set_expiration(self, user_id: str, expiration: int) -> Ledger:
        """Set the expiration marker. Balances are untouched."""
        doc = await self.collection.find_one_and_update(
            {"user_id": user_id},
            {"$set": {"expiration": expiration, "updated_at": datetime.now(timezone.utc).isoformat()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NotFound("ledger", user_id)
        return Ledger.from_doc(doc)

    async def delete(self, user_id: str) -> None:
        """Administrative removal of a ledger."""
        result = await self.collection.delete_one({"user_id": user_id})
        if result.deleted_count == 0:
            raise NotFound("ledger", user_id)
        logger.warning(f"Deleted credit ledger for user {user_id}")
