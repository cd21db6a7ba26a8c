"""
Credit Ledger Engine

Atomic operations that mutate a credit ledger:
- apply_delta: all four counters in one update
- consume: conditional debit for billable actions
- grant: positive credit for purchases and admin grants
- History entries for every committed mutation

CRITICAL: Debits are a single conditional update
("decrement iff available_credits >= amount"). There is no
read-modify-write and no apply-then-rollback, so concurrent callers can
never drive a ledger below zero.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .balance_store import BalanceStore, default_ledger_fields
from .errors import InsufficientBalance, InvalidDelta
from .models import CreditTransaction, Ledger, LedgerDelta, decimal_to_cents

logger = logging.getLogger(__name__)


def _increments(delta: LedgerDelta) -> Dict[str, int]:
    return {
        "available_credits": delta.available_delta,
        "lifetime_granted": delta.lifetime_granted_delta,
        "lifetime_spent": delta.lifetime_spent_delta,
        "lifetime_cash_spent_cents": decimal_to_cents(delta.lifetime_cash_delta),
    }


def _validate(delta: LedgerDelta) -> None:
    if delta.lifetime_granted_delta < 0 or delta.lifetime_spent_delta < 0:
        raise InvalidDelta("Lifetime credit totals cannot decrease")
    if delta.lifetime_cash_delta < 0:
        raise InvalidDelta("Lifetime cash spent cannot decrease")


class LedgerEngine:
    """Debit/credit engine over the balance store."""

    def __init__(self, db):
        self.db = db
        self.store = BalanceStore(db)
        self.collection = db.credit_ledgers

    async def apply_delta(
        self,
        user_id: str,
        delta: LedgerDelta,
        kind: str = "adjustment",
        reference: Optional[str] = None,
        details: Optional[Dict] = None
    ) -> Ledger:
        """
        Atomically apply all deltas to one ledger.

        The ledger is created with zero defaults if absent. A negative
        available_delta is applied only if the balance covers it, otherwise
        nothing is written and InsufficientBalance is raised.
        """
        _validate(delta)
        inc = _increments(delta)

        if delta.available_delta >= 0:
            doc = await self._upsert_inc(user_id, inc)
        else:
            await self.store.upsert_default(user_id)
            doc = await self._conditional_inc(user_id, inc, -delta.available_delta)
            if doc is None:
                available = await self.store.available(user_id)
                logger.info(f"Refused delta {delta.available_delta} for user {user_id} (available={available})")
                raise InsufficientBalance(user_id, -delta.available_delta, available)

        await self._write_transaction(user_id, kind, delta, reference, details)
        logger.info(f"Applied delta to user {user_id}: {inc} (kind={kind})")
        return Ledger.from_doc(doc)

    async def consume(
        self,
        user_id: str,
        amount: int,
        reference: Optional[str] = None,
        details: Optional[Dict] = None
    ) -> Ledger:
        """
        Debit `amount` credits and count them as spent.

        Fails with InsufficientBalance when the conditional update matches
        no ledger, including when the user has no ledger yet.
        """
        if amount <= 0:
            raise InvalidDelta("amount must be a positive number")

        delta = LedgerDelta(available_delta=-amount, lifetime_spent_delta=amount)
        doc = await self._conditional_inc(user_id, _increments(delta), amount)

        if doc is None:
            available = await self.store.available(user_id)
            logger.info(f"Refused consume of {amount} for user {user_id} (available={available})")
            raise InsufficientBalance(user_id, amount, available)

        await self._write_transaction(user_id, "usage", delta, reference, details)
        logger.info(f"Consumed {amount} credits for user {user_id}")
        return Ledger.from_doc(doc)

    async def grant(
        self,
        user_id: str,
        amount: int,
        cash_spent: Decimal = Decimal("0"),
        kind: str = "grant",
        reference: Optional[str] = None,
        details: Optional[Dict] = None
    ) -> Ledger:
        """Credit `amount` available tokens and count them as granted."""
        if amount <= 0:
            raise InvalidDelta("amount must be a positive number")

        delta = LedgerDelta(
            available_delta=amount,
            lifetime_granted_delta=amount,
            lifetime_cash_delta=cash_spent,
        )
        return await self.apply_delta(user_id, delta, kind=kind, reference=reference, details=details)

    async def _conditional_inc(self, user_id: str, inc: Dict[str, int], required: int) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one_and_update(
            {"user_id": user_id, "available_credits": {"$gte": required}},
            {
                "$inc": inc,
                "$set": {"updated_at": datetime.now(timezone.utc).isoformat()}
            },
            return_document=ReturnDocument.AFTER,
        )

    async def _upsert_inc(self, user_id: str, inc: Dict[str, int]) -> Dict[str, Any]:
        now = datetime.now(timezone.utc).isoformat()
        update = {
            "$inc": inc,
            "$set": {"updated_at": now},
            "$setOnInsert": default_ledger_fields(now),
        }
        try:
            return await self.collection.find_one_and_update(
                {"user_id": user_id}, update,
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # Lost an insert race; the ledger exists now so a plain update applies
            return await self.collection.find_one_and_update(
                {"user_id": user_id}, update,
                return_document=ReturnDocument.AFTER,
            )

    async def _write_transaction(
        self,
        user_id: str,
        kind: str,
        delta: LedgerDelta,
        reference: Optional[str],
        details: Optional[Dict]
    ):
        """Write an immutable history entry."""
        entry = CreditTransaction(
            user_id=user_id,
            kind=kind,
            available_delta=delta.available_delta,
            lifetime_granted_delta=delta.lifetime_granted_delta,
            lifetime_spent_delta=delta.lifetime_spent_delta,
            lifetime_cash_delta=str(Decimal(delta.lifetime_cash_delta).quantize(Decimal("0.01"))),
            reference=reference,
            request_id=str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc).isoformat(),
            details=details or {}
        )
        await self.db.credit_transactions.insert_one(entry.model_dump())

    async def find_transaction(self, reference: str, kind: str) -> Optional[Dict[str, Any]]:
        return await self.db.credit_transactions.find_one({"reference": reference, "kind": kind}, {"_id": 0})

    async def get_history(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Get recent history entries for a user, newest first."""
        cursor = self.db.credit_transactions.find(
            {"user_id": user_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)

        return await cursor.to_list(length=limit)
