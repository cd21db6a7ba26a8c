"""
Shared fixtures for credit ledger tests.

Uses an in-process motor-compatible database (mongomock-motor) so the
conditional updates run for real, and a scripted Wallee stand-in.
"""

import asyncio
import base64
import os

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "enrichment_credits_test")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("WALLEE_SPACE_ID", "405")
os.environ.setdefault("WALLEE_USER_ID", "512")
os.environ.setdefault("WALLEE_AUTH_KEY", base64.b64encode(b"wallee-test-secret").decode())

import pytest
from mongomock_motor import AsyncMongoMockClient

from credit_ledger.db_init import ensure_indexes


class ScriptedWallee:
    """
    Payment provider stand-in.

    `states[transaction_id]` is either a state string, a list of states
    returned in order (the last one repeats) or an exception to raise.
    """

    def __init__(self, states=None, gate: asyncio.Event = None):
        self.states = dict(states or {})
        self.gate = gate
        self.reads = 0
        self.created = []
        self._next_id = 1000

    async def create_transaction(self, amount, currency, reference, name, sku, **kwargs):
        self._next_id += 1
        transaction_id = str(self._next_id)
        self.created.append({
            "transaction_id": transaction_id,
            "amount": amount,
            "currency": currency,
            "reference": reference,
        })
        return {
            "transaction_id": transaction_id,
            "payment_page_url": f"https://pay.example/{transaction_id}",
        }

    async def read_transaction_state(self, transaction_id):
        self.reads += 1
        if self.gate is not None:
            await self.gate.wait()
        # Yield so concurrent reconciliations interleave
        await asyncio.sleep(0)

        state = self.states.get(transaction_id, "PENDING")
        if isinstance(state, Exception):
            raise state
        if isinstance(state, list):
            return state.pop(0) if len(state) > 1 else state[0]
        return state


@pytest.fixture
async def db():
    database = AsyncMongoMockClient()["enrichment_credits_test"]
    await ensure_indexes(database)
    return database
