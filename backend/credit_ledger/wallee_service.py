"""
Wallee Service for credit pack checkout

Implements the Wallee REST API for one-time payments.

Features:
- Transaction creation with a single line item
- Hosted payment page URL lookup
- Authoritative transaction state reads
- MAC request signing (HMAC-SHA512)

Required Environment Variables:
- WALLEE_SPACE_ID
- WALLEE_USER_ID
- WALLEE_AUTH_KEY (base64 encoded secret)
- FRONTEND_BASE_URL
"""

import base64
import hashlib
import hmac
import logging
import os
import time
from decimal import Decimal
from typing import Optional, Dict, Any

import httpx

from .config import WALLEE_CONFIG
from .errors import ProviderUnavailable

logger = logging.getLogger(__name__)


def mac_signature(secret: str, user_id: str, timestamp: int, method: str, path: str) -> str:
    """Wallee MAC: base64(HMAC-SHA512(base64decode(secret), "1|user|ts|METHOD|path"))."""
    # `path` is the request path plus query string, as sent:
    # https://app-wallee.com/en-us/doc/api/web-service#_authentication
    secured_data = "|".join([WALLEE_CONFIG["mac_version"], str(user_id), str(timestamp), method.upper(), path])
    digest = hmac.new(base64.b64decode(secret), secured_data.encode("utf-8"), hashlib.sha512).digest()
    return base64.b64encode(digest).decode()


class WalleeService:
    """Wallee payment provider client."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    @property
    def api_base(self) -> str:
        return WALLEE_CONFIG["api_base"]

    @property
    def space_id(self) -> str:
        return os.environ.get("WALLEE_SPACE_ID", "")

    @property
    def user_id(self) -> str:
        return os.environ.get("WALLEE_USER_ID", "")

    @property
    def auth_key(self) -> str:
        return os.environ.get("WALLEE_AUTH_KEY", "")

    @property
    def frontend_base_url(self) -> str:
        return os.environ.get("FRONTEND_BASE_URL", "http://localhost:3000").rstrip("/")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            timeout=WALLEE_CONFIG["timeout_seconds"],
            transport=self._transport,
        )

    async def _request(self, operation: str, method: str, path: str,
                       params: Dict[str, Any], json: Optional[Dict] = None) -> Any:
        async with self._client() as client:
            request = client.build_request(method, path, params=params, json=json)

            timestamp = int(time.time())
            request.headers.update({
                "x-mac-version": WALLEE_CONFIG["mac_version"],
                "x-mac-userid": str(self.user_id),
                "x-mac-timestamp": str(timestamp),
                "x-mac-value": mac_signature(
                    self.auth_key, self.user_id, timestamp, method, request.url.raw_path.decode()
                ),
            })

            try:
                response = await client.send(request)
            except httpx.HTTPError as e:
                logger.error(f"Wallee {operation} request error: {e}")
                raise ProviderUnavailable(operation, str(e))

            if response.status_code not in [200, 201]:
                logger.error(f"Wallee {operation} failed: {response.status_code} {response.text}")
                raise ProviderUnavailable(operation, response.text)

            try:
                return response.json()
            except ValueError:
                logger.error(f"Wallee {operation} returned a non-JSON body: {response.text[:200]}")
                raise ProviderUnavailable(operation, "malformed response body")

    async def create_transaction(
        self,
        amount: Decimal,
        currency: str,
        reference: str,
        name: str,
        sku: str,
        success_url: Optional[str] = None,
        failed_url: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a Wallee transaction and resolve its hosted payment page.

        Returns:
            Dict with transaction_id and payment_page_url
        """
        transaction = {
            "lineItems": [{
                "name": name,
                "uniqueId": f"{sku}-{int(time.time() * 1000)}",
                "sku": sku,
                "quantity": 1,
                "amountIncludingTax": float(amount),
                "type": "PRODUCT",
            }],
            "currency": currency,
            "autoConfirmationEnabled": True,
            "merchantReference": reference,
            "successUrl": success_url or f"{self.frontend_base_url}/wallee/success",
            "failedUrl": failed_url or f"{self.frontend_base_url}/wallee/failure",
        }

        created = await self._request(
            "create", "POST", "/api/transaction/create",
            params={"spaceId": self.space_id}, json=transaction
        )
        try:
            transaction_id = str(created["id"])
        except (KeyError, TypeError):
            logger.error(f"Wallee create response has no transaction id: {created!r}")
            raise ProviderUnavailable("create", "response has no transaction id")

        payment_page_url = await self._request(
            "payment-page", "GET", "/api/transaction-payment-page/payment-page-url",
            params={"spaceId": self.space_id, "id": transaction_id}
        )
        if not isinstance(payment_page_url, str) or not payment_page_url:
            logger.error(f"Wallee payment-page returned no URL for tx={transaction_id}: {payment_page_url!r}")
            raise ProviderUnavailable("payment-page", "response has no payment page URL")

        return {
            "transaction_id": transaction_id,
            "payment_page_url": payment_page_url,
        }

    async def read_transaction_state(self, transaction_id: str) -> str:
        """Read the authoritative state of a transaction (e.g. AUTHORIZED, FAILED)."""
        transaction = await self._request(
            "read", "GET", "/api/transaction/read",
            params={"spaceId": self.space_id, "id": transaction_id}
        )
        if not isinstance(transaction, dict):
            logger.error(f"Wallee read returned an unexpected body for tx={transaction_id}: {transaction!r}")
            raise ProviderUnavailable("read", "unexpected response body")
        return str(transaction.get("state", "")).upper()
