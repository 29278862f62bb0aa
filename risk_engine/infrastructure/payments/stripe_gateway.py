"""
stripe_gateway.py
-----------------
Payment collaborator: Stripe-compatible refunds API over httpx.

  refund()      → POST /v1/refunds with the Idempotency-Key header.
                  The provider returns the same refund for a repeated key,
                  so a retried attempt can never refund twice.
  find_refund() → GET /v1/refunds?charge=… and match metadata.idempotency_key.
                  Used before a retry and when reconciling a stale case.

Every transport or API error is raised as RefundGatewayException; the
CaseManager decides what it means for the case.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import httpx

from risk_engine.core.config import settings
from risk_engine.core.exceptions import RefundGatewayException
from risk_engine.domain.schemas import RefundResult

logger = logging.getLogger(__name__)

# Refund statuses that are not a failure. Only "succeeded" means the money
# is back with the renter; a pending refund is settled by reconciliation.
_OK_STATUSES = frozenset({"succeeded", "pending"})

LOOKUP_PAGE_SIZE = 100


def _to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _charge_param(charge_ref: str) -> str:
    return "payment_intent" if charge_ref.startswith("pi_") else "charge"


class StripeRefundGateway:
    """
    Thin async client. `transport` lets tests plug an httpx.MockTransport.
    """

    def __init__(
        self,
        base_url:  str = settings.PAYMENT_API_BASE_URL,
        api_key:   Optional[str] = settings.PAYMENT_API_KEY,
        timeout:   float = settings.PAYMENT_TIMEOUT_SEC,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url  = base_url.rstrip("/")
        self.api_key   = api_key
        self.timeout   = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url  = self.base_url,
            timeout   = self.timeout,
            headers   = {"Authorization": f"Bearer {self.api_key or ''}"},
            transport = self.transport,
        )

    async def refund(self, charge_ref: str, amount: Decimal, idempotency_key: str) -> RefundResult:
        data = {
            _charge_param(charge_ref):    charge_ref,
            "amount":                     str(_to_minor_units(amount)),
            "reason":                     "requested_by_customer",
            "metadata[idempotency_key]":  idempotency_key,
        }
        try:
            async with self._client() as client:
                response = await client.post(
                    "/v1/refunds",
                    data    = data,
                    headers = {"Idempotency-Key": idempotency_key},
                )
        except httpx.TimeoutException:
            logger.warning(f"[PaymentGateway] Timeout refunding {charge_ref} ({idempotency_key})")
            raise RefundGatewayException("Payment provider timed out.") from None
        except httpx.HTTPError as e:
            logger.error(f"[PaymentGateway] Transport error refunding {charge_ref}: {e}")
            raise RefundGatewayException(f"Payment provider unreachable: {e}") from e

        body = self._parse(response)
        if body.get("status") not in _OK_STATUSES:
            raise RefundGatewayException(
                f"Refund {body.get('id')} ended with status '{body.get('status')}'"
                + (f": {body['failure_reason']}" if body.get("failure_reason") else "")
            )

        logger.info(
            f"[PaymentGateway] Refund {body.get('id')} {body.get('status')} "
            f"for {charge_ref} ({idempotency_key})"
        )
        return self._to_result(body)

    async def find_refund(self, charge_ref: str, idempotency_key: str) -> Optional[RefundResult]:
        try:
            async with self._client() as client:
                response = await client.get(
                    "/v1/refunds",
                    params = {_charge_param(charge_ref): charge_ref, "limit": LOOKUP_PAGE_SIZE},
                )
        except httpx.HTTPError as e:
            logger.error(f"[PaymentGateway] Lookup failed for {charge_ref}: {e}")
            raise RefundGatewayException(f"Payment provider unreachable: {e}") from e

        for refund in self._parse(response).get("data", []):
            metadata = refund.get("metadata") or {}
            if metadata.get("idempotency_key") == idempotency_key and refund.get("status") in _OK_STATUSES:
                return self._to_result(refund)
        return None

    # ------------------------------------------------------------------ #

    def _parse(self, response: httpx.Response) -> dict:
        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            error   = body.get("error") or {}
            message = error.get("message") or f"HTTP {response.status_code}"
            logger.warning(f"[PaymentGateway] API error {response.status_code}: {message}")
            raise RefundGatewayException(message)
        return body

    def _to_result(self, body: dict) -> RefundResult:
        amount = body.get("amount")
        return RefundResult(
            external_refund_id = body["id"],
            status             = body.get("status", "succeeded"),
            amount             = (Decimal(amount) / 100) if amount is not None else None,
        )
