import asyncio
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from risk_engine.core.exceptions import RefundGatewayException
from risk_engine.infrastructure.payments.stripe_gateway import StripeRefundGateway


def _gateway(handler) -> StripeRefundGateway:
    return StripeRefundGateway(
        base_url  = "https://payments.test",
        api_key   = "sk_test_123",
        timeout   = 5,
        transport = httpx.MockTransport(handler),
    )


def test_refund_posts_amount_in_cents_with_idempotency_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"id": "re_123", "status": "succeeded", "amount": 12050})

    result = asyncio.run(_gateway(handler).refund("ch_abc", Decimal("120.50"), "auto-refund-case-1"))

    request, form = seen["request"], seen["form"]
    assert request.method == "POST"
    assert request.url.path == "/v1/refunds"
    assert request.headers["Idempotency-Key"] == "auto-refund-case-1"
    assert request.headers["Authorization"] == "Bearer sk_test_123"
    assert form["charge"] == ["ch_abc"]
    assert form["amount"] == ["12050"]
    assert form["metadata[idempotency_key]"] == ["auto-refund-case-1"]

    assert result.external_refund_id == "re_123"
    assert result.amount == Decimal("120.5")


def test_payment_intents_are_refunded_by_intent():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"id": "re_9", "status": "pending"})

    result = asyncio.run(_gateway(handler).refund("pi_777", Decimal("10"), "k"))

    assert seen["form"]["payment_intent"] == ["pi_777"]
    assert "charge" not in seen["form"]
    assert result.status == "pending"
    assert result.settled is False


def test_api_error_raises_with_provider_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "Charge ch_abc has already been refunded."}})

    with pytest.raises(RefundGatewayException) as exc_info:
        asyncio.run(_gateway(handler).refund("ch_abc", Decimal("10"), "k"))

    assert exc_info.value.message == "Charge ch_abc has already been refunded."


def test_failed_refund_status_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "re_1", "status": "failed", "failure_reason": "expired_or_canceled_card"})

    with pytest.raises(RefundGatewayException, match="expired_or_canceled_card"):
        asyncio.run(_gateway(handler).refund("ch_abc", Decimal("10"), "k"))


def test_transport_error_raises_gateway_exception():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(RefundGatewayException):
        asyncio.run(_gateway(handler).refund("ch_abc", Decimal("10"), "k"))


def test_find_refund_matches_idempotency_key():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.params["charge"] == "ch_abc"
        return httpx.Response(200, json={"data": [
            {"id": "re_other", "status": "succeeded", "amount": 500, "metadata": {"idempotency_key": "other"}},
            {"id": "re_failed", "status": "failed", "amount": 500, "metadata": {"idempotency_key": "auto-refund-1"}},
            {"id": "re_mine", "status": "succeeded", "amount": 500, "metadata": {"idempotency_key": "auto-refund-1"}},
        ]})

    gateway = _gateway(handler)

    found = asyncio.run(gateway.find_refund("ch_abc", "auto-refund-1"))
    assert found.external_refund_id == "re_mine"
    assert found.amount == Decimal("5")
    assert asyncio.run(gateway.find_refund("ch_abc", "auto-refund-2")) is None
