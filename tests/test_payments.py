import time
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from conftest import sign
from qrorder.services.errors import GatewayError, PaymentActionRequiredError, PaymentPendingError, ValidationError
from qrorder.services.payments import StripeGateway, verify_stripe_signature

SECRET = "whsec_test_secret"


class TestSignature:
    def test_valid(self):
        payload = b'{"type": "payment_intent.succeeded"}'
        assert verify_stripe_signature(payload, sign(payload, SECRET), SECRET)

    def test_wrong_secret(self):
        payload = b"{}"
        assert not verify_stripe_signature(payload, sign(payload, "whsec_other"), SECRET)

    def test_tampered_payload(self):
        assert not verify_stripe_signature(b'{"amount": 1}', sign(b'{"amount": 100}', SECRET), SECRET)

    def test_stale_timestamp(self):
        payload = b"{}"
        header = sign(payload, SECRET, timestamp=int(time.time()) - 3600)
        assert not verify_stripe_signature(payload, header, SECRET, tolerance=300)

    def test_garbage_header(self):
        assert not verify_stripe_signature(b"{}", "nonsense", SECRET)
        assert not verify_stripe_signature(b"{}", "", SECRET)


def _gateway(handler) -> StripeGateway:
    return StripeGateway("sk_test_" + "x" * 24, transport=httpx.MockTransport(handler))


@pytest.mark.anyio
class TestStripeGateway:
    async def test_charge_succeeds(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["idempotency"] = request.headers.get("Idempotency-Key")
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={"id": "pi_123", "status": "succeeded"})

        result = await _gateway(handler).charge(
            Decimal("4.70"), "order-7", payment_method="pm_card_visa", metadata={"order_id": "7"}
        )

        assert result.payment_ref == "pi_123"
        assert seen["path"] == "/v1/payment_intents"
        assert seen["idempotency"] == "order-7"
        assert seen["form"]["amount"] == ["470"]
        assert seen["form"]["metadata[order_id]"] == ["7"]

    async def test_card_declined(self):
        def handler(request):
            return httpx.Response(402, json={"error": {
                "type": "card_error", "code": "card_declined",
                "decline_code": "insufficient_funds", "message": "Your card has insufficient funds.",
            }})

        with pytest.raises(GatewayError) as exc:
            await _gateway(handler).charge(Decimal("5.00"), "order-1", payment_method="pm_x")
        assert not isinstance(exc.value, PaymentPendingError)
        assert exc.value.code == "payment_declined"
        assert exc.value.details["gateway_code"] == "insufficient_funds"

    async def test_timeout_is_pending(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(PaymentPendingError):
            await _gateway(handler).charge(Decimal("5.00"), "order-1", payment_method="pm_x")

    async def test_server_error_is_pending(self):
        def handler(request):
            return httpx.Response(503, json={"error": {"type": "api_error", "message": "try later"}})

        with pytest.raises(PaymentPendingError):
            await _gateway(handler).charge(Decimal("5.00"), "order-1", payment_method="pm_x")

    async def test_connect_error_is_definitive(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(GatewayError) as exc:
            await _gateway(handler).charge(Decimal("5.00"), "order-1", payment_method="pm_x")
        assert not isinstance(exc.value, PaymentPendingError)
        assert exc.value.code == "payment_service_unavailable"

    async def test_requires_payment_method(self):
        def handler(request):
            raise AssertionError("should not be called")

        with pytest.raises(ValidationError) as exc:
            await _gateway(handler).charge(Decimal("5.00"), "order-1")
        assert exc.value.code == "payment_method_required"

    async def test_requires_action_is_not_a_decline(self):
        def handler(request):
            return httpx.Response(200, json={
                "id": "pi_3ds", "status": "requires_action", "client_secret": "pi_3ds_secret_abc",
            })

        with pytest.raises(PaymentActionRequiredError) as exc:
            await _gateway(handler).charge(Decimal("5.00"), "order-1", payment_method="pm_card_3ds")
        assert exc.value.status_code == 402
        assert exc.value.details["payment_intent_id"] == "pi_3ds"
        assert exc.value.details["client_secret"] == "pi_3ds_secret_abc"

    async def test_processing_is_pending(self):
        def handler(request):
            return httpx.Response(200, json={"id": "pi_slow", "status": "processing"})

        with pytest.raises(PaymentPendingError) as exc:
            await _gateway(handler).charge(Decimal("5.00"), "order-1", payment_method="pm_x")
        assert exc.value.details["payment_intent_id"] == "pi_slow"

    async def test_partial_refund(self):
        seen = {}

        def handler(request):
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={"id": "re_1", "status": "succeeded"})

        result = await _gateway(handler).refund(
            "pi_123", Decimal("2.50"), metadata={"order_id": "7", "reason": "Cold coffee"}
        )
        assert result.payment_ref == "re_1"
        assert seen["form"]["payment_intent"] == ["pi_123"]
        assert seen["form"]["amount"] == ["250"]
        assert seen["form"]["reason"] == ["requested_by_customer"]
        assert seen["form"]["metadata[reason]"] == ["Cold coffee"]
