from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import httpx

from qrorder.core.settings import settings
from qrorder.services.errors import GatewayError, PaymentActionRequiredError, PaymentPendingError, ValidationError
from qrorder.services.money import to_cents

logger = logging.getLogger(__name__)


@dataclass
class PaymentResult:
    payment_ref: str
    status: str
    amount: Decimal | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentGateway:
    """支付网关接口：charge/refund 成功返回 PaymentResult，拒付抛 GatewayError。

    结果未知抛 PaymentPendingError，需要用户验证抛 PaymentActionRequiredError，
    这两种都不是确定失败。
    """

    name = "base"
    # 为 True 时，应付金额 > 0 的订单必须带 payment_method
    requires_payment_method = False

    async def charge(
        self,
        amount: Decimal,
        reference: str,
        payment_method: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> PaymentResult:
        raise NotImplementedError

    async def refund(
        self,
        payment_ref: str,
        amount: Decimal | None = None,
        metadata: dict[str, str] | None = None,
    ) -> PaymentResult:
        raise NotImplementedError


class SimulatedGateway(PaymentGateway):
    """没有配置 Stripe key 时模拟支付成功。"""

    name = "test"

    async def charge(self, amount, reference, payment_method=None, metadata=None) -> PaymentResult:
        logger.info("test mode: simulating charge %s for %s", amount, reference)
        return PaymentResult(payment_ref=f"pi_test_{int(time.time() * 1000)}", status="succeeded", amount=amount)

    async def refund(self, payment_ref, amount=None, metadata=None) -> PaymentResult:
        logger.info("test mode: simulating refund of %s (%s) %s", payment_ref, amount or "full", metadata or {})
        return PaymentResult(payment_ref=f"re_test_{int(time.time() * 1000)}", status="succeeded", amount=amount)


class StripeGateway(PaymentGateway):
    name = "stripe"
    requires_payment_method = True

    def __init__(
        self,
        secret_key: str,
        api_base: str = "https://api.stripe.com/v1",
        timeout: float = 20.0,
        currency: str = "usd",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.currency = currency
        self.transport = transport

    async def _post(self, path: str, data: dict[str, Any], idempotency_key: str | None = None) -> dict:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            # 同一个引用重复提交时 Stripe 不会重复扣款
            headers["Idempotency-Key"] = idempotency_key
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(f"{self.api_base}{path}", data=data, headers=headers)
        except httpx.ConnectError as e:
            # 请求没发出去，可以确定没有扣款
            raise GatewayError("payment_service_unavailable", reason=str(e)) from e
        except httpx.HTTPError as e:
            # 超时或读失败：结果未知，等 webhook
            raise PaymentPendingError("payment_pending", reason=str(e) or e.__class__.__name__) from e

        body = resp.json() if resp.content else {}
        if resp.status_code >= 400:
            err = body.get("error", {}) if isinstance(body, dict) else {}
            logger.warning("stripe %s failed: %s %s", path, resp.status_code, err)
            # 5xx 或幂等键冲突：无法确定第一次请求的结果
            if resp.status_code >= 500 or err.get("type") == "idempotency_error":
                raise PaymentPendingError("payment_pending", reason=err.get("message") or "payment_service_error")
            raise GatewayError(
                "payment_declined",
                reason=err.get("message") or "Payment could not be processed",
                gateway_code=err.get("decline_code") or err.get("code"),
            )
        return body

    async def charge(self, amount, reference, payment_method=None, metadata=None) -> PaymentResult:
        if not payment_method:
            raise ValidationError("payment_method_required")
        data: dict[str, Any] = {
            "amount": to_cents(amount),
            "currency": self.currency,
            "payment_method": payment_method,
            "confirm": "true",
            "description": reference,
            "automatic_payment_methods[enabled]": "true",
            "automatic_payment_methods[allow_redirects]": "never",
        }
        for key, value in (metadata or {}).items():
            data[f"metadata[{key}]"] = str(value)

        intent = await self._post("/payment_intents", data, idempotency_key=reference)
        status = intent.get("status")
        logger.info("payment intent %s status=%s", intent.get("id"), status)

        if status == "succeeded":
            return PaymentResult(payment_ref=intent["id"], status=status, amount=amount, raw=intent)
        if status == "requires_action":
            raise PaymentActionRequiredError(
                "payment_requires_action",
                reason="Please complete the payment authentication",
                payment_intent_id=intent.get("id"),
                client_secret=intent.get("client_secret"),
            )
        if status == "processing":
            raise PaymentPendingError("payment_pending", payment_intent_id=intent.get("id"))
        last_error = intent.get("last_payment_error") or {}
        raise GatewayError(
            "payment_declined",
            reason=last_error.get("message") or "Payment could not be processed",
            payment_intent_id=intent.get("id"),
        )

    async def refund(self, payment_ref, amount=None, metadata=None) -> PaymentResult:
        # Stripe 的 reason 只接受固定枚举，用户填写的原因放进 metadata
        data: dict[str, Any] = {"payment_intent": payment_ref, "reason": "requested_by_customer"}
        if amount is not None:
            data["amount"] = to_cents(amount)
        for key, value in (metadata or {}).items():
            data[f"metadata[{key}]"] = str(value)
        refund = await self._post("/refunds", data)
        status = refund.get("status")
        if status in ("failed", "canceled"):
            raise GatewayError("refund_failed", reason=refund.get("failure_reason") or status)
        logger.info("refund %s for %s status=%s", refund.get("id"), payment_ref, status)
        return PaymentResult(payment_ref=refund.get("id", ""), status=status or "succeeded", amount=amount, raw=refund)


def get_payment_gateway() -> PaymentGateway:
    if settings.payments_test_mode:
        return SimulatedGateway()
    return StripeGateway(
        settings.STRIPE_SECRET_KEY,
        api_base=settings.STRIPE_API_BASE,
        timeout=settings.PAYMENT_TIMEOUT_SECONDS,
        currency=settings.CURRENCY,
    )


def verify_stripe_signature(
    payload: bytes,
    signature_header: str,
    secret: str,
    tolerance: int = 300,
    now: float | None = None,
) -> bool:
    """Stripe-Signature: t=<ts>,v1=<hex>，签名是 HMAC-SHA256("{t}.{payload}")。"""
    if not signature_header or not secret:
        return False
    parts: dict[str, list[str]] = {}
    for item in signature_header.split(","):
        key, _, value = item.strip().partition("=")
        parts.setdefault(key, []).append(value)
    try:
        timestamp = int(parts.get("t", [""])[0])
    except ValueError:
        return False
    now = time.time() if now is None else now
    if tolerance and abs(now - timestamp) > tolerance:
        return False

    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(digest, sig) for sig in parts.get("v1", []))
