from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """代币/结算领域错误的基类，code 作为 API detail 返回。"""

    status_code = 400

    def __init__(self, code: str, **details: Any) -> None:
        super().__init__(code)
        self.code = code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.code, **self.details}


class ValidationError(LedgerError):
    status_code = 400


class NotFoundError(LedgerError):
    status_code = 404


class InsufficientBalanceError(LedgerError):
    status_code = 400

    def __init__(self, requested: int, available: int) -> None:
        super().__init__("insufficient_balance", requested=requested, available=available)
        self.requested = requested
        self.available = available


class StateConflictError(LedgerError):
    status_code = 409


class GatewayError(LedgerError):
    status_code = 402


class PaymentPendingError(GatewayError):
    """支付网关超时，结果未知：订单保持 pending，等待 webhook。"""

    status_code = 504


class PaymentActionRequiredError(GatewayError):
    """需要用户完成 3DS 等验证：PaymentIntent 仍然有效，订单保持 pending。"""

    status_code = 402


class InternalError(LedgerError):
    status_code = 500
