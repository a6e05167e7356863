from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from qrorder.db import get_db
from qrorder.deps import get_current_user
from qrorder.models.user import User
from qrorder.routers.views import money, order_out, redemption_out
from qrorder.services import settlement
from qrorder.services.payments import PaymentGateway, get_payment_gateway
from qrorder.services.redemption import list_order_redemptions

router = APIRouter(prefix="/api/v1/orders", tags=["orders"])


class OrderItemIn(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)


class CreateOrderIn(BaseModel):
    merchant_id: int
    items: list[OrderItemIn] = Field(min_length=1)


class RedemptionIn(BaseModel):
    token_type_id: str
    amount: int


class PayIn(BaseModel):
    payment_method_id: str | None = None
    redemptions: list[RedemptionIn] = []


class RefundOrderIn(BaseModel):
    amount: Decimal | None = None
    reason: str | None = Field(default=None, max_length=255)


@router.post("", status_code=201)
async def create_order(payload: CreateOrderIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    order = await settlement.create_order(
        db, user.id, payload.merchant_id, [(i.product_id, i.quantity) for i in payload.items]
    )
    return {"order": order_out(order)}


@router.get("/{order_id}")
async def get_order(order_id: int, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    order = await settlement.get_user_order(db, user.id, order_id)
    redemptions = await list_order_redemptions(db, order.id, status=None)
    return {"order": order_out(order), "redemptions": [redemption_out(r) for r in redemptions]}


@router.post("/{order_id}/pay")
async def pay_order(
    order_id: int,
    payload: PayIn,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    result = await settlement.checkout(
        db,
        gateway,
        user.id,
        order_id,
        redemptions=[(r.token_type_id, r.amount) for r in payload.redemptions],
        payment_method=payload.payment_method_id,
    )
    return {
        "order": order_out(result["order"]),
        "redemptions": [redemption_out(r) for r in result["redemptions"]],
        "awarded": [a.to_dict() for a in result["awarded"]],
    }


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    result = await settlement.cancel_order(db, gateway, user.id, order_id)
    return {
        "order": order_out(result["order"]),
        "restored": [redemption_out(r) for r in result["restored"]],
    }


@router.post("/{order_id}/refund")
async def refund_order(
    order_id: int,
    payload: RefundOrderIn,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    result = await settlement.refund_order(db, gateway, user.id, order_id, payload.amount, payload.reason)
    refund = result["refund"]
    return {
        "order": order_out(result["order"]),
        "refund_amount": money(result["refund_amount"]),
        "refund": {"id": refund.payment_ref, "status": refund.status} if refund else None,
        "restored": [redemption_out(r) for r in result["restored"]],
    }
