from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from qrorder.models.order import Order, OrderItem, OrderStatus
from qrorder.models.tokens import TokenRedemption
from qrorder.services.catalog import get_merchant, get_merchant_products, merge_line_items
from qrorder.services.errors import (
    GatewayError,
    NotFoundError,
    PaymentActionRequiredError,
    PaymentPendingError,
    StateConflictError,
    ValidationError,
)
from qrorder.services.money import to_money
from qrorder.services.payments import PaymentGateway
from qrorder.services.redemption import apply_redemption, lock_order, restore_order_redemptions
from qrorder.services.rewards import RewardAward, award_order_tokens

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.PREPARING, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.PREPARING: {OrderStatus.READY},
    OrderStatus.READY: {OrderStatus.COMPLETED},
}

# 商户后台可以推进的履约状态
FULFILMENT_STATUSES = (OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.COMPLETED)


def transition(order: Order, new_status: str) -> None:
    if new_status not in ALLOWED_TRANSITIONS.get(order.status, set()):
        raise StateConflictError(
            "invalid_status_transition", order_id=order.id, status=order.status, target=new_status
        )
    logger.info("order %s: %s -> %s", order.id, order.status, new_status)
    order.status = new_status
    order.updated_at = datetime.utcnow()


async def create_order(
    db: AsyncSession,
    user_id: int,
    merchant_id: int,
    items: list[tuple[int, int]],
) -> Order:
    """按商品目录价计算 total_amount，创建 pending 订单。"""
    if not items:
        raise ValidationError("order_items_required")
    await get_merchant(db, merchant_id)
    lines = merge_line_items(items)
    products = await get_merchant_products(db, merchant_id, [product_id for product_id, _ in lines])

    total = Decimal("0.00")
    order_items = []
    for product_id, quantity in lines:
        price = to_money(products[product_id].price)
        total += price * quantity
        order_items.append(OrderItem(product_id=product_id, quantity=quantity, price=price))

    total = to_money(total)
    order = Order(
        user_id=user_id,
        merchant_id=merchant_id,
        status=OrderStatus.PENDING,
        total_amount=total,
        discount_amount=Decimal("0.00"),
        final_amount=total,
        items=order_items,
        created_at=datetime.utcnow(),
        updated_at=datetime.utcnow(),
    )
    db.add(order)
    await db.flush()
    logger.info("user %s created order %s at merchant %s total=%s", user_id, order.id, merchant_id, total)
    return order


async def get_user_order(db: AsyncSession, user_id: int, order_id: int, lock: bool = False) -> Order:
    if lock:
        order = await lock_order(db, order_id)
    else:
        order = (await db.execute(select(Order).where(Order.id == order_id))).scalar_one_or_none()
    if not order or order.user_id != user_id:
        raise NotFoundError("order_not_found", order_id=order_id)
    return order


async def on_order_paid(db: AsyncSession, order: Order) -> list[RewardAward]:
    return await award_order_tokens(db, order)


async def on_order_refunded(db: AsyncSession, order: Order) -> list[TokenRedemption]:
    # 已发放的奖励代币不回收
    return await restore_order_redemptions(db, order, "Order refunded")


async def mark_paid(db: AsyncSession, order: Order, payment_ref: str | None) -> list[RewardAward]:
    """pending -> paid 并发放奖励。已经付过款的订单直接返回，供 webhook 重复调用。"""
    if order.status != OrderStatus.PENDING:
        logger.info("order %s already %s, skip mark_paid", order.id, order.status)
        return []
    transition(order, OrderStatus.PAID)
    order.payment_intent_id = payment_ref or order.payment_intent_id
    order.paid_at = datetime.utcnow()
    await db.flush()
    return await on_order_paid(db, order)


async def fail_order(db: AsyncSession, order: Order, reason: str | None = None) -> list[TokenRedemption]:
    """支付确定失败：先退回已用的代币，再把订单置为 failed。"""
    restored = await restore_order_redemptions(db, order, "Payment failed")
    transition(order, OrderStatus.FAILED)
    await db.flush()
    logger.warning("order %s payment failed (%s), restored %s redemptions", order.id, reason, len(restored))
    return restored


async def _remember_payment_intent(db: AsyncSession, user_id: int, order_id: int, payment_intent_id: str | None) -> None:
    if not payment_intent_id:
        return
    order = await get_user_order(db, user_id, order_id, lock=True)
    order.payment_intent_id = payment_intent_id
    order.updated_at = datetime.utcnow()
    await db.commit()


async def checkout(
    db: AsyncSession,
    gateway: PaymentGateway,
    user_id: int,
    order_id: int,
    redemptions: list[tuple[str, int]] | None = None,
    payment_method: str | None = None,
) -> dict:
    """兑换代币 -> 扣款 -> 置为已支付 -> 发奖励。

    兑换先提交，再调用网关；拒付时在同一次请求里退回兑换并置为 failed。
    网关超时或需要 3DS 验证时不改订单状态，记下 payment_intent_id，
    等待 webhook 给出最终结果。
    """
    order = await get_user_order(db, user_id, order_id, lock=True)
    if order.status != OrderStatus.PENDING:
        raise StateConflictError("order_not_pending", order_id=order.id, status=order.status)

    applied = []
    for token_type_id, amount in redemptions or []:
        redemption, order = await apply_redemption(db, user_id, order.id, token_type_id, amount)
        applied.append(redemption)

    if to_money(order.final_amount) > 0 and gateway.requires_payment_method and not payment_method:
        # 还没提交，请求回滚时兑换一起撤销
        raise ValidationError("payment_method_required")

    # 兑换落库后才动钱
    await db.commit()

    payment_ref = None
    if to_money(order.final_amount) > 0:
        try:
            result = await gateway.charge(
                order.final_amount,
                reference=f"order-{order.id}",
                payment_method=payment_method,
                metadata={"order_id": str(order.id), "user_id": str(user_id), "merchant_id": str(order.merchant_id)},
            )
        except (PaymentPendingError, PaymentActionRequiredError) as e:
            # 结果未定：订单和兑换都保持原样，等 webhook
            await _remember_payment_intent(db, user_id, order.id, e.details.get("payment_intent_id"))
            logger.warning("order %s payment not settled (%s), waiting for webhook", order.id, e.code)
            raise
        except GatewayError as e:
            order = await get_user_order(db, user_id, order.id, lock=True)
            await fail_order(db, order, e.details.get("reason") or e.code)
            await db.commit()
            raise
        payment_ref = result.payment_ref

    order = await get_user_order(db, user_id, order.id, lock=True)
    awarded = await mark_paid(db, order, payment_ref)
    return {"order": order, "redemptions": applied, "awarded": awarded}


async def refund_order(
    db: AsyncSession,
    gateway: PaymentGateway,
    user_id: int,
    order_id: int,
    amount: Decimal | None = None,
    reason: str | None = None,
) -> dict:
    order = await get_user_order(db, user_id, order_id, lock=True)
    if order.status != OrderStatus.PAID:
        raise StateConflictError("order_not_refundable", order_id=order.id, status=order.status)
    if amount is not None and (to_money(amount) <= 0 or to_money(amount) > to_money(order.final_amount)):
        raise ValidationError("invalid_refund_amount", max_refund=str(to_money(order.final_amount)))

    refund = None
    if order.payment_intent_id:
        metadata = {"order_id": str(order.id)}
        if reason:
            metadata["reason"] = reason
        # 网关失败时抛出，订单保持 paid
        refund = await gateway.refund(order.payment_intent_id, amount, metadata=metadata)

    transition(order, OrderStatus.REFUNDED)
    restored = await on_order_refunded(db, order)
    await db.flush()
    return {
        "order": order,
        "refund": refund,
        "refund_amount": to_money(amount if amount is not None else order.final_amount),
        "restored": restored,
    }


async def cancel_order(
    db: AsyncSession,
    gateway: PaymentGateway,
    user_id: int,
    order_id: int,
) -> dict:
    order = await get_user_order(db, user_id, order_id, lock=True)
    if OrderStatus.CANCELLED not in ALLOWED_TRANSITIONS.get(order.status, set()):
        raise StateConflictError("order_not_cancellable", order_id=order.id, status=order.status)

    refund = None
    if order.status == OrderStatus.PAID and order.payment_intent_id:
        refund = await gateway.refund(
            order.payment_intent_id, metadata={"order_id": str(order.id), "reason": "order_cancelled"}
        )

    restored = await restore_order_redemptions(db, order, "Order cancelled")
    transition(order, OrderStatus.CANCELLED)
    await db.flush()
    return {"order": order, "refund": refund, "restored": restored}


async def advance_order_status(db: AsyncSession, merchant_id: int, order_id: int, status: str) -> Order:
    if status not in FULFILMENT_STATUSES:
        raise ValidationError("invalid_status", status=status)
    order = await lock_order(db, order_id)
    if not order or order.merchant_id != merchant_id:
        raise NotFoundError("order_not_found", order_id=order_id)
    transition(order, status)
    await db.flush()
    return order


# ---------------- webhook（异步支付结果） ----------------

async def handle_payment_succeeded(db: AsyncSession, order_id: int, payment_intent_id: str) -> str:
    order = await lock_order(db, order_id)
    if not order:
        logger.error("payment_intent %s: order %s not found", payment_intent_id, order_id)
        return "order_not_found"
    if order.status == OrderStatus.PENDING:
        await mark_paid(db, order, payment_intent_id)
        return "paid"
    if order.status in (OrderStatus.FAILED, OrderStatus.CANCELLED):
        # 钱已经收了但订单已关闭，需要人工退款
        logger.error("payment_intent %s succeeded for %s order %s", payment_intent_id, order.status, order.id)
        return "needs_review"
    return "already_paid"


async def handle_payment_failed(db: AsyncSession, order_id: int, reason: str | None = None) -> str:
    order = await lock_order(db, order_id)
    if not order:
        logger.error("payment failed webhook: order %s not found", order_id)
        return "order_not_found"
    if order.status != OrderStatus.PENDING:
        return "ignored"
    await fail_order(db, order, reason)
    return "failed"


async def handle_payment_canceled(db: AsyncSession, order_id: int) -> str:
    order = await lock_order(db, order_id)
    if not order:
        logger.error("payment canceled webhook: order %s not found", order_id)
        return "order_not_found"
    if order.status != OrderStatus.PENDING:
        return "ignored"
    await restore_order_redemptions(db, order, "Payment canceled")
    transition(order, OrderStatus.CANCELLED)
    await db.flush()
    return "cancelled"
