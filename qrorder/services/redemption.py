from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from qrorder.models.order import Order, OrderStatus
from qrorder.models.tokens import RedemptionStatus, SourceType, TokenRedemption, TransactionType
from qrorder.services.balance import compute_available, consumed_expiry, ensure_token_type, load_ledger
from qrorder.services.errors import (
    InsufficientBalanceError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from qrorder.services.ledger import append_transaction, lock_balance
from qrorder.services.money import final_amount, max_redeemable, to_money, token_discount

logger = logging.getLogger(__name__)


def _check_amount(amount) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("invalid_amount", amount=amount)


async def _active_token_type(db: AsyncSession, token_type_id: str):
    token_type = await ensure_token_type(db, token_type_id)
    if not token_type.is_active:
        raise StateConflictError("token_type_inactive", token_type_id=token_type_id)
    return token_type


async def lock_order(db: AsyncSession, order_id: int) -> Order | None:
    return (await db.execute(
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()


async def preview_redemption(
    db: AsyncSession,
    user_id: int,
    token_type_id: str,
    requested_amount: int,
    order_total,
) -> dict:
    """只计算不落账：本次最多能用多少代币、能抵多少钱。"""
    _check_amount(requested_amount)
    await _active_token_type(db, token_type_id)

    available = await compute_available(db, user_id, token_type_id)
    cap = max_redeemable(order_total)
    allowed = max(0, min(requested_amount, available, cap))
    return {
        "token_type_id": token_type_id,
        "requested_amount": requested_amount,
        "allowed_amount": allowed,
        "discount": token_discount(allowed),
        "available": available,
        "max_redeemable": cap,
    }


async def apply_redemption(
    db: AsyncSession,
    user_id: int,
    order_id: int,
    token_type_id: str,
    amount: int,
) -> tuple[TokenRedemption, Order]:
    """用代币抵扣待支付订单。redeemed 记录和 applied 兑换记录同进同退。"""
    # 1. 数量
    _check_amount(amount)

    # 2. 订单：存在、属于该用户、还是 pending
    order = await lock_order(db, order_id)
    if not order or order.user_id != user_id:
        raise NotFoundError("order_not_found", order_id=order_id)
    if order.status != OrderStatus.PENDING:
        raise StateConflictError("order_not_eligible", order_id=order_id, status=order.status)

    # 3. 代币类型
    await _active_token_type(db, token_type_id)

    # 4. 服务端上限：不能把应付金额抵成负数
    cap = max_redeemable(order.final_amount)
    if amount > cap:
        raise ValidationError("exceeds_max_redeemable", requested=amount, max_redeemable=cap)

    # 5. 余额：加锁后再查，查和写在同一个串行化单元里
    locked = await lock_balance(db, user_id, token_type_id)
    available = await compute_available(db, user_id, token_type_id)
    if available < amount:
        raise InsufficientBalanceError(requested=amount, available=available)

    discount = token_discount(amount)
    async with db.begin_nested():
        redemption = TokenRedemption(
            user_id=user_id,
            order_id=order.id,
            token_type_id=token_type_id,
            amount=amount,
            discount_amount=discount,
            status=RedemptionStatus.APPLIED,
            created_at=datetime.utcnow(),
        )
        db.add(redemption)
        await db.flush()

        tx = await append_transaction(
            db,
            user_id=user_id,
            token_type_id=token_type_id,
            amount=-amount,
            transaction_type=TransactionType.REDEEMED,
            source_type=SourceType.REDEMPTION,
            source_id=str(redemption.id),
            order_id=order.id,
            description=f"Token redemption for order {order.id}",
            locked=locked,
        )
        redemption.transaction_id = tx.id

        order.discount_amount = to_money(order.discount_amount) + discount
        order.final_amount = final_amount(order.total_amount, order.discount_amount)
        order.updated_at = datetime.utcnow()
        await db.flush()

    logger.info(
        "user %s redeemed %s %s on order %s, discount=%s final=%s",
        user_id, amount, token_type_id, order.id, discount, order.final_amount,
    )
    return redemption, order


async def reverse_redemption(
    db: AsyncSession,
    redemption: TokenRedemption,
    reason: str | None = None,
) -> TokenRedemption:
    """把一条 applied 兑换退回：写一条等额 refunded 记录，状态只变一次。"""
    if redemption.status != RedemptionStatus.APPLIED:
        raise StateConflictError(
            "redemption_not_refundable", redemption_id=redemption.id, status=redemption.status
        )

    async with db.begin_nested():
        # 加锁顺序与 apply_redemption 一致：先订单，后余额行
        order = None
        if redemption.order_id is not None:
            order = await lock_order(db, redemption.order_id)

        # 退回的代币沿用被消耗入账的有效期，退款不能让代币续命
        locked = await lock_balance(db, redemption.user_id, redemption.token_type_id)
        expires_at = None
        if redemption.transaction_id is not None:
            rows = await load_ledger(db, redemption.user_id, redemption.token_type_id)
            expires_at = consumed_expiry(rows, redemption.transaction_id)

        await append_transaction(
            db,
            user_id=redemption.user_id,
            token_type_id=redemption.token_type_id,
            amount=redemption.amount,
            transaction_type=TransactionType.REFUNDED,
            source_type=SourceType.REDEMPTION_REFUND,
            source_id=str(redemption.id),
            order_id=redemption.order_id,
            reverses_id=redemption.transaction_id,
            description=reason or f"Token refund for redemption {redemption.id}",
            expires_at=expires_at,
            locked=locked,
        )
        redemption.status = RedemptionStatus.REFUNDED
        redemption.refunded_at = datetime.utcnow()

        # 订单还没付款时，把折扣一起撤掉
        if order and order.status == OrderStatus.PENDING:
            order.discount_amount = max(
                to_money(0), to_money(order.discount_amount) - to_money(redemption.discount_amount)
            )
            order.final_amount = final_amount(order.total_amount, order.discount_amount)
            order.updated_at = datetime.utcnow()
        await db.flush()

    logger.info("redemption %s refunded (%s %s)", redemption.id, redemption.amount, redemption.token_type_id)
    return redemption


async def refund_redemption(
    db: AsyncSession,
    user_id: int,
    redemption_id: int,
    reason: str | None = None,
) -> tuple[TokenRedemption, int]:
    redemption = (await db.execute(
        select(TokenRedemption)
        .where(TokenRedemption.id == redemption_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not redemption or redemption.user_id != user_id:
        raise NotFoundError("redemption_not_found", redemption_id=redemption_id)

    # 订单付款后兑换已经变成实收折扣，只能通过订单退款整单退回
    if redemption.order_id is not None and redemption.status == RedemptionStatus.APPLIED:
        order = await lock_order(db, redemption.order_id)
        if order and order.status != OrderStatus.PENDING:
            raise StateConflictError(
                "redemption_not_refundable",
                redemption_id=redemption.id,
                order_id=order.id,
                order_status=order.status,
            )

    await reverse_redemption(db, redemption, reason)
    new_balance = await compute_available(db, user_id, redemption.token_type_id)
    return redemption, new_balance


async def list_order_redemptions(
    db: AsyncSession,
    order_id: int,
    status: str | None = RedemptionStatus.APPLIED,
) -> list[TokenRedemption]:
    stmt = select(TokenRedemption).where(TokenRedemption.order_id == order_id)
    if status:
        stmt = stmt.where(TokenRedemption.status == status)
    return list((await db.execute(stmt.order_by(TokenRedemption.id.asc()))).scalars().all())


async def restore_order_redemptions(db: AsyncSession, order: Order, reason: str) -> list[TokenRedemption]:
    """订单失败/取消/退款时，退回它上面所有 applied 的兑换。"""
    restored = []
    for redemption in await list_order_redemptions(db, order.id):
        restored.append(await reverse_redemption(db, redemption, f"{reason} (order {order.id})"))
    return restored
