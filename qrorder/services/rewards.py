from __future__ import annotations

import logging
import math
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from qrorder.core.settings import settings
from qrorder.models.order import Order
from qrorder.models.user import User
from qrorder.models.tokens import (
    NewUserBonus,
    RewardRule,
    RewardType,
    SourceType,
    TokenType,
    TransactionType,
)
from qrorder.services.balance import compute_available, ensure_token_type
from qrorder.services.catalog import get_merchant
from qrorder.services.errors import NotFoundError, StateConflictError, ValidationError
from qrorder.services.ledger import append_transaction
from qrorder.services.money import to_money

logger = logging.getLogger(__name__)

ORDER_AMOUNT_TRIGGER = "order_amount"


@dataclass
class RewardAward:
    token_type_id: str
    amount: int
    rule_id: int | None
    description: str

    def to_dict(self) -> dict:
        return asdict(self)


def compute_rule_award(rule: RewardRule, order_amount) -> int:
    """单条规则对订单金额给出的代币数。

    fixed：达到门槛即给 reward_amount；percentage：达到门槛给
    floor(order_amount * reward_amount / 100)。没有按 order_amount/trigger_value
    缩放的第三种算法。
    """
    amount = to_money(order_amount)
    if amount < to_money(rule.trigger_value):
        return 0
    if rule.reward_type == RewardType.FIXED:
        return int(rule.reward_amount)
    if rule.reward_type == RewardType.PERCENTAGE:
        return math.floor(amount * Decimal(rule.reward_amount) / Decimal(100))
    return 0


async def evaluate(db: AsyncSession, merchant_id: int, order_amount) -> list[RewardAward]:
    rows = (await db.execute(
        select(RewardRule, TokenType)
        .join(TokenType, TokenType.id == RewardRule.token_type_id)
        .where(
            RewardRule.merchant_id == merchant_id,
            RewardRule.is_active == True,  # noqa: E712
            RewardRule.trigger_type == ORDER_AMOUNT_TRIGGER,
            TokenType.is_active == True,  # noqa: E712
        )
        .order_by(RewardRule.id.asc())
    )).all()

    awards = []
    for rule, token_type in rows:
        token_amount = compute_rule_award(rule, order_amount)
        if token_amount <= 0:
            continue
        awards.append(RewardAward(
            token_type_id=rule.token_type_id,
            amount=token_amount,
            rule_id=rule.id,
            description=f"Order reward: {rule.name} ({token_amount} {token_type.symbol})",
        ))
    return awards


def _expiry_from(now: datetime) -> datetime:
    return now + timedelta(days=settings.TOKEN_EXPIRY_DAYS)


async def award_new_user_bonus(db: AsyncSession, order: Order) -> RewardAward | None:
    """商户配置的新用户奖励，每个 (user, merchant) 只发一次。

    由 new_user_bonuses 的唯一约束保证，不依赖“订单数 == 1”的先查后写。
    """
    merchant = await get_merchant(db, order.merchant_id)
    if not merchant.new_user_reward or merchant.new_user_reward <= 0:
        return None

    token_type_id = settings.NEW_USER_BONUS_TOKEN_TYPE
    token_type = (await db.execute(
        select(TokenType).where(TokenType.id == token_type_id)
    )).scalar_one_or_none()
    if not token_type or not token_type.is_active:
        logger.warning("new user bonus skipped: token type %s unavailable", token_type_id)
        return None

    bonus = NewUserBonus(user_id=order.user_id, merchant_id=order.merchant_id, order_id=order.id)
    try:
        async with db.begin_nested():
            db.add(bonus)
    except IntegrityError:
        logger.info("new user bonus already granted user=%s merchant=%s", order.user_id, order.merchant_id)
        return None

    description = f"New user bonus: {merchant.new_user_reward} {token_type.symbol}"
    tx = await append_transaction(
        db,
        user_id=order.user_id,
        token_type_id=token_type_id,
        amount=merchant.new_user_reward,
        transaction_type=TransactionType.EARNED,
        source_type=SourceType.NEW_USER_BONUS,
        source_id=str(order.id),
        order_id=order.id,
        description=description,
        expires_at=_expiry_from(datetime.utcnow()),
    )
    bonus.transaction_id = tx.id
    await db.flush()
    return RewardAward(
        token_type_id=token_type_id,
        amount=merchant.new_user_reward,
        rule_id=None,
        description=description,
    )


async def award_order_tokens(db: AsyncSession, order: Order) -> list[RewardAward]:
    """订单支付成功后发放代币，按折扣前的 total_amount 计算。"""
    awards = await evaluate(db, order.merchant_id, order.total_amount)
    expires_at = _expiry_from(datetime.utcnow())

    for award in awards:
        await append_transaction(
            db,
            user_id=order.user_id,
            token_type_id=award.token_type_id,
            amount=award.amount,
            transaction_type=TransactionType.EARNED,
            source_type=SourceType.ORDER,
            source_id=str(order.id),
            order_id=order.id,
            description=award.description,
            expires_at=expires_at,
        )

    bonus = await award_new_user_bonus(db, order)
    if bonus:
        awards.append(bonus)

    logger.info("order %s awarded %s", order.id, [(a.token_type_id, a.amount) for a in awards])
    return awards


# ---------------- 商户规则配置 ----------------

def _check_rule_fields(reward_type: str, trigger_type: str, reward_amount: int, trigger_value) -> None:
    if reward_type not in (RewardType.FIXED, RewardType.PERCENTAGE):
        raise ValidationError("invalid_reward_type", reward_type=reward_type)
    if trigger_type != ORDER_AMOUNT_TRIGGER:
        raise ValidationError("invalid_trigger_type", trigger_type=trigger_type)
    if reward_amount <= 0:
        raise ValidationError("invalid_reward_amount")
    if to_money(trigger_value) < 0:
        raise ValidationError("invalid_trigger_value")


async def list_rules(db: AsyncSession, merchant_id: int, include_inactive: bool = True) -> list[RewardRule]:
    stmt = select(RewardRule).where(RewardRule.merchant_id == merchant_id)
    if not include_inactive:
        stmt = stmt.where(RewardRule.is_active == True)  # noqa: E712
    return list((await db.execute(stmt.order_by(RewardRule.id.asc()))).scalars().all())


async def get_rule(db: AsyncSession, merchant_id: int, rule_id: int) -> RewardRule:
    rule = (await db.execute(
        select(RewardRule).where(RewardRule.id == rule_id, RewardRule.merchant_id == merchant_id)
    )).scalar_one_or_none()
    if not rule:
        raise NotFoundError("reward_rule_not_found", rule_id=rule_id)
    return rule


async def create_rule(
    db: AsyncSession,
    merchant_id: int,
    token_type_id: str,
    name: str,
    trigger_value,
    reward_amount: int,
    reward_type: str = RewardType.FIXED,
    trigger_type: str = ORDER_AMOUNT_TRIGGER,
    description: str | None = None,
    is_active: bool = True,
) -> RewardRule:
    _check_rule_fields(reward_type, trigger_type, reward_amount, trigger_value)
    await ensure_token_type(db, token_type_id)
    rule = RewardRule(
        merchant_id=merchant_id,
        token_type_id=token_type_id,
        name=name,
        description=description,
        trigger_type=trigger_type,
        trigger_value=to_money(trigger_value),
        reward_amount=reward_amount,
        reward_type=reward_type,
        is_active=is_active,
    )
    db.add(rule)
    await db.flush()
    logger.info("merchant %s created reward rule %s", merchant_id, rule.id)
    return rule


async def update_rule(db: AsyncSession, merchant_id: int, rule_id: int, **changes) -> RewardRule:
    rule = await get_rule(db, merchant_id, rule_id)
    changes = {k: v for k, v in changes.items() if v is not None}
    if "token_type_id" in changes:
        await ensure_token_type(db, changes["token_type_id"])
    _check_rule_fields(
        changes.get("reward_type", rule.reward_type),
        changes.get("trigger_type", rule.trigger_type),
        changes.get("reward_amount", rule.reward_amount),
        changes.get("trigger_value", rule.trigger_value),
    )
    if "trigger_value" in changes:
        changes["trigger_value"] = to_money(changes["trigger_value"])
    for key, value in changes.items():
        setattr(rule, key, value)
    await db.flush()
    return rule


async def deactivate_rule(db: AsyncSession, merchant_id: int, rule_id: int) -> RewardRule:
    rule = await get_rule(db, merchant_id, rule_id)
    rule.is_active = False
    await db.flush()
    return rule


# ---------------- 手动发放（管理员） ----------------

async def award_manual(
    db: AsyncSession,
    user_id: int,
    token_type_id: str,
    amount: int,
    reason: str,
    expires_at: datetime | None = None,
) -> int:
    """管理员手动发放代币，返回发放后的可用余额。"""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("invalid_amount", amount=amount)
    if not reason or not reason.strip():
        raise ValidationError("reason_required")
    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not user:
        raise NotFoundError("user_not_found", user_id=user_id)
    token_type = await ensure_token_type(db, token_type_id)
    if not token_type.is_active:
        raise StateConflictError("token_type_inactive", token_type_id=token_type_id)

    await append_transaction(
        db,
        user_id=user_id,
        token_type_id=token_type_id,
        amount=amount,
        transaction_type=TransactionType.EARNED,
        source_type=SourceType.MANUAL,
        description=reason.strip(),
        expires_at=expires_at,
    )
    return await compute_available(db, user_id, token_type_id)
