from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Numeric, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from qrorder.db import Base


class TransactionType:
    EARNED = "earned"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class SourceType:
    SIGNUP = "signup"
    ORDER = "order"
    REDEMPTION = "redemption"
    MANUAL = "manual"
    REDEMPTION_REFUND = "redemption_refund"
    NEW_USER_BONUS = "new_user_bonus"
    EXPIRY = "expiry"


class RedemptionStatus:
    APPLIED = "applied"
    REFUNDED = "refunded"


class RewardType:
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class TokenType(Base):
    __tablename__ = "token_types"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(64), unique=True)
    symbol: Mapped[str] = mapped_column(String(16))
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class TokenBalance(Base):
    """每个 (user, token_type) 一行：写账本前先锁住它，同时缓存当前余额。"""

    __tablename__ = "token_balances"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), primary_key=True)
    token_type_id: Mapped[str] = mapped_column(ForeignKey("token_types.id"), primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class TokenTransaction(Base):
    __tablename__ = "token_transactions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    token_type_id: Mapped[str] = mapped_column(ForeignKey("token_types.id"), index=True)
    amount: Mapped[int] = mapped_column(Integer)  # 正数入账，负数出账
    transaction_type: Mapped[str] = mapped_column(String(16))  # earned/redeemed/expired/refunded
    source_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    source_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    order_id: Mapped[int | None] = mapped_column(ForeignKey("orders.id"), nullable=True, index=True)
    # 冲正记录指向被冲正的那一条；唯一约束保证同一条最多被冲正一次
    reverses_id: Mapped[int | None] = mapped_column(
        ForeignKey("token_transactions.id"), nullable=True, unique=True
    )
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    balance_after: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_token_transactions_user_type", "user_id", "token_type_id", "id"),
        Index("ix_token_transactions_expires", "transaction_type", "expires_at"),
    )


class TokenRedemption(Base):
    __tablename__ = "token_redemptions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    order_id: Mapped[int | None] = mapped_column(ForeignKey("orders.id"), nullable=True, index=True)
    token_type_id: Mapped[str] = mapped_column(ForeignKey("token_types.id"))
    amount: Mapped[int] = mapped_column(Integer)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    status: Mapped[str] = mapped_column(String(16), default=RedemptionStatus.APPLIED)  # applied/refunded
    transaction_id: Mapped[int | None] = mapped_column(ForeignKey("token_transactions.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class RewardRule(Base):
    __tablename__ = "reward_rules"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey("merchants.id"), index=True)
    token_type_id: Mapped[str] = mapped_column(ForeignKey("token_types.id"))
    name: Mapped[str] = mapped_column(String(64))
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    trigger_type: Mapped[str] = mapped_column(String(32), default="order_amount")
    # 订单小计门槛（美元）
    trigger_value: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    reward_amount: Mapped[int] = mapped_column(Integer)
    reward_type: Mapped[str] = mapped_column(String(16), default=RewardType.FIXED)  # fixed/percentage
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class NewUserBonus(Base):
    """新用户首单奖励的发放记录，(user_id, merchant_id) 唯一。"""

    __tablename__ = "new_user_bonuses"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    merchant_id: Mapped[int] = mapped_column(ForeignKey("merchants.id"))
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"))
    transaction_id: Mapped[int | None] = mapped_column(ForeignKey("token_transactions.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "merchant_id", name="uq_new_user_bonus_user_merchant"),
    )
