from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from qrorder.models.tokens import TokenBalance, TokenTransaction
from qrorder.models.user import User
from qrorder.services.errors import InternalError

logger = logging.getLogger(__name__)


async def lock_balance(db: AsyncSession, user_id: int, token_type_id: str) -> TokenBalance:
    """取得并锁住 (user, token_type) 的余额行，同一 key 的账本写入在这里串行化。"""
    stmt = (
        select(TokenBalance)
        .where(TokenBalance.user_id == user_id, TokenBalance.token_type_id == token_type_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    row = (await db.execute(stmt)).scalar_one_or_none()
    if row:
        return row
    try:
        async with db.begin_nested():
            db.add(TokenBalance(user_id=user_id, token_type_id=token_type_id, balance=0))
    except IntegrityError:
        # 并发请求先建好了这一行
        pass
    # 再锁一次（sqlite 下 with_for_update 无效，但事务仍可用）
    return (await db.execute(stmt)).scalar_one()


async def append_transaction(
    db: AsyncSession,
    user_id: int,
    token_type_id: str,
    amount: int,
    transaction_type: str,
    source_type: str | None = None,
    source_id: str | None = None,
    order_id: int | None = None,
    reverses_id: int | None = None,
    description: str | None = None,
    expires_at: datetime | None = None,
    locked: TokenBalance | None = None,
) -> TokenTransaction:
    """追加一条账本记录，balance_after 基于锁住的余额行计算。

    调用方已经持有锁时传入 ``locked``，否则这里自己加锁。余额行和
    ``User.token_balance`` 缓存与记录在同一个事务里更新。
    """
    if locked is None:
        locked = await lock_balance(db, user_id, token_type_id)

    balance_after = locked.balance + amount
    if balance_after < 0:
        # 调用方应该先校验可用余额
        logger.error("ledger would go negative user=%s type=%s amount=%s", user_id, token_type_id, amount)
        raise InternalError(
            "ledger_balance_negative", token_type_id=token_type_id, balance=locked.balance, amount=amount
        )
    tx = TokenTransaction(
        user_id=user_id,
        token_type_id=token_type_id,
        amount=amount,
        transaction_type=transaction_type,
        source_type=source_type,
        source_id=source_id,
        order_id=order_id,
        reverses_id=reverses_id,
        description=description,
        balance_after=balance_after,
        expires_at=expires_at,
        created_at=datetime.utcnow(),
    )
    db.add(tx)
    locked.balance = balance_after
    locked.updated_at = datetime.utcnow()
    await db.execute(
        update(User).where(User.id == user_id).values(token_balance=User.token_balance + amount)
    )
    await db.flush()

    logger.info(
        "ledger %s user=%s type=%s amount=%+d balance_after=%s source=%s:%s",
        transaction_type, user_id, token_type_id, amount, balance_after, source_type, source_id,
    )
    return tx


async def list_transactions(
    db: AsyncSession,
    user_id: int,
    token_type_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[TokenTransaction], int]:
    # 过期清理留下的 0 数量标记不展示
    where = [TokenTransaction.user_id == user_id, TokenTransaction.amount != 0]
    if token_type_id:
        where.append(TokenTransaction.token_type_id == token_type_id)

    total = (await db.execute(select(func.count(TokenTransaction.id)).where(*where))).scalar_one()
    rows = (await db.execute(
        select(TokenTransaction)
        .where(*where)
        .order_by(TokenTransaction.id.desc())
        .limit(limit)
        .offset(offset)
    )).scalars().all()
    return list(rows), total
