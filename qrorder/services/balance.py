from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from qrorder.models.tokens import TokenType, TokenTransaction, TransactionType
from qrorder.services.errors import NotFoundError


# 会过期的入账类型：退回的代币继承原入账的有效期
EXPIRING_TYPES = (TransactionType.EARNED, TransactionType.REFUNDED)


@dataclass
class Lot:
    """一笔入账（earned/refunded）以及它还剩多少没被消耗。"""

    tx: TokenTransaction
    remaining: int
    reversed: bool = False

    def expired_at(self, when: datetime) -> bool:
        return self.tx.expires_at is not None and self.tx.expires_at <= when


def build_lots(
    rows: list[TokenTransaction],
    consumption: dict[int, list[tuple[Lot, int]]] | None = None,
) -> list[Lot]:
    """按 id 顺序重放账本，把出账分摊到入账上。

    过期冲正只消耗它指向的那一笔；其余出账按先进先出消耗，跳过在出账
    时刻已经过期的入账。传入 consumption 时记录每笔出账消耗了哪些入账。
    """
    lots: list[Lot] = []
    by_id: dict[int, Lot] = {}

    def consume(tx: TokenTransaction, lot: Lot, debit: int) -> int:
        take = min(debit, lot.remaining)
        lot.remaining -= take
        if consumption is not None and take > 0:
            consumption.setdefault(tx.id, []).append((lot, take))
        return debit - take

    for tx in rows:
        if tx.amount > 0:
            lot = Lot(tx=tx, remaining=tx.amount)
            lots.append(lot)
            by_id[tx.id] = lot
            continue

        debit = -tx.amount
        if tx.reverses_id is not None and tx.reverses_id in by_id:
            target = by_id[tx.reverses_id]
            if tx.transaction_type == TransactionType.EXPIRED:
                target.reversed = True
            debit = consume(tx, target, debit)

        when = tx.created_at
        for lot in lots:
            if debit <= 0:
                break
            if lot.remaining <= 0 or lot.expired_at(when):
                continue
            debit = consume(tx, lot, debit)

        # 兜底：账本里不该出现，但不能让余额被算多
        for lot in lots:
            if debit <= 0:
                break
            debit = consume(tx, lot, debit)

    return lots


def consumed_expiry(rows: list[TokenTransaction], debit_id: int) -> datetime | None:
    """某笔出账消耗的入账里最早的过期时间；都不过期时返回 None。"""
    consumption: dict[int, list[tuple[Lot, int]]] = {}
    build_lots(rows, consumption)
    expiries = [lot.tx.expires_at for lot, _ in consumption.get(debit_id, []) if lot.tx.expires_at is not None]
    return min(expiries) if expiries else None


async def ensure_token_type(db: AsyncSession, token_type_id: str) -> TokenType:
    token_type = (await db.execute(
        select(TokenType).where(TokenType.id == token_type_id)
    )).scalar_one_or_none()
    if not token_type:
        raise NotFoundError("token_type_not_found", token_type_id=token_type_id)
    return token_type


async def get_ledger_sum(db: AsyncSession, user_id: int, token_type_id: str) -> int:
    """账本全量求和：余额的权威定义。"""
    total = (await db.execute(
        select(func.coalesce(func.sum(TokenTransaction.amount), 0)).where(
            TokenTransaction.user_id == user_id,
            TokenTransaction.token_type_id == token_type_id,
        )
    )).scalar_one()
    return int(total)


async def get_snapshot_balance(db: AsyncSession, user_id: int, token_type_id: str) -> int:
    """最新一条记录的 balance_after，只是性能路径，必须与 get_ledger_sum 一致。"""
    latest = (await db.execute(
        select(TokenTransaction.balance_after)
        .where(
            TokenTransaction.user_id == user_id,
            TokenTransaction.token_type_id == token_type_id,
        )
        .order_by(TokenTransaction.id.desc())
        .limit(1)
    )).scalar_one_or_none()
    return int(latest or 0)


async def has_pending_expiry(db: AsyncSession, user_id: int, token_type_id: str, now: datetime) -> bool:
    reversal = aliased(TokenTransaction)
    stmt = select(TokenTransaction.id).where(
        TokenTransaction.user_id == user_id,
        TokenTransaction.token_type_id == token_type_id,
        TokenTransaction.transaction_type.in_(EXPIRING_TYPES),
        TokenTransaction.expires_at.is_not(None),
        TokenTransaction.expires_at <= now,
        ~select(reversal.id).where(reversal.reverses_id == TokenTransaction.id).exists(),
    ).limit(1)
    return (await db.execute(stmt)).scalar_one_or_none() is not None


async def load_ledger(db: AsyncSession, user_id: int, token_type_id: str) -> list[TokenTransaction]:
    return list((await db.execute(
        select(TokenTransaction)
        .where(
            TokenTransaction.user_id == user_id,
            TokenTransaction.token_type_id == token_type_id,
        )
        .order_by(TokenTransaction.id.asc())
    )).scalars().all())


async def compute_available(
    db: AsyncSession,
    user_id: int,
    token_type_id: str,
    now: datetime | None = None,
) -> int:
    now = now or datetime.utcnow()
    raw = await get_ledger_sum(db, user_id, token_type_id)
    if not await has_pending_expiry(db, user_id, token_type_id, now):
        return max(0, raw)

    # 有已过期但还没被清理的入账：扣掉它们未消耗的部分
    lots = build_lots(await load_ledger(db, user_id, token_type_id))
    unswept = sum(
        lot.remaining
        for lot in lots
        if lot.tx.transaction_type in EXPIRING_TYPES and lot.expired_at(now) and not lot.reversed
    )
    return max(0, raw - unswept)


async def get_balance(
    db: AsyncSession,
    user_id: int,
    token_type_id: str,
    now: datetime | None = None,
) -> int:
    await ensure_token_type(db, token_type_id)
    return await compute_available(db, user_id, token_type_id, now)


async def get_balances(db: AsyncSession, user_id: int) -> list[dict]:
    token_types = (await db.execute(
        select(TokenType).where(TokenType.is_active == True).order_by(TokenType.name.asc())  # noqa: E712
    )).scalars().all()
    balances = []
    for token_type in token_types:
        balances.append({
            "token_type": {
                "id": token_type.id,
                "name": token_type.name,
                "symbol": token_type.symbol,
                "description": token_type.description,
            },
            "balance": await compute_available(db, user_id, token_type.id),
        })
    return balances
