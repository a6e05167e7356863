from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from qrorder.models.tokens import TokenTransaction, TransactionType, SourceType
from qrorder.services.balance import EXPIRING_TYPES, build_lots, load_ledger
from qrorder.services.ledger import lock_balance, append_transaction

logger = logging.getLogger(__name__)


async def _pending_keys(db: AsyncSession, now: datetime) -> list[tuple[int, str]]:
    reversal = aliased(TokenTransaction)
    rows = (await db.execute(
        select(TokenTransaction.user_id, TokenTransaction.token_type_id)
        .where(
            TokenTransaction.transaction_type.in_(EXPIRING_TYPES),
            TokenTransaction.expires_at.is_not(None),
            TokenTransaction.expires_at <= now,
            ~select(reversal.id).where(reversal.reverses_id == TokenTransaction.id).exists(),
        )
        .distinct()
    )).all()
    return [(r[0], r[1]) for r in rows]


async def sweep_expired_tokens(db: AsyncSession, now: datetime | None = None) -> int:
    """为每笔已过期、尚未冲正的入账写一条 expired 冲正，返回处理的笔数。

    冲正金额是该笔入账未被消耗的部分（可能为 0，仍然写入作为已处理标记）。
    reverses_id 唯一，重复运行不会再写。
    """
    now = now or datetime.utcnow()
    processed = 0

    for user_id, token_type_id in await _pending_keys(db, now):
        locked = await lock_balance(db, user_id, token_type_id)
        lots = build_lots(await load_ledger(db, user_id, token_type_id))
        expiring = [
            lot for lot in lots
            if lot.tx.transaction_type in EXPIRING_TYPES and lot.expired_at(now) and not lot.reversed
        ]
        for lot in expiring:
            await append_transaction(
                db,
                user_id=user_id,
                token_type_id=token_type_id,
                amount=-lot.remaining,
                transaction_type=TransactionType.EXPIRED,
                source_type=SourceType.EXPIRY,
                source_id=str(lot.tx.id),
                reverses_id=lot.tx.id,
                description=f"Tokens expired: {lot.tx.description or ''}".strip(),
                expires_at=lot.tx.expires_at,
                locked=locked,
            )
            processed += 1

    logger.info("expiry sweep processed %s lots", processed)
    return processed
