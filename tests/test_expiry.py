from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from conftest import create_merchant, create_product, create_user
from qrorder.models.tokens import SourceType, TokenTransaction, TransactionType
from qrorder.services import settlement
from qrorder.services.balance import get_balance, get_ledger_sum, get_snapshot_balance
from qrorder.services.expiry import sweep_expired_tokens
from qrorder.services.ledger import list_transactions
from qrorder.services.redemption import apply_redemption, refund_redemption
from qrorder.services.rewards import award_manual

pytestmark = pytest.mark.anyio


async def _expired_rows(db, user_id):
    return (await db.execute(
        select(TokenTransaction)
        .where(TokenTransaction.user_id == user_id, TokenTransaction.transaction_type == TransactionType.EXPIRED)
        .order_by(TokenTransaction.id)
    )).scalars().all()


class TestSweep:
    async def test_sweep_is_idempotent(self, db):
        user = await create_user(db)
        now = datetime.utcnow()
        await award_manual(db, user.id, "reward_tokens", 100, "promo", expires_at=now + timedelta(days=1))
        await award_manual(db, user.id, "reward_tokens", 40, "no expiry")
        later = now + timedelta(days=2)

        before = await get_balance(db, user.id, "reward_tokens", now=later)
        assert await sweep_expired_tokens(db, now=later) == 1
        assert await get_balance(db, user.id, "reward_tokens", now=later) == before == 40
        assert await get_ledger_sum(db, user.id, "reward_tokens") == 40
        assert await get_snapshot_balance(db, user.id, "reward_tokens") == 40

        assert await sweep_expired_tokens(db, now=later) == 0
        assert await sweep_expired_tokens(db, now=later + timedelta(days=30)) == 0
        [expired] = await _expired_rows(db, user.id)
        assert expired.amount == -100
        assert expired.source_type == SourceType.EXPIRY

    async def test_nothing_expires_early(self, db):
        user = await create_user(db)
        await award_manual(db, user.id, "reward_tokens", 10, "promo", expires_at=datetime.utcnow() + timedelta(days=5))
        assert await sweep_expired_tokens(db) == 0
        assert await get_balance(db, user.id, "reward_tokens") == 10

    async def test_only_unspent_part_expires(self, db):
        user = await create_user(db)
        merchant = await create_merchant(db)
        product = await create_product(db, merchant, "5.00")
        order = await settlement.create_order(db, user.id, merchant.id, [(product.id, 1)])

        now = datetime.utcnow()
        await award_manual(db, user.id, "reward_tokens", 100, "promo", expires_at=now + timedelta(days=1))
        await apply_redemption(db, user.id, order.id, "reward_tokens", 80)
        await award_manual(db, user.id, "reward_tokens", 50, "later")
        later = now + timedelta(days=2)

        assert await sweep_expired_tokens(db, now=later) == 1
        [expired] = await _expired_rows(db, user.id)
        assert expired.amount == -20
        assert await get_ledger_sum(db, user.id, "reward_tokens") == 50
        assert await get_balance(db, user.id, "reward_tokens", now=later) == 50

    async def test_fully_spent_lot_leaves_hidden_marker(self, db):
        user = await create_user(db)
        merchant = await create_merchant(db)
        product = await create_product(db, merchant, "5.00")
        order = await settlement.create_order(db, user.id, merchant.id, [(product.id, 1)])

        now = datetime.utcnow()
        await award_manual(db, user.id, "reward_tokens", 30, "promo", expires_at=now + timedelta(days=1))
        await apply_redemption(db, user.id, order.id, "reward_tokens", 30)
        later = now + timedelta(days=2)

        assert await sweep_expired_tokens(db, now=later) == 1
        assert await sweep_expired_tokens(db, now=later) == 0
        [marker] = await _expired_rows(db, user.id)
        assert marker.amount == 0

        rows, total = await list_transactions(db, user.id)
        assert total == 2
        assert all(r.transaction_type != TransactionType.EXPIRED for r in rows)

    async def test_sweeps_each_user_separately(self, db):
        alice = await create_user(db)
        bob = await create_user(db, phone_number="+15550000002")
        now = datetime.utcnow()
        await award_manual(db, alice.id, "reward_tokens", 10, "promo", expires_at=now + timedelta(hours=1))
        await award_manual(db, bob.id, "cashback_tokens", 20, "promo", expires_at=now + timedelta(hours=1))

        assert await sweep_expired_tokens(db, now=now + timedelta(hours=2)) == 2
        assert await get_ledger_sum(db, alice.id, "reward_tokens") == 0
        assert await get_ledger_sum(db, bob.id, "cashback_tokens") == 0


async def _pending_order(db, user):
    merchant = await create_merchant(db)
    product = await create_product(db, merchant, "5.00")
    return await settlement.create_order(db, user.id, merchant.id, [(product.id, 1)])


async def _refund_row(db, red):
    return (await db.execute(
        select(TokenTransaction).where(TokenTransaction.reverses_id == red.transaction_id)
    )).scalar_one()


class TestRefundedTokensExpire:
    async def test_refund_keeps_original_expiry(self, db):
        user = await create_user(db)
        order = await _pending_order(db, user)
        now = datetime.utcnow()
        deadline = now + timedelta(days=1)
        await award_manual(db, user.id, "reward_tokens", 50, "promo", expires_at=deadline)

        red, _ = await apply_redemption(db, user.id, order.id, "reward_tokens", 30)
        red, new_balance = await refund_redemption(db, user.id, red.id)
        assert new_balance == 50
        assert (await _refund_row(db, red)).expires_at == deadline

        later = now + timedelta(days=2)
        assert await get_balance(db, user.id, "reward_tokens", now=later) == 0
        assert await sweep_expired_tokens(db, now=later) == 2
        assert [r.amount for r in await _expired_rows(db, user.id)] == [-20, -30]
        assert await get_ledger_sum(db, user.id, "reward_tokens") == 0
        assert await sweep_expired_tokens(db, now=later) == 0

    async def test_refund_of_permanent_tokens_never_expires(self, db):
        user = await create_user(db)
        order = await _pending_order(db, user)
        await award_manual(db, user.id, "reward_tokens", 50, "no expiry")

        red, _ = await apply_redemption(db, user.id, order.id, "reward_tokens", 30)
        red, _ = await refund_redemption(db, user.id, red.id)

        assert (await _refund_row(db, red)).expires_at is None
        later = datetime.utcnow() + timedelta(days=400)
        assert await sweep_expired_tokens(db, now=later) == 0
        assert await get_balance(db, user.id, "reward_tokens", now=later) == 50

    async def test_refund_spanning_lots_takes_earliest_expiry(self, db):
        user = await create_user(db)
        order = await _pending_order(db, user)
        deadline = datetime.utcnow() + timedelta(days=1)
        await award_manual(db, user.id, "reward_tokens", 20, "promo", expires_at=deadline)
        await award_manual(db, user.id, "reward_tokens", 40, "no expiry")

        red, _ = await apply_redemption(db, user.id, order.id, "reward_tokens", 30)
        red, _ = await refund_redemption(db, user.id, red.id)

        assert (await _refund_row(db, red)).expires_at == deadline
