from __future__ import annotations

import hashlib
import hmac
import time
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from qrorder.api import create_app
from qrorder.db import create_tables, get_db, install_sqlite_pragmas
from qrorder.models.merchant import Merchant, Product
from qrorder.models.tokens import RewardRule, TokenType
from qrorder.models.user import User
from qrorder.services.bootstrap_defaults import ensure_default_token_types
from qrorder.services.errors import GatewayError, PaymentActionRequiredError, PaymentPendingError
from qrorder.services.payments import PaymentGateway, PaymentResult, get_payment_gateway
from qrorder.services.security import create_token, hash_password


class FakeGateway(PaymentGateway):
    """记录所有扣款/退款；mode 可以切到 decline / timeout / action。"""

    name = "fake"

    def __init__(self):
        self.mode = "ok"
        self.refund_mode = "ok"
        self.requires_payment_method = False
        self.charges = []
        self.refunds = []

    async def charge(self, amount, reference, payment_method=None, metadata=None):
        self.charges.append({"amount": amount, "reference": reference, "metadata": metadata})
        if self.mode == "decline":
            raise GatewayError("payment_declined", reason="Your card was declined.")
        if self.mode == "timeout":
            raise PaymentPendingError("payment_pending", reason="ReadTimeout")
        if self.mode == "action":
            raise PaymentActionRequiredError(
                "payment_requires_action", payment_intent_id="pi_fake_3ds", client_secret="pi_fake_3ds_secret"
            )
        return PaymentResult(payment_ref=f"pi_fake_{len(self.charges)}", status="succeeded", amount=amount)

    async def refund(self, payment_ref, amount=None, metadata=None):
        self.refunds.append({"payment_ref": payment_ref, "amount": amount, "metadata": metadata})
        if self.refund_mode == "decline":
            raise GatewayError("refund_failed", reason="charge_already_refunded")
        return PaymentResult(payment_ref=f"re_fake_{len(self.refunds)}", status="succeeded", amount=amount)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    install_sqlite_pragmas(engine)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        await ensure_default_token_types(session)
        await session.flush()
        yield session
        await session.rollback()


@pytest.fixture
def gateway():
    return FakeGateway()


async def create_user(db: AsyncSession, phone_number: str = "+15550000001") -> User:
    user = User(phone_number=phone_number)
    db.add(user)
    await db.flush()
    return user


async def create_merchant(
    db: AsyncSession,
    email: str = "owner@cafe.test",
    new_user_reward: int = 0,
    password: str = "secret123",
) -> Merchant:
    merchant = Merchant(
        name="Corner Cafe",
        email=email,
        password_hash=hash_password(password),
        new_user_reward=new_user_reward,
    )
    db.add(merchant)
    await db.flush()
    return merchant


async def create_product(db: AsyncSession, merchant: Merchant, price: str, name: str = "Latte") -> Product:
    product = Product(merchant_id=merchant.id, name=name, price=Decimal(price))
    db.add(product)
    await db.flush()
    return product


async def create_rule(
    db: AsyncSession,
    merchant: Merchant,
    trigger_value: str = "15.00",
    reward_amount: int = 10,
    reward_type: str = "fixed",
    token_type_id: str = "reward_tokens",
    is_active: bool = True,
) -> RewardRule:
    rule = RewardRule(
        merchant_id=merchant.id,
        token_type_id=token_type_id,
        name=f"{reward_type} {reward_amount} over {trigger_value}",
        trigger_type="order_amount",
        trigger_value=Decimal(trigger_value),
        reward_amount=reward_amount,
        reward_type=reward_type,
        is_active=is_active,
    )
    db.add(rule)
    await db.flush()
    return rule


async def create_token_type(db: AsyncSession, token_type_id: str, is_active: bool = True) -> TokenType:
    token_type = TokenType(id=token_type_id, name=token_type_id.title(), symbol=token_type_id[:3].upper(), is_active=is_active)
    db.add(token_type)
    await db.flush()
    return token_type


def sign(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """按 Stripe 的方式生成 Stripe-Signature 头。"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def user_headers(user_id: int) -> dict:
    return {"Authorization": f"Bearer {create_token({'type': 'user', 'uid': user_id})}"}


def merchant_headers(merchant_id: int) -> dict:
    return {"Authorization": f"Bearer {create_token({'type': 'merchant', 'mid': merchant_id})}"}


def admin_headers(admin_id: int) -> dict:
    return {"Authorization": f"Bearer {create_token({'type': 'admin', 'aid': admin_id})}"}


@pytest.fixture
async def client(session_factory, gateway):
    app = create_app(init_database=False)

    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    async with session_factory() as session:
        await ensure_default_token_types(session)
        await session.commit()

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
