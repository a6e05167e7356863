from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from qrorder.core.settings import settings
from qrorder.db import get_db
from qrorder.deps import get_current_merchant
from qrorder.models.merchant import Merchant
from qrorder.models.order import Order
from qrorder.routers.views import order_out, rule_out
from qrorder.services import rewards
from qrorder.services.security import create_token, verify_password
from qrorder.services.settlement import advance_order_status

router = APIRouter(prefix="/api/v1/merchant", tags=["merchant"])


class MerchantLoginIn(BaseModel):
    email: EmailStr
    password: str


class SettingsIn(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    new_user_reward: int | None = Field(default=None, ge=0)
    qr_code_url: str | None = Field(default=None, min_length=1, max_length=512)


class RewardRuleIn(BaseModel):
    token_type_id: str
    name: str = Field(min_length=1, max_length=64)
    description: str | None = Field(default=None, max_length=255)
    trigger_type: str = "order_amount"
    trigger_value: Decimal = Field(ge=0)
    reward_amount: int = Field(ge=1)
    reward_type: str = "fixed"
    is_active: bool = True


class RewardRuleUpdateIn(BaseModel):
    token_type_id: str | None = None
    name: str | None = Field(default=None, min_length=1, max_length=64)
    description: str | None = Field(default=None, max_length=255)
    trigger_value: Decimal | None = Field(default=None, ge=0)
    reward_amount: int | None = Field(default=None, ge=1)
    reward_type: str | None = None
    is_active: bool | None = None


class OrderStatusIn(BaseModel):
    status: str


@router.post("/login")
async def merchant_login(payload: MerchantLoginIn, response: Response, db: AsyncSession = Depends(get_db)):
    email = payload.email.strip().lower()
    merchant = (await db.execute(select(Merchant).where(Merchant.email == email))).scalar_one_or_none()
    if not merchant or not merchant.is_active:
        raise HTTPException(status_code=400, detail="invalid_credentials")
    if not verify_password(payload.password, merchant.password_hash):
        raise HTTPException(status_code=400, detail="invalid_credentials")
    token = create_token({"type": "merchant", "mid": merchant.id})
    response.set_cookie(settings.MERCHANT_COOKIE_NAME, token, httponly=True, samesite="lax")
    return {"ok": True, "merchant": {"id": merchant.id, "name": merchant.name}}


@router.post("/logout")
async def merchant_logout(response: Response):
    response.delete_cookie(settings.MERCHANT_COOKIE_NAME)
    return {"ok": True}


def _settings_out(merchant: Merchant) -> dict:
    return {
        "name": merchant.name,
        "qr_code_url": merchant.qr_code_url,
        "new_user_reward": merchant.new_user_reward,
        "is_active": merchant.is_active,
    }


@router.get("/settings")
async def get_settings(merchant: Merchant = Depends(get_current_merchant)):
    return {"settings": _settings_out(merchant)}


@router.put("/settings")
async def update_settings(payload: SettingsIn, merchant: Merchant = Depends(get_current_merchant), db: AsyncSession = Depends(get_db)):
    if payload.name is not None:
        merchant.name = payload.name.strip()
    if payload.new_user_reward is not None:
        merchant.new_user_reward = payload.new_user_reward
    if payload.qr_code_url is not None:
        merchant.qr_code_url = payload.qr_code_url.strip()
    merchant.updated_at = datetime.utcnow()
    await db.flush()
    return {"settings": _settings_out(merchant)}


@router.get("/reward-rules")
async def list_reward_rules(merchant: Merchant = Depends(get_current_merchant), db: AsyncSession = Depends(get_db)):
    return {"rules": [rule_out(r) for r in await rewards.list_rules(db, merchant.id)]}


@router.post("/reward-rules", status_code=201)
async def create_reward_rule(payload: RewardRuleIn, merchant: Merchant = Depends(get_current_merchant), db: AsyncSession = Depends(get_db)):
    rule = await rewards.create_rule(db, merchant.id, **payload.model_dump())
    return {"rule": rule_out(rule)}


@router.put("/reward-rules/{rule_id}")
async def update_reward_rule(
    rule_id: int,
    payload: RewardRuleUpdateIn,
    merchant: Merchant = Depends(get_current_merchant),
    db: AsyncSession = Depends(get_db),
):
    rule = await rewards.update_rule(db, merchant.id, rule_id, **payload.model_dump())
    return {"rule": rule_out(rule)}


@router.delete("/reward-rules/{rule_id}")
async def deactivate_reward_rule(rule_id: int, merchant: Merchant = Depends(get_current_merchant), db: AsyncSession = Depends(get_db)):
    rule = await rewards.deactivate_rule(db, merchant.id, rule_id)
    return {"rule": rule_out(rule)}


@router.get("/orders")
async def list_orders(
    status: str | None = None,
    merchant: Merchant = Depends(get_current_merchant),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Order).where(Order.merchant_id == merchant.id)
    if status:
        stmt = stmt.where(Order.status == status)
    rows = (await db.execute(stmt.order_by(Order.id.desc()).limit(100))).scalars().all()
    return {"orders": [order_out(o) for o in rows]}


@router.put("/orders/{order_id}/status")
async def set_order_status(
    order_id: int,
    payload: OrderStatusIn,
    merchant: Merchant = Depends(get_current_merchant),
    db: AsyncSession = Depends(get_db),
):
    order = await advance_order_status(db, merchant.id, order_id, payload.status)
    return {"order": order_out(order)}
