from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from qrorder.core.settings import settings
from qrorder.db import get_db
from qrorder.deps import get_current_admin
from qrorder.models.admin import Admin
from qrorder.models.tokens import TokenType
from qrorder.models.user import User
from qrorder.routers.views import token_type_out
from qrorder.services import balance as balance_service
from qrorder.services.expiry import sweep_expired_tokens
from qrorder.services.rewards import award_manual
from qrorder.services.security import verify_password, create_token

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


class AdminLoginIn(BaseModel):
    username: str
    password: str


class TokenTypeIn(BaseModel):
    id: str = Field(min_length=1, max_length=64, pattern=r"^[a-z0-9_]+$")
    name: str = Field(min_length=1, max_length=64)
    symbol: str = Field(min_length=1, max_length=16)
    description: str | None = Field(default=None, max_length=255)
    is_active: bool = True


class TokenTypeUpdateIn(BaseModel):
    description: str | None = Field(default=None, max_length=255)
    is_active: bool | None = None


class AwardIn(BaseModel):
    user_id: int
    token_type_id: str
    amount: int
    reason: str = Field(max_length=255)
    expires_at: datetime | None = None


@router.post("/login")
async def admin_login(payload: AdminLoginIn, response: Response, db: AsyncSession = Depends(get_db)):
    admin = (await db.execute(select(Admin).where(Admin.username == payload.username.strip()))).scalar_one_or_none()
    if not admin or not admin.is_active:
        raise HTTPException(status_code=400, detail="invalid_credentials")
    if not verify_password(payload.password, admin.password_hash):
        raise HTTPException(status_code=400, detail="invalid_credentials")
    token = create_token({"type": "admin", "aid": admin.id})
    response.set_cookie(settings.ADMIN_COOKIE_NAME, token, httponly=True, samesite="lax")
    return {"ok": True}


@router.post("/logout")
async def admin_logout(response: Response):
    response.delete_cookie(settings.ADMIN_COOKIE_NAME)
    return {"ok": True}


@router.get("/me")
async def admin_me(admin: Admin = Depends(get_current_admin)):
    return {"id": admin.id, "username": admin.username}


@router.get("/token-types")
async def list_token_types(_: Admin = Depends(get_current_admin), db: AsyncSession = Depends(get_db)):
    rows = (await db.execute(select(TokenType).order_by(TokenType.name.asc()))).scalars().all()
    return {"token_types": [token_type_out(t) for t in rows]}


@router.post("/token-types", status_code=201)
async def create_token_type(payload: TokenTypeIn, _: Admin = Depends(get_current_admin), db: AsyncSession = Depends(get_db)):
    exists = (await db.execute(
        select(TokenType).where((TokenType.id == payload.id) | (TokenType.name == payload.name.strip()))
    )).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=400, detail="token_type_exists")
    token_type = TokenType(
        id=payload.id,
        name=payload.name.strip(),
        symbol=payload.symbol.strip(),
        description=payload.description,
        is_active=payload.is_active,
    )
    db.add(token_type)
    await db.flush()
    return {"token_type": token_type_out(token_type)}


@router.put("/token-types/{token_type_id}")
async def update_token_type(
    token_type_id: str,
    payload: TokenTypeUpdateIn,
    _: Admin = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    # name/symbol 被交易引用后不可改，只允许改描述和启用状态
    token_type = await balance_service.ensure_token_type(db, token_type_id)
    if payload.description is not None:
        token_type.description = payload.description
    if payload.is_active is not None:
        token_type.is_active = payload.is_active
    await db.flush()
    return {"token_type": token_type_out(token_type)}


@router.post("/tokens/award")
async def award_tokens(payload: AwardIn, _: Admin = Depends(get_current_admin), db: AsyncSession = Depends(get_db)):
    # 账本里统一存 naive UTC；不带时区的输入按 UTC 处理
    expires_at = payload.expires_at
    if expires_at and expires_at.tzinfo is not None:
        expires_at = expires_at.astimezone(timezone.utc).replace(tzinfo=None)
    new_balance = await award_manual(
        db, payload.user_id, payload.token_type_id, payload.amount, payload.reason, expires_at
    )
    return {
        "user_id": payload.user_id,
        "token_type_id": payload.token_type_id,
        "amount": payload.amount,
        "new_balance": new_balance,
    }


@router.post("/tokens/expire")
async def expire_tokens(_: Admin = Depends(get_current_admin), db: AsyncSession = Depends(get_db)):
    return {"processed": await sweep_expired_tokens(db)}


@router.get("/users/{user_id}/balances")
async def user_balances(user_id: int, _: Admin = Depends(get_current_admin), db: AsyncSession = Depends(get_db)):
    """对账用：可用余额、账本求和、最新快照、用户缓存并排展示。"""
    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="user_not_found")
    token_types = (await db.execute(select(TokenType).order_by(TokenType.name.asc()))).scalars().all()
    rows = []
    ledger_total = 0
    for t in token_types:
        ledger_sum = await balance_service.get_ledger_sum(db, user.id, t.id)
        ledger_total += ledger_sum
        rows.append({
            "token_type_id": t.id,
            "available": await balance_service.compute_available(db, user.id, t.id),
            "ledger_sum": ledger_sum,
            "snapshot": await balance_service.get_snapshot_balance(db, user.id, t.id),
        })
    return {
        "user_id": user.id,
        "balances": rows,
        "cached_token_balance": user.token_balance,
        "consistent": ledger_total == user.token_balance and all(r["ledger_sum"] == r["snapshot"] for r in rows),
    }
