from __future__ import annotations

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from qrorder.core.settings import settings
from qrorder.db import get_db
from qrorder.services.security import decode_token
from qrorder.models.user import User
from qrorder.models.admin import Admin
from qrorder.models.merchant import Merchant


def _read_token(request: Request, cookie_name: str) -> str | None:
    token = request.cookies.get(cookie_name)
    if token:
        return token
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return None


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    token = _read_token(request, settings.COOKIE_NAME)
    if not token:
        raise HTTPException(status_code=401, detail="not_logged_in")
    payload = decode_token(token)
    if not payload or payload.get("type") != "user":
        raise HTTPException(status_code=401, detail="invalid_token")
    user_id = payload.get("uid")
    if not user_id:
        raise HTTPException(status_code=401, detail="invalid_token")
    user = (await db.execute(select(User).where(User.id == int(user_id)))).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="user_not_found")
    return user


async def get_current_merchant(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Merchant:
    token = _read_token(request, settings.MERCHANT_COOKIE_NAME)
    if not token:
        raise HTTPException(status_code=401, detail="merchant_not_logged_in")
    payload = decode_token(token)
    if not payload or payload.get("type") != "merchant":
        raise HTTPException(status_code=401, detail="invalid_merchant_token")
    merchant_id = payload.get("mid")
    if not merchant_id:
        raise HTTPException(status_code=401, detail="invalid_merchant_token")
    merchant = (await db.execute(select(Merchant).where(Merchant.id == int(merchant_id)))).scalar_one_or_none()
    if not merchant or not merchant.is_active:
        raise HTTPException(status_code=401, detail="merchant_not_found")
    return merchant


async def get_current_admin(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Admin:
    token = _read_token(request, settings.ADMIN_COOKIE_NAME)
    if not token:
        raise HTTPException(status_code=401, detail="admin_not_logged_in")
    payload = decode_token(token)
    if not payload or payload.get("type") != "admin":
        raise HTTPException(status_code=401, detail="invalid_admin_token")
    admin_id = payload.get("aid")
    if not admin_id:
        raise HTTPException(status_code=401, detail="invalid_admin_token")
    admin = (await db.execute(select(Admin).where(Admin.id == int(admin_id)))).scalar_one_or_none()
    if not admin or not admin.is_active:
        raise HTTPException(status_code=401, detail="admin_not_found")
    return admin
