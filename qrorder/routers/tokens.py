from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from qrorder.db import get_db
from qrorder.deps import get_current_user
from qrorder.models.tokens import TokenType
from qrorder.models.user import User
from qrorder.routers.views import money, order_out, redemption_out, token_type_out, transaction_out
from qrorder.services import balance as balance_service
from qrorder.services import ledger
from qrorder.services.redemption import apply_redemption, preview_redemption, refund_redemption
from qrorder.services.settlement import get_user_order

router = APIRouter(prefix="/api/v1/tokens", tags=["tokens"])


class RedeemIn(BaseModel):
    order_id: int
    token_type_id: str
    amount: int


class PreviewIn(BaseModel):
    token_type_id: str
    amount: int
    order_id: int | None = None
    order_total: Decimal | None = Field(default=None, ge=0)


class RefundIn(BaseModel):
    redemption_id: int
    reason: str | None = Field(default=None, max_length=255)


@router.get("/types")
async def list_token_types(db: AsyncSession = Depends(get_db)):
    rows = (await db.execute(
        select(TokenType).where(TokenType.is_active == True).order_by(TokenType.name.asc())  # noqa: E712
    )).scalars().all()
    return {"token_types": [token_type_out(t) for t in rows]}


@router.get("/balance")
async def my_balances(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return {"balances": await balance_service.get_balances(db, user.id)}


@router.get("/balance/{token_type_id}")
async def my_balance(token_type_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return {"token_type_id": token_type_id, "balance": await balance_service.get_balance(db, user.id, token_type_id)}


@router.get("/transactions")
async def my_transactions(
    token_type_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    rows, total = await ledger.list_transactions(db, user.id, token_type_id, limit, offset)
    return {
        "transactions": [transaction_out(tx) for tx in rows],
        "pagination": {"limit": limit, "offset": offset, "total": total},
    }


@router.post("/redeem/preview")
async def redeem_preview(payload: PreviewIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    if payload.order_id is not None:
        order = await get_user_order(db, user.id, payload.order_id)
        order_total = order.final_amount
    elif payload.order_total is not None:
        order_total = payload.order_total
    else:
        raise HTTPException(status_code=400, detail="order_id_or_total_required")

    preview = await preview_redemption(db, user.id, payload.token_type_id, payload.amount, order_total)
    preview["discount"] = money(preview["discount"])
    return preview


@router.post("/redeem")
async def redeem(payload: RedeemIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    redemption, order = await apply_redemption(db, user.id, payload.order_id, payload.token_type_id, payload.amount)
    return {
        "redemption": redemption_out(redemption),
        "order": order_out(order),
        "balance": await balance_service.compute_available(db, user.id, payload.token_type_id),
    }


@router.post("/refund")
async def refund(payload: RefundIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    redemption, new_balance = await refund_redemption(db, user.id, payload.redemption_id, payload.reason)
    return {
        "redemption": redemption_out(redemption),
        "amount": redemption.amount,
        "new_balance": new_balance,
    }
