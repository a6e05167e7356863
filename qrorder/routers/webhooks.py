from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from qrorder.core.settings import settings
from qrorder.db import get_db
from qrorder.services.payments import verify_stripe_signature
from qrorder.services import settlement

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.info("stripe webhook received but not configured")
        return {"received": True, "message": "test_mode"}

    # 验签
    if not stripe_signature:
        raise HTTPException(status_code=400, detail="missing_signature")
    raw_body = await request.body()
    if not verify_stripe_signature(
        raw_body, stripe_signature, settings.STRIPE_WEBHOOK_SECRET, settings.WEBHOOK_TOLERANCE_SECONDS
    ):
        logger.error("stripe webhook signature verification failed")
        raise HTTPException(status_code=400, detail="invalid_signature")

    event = json.loads(raw_body)
    event_type = event.get("type")
    intent = event.get("data", {}).get("object", {})
    order_id = (intent.get("metadata") or {}).get("order_id")
    logger.info("stripe webhook %s for order %s", event_type, order_id)

    if not order_id:
        return {"received": True, "result": "ignored"}

    if event_type == "payment_intent.succeeded":
        result = await settlement.handle_payment_succeeded(db, int(order_id), intent.get("id"))
    elif event_type == "payment_intent.payment_failed":
        reason = (intent.get("last_payment_error") or {}).get("message")
        result = await settlement.handle_payment_failed(db, int(order_id), reason)
    elif event_type == "payment_intent.canceled":
        result = await settlement.handle_payment_canceled(db, int(order_id))
    else:
        result = "ignored"
    return {"received": True, "result": result}
