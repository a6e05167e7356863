from __future__ import annotations

from collections import Counter

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from qrorder.models.merchant import Merchant, Product
from qrorder.services.errors import NotFoundError, ValidationError


async def get_merchant(db: AsyncSession, merchant_id: int) -> Merchant:
    merchant = (await db.execute(select(Merchant).where(Merchant.id == merchant_id))).scalar_one_or_none()
    if not merchant or not merchant.is_active:
        raise NotFoundError("merchant_not_found", merchant_id=merchant_id)
    return merchant


async def get_merchant_products(db: AsyncSession, merchant_id: int, product_ids: list[int]) -> dict[int, Product]:
    """一次取出订单里的商品，全部必须属于该商户且在售。"""
    wanted = set(product_ids)
    rows = (await db.execute(
        select(Product).where(Product.id.in_(wanted), Product.merchant_id == merchant_id)
    )).scalars().all()
    products = {p.id: p for p in rows if p.is_available}
    missing = sorted(wanted - set(products))
    if missing:
        raise ValidationError("products_unavailable", product_ids=missing)
    return products


def merge_line_items(items: list[tuple[int, int]]) -> list[tuple[int, int]]:
    counts: Counter[int] = Counter()
    for product_id, quantity in items:
        if quantity <= 0:
            raise ValidationError("invalid_quantity", product_id=product_id)
        counts[product_id] += quantity
    return list(counts.items())
