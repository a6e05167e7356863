from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from qrorder.core.settings import settings
from qrorder.models.admin import Admin
from qrorder.models.tokens import TokenType
from qrorder.services.security import hash_password

DEFAULT_TOKEN_TYPES = (
    ("reward_tokens", "Reward Tokens", "RWD", "Tokens earned from orders and activities"),
    ("cashback_tokens", "Cashback Tokens", "CB", "Percentage back tokens on purchases"),
    ("loyalty_tokens", "Loyalty Tokens", "LOY", "Tokens for frequent customers"),
    ("referral_tokens", "Referral Tokens", "REF", "Tokens earned from successful referrals"),
)


async def ensure_default_token_types(db: AsyncSession) -> None:
    # 新用户奖励依赖 reward_tokens，缺了就补上
    for token_type_id, name, symbol, description in DEFAULT_TOKEN_TYPES:
        row = (await db.execute(select(TokenType).where(TokenType.id == token_type_id))).scalar_one_or_none()
        if not row:
            db.add(TokenType(id=token_type_id, name=name, symbol=symbol, description=description, is_active=True))


async def ensure_default_admin(db: AsyncSession) -> None:
    admin = (await db.execute(select(Admin).where(Admin.username == settings.DEFAULT_ADMIN_USERNAME))).scalar_one_or_none()
    if admin:
        return
    db.add(Admin(username=settings.DEFAULT_ADMIN_USERNAME, password_hash=hash_password(settings.DEFAULT_ADMIN_PASSWORD)))
