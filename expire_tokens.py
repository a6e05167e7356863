"""过期代币清理，可以放进 cron 按任意频率运行，重复运行无副作用。"""
import asyncio
import logging

from qrorder.db import AsyncSessionLocal, init_db
from qrorder.services.expiry import sweep_expired_tokens

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


async def main() -> int:
    await init_db()
    async with AsyncSessionLocal() as session:
        try:
            processed = await sweep_expired_tokens(session)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    return processed


if __name__ == "__main__":
    print(f"expired lots processed: {asyncio.run(main())}")
