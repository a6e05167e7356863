from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from qrorder.core.settings import settings


class Base(DeclarativeBase):
    pass


def install_sqlite_pragmas(async_engine: AsyncEngine) -> None:
    """sqlite 下由我们自己发 BEGIN IMMEDIATE，SAVEPOINT 和整体回滚才可靠。"""
    if async_engine.dialect.name != "sqlite":
        return
    file_backed = async_engine.url.database not in (None, "", ":memory:")

    @event.listens_for(async_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON;")
        # sqlite 性能小优化
        if file_backed:
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.close()
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _on_begin(conn):
        # IMMEDIATE：事务一开始就拿写锁，并发写入按事务串行，读到的余额不会过期
        conn.exec_driver_sql("BEGIN IMMEDIATE")


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    future=True,
)
install_sqlite_pragmas(engine)

AsyncSessionLocal = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


async def get_db() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        try:
            yield session
            # 业务逻辑没有抛出异常才提交
            await session.commit()
        except Exception:
            # 任何异常都整体回滚，账本不会留下半截写入
            await session.rollback()
            raise


async def create_tables(bind_engine: AsyncEngine | None = None) -> None:
    from qrorder.models import all_models  # noqa: F401

    async with (bind_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    """启动时自动建表，并写入默认代币类型/管理员。"""
    from qrorder.services.bootstrap_defaults import ensure_default_token_types, ensure_default_admin

    await create_tables()

    async with AsyncSessionLocal() as session:
        await ensure_default_token_types(session)
        await ensure_default_admin(session)
        await session.commit()
