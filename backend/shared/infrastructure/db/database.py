"""
Database Connection Management

使用 SQLAlchemy 2.0 异步模式
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from bootstrap.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy 模型基类"""

    pass


# 全局引擎和会话工厂
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_db(database_url: str | None = None) -> None:
    """初始化数据库连接

    Args:
        database_url: 数据库地址，默认使用 settings.database_url
    """
    global _engine, _session_factory

    url = database_url or settings.database_url
    engine_kwargs: dict[str, Any] = {"echo": settings.database_echo}
    # SQLite（测试环境）不支持连接池参数
    if not url.startswith("sqlite"):
        engine_kwargs.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
        )

    _engine = create_async_engine(url, **engine_kwargs)

    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def close_db() -> None:
    """关闭数据库连接"""
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_engine() -> AsyncEngine:
    """获取数据库引擎"""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """获取会话工厂"""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """
    获取数据库会话上下文管理器

    用于非 FastAPI 依赖注入的场景（执行记录存储、脚本等）
    """
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            try:
                await session.commit()
            except sa_exc.PendingRollbackError as e:
                await session.rollback()
                if e.__cause__ is not None:
                    raise e.__cause__ from None  # pylint: disable=raising-non-exception
                raise
        except Exception:
            await session.rollback()
            raise


async def create_tables() -> None:
    """创建所有表 (仅用于开发/测试)"""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

