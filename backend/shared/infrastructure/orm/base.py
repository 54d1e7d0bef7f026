"""
Base Model - 持久化模型基类

主键使用通用 Uuid 类型（PostgreSQL 原生 UUID，SQLite CHAR(32)），
时间戳同时设置 Python 默认值与数据库默认值。
"""

from datetime import UTC, datetime
import uuid

from sqlalchemy import DateTime, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from shared.infrastructure.db.database import Base


def _utc_now() -> datetime:
    return datetime.now(UTC)


class BaseModel(Base):
    """模型基类：UUID 主键 + 创建/更新时间"""

    __abstract__ = True

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        server_default=func.now(),
        onupdate=_utc_now,
        nullable=False,
    )
