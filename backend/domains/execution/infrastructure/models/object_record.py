"""
Object Record Model - 通用对象存储模型

执行上下文与沙箱审计日志都以 JSON 数据的形式存放在 objects 表中，
通过 object_type 区分类型，reference_id 保存业务 ID（如执行 ID）。
"""

from typing import Any

from sqlalchemy import JSON, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from shared.infrastructure.orm.base import BaseModel

# PostgreSQL 使用 JSONB，其它数据库（测试用 SQLite）使用 JSON
JSONType = JSON().with_variant(JSONB(), "postgresql")

OBJECT_TYPE_EXECUTION = "agent_execution"
OBJECT_TYPE_SANDBOX_AUDIT = "sandbox_operation"


class ObjectRecord(BaseModel):
    """通用对象记录"""

    __tablename__ = "objects"

    object_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
    )
    owner_organization_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    reference_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        index=True,
        comment="业务 ID，如执行 ID 或沙箱 ID",
    )
    data: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        default=dict,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ObjectRecord(type={self.object_type}, reference={self.reference_id})>"
