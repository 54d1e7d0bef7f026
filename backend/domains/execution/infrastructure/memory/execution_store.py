"""
Execution Store - 执行记录存储

实现 ExecutionMemoryStore 与 SandboxAuditSink：
- SqlAlchemyExecutionStore: 写入 objects 表
- InMemoryExecutionStore: 进程内存（开发/测试）

同一个执行 ID 重复保存时覆盖旧记录。
"""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from domains.execution.domain.interfaces import ExecutionMemoryStore, SandboxAuditSink
from domains.execution.domain.types import AuditEntry, ExecutionContext
from domains.execution.infrastructure.models.object_record import (
    OBJECT_TYPE_EXECUTION,
    OBJECT_TYPE_SANDBOX_AUDIT,
    ObjectRecord,
)
from shared.infrastructure.db.database import get_session_context
from utils.logging import get_logger

logger = get_logger(__name__)

SessionProvider = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class SqlAlchemyExecutionStore(ExecutionMemoryStore, SandboxAuditSink):
    """基于 SQLAlchemy 的执行记录存储

    Args:
        session_provider: 返回会话上下文管理器的函数，默认使用 get_session_context
    """

    def __init__(self, session_provider: SessionProvider | None = None) -> None:
        self._session_provider = session_provider or get_session_context

    async def store_execution(self, context: ExecutionContext) -> None:
        data = context.model_dump(mode="json")
        async with self._session_provider() as db:
            result = await db.execute(
                select(ObjectRecord).where(
                    ObjectRecord.object_type == OBJECT_TYPE_EXECUTION,
                    ObjectRecord.reference_id == context.id,
                )
            )
            record = result.scalar_one_or_none()
            if record is None:
                record = ObjectRecord(
                    object_type=OBJECT_TYPE_EXECUTION,
                    owner_organization_id=context.organization_id,
                    reference_id=context.id,
                    data=data,
                )
                db.add(record)
            else:
                record.data = data
            await db.flush()
        logger.debug("Stored execution %s (status=%s)", context.id, context.status.value)

    async def retrieve_execution(self, execution_id: str) -> ExecutionContext | None:
        async with self._session_provider() as db:
            result = await db.execute(
                select(ObjectRecord).where(
                    ObjectRecord.object_type == OBJECT_TYPE_EXECUTION,
                    ObjectRecord.reference_id == execution_id,
                )
            )
            record = result.scalar_one_or_none()
            if record is None:
                return None
            return ExecutionContext.model_validate(record.data)

    async def record_operation(
        self,
        organization_id: str,
        sandbox_id: str | None,
        entry: AuditEntry,
    ) -> None:
        async with self._session_provider() as db:
            db.add(
                ObjectRecord(
                    object_type=OBJECT_TYPE_SANDBOX_AUDIT,
                    owner_organization_id=organization_id,
                    reference_id=sandbox_id,
                    data=entry.model_dump(mode="json"),
                )
            )
            await db.flush()

    async def list_operations(self, sandbox_id: str) -> list[AuditEntry]:
        """按沙箱 ID 读取审计日志"""
        async with self._session_provider() as db:
            result = await db.execute(
                select(ObjectRecord)
                .where(
                    ObjectRecord.object_type == OBJECT_TYPE_SANDBOX_AUDIT,
                    ObjectRecord.reference_id == sandbox_id,
                )
                .order_by(ObjectRecord.created_at)
            )
            return [AuditEntry.model_validate(record.data) for record in result.scalars().all()]


class InMemoryExecutionStore(ExecutionMemoryStore, SandboxAuditSink):
    """内存执行记录存储"""

    def __init__(self) -> None:
        self._executions: dict[str, dict] = {}
        self._operations: list[tuple[str, str | None, AuditEntry]] = []

    async def store_execution(self, context: ExecutionContext) -> None:
        # 保存快照，调用方后续修改上下文不影响已存记录
        self._executions[context.id] = context.model_dump(mode="json")

    async def retrieve_execution(self, execution_id: str) -> ExecutionContext | None:
        data = self._executions.get(execution_id)
        return ExecutionContext.model_validate(data) if data is not None else None

    async def record_operation(
        self,
        organization_id: str,
        sandbox_id: str | None,
        entry: AuditEntry,
    ) -> None:
        self._operations.append((organization_id, sandbox_id, entry))

    async def list_operations(self, sandbox_id: str) -> list[AuditEntry]:
        return [entry for _, sid, entry in self._operations if sid == sandbox_id]
