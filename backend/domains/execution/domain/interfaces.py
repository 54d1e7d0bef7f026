"""
Execution Interfaces - 执行领域外部协作方接口

定义执行引擎依赖的抽象接口：
- ExecutionMemoryStore: 执行记录存储
- SandboxAuditSink: 沙箱审计日志落盘
- SandboxProvider / SandboxHandle: 远程沙箱提供方
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from domains.execution.domain.policy import SandboxSecurityPolicy
from domains.execution.domain.types import AuditEntry, CommandOutput, ExecutionContext

# 输出流回调：接收一段 stdout/stderr 文本
OutputCallback = Callable[[str], Any]


class ExecutionMemoryStore(ABC):
    """执行记录存储接口"""

    @abstractmethod
    async def store_execution(self, context: ExecutionContext) -> None:
        """保存一次运行的执行上下文"""
        ...

    @abstractmethod
    async def retrieve_execution(self, execution_id: str) -> ExecutionContext | None:
        """按执行 ID 读取执行上下文"""
        ...


class SandboxAuditSink(ABC):
    """沙箱审计日志接口"""

    @abstractmethod
    async def record_operation(
        self,
        organization_id: str,
        sandbox_id: str | None,
        entry: AuditEntry,
    ) -> None:
        """记录一次沙箱操作"""
        ...


class SandboxHandle(ABC):
    """远程沙箱句柄

    由 SandboxProvider 创建，封装单个远程隔离环境。
    """

    @property
    @abstractmethod
    def sandbox_id(self) -> str:
        """沙箱 ID"""
        ...

    @abstractmethod
    async def run_command(
        self,
        command: str,
        *,
        timeout: float | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> CommandOutput:
        """执行命令

        非零退出码通过 CommandOutput.exit_code 返回，超时通过 error 返回，不抛异常。
        """
        ...

    @abstractmethod
    async def launch_browser(self) -> None:
        """启动浏览器实例"""
        ...

    @abstractmethod
    async def browser_action(self, action: str, params: dict[str, Any]) -> dict[str, Any]:
        """执行浏览器操作 (navigate/click/type/extract)"""
        ...

    @abstractmethod
    async def file_op(self, action: str, params: dict[str, Any]) -> dict[str, Any]:
        """执行文件操作 (write/read/list/remove)"""
        ...

    @abstractmethod
    async def set_timeout(self, seconds: int) -> None:
        """延长远程会话超时"""
        ...

    @abstractmethod
    async def is_running(self) -> bool:
        """探测远程会话是否存活"""
        ...

    @abstractmethod
    async def kill(self) -> None:
        """终止远程会话"""
        ...


class SandboxProvider(ABC):
    """远程沙箱提供方"""

    name: str = "sandbox"

    @abstractmethod
    async def create(
        self,
        policy: SandboxSecurityPolicy,
        timeout_seconds: int,
        *,
        credentials: str | None = None,
        template: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> SandboxHandle:
        """创建新的沙箱"""
        ...

    @abstractmethod
    async def connect(self, sandbox_id: str, *, credentials: str | None = None) -> SandboxHandle:
        """连接到已存在的沙箱"""
        ...
