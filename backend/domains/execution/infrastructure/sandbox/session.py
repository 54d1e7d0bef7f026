"""
Sandbox Session - 沙箱会话

单个远程隔离环境的封装，所有操作都受安全策略约束：
- 命令执行（白名单检查，不通过时不发起远程调用）
- 浏览器自动化（首次使用时启动浏览器，navigate 检查出网白名单）
- 文件操作
- 审计日志（每个操作都会记录，无论成功与否）
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, ClassVar
from urllib.parse import urlparse

from domains.execution.domain.types import AuditEntry, SandboxExecutionResult, utc_now
from exceptions import PolicyViolationError, SandboxError
from utils.logging import get_logger

if TYPE_CHECKING:
    from types import TracebackType

    from domains.execution.domain.interfaces import (
        SandboxAuditSink,
        SandboxHandle,
        SandboxProvider,
    )
    from domains.execution.domain.policy import SandboxSecurityPolicy

logger = get_logger(__name__)

# 输出监听：(文本片段, 是否为 stderr)
OutputListener = Callable[[str, bool], Any]


@dataclass
class CommandRecord:
    """命令执行记录"""

    command: str
    success: bool
    exit_code: int | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=utc_now)


class SandboxSession:
    """沙箱会话"""

    WORKSPACE_DIR: ClassVar[str] = "/workspace"
    SETUP_COMMANDS: ClassVar[tuple[str, ...]] = (
        "mkdir -p /workspace/data",
        "mkdir -p /workspace/tools",
    )
    README_CONTENT: ClassVar[str] = (
        "# Sandbox Workspace\n\n"
        "- data/: input and output files\n"
        "- tools/: helper scripts\n"
    )
    BROWSER_ACTIONS: ClassVar[frozenset[str]] = frozenset({"navigate", "click", "type", "extract"})
    FILE_ACTIONS: ClassVar[frozenset[str]] = frozenset({"write", "read", "list", "remove"})

    def __init__(
        self,
        provider: SandboxProvider,
        policy: SandboxSecurityPolicy,
        organization_id: str,
        *,
        credentials: str | None = None,
        template: str | None = None,
        timeout_seconds: int | None = None,
        metadata: dict[str, str] | None = None,
        audit_sink: SandboxAuditSink | None = None,
        output_listener: OutputListener | None = None,
    ) -> None:
        self.provider = provider
        self.policy = policy
        self.organization_id = organization_id
        self.credentials = credentials
        self.template = template
        # 远程会话超时，默认取安全策略的 timeout_sec
        self.timeout_seconds = timeout_seconds or policy.resource_limits.timeout_sec
        self.metadata = metadata or {}
        self.audit_sink = audit_sink
        self.output_listener = output_listener

        self._handle: SandboxHandle | None = None
        self._browser_launched = False
        self._audit_log: list[AuditEntry] = []
        self._history: list[CommandRecord] = []

    # =========================================================================
    # 属性
    # =========================================================================

    @property
    def sandbox_id(self) -> str | None:
        return self._handle.sandbox_id if self._handle else None

    @property
    def is_initialized(self) -> bool:
        return self._handle is not None

    @property
    def audit_log(self) -> list[AuditEntry]:
        return list(self._audit_log)

    def get_execution_history(self) -> list[CommandRecord]:
        """获取命令执行历史"""
        return list(self._history)

    def _require_handle(self) -> SandboxHandle:
        if self._handle is None:
            raise SandboxError("Sandbox session not initialized")
        return self._handle

    # =========================================================================
    # 生命周期
    # =========================================================================

    async def initialize(self) -> None:
        """创建远程环境并完成一次性初始化

        已初始化时直接返回。

        Raises:
            SandboxError: 创建或初始化失败
        """
        if self._handle is not None:
            logger.debug("Sandbox %s already initialized", self._handle.sandbox_id)
            return

        limits = self.policy.resource_limits
        try:
            handle = await self.provider.create(
                self.policy,
                self.timeout_seconds,
                credentials=self.credentials,
                template=self.template,
                metadata={"organization_id": self.organization_id, **self.metadata},
            )
        except Exception as e:
            await self._audit("initialize", False, str(e))
            raise SandboxError(f"Failed to create sandbox: {e}") from e

        try:
            await self._setup_environment(handle)
        except Exception as e:
            await self._audit("initialize", False, str(e))
            try:
                await handle.kill()
            except Exception as kill_error:
                logger.warning(
                    "Failed to kill partially initialized sandbox %s: %s",
                    handle.sandbox_id,
                    kill_error,
                )
            if isinstance(e, SandboxError):
                raise
            raise SandboxError(
                f"Failed to initialize sandbox: {e}", sandbox_id=handle.sandbox_id
            ) from e

        self._handle = handle
        await self._audit("initialize", True, f"sandbox={handle.sandbox_id}")
        logger.info(
            "Sandbox %s initialized for organization %s (cpu=%s, memory=%sMB, timeout=%ss)",
            handle.sandbox_id,
            self.organization_id,
            limits.cpu_limit,
            limits.memory_mb,
            limits.timeout_sec,
        )

    async def _setup_environment(self, handle: SandboxHandle) -> None:
        """工作区初始化，直接在句柄上执行，不经过命令白名单"""
        for command in self.SETUP_COMMANDS:
            output = await handle.run_command(command, timeout=60)
            if output.error or output.exit_code != 0:
                raise SandboxError(
                    f"Setup command failed: {command}: {output.error or output.stderr}",
                    sandbox_id=handle.sandbox_id,
                )
        await handle.file_op(
            "write",
            {"path": f"{self.WORKSPACE_DIR}/README.md", "content": self.README_CONTENT},
        )

    async def set_timeout(self, seconds: int) -> None:
        """延长远程会话超时"""
        await self._require_handle().set_timeout(seconds)

    async def is_running(self) -> bool:
        """探测远程会话是否存活"""
        if self._handle is None:
            return False
        return await self._handle.is_running()

    async def terminate(self) -> None:
        """终止远程会话，错误向上抛出（由沙箱池记录）"""
        handle = self._handle
        if handle is None:
            return
        try:
            await handle.kill()
        except Exception as e:
            await self._audit("cleanup", False, str(e))
            raise
        else:
            await self._audit("cleanup", True, f"sandbox={handle.sandbox_id}")
        finally:
            self._handle = None
            self._browser_launched = False

    async def cleanup(self) -> None:
        """释放远程会话，未初始化或部分初始化时也可安全调用"""
        try:
            await self.terminate()
        except Exception as e:
            logger.warning("Error cleaning up sandbox session: %s", e)

    async def __aenter__(self) -> SandboxSession:
        await self.initialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.cleanup()

    # =========================================================================
    # 命令执行
    # =========================================================================

    async def execute_command(self, command: str) -> SandboxExecutionResult:
        """执行命令

        不在白名单内的命令直接返回失败，不发起远程调用。
        """
        handle = self._require_handle()

        if not self.policy.is_command_allowed(command):
            violation = PolicyViolationError(
                f"Command not allowed: {command}", rule="allowed_commands", value=command
            )
            logger.warning("Rejected command in sandbox %s: %s", handle.sandbox_id, command)
            await self._audit(command, False, violation.message)
            self._history.append(
                CommandRecord(command=command, success=False, error=violation.message)
            )
            return SandboxExecutionResult.failure(violation.message)

        try:
            output = await handle.run_command(
                command,
                timeout=self.policy.resource_limits.timeout_sec,
                on_stdout=lambda chunk: self._emit(chunk, False),
                on_stderr=lambda chunk: self._emit(chunk, True),
            )
        except Exception as e:
            logger.warning("Command failed in sandbox %s: %s", handle.sandbox_id, e)
            error = str(e) or type(e).__name__
            await self._audit(command, False, error)
            self._history.append(CommandRecord(command=command, success=False, error=error))
            return SandboxExecutionResult.failure(error)

        success = output.error is None and output.exit_code == 0
        error = output.error or (output.stderr if not success else None) or None
        if not success and error is None:
            error = f"Command exited with code {output.exit_code}"

        result = SandboxExecutionResult(
            success=success,
            output=output.stdout,
            error=error,
            exit_code=output.exit_code,
        )
        await self._audit(command, success, error if not success else None)
        self._history.append(
            CommandRecord(
                command=command,
                success=success,
                exit_code=output.exit_code,
                error=result.error,
            )
        )
        return result

    def _emit(self, chunk: str, is_error: bool) -> None:
        if self.output_listener is not None:
            try:
                self.output_listener(chunk, is_error)
            except Exception as e:
                logger.warning("Output listener failed: %s", e)
            return
        logger.debug("[%s] %s%s", self.sandbox_id, "stderr: " if is_error else "", chunk.rstrip())

    # =========================================================================
    # 浏览器自动化
    # =========================================================================

    async def execute_browser_action(
        self,
        action: str,
        params: dict[str, Any] | None = None,
    ) -> SandboxExecutionResult:
        """执行浏览器操作 (navigate/click/type/extract)"""
        handle = self._require_handle()
        params = dict(params or {})
        operation = f"browser.{action}"

        if action not in self.BROWSER_ACTIONS:
            error = f"Unsupported browser action: {action}"
            await self._audit(operation, False, error)
            return SandboxExecutionResult.failure(error)

        if action == "navigate":
            url = params.get("url")
            if not url:
                error = "URL is required for navigate"
                await self._audit(operation, False, error)
                return SandboxExecutionResult.failure(error)
            if not self.policy.is_url_allowed(url):
                host = urlparse(url).hostname or url
                violation = PolicyViolationError(
                    f"Host not allowed: {host}", rule="allowed_hosts", value=host
                )
                await self._audit(operation, False, violation.message)
                return SandboxExecutionResult.failure(violation.message)

        try:
            if not self._browser_launched:
                await handle.launch_browser()
                self._browser_launched = True
            data = await handle.browser_action(action, params)
        except Exception as e:
            logger.warning(
                "Browser action %s failed in sandbox %s: %s", action, handle.sandbox_id, e
            )
            await self._audit(operation, False, str(e))
            return SandboxExecutionResult.failure(str(e))

        await self._audit(operation, True, params.get("url") or params.get("selector"))
        return SandboxExecutionResult(success=True, data=data)

    # =========================================================================
    # 文件操作
    # =========================================================================

    async def execute_file_operation(
        self,
        action: str,
        params: dict[str, Any] | None = None,
    ) -> SandboxExecutionResult:
        """执行文件操作 (write/read/list/remove)"""
        handle = self._require_handle()
        params = dict(params or {})
        operation = f"filesystem.{action}"

        if action not in self.FILE_ACTIONS:
            error = f"Unsupported file operation: {action}"
            await self._audit(operation, False, error)
            return SandboxExecutionResult.failure(error)

        try:
            data = await handle.file_op(action, params)
        except Exception as e:
            logger.warning(
                "File operation %s failed in sandbox %s: %s", action, handle.sandbox_id, e
            )
            await self._audit(operation, False, str(e))
            return SandboxExecutionResult.failure(str(e))

        await self._audit(operation, True, params.get("path"))
        output = data.get("content", "") if action == "read" else ""
        return SandboxExecutionResult(success=True, output=output, data=data)

    # =========================================================================
    # 审计
    # =========================================================================

    async def _audit(self, operation: str, success: bool, detail: str | None = None) -> None:
        entry = AuditEntry(operation=operation, success=success, detail=detail)
        self._audit_log.append(entry)
        if self.audit_sink is None:
            return
        try:
            await self.audit_sink.record_operation(self.organization_id, self.sandbox_id, entry)
        except Exception as e:
            logger.warning("Failed to record sandbox audit entry %s: %s", operation, e)
