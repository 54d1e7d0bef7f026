"""
Sandbox Pool Manager - 沙箱池管理器

统一管理远程沙箱会话的生命周期：
- 创建与登记（sandbox_id -> TrackedSandbox）
- 保活：定期探测存活并延长远程超时，探测到停止后自动取消
- 空闲清理：定期释放超过空闲阈值的沙箱
- 关闭清理：应用关闭或收到 SIGINT/SIGTERM 时释放全部沙箱

登记表的增删都在锁内完成；释放时先移出登记表再终止远程会话，
因此并发释放同一个沙箱只会触发一次终止。已释放的 sandbox_id 不会再被登记。
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import signal
from typing import TYPE_CHECKING, Any, ClassVar

from domains.execution.domain.policy import SandboxSecurityPolicy
from domains.execution.domain.types import utc_now
from domains.execution.infrastructure.sandbox.session import SandboxSession
from exceptions import ConflictError
from utils.logging import get_logger

if TYPE_CHECKING:
    from types import TracebackType

    from domains.execution.domain.interfaces import SandboxAuditSink, SandboxProvider

logger = get_logger(__name__)


class SandboxStatus(str, Enum):
    """沙箱状态"""

    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class PoolPolicy:
    """沙箱池策略配置"""

    # 空闲超时（秒）- 超过后由清理循环释放
    max_idle_seconds: float = 30 * 60

    # 清理循环间隔（秒）
    cleanup_interval_seconds: float = 5 * 60

    # 远程会话默认超时（秒）
    default_timeout_seconds: int = 30 * 60

    # 保活间隔（秒）
    keep_alive_interval_seconds: float = 4 * 60


@dataclass
class TrackedSandbox:
    """池中登记的沙箱"""

    sandbox_id: str
    session: SandboxSession
    purpose: str
    status: SandboxStatus = SandboxStatus.RUNNING
    created_at: datetime = field(default_factory=utc_now)
    last_used: datetime = field(default_factory=utc_now)
    keep_alive_task: asyncio.Task[None] | None = None

    def idle_seconds(self, now: datetime | None = None) -> float:
        return ((now or utc_now()) - self.last_used).total_seconds()


class SandboxPoolManager:
    """
    沙箱池管理器

    可以显式构造并注入（测试中每个用例独立一个池），
    也可以通过 get_instance() 使用进程级默认实例。
    """

    _instance: ClassVar[SandboxPoolManager | None] = None

    def __init__(
        self,
        provider: SandboxProvider,
        policy: PoolPolicy | None = None,
        default_security_policy: SandboxSecurityPolicy | None = None,
        *,
        organization_id: str = "default",
        credentials: str | None = None,
        template: str | None = None,
        audit_sink: SandboxAuditSink | None = None,
    ) -> None:
        """
        初始化沙箱池

        Args:
            provider: 远程沙箱提供方
            policy: 沙箱池策略
            default_security_policy: 创建沙箱时未指定策略则使用此策略
            organization_id: 默认组织 ID
            credentials: 默认提供方凭证
            template: 沙箱模板
            audit_sink: 沙箱审计日志落盘
        """
        self.provider = provider
        self.policy = policy or PoolPolicy()
        self.default_security_policy = default_security_policy or SandboxSecurityPolicy()
        self.organization_id = organization_id
        self.credentials = credentials
        self.template = template
        self.audit_sink = audit_sink

        self._sandboxes: dict[str, TrackedSandbox] = {}
        self._released_ids: set[str] = set()
        self._lock = asyncio.Lock()
        self._cleanup_task: asyncio.Task[None] | None = None
        self._running = False
        self._signal_task: asyncio.Task[int] | None = None
        self.shutdown_requested = asyncio.Event()

    @classmethod
    def get_instance(
        cls,
        provider: SandboxProvider | None = None,
        **kwargs: Any,
    ) -> SandboxPoolManager:
        """
        获取进程级默认实例

        Args:
            provider: 沙箱提供方（仅在首次创建时生效）
        """
        if cls._instance is None:
            if provider is None:
                raise RuntimeError("SandboxPoolManager not initialized. Pass a provider first.")
            cls._instance = cls(provider, **kwargs)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """重置默认实例（仅用于测试）"""
        cls._instance = None

    # =========================================================================
    # 生命周期
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """启动空闲清理循环"""
        if self._running:
            return

        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            "SandboxPoolManager started (max_idle=%ss, interval=%ss)",
            self.policy.max_idle_seconds,
            self.policy.cleanup_interval_seconds,
        )

    async def _stop_cleanup_loop(self) -> None:
        self._running = False
        task, self._cleanup_task = self._cleanup_task, None
        if task and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def stop(self) -> None:
        """停止清理循环并释放全部沙箱"""
        await self._stop_cleanup_loop()
        await self.cleanup_all_sandboxes()
        logger.info("SandboxPoolManager stopped")

    close = stop

    async def __aenter__(self) -> SandboxPoolManager:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """收到 SIGINT/SIGTERM 时释放全部沙箱（用于 CLI 入口）"""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                # Windows 事件循环不支持
                logger.debug("Signal handler for %s not supported on this loop", sig.name)

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s, cleaning up all sandboxes", sig.name)
        self.shutdown_requested.set()
        if self._signal_task is None or self._signal_task.done():
            self._signal_task = asyncio.create_task(self.cleanup_all_sandboxes())

    # =========================================================================
    # 创建与登记
    # =========================================================================

    async def create_sandbox(
        self,
        credentials: str | None = None,
        purpose: str = "default",
        timeout: int | None = None,
        security_policy: SandboxSecurityPolicy | None = None,
        organization_id: str | None = None,
    ) -> SandboxSession:
        """
        创建并登记新的沙箱会话

        Args:
            credentials: 提供方凭证
            purpose: 用途标签
            timeout: 远程会话超时（秒），默认 policy.default_timeout_seconds
            security_policy: 安全策略，默认使用池的默认策略
            organization_id: 组织 ID

        Raises:
            SandboxError: 创建或初始化失败
        """
        session = SandboxSession(
            self.provider,
            security_policy or self.default_security_policy,
            organization_id or self.organization_id,
            credentials=credentials or self.credentials,
            template=self.template,
            timeout_seconds=timeout or self.policy.default_timeout_seconds,
            metadata={"purpose": purpose},
            audit_sink=self.audit_sink,
        )
        await session.initialize()

        sandbox_id = session.sandbox_id or ""
        try:
            await self.track_sandbox(sandbox_id, session, purpose)
        except ConflictError:
            await session.cleanup()
            raise

        logger.info("Created sandbox %s (purpose=%s)", sandbox_id, purpose)
        return session

    acquire = create_sandbox

    async def track_sandbox(
        self,
        sandbox_id: str,
        session: SandboxSession,
        purpose: str = "external",
    ) -> TrackedSandbox:
        """登记外部创建的沙箱会话

        Raises:
            ConflictError: sandbox_id 已登记或已被释放过
        """
        async with self._lock:
            if sandbox_id in self._released_ids:
                raise ConflictError(
                    f"Sandbox id already released: {sandbox_id}", resource="sandbox"
                )
            if sandbox_id in self._sandboxes:
                raise ConflictError(f"Sandbox already tracked: {sandbox_id}", resource="sandbox")

            tracked = TrackedSandbox(sandbox_id=sandbox_id, session=session, purpose=purpose)
            self._sandboxes[sandbox_id] = tracked
            return tracked

    def get_sandbox(self, sandbox_id: str) -> SandboxSession | None:
        """获取沙箱会话"""
        tracked = self._sandboxes.get(sandbox_id)
        return tracked.session if tracked else None

    def get_tracked(self, sandbox_id: str) -> TrackedSandbox | None:
        """获取登记信息"""
        return self._sandboxes.get(sandbox_id)

    def update_last_used(self, sandbox_id: str) -> None:
        """更新最后使用时间"""
        tracked = self._sandboxes.get(sandbox_id)
        if tracked:
            tracked.last_used = utc_now()

    # =========================================================================
    # 存活探测与保活
    # =========================================================================

    async def is_sandbox_running(self, sandbox_id: str) -> bool:
        """探测沙箱是否存活

        探测为否时状态降为 stopped，探测异常时降为 error。
        """
        tracked = self._sandboxes.get(sandbox_id)
        if tracked is None:
            return False

        try:
            running = await tracked.session.is_running()
        except Exception as e:
            logger.warning("Liveness probe failed for sandbox %s: %s", sandbox_id, e)
            tracked.status = SandboxStatus.ERROR
            return False

        if not running:
            tracked.status = SandboxStatus.STOPPED
        return running

    async def setup_keep_alive(
        self,
        sandbox_id: str,
        interval: float | None = None,
        timeout: int | None = None,
    ) -> bool:
        """
        安装保活任务

        每个周期探测存活；存活时延长远程超时并刷新 last_used，
        首次探测到未运行时任务自行结束。已有保活任务会被替换。

        Returns:
            沙箱未登记时返回 False
        """
        tracked = self._sandboxes.get(sandbox_id)
        if tracked is None:
            return False

        self.cancel_keep_alive(sandbox_id)
        tracked.keep_alive_task = asyncio.create_task(
            self._keep_alive_loop(
                sandbox_id,
                interval or self.policy.keep_alive_interval_seconds,
                timeout or self.policy.default_timeout_seconds,
            )
        )
        logger.debug("Keep-alive installed for sandbox %s", sandbox_id)
        return True

    def cancel_keep_alive(self, sandbox_id: str) -> None:
        """取消保活任务（重复调用无副作用）"""
        tracked = self._sandboxes.get(sandbox_id)
        if tracked is not None:
            _cancel_task(tracked)

    async def _keep_alive_loop(self, sandbox_id: str, interval: float, timeout: int) -> None:
        while True:
            await asyncio.sleep(interval)
            tracked = self._sandboxes.get(sandbox_id)
            if tracked is None:
                return

            if not await self.is_sandbox_running(sandbox_id):
                logger.info("Sandbox %s no longer running, keep-alive cancelled", sandbox_id)
                tracked.keep_alive_task = None
                return

            try:
                await tracked.session.set_timeout(timeout)
                tracked.last_used = utc_now()
            except Exception as e:
                logger.warning("Keep-alive failed for sandbox %s: %s", sandbox_id, e)

    # =========================================================================
    # 释放与清理
    # =========================================================================

    async def release_sandbox(self, sandbox_id: str) -> bool:
        """
        释放沙箱

        先移出登记表再终止远程会话，终止失败只记录日志，不会留下僵尸条目。

        Returns:
            未登记的 sandbox_id 返回 False
        """
        async with self._lock:
            tracked = self._sandboxes.pop(sandbox_id, None)
            if tracked is None:
                return False
            self._released_ids.add(sandbox_id)

        _cancel_task(tracked)
        try:
            await tracked.session.terminate()
        except Exception as e:
            logger.warning("Error terminating sandbox %s: %s", sandbox_id, e)

        logger.info(
            "Released sandbox %s (purpose=%s, lifetime=%s)",
            sandbox_id,
            tracked.purpose,
            utc_now() - tracked.created_at,
        )
        return True

    async def cleanup_idle_sandboxes(self) -> int:
        """释放空闲时间超过阈值的沙箱"""
        now = utc_now()
        idle_ids = [
            sandbox_id
            for sandbox_id, tracked in list(self._sandboxes.items())
            if tracked.idle_seconds(now) > self.policy.max_idle_seconds
        ]

        released = 0
        for sandbox_id in idle_ids:
            try:
                if await self.release_sandbox(sandbox_id):
                    released += 1
            except Exception as e:
                logger.error("Failed to release idle sandbox %s: %s", sandbox_id, e)

        if released:
            logger.info("Cleaned up %d idle sandboxes", released)
        return released

    async def cleanup_all_sandboxes(self) -> int:
        """释放全部沙箱（关闭时调用）"""
        await self._stop_cleanup_loop()

        sandbox_ids = list(self._sandboxes.keys())
        results = await asyncio.gather(
            *(self.release_sandbox(sandbox_id) for sandbox_id in sandbox_ids),
            return_exceptions=True,
        )
        for sandbox_id, result in zip(sandbox_ids, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Failed to release sandbox %s during shutdown: %s", sandbox_id, result
                )

        if sandbox_ids:
            logger.info("Cleaned up all sandboxes (%d)", len(sandbox_ids))
        return len(sandbox_ids)

    async def _cleanup_loop(self) -> None:
        """空闲清理循环"""
        while self._running:
            try:
                await asyncio.sleep(self.policy.cleanup_interval_seconds)
                await self.cleanup_idle_sandboxes()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Sandbox cleanup loop error: %s", e)

    # =========================================================================
    # 统计与监控
    # =========================================================================

    def get_stats(self) -> dict[str, Any]:
        """获取统计信息"""
        status_counts = {status.value: 0 for status in SandboxStatus}
        by_purpose: dict[str, int] = {}
        for tracked in list(self._sandboxes.values()):
            status_counts[tracked.status.value] += 1
            by_purpose[tracked.purpose] = by_purpose.get(tracked.purpose, 0) + 1

        return {
            "total_sandboxes": len(self._sandboxes),
            **status_counts,
            "by_purpose": by_purpose,
        }


def _cancel_task(tracked: TrackedSandbox) -> None:
    task, tracked.keep_alive_task = tracked.keep_alive_task, None
    if task is not None and not task.done() and task is not asyncio.current_task():
        task.cancel()
