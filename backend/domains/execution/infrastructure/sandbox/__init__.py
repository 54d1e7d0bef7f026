"""
Sandbox - 远程沙箱

- session: 单个沙箱会话（安全策略校验、审计、命令/浏览器/文件操作）
- pool_manager: 沙箱池（跟踪、保活、空闲回收、统一清理）
- providers/: E2B 与 Docker 提供方
"""

from domains.execution.infrastructure.sandbox.pool_manager import (
    PoolPolicy,
    SandboxPoolManager,
    SandboxStatus,
    TrackedSandbox,
)
from domains.execution.infrastructure.sandbox.session import SandboxSession

__all__ = [
    "PoolPolicy",
    "SandboxPoolManager",
    "SandboxSession",
    "SandboxStatus",
    "TrackedSandbox",
]
