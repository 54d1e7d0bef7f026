"""
Sandbox Factory - 根据配置创建沙箱提供方与沙箱池
"""

from typing import TYPE_CHECKING

from domains.execution.domain.policy import ResourceLimits, SandboxSecurityPolicy
from domains.execution.infrastructure.sandbox.pool_manager import PoolPolicy, SandboxPoolManager
from domains.execution.infrastructure.sandbox.providers.docker_provider import (
    DockerSandboxProvider,
)
from domains.execution.infrastructure.sandbox.providers.e2b_provider import E2BSandboxProvider

if TYPE_CHECKING:
    from bootstrap.config import Settings
    from domains.execution.domain.interfaces import SandboxAuditSink, SandboxProvider


def create_sandbox_provider(settings: "Settings") -> "SandboxProvider":
    """按 settings.sandbox_provider 创建提供方"""
    if settings.sandbox_provider == "docker":
        return DockerSandboxProvider(image=settings.docker_image)

    api_key = settings.e2b_api_key.get_secret_value() if settings.e2b_api_key else None
    return E2BSandboxProvider(api_key=api_key, template=settings.e2b_template)


def default_security_policy(settings: "Settings") -> SandboxSecurityPolicy:
    """配置中的默认安全策略"""
    return SandboxSecurityPolicy(
        allowed_hosts=tuple(settings.sandbox_allowed_hosts),
        allowed_commands=tuple(settings.sandbox_allowed_commands),
        resource_limits=ResourceLimits(
            cpu_limit=settings.sandbox_cpu_limit,
            memory_mb=settings.sandbox_memory_mb,
            timeout_sec=settings.sandbox_timeout_sec,
        ),
    )


def create_sandbox_pool(
    settings: "Settings",
    provider: "SandboxProvider | None" = None,
    audit_sink: "SandboxAuditSink | None" = None,
) -> SandboxPoolManager:
    """根据配置创建沙箱池"""
    return SandboxPoolManager(
        provider or create_sandbox_provider(settings),
        PoolPolicy(
            max_idle_seconds=settings.pool_max_idle_seconds,
            cleanup_interval_seconds=settings.pool_cleanup_interval_seconds,
            default_timeout_seconds=settings.pool_default_timeout_seconds,
            keep_alive_interval_seconds=settings.pool_keep_alive_interval_seconds,
        ),
        default_security_policy(settings),
        template=settings.e2b_template if settings.sandbox_provider == "e2b" else None,
        audit_sink=audit_sink,
    )
