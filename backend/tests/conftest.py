"""
Pytest Configuration - 测试配置

提供测试所需的 fixtures
"""

from collections.abc import AsyncGenerator

from fastapi import FastAPI
import pytest
import pytest_asyncio

from domains.execution.application.engine import ExecutionEngine
from domains.execution.domain.policy import ResourceLimits, SandboxSecurityPolicy
from domains.execution.infrastructure.memory.execution_store import InMemoryExecutionStore
from domains.execution.infrastructure.sandbox.pool_manager import PoolPolicy, SandboxPoolManager
from domains.execution.infrastructure.tools.builtin import register_sandbox_tools
from domains.execution.infrastructure.tools.registry import ToolRegistry
from tests.mocks.sandbox_mock import FakeSandboxProvider


def pytest_configure(config):
    """注册自定义标记"""
    config.addinivalue_line("markers", "integration: 集成测试")


@pytest.fixture
def security_policy() -> SandboxSecurityPolicy:
    """测试用安全策略"""
    return SandboxSecurityPolicy(
        allowed_hosts=("example.com", "*.example.org"),
        allowed_commands=("ls *", "echo *", "python *", "pwd"),
        resource_limits=ResourceLimits(cpu_limit=1.0, memory_mb=256, timeout_sec=30),
    )


@pytest.fixture
def fake_provider() -> FakeSandboxProvider:
    """内存沙箱提供方"""
    return FakeSandboxProvider()


@pytest.fixture
def memory_store() -> InMemoryExecutionStore:
    """内存执行记录存储"""
    return InMemoryExecutionStore()


@pytest_asyncio.fixture
async def sandbox_pool(
    fake_provider: FakeSandboxProvider,
    security_policy: SandboxSecurityPolicy,
    memory_store: InMemoryExecutionStore,
) -> AsyncGenerator[SandboxPoolManager, None]:
    """沙箱池（未启动清理循环）"""
    SandboxPoolManager.reset_instance()
    pool = SandboxPoolManager(
        fake_provider,
        PoolPolicy(
            max_idle_seconds=60,
            cleanup_interval_seconds=60,
            default_timeout_seconds=120,
            keep_alive_interval_seconds=60,
        ),
        security_policy,
        organization_id="org-test",
        audit_sink=memory_store,
    )
    yield pool
    await pool.stop()
    SandboxPoolManager.reset_instance()


@pytest.fixture
def tool_registry() -> ToolRegistry:
    """带内置沙箱工具的注册表"""
    registry = ToolRegistry()
    register_sandbox_tools(registry)
    return registry


@pytest.fixture
def engine(
    tool_registry: ToolRegistry,
    memory_store: InMemoryExecutionStore,
    sandbox_pool: SandboxPoolManager,
) -> ExecutionEngine:
    """顺序执行的引擎"""
    return ExecutionEngine(tool_registry, memory_store, sandbox_pool)


@pytest.fixture
def test_app(
    fake_provider: FakeSandboxProvider,
    memory_store: InMemoryExecutionStore,
) -> FastAPI:
    """使用 Fake 沙箱与内存存储的应用实例"""
    # 延迟导入，避免在收集阶段创建默认应用时读取外部配置
    from bootstrap.main import create_app  # pylint: disable=import-outside-toplevel

    return create_app(sandbox_provider=fake_provider, memory_store=memory_store)
