"""
E2B Sandbox Provider 单元测试

AsyncSandbox 通过 mock 模拟，不访问 E2B 服务
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from e2b import TimeoutException
import pytest

from domains.execution.domain.policy import SandboxSecurityPolicy
from domains.execution.infrastructure.sandbox.providers.e2b_provider import (
    E2BSandboxHandle,
    E2BSandboxProvider,
)
from exceptions import ExternalServiceError

ASYNC_SANDBOX = "domains.execution.infrastructure.sandbox.providers.e2b_provider.AsyncSandbox"


def _mock_sandbox(sandbox_id: str = "e2b-123") -> MagicMock:
    sandbox = MagicMock()
    sandbox.sandbox_id = sandbox_id
    sandbox.commands.run = AsyncMock()
    sandbox.run_code = AsyncMock()
    sandbox.files.write = AsyncMock()
    sandbox.files.read = AsyncMock(return_value="content")
    sandbox.files.list = AsyncMock(return_value=[])
    sandbox.files.remove = AsyncMock()
    sandbox.set_timeout = AsyncMock()
    sandbox.is_running = AsyncMock(return_value=True)
    sandbox.kill = AsyncMock()
    return sandbox


def _execution(stdout: list[str], error=None) -> SimpleNamespace:
    return SimpleNamespace(logs=SimpleNamespace(stdout=stdout, stderr=[]), error=error)


class TestE2BProvider:
    """测试沙箱创建"""

    @pytest.mark.asyncio
    async def test_create_passes_options(self):
        """测试创建参数"""
        provider = E2BSandboxProvider(api_key="default-key", template="browser-tpl")
        sandbox = _mock_sandbox()
        with patch(ASYNC_SANDBOX) as sandbox_cls:
            sandbox_cls.create = AsyncMock(return_value=sandbox)
            handle = await provider.create(
                SandboxSecurityPolicy(), 600, metadata={"purpose": "test"}
            )

        assert handle.sandbox_id == "e2b-123"
        kwargs = sandbox_cls.create.await_args.kwargs
        assert kwargs["timeout"] == 600
        assert kwargs["api_key"] == "default-key"
        assert kwargs["template"] == "browser-tpl"
        assert kwargs["metadata"] == {"purpose": "test"}

    @pytest.mark.asyncio
    async def test_credentials_override_api_key(self):
        """测试调用方凭证优先"""
        provider = E2BSandboxProvider(api_key="default-key")
        with patch(ASYNC_SANDBOX) as sandbox_cls:
            sandbox_cls.create = AsyncMock(return_value=_mock_sandbox())
            await provider.create(SandboxSecurityPolicy(), 60, credentials="caller-key")

        kwargs = sandbox_cls.create.await_args.kwargs
        assert kwargs["api_key"] == "caller-key"
        assert "template" not in kwargs
        # 没有白名单时不限制出网
        assert "network" not in kwargs

    @pytest.mark.asyncio
    async def test_allowed_hosts_restrict_egress(self):
        """测试出网白名单转换为 network 参数"""
        provider = E2BSandboxProvider(api_key="key")
        policy = SandboxSecurityPolicy(allowed_hosts=("api.example.com", "*.example.org"))
        with patch(ASYNC_SANDBOX) as sandbox_cls:
            sandbox_cls.create = AsyncMock(return_value=_mock_sandbox())
            await provider.create(policy, 60)

        assert sandbox_cls.create.await_args.kwargs["network"] == {
            "allow_out": ["api.example.com", "*.example.org"],
            "deny_out": ["0.0.0.0/0"],
        }

    @pytest.mark.asyncio
    async def test_create_failure(self):
        """测试创建失败转换为 ExternalServiceError"""
        provider = E2BSandboxProvider(api_key="key")
        with patch(ASYNC_SANDBOX) as sandbox_cls:
            sandbox_cls.create = AsyncMock(side_effect=RuntimeError("quota exceeded"))
            with pytest.raises(ExternalServiceError, match="quota exceeded"):
                await provider.create(SandboxSecurityPolicy(), 60)


class TestE2BHandle:
    """测试沙箱句柄"""

    @pytest.mark.asyncio
    async def test_run_command(self):
        """测试命令执行"""
        sandbox = _mock_sandbox()
        sandbox.commands.run.return_value = SimpleNamespace(
            stdout="ok", stderr="", exit_code=0, error=None
        )
        handle = E2BSandboxHandle(sandbox)
        on_stdout = MagicMock()

        output = await handle.run_command("ls", timeout=10, on_stdout=on_stdout)

        assert output.stdout == "ok"
        assert output.exit_code == 0
        assert sandbox.commands.run.await_args.kwargs["on_stdout"] is on_stdout

    @pytest.mark.asyncio
    async def test_run_command_timeout(self):
        """测试超时通过 error 返回"""
        sandbox = _mock_sandbox()
        sandbox.commands.run.side_effect = TimeoutException("deadline")
        handle = E2BSandboxHandle(sandbox)

        output = await handle.run_command("sleep 100", timeout=5)

        assert output.exit_code == -1
        assert output.error == "Execution timed out after 5 seconds"

    @pytest.mark.asyncio
    async def test_browser_action_passes_params(self):
        """测试浏览器操作参数传入内核"""
        sandbox = _mock_sandbox()
        sandbox.run_code.return_value = _execution(
            [json.dumps({"url": "https://example.com", "title": "Example"}) + "\n"]
        )
        handle = E2BSandboxHandle(sandbox)

        data = await handle.browser_action("navigate", {"url": "https://example.com"})

        assert data == {"url": "https://example.com", "title": "Example"}
        code = sandbox.run_code.await_args.args[0]
        assert code.startswith("_params = json.loads(")
        assert "_page.goto" in code

    @pytest.mark.asyncio
    async def test_kernel_error(self):
        """测试内核执行错误"""
        sandbox = _mock_sandbox()
        sandbox.run_code.return_value = _execution(
            [], error=SimpleNamespace(name="TimeoutError", value="page load timeout")
        )
        handle = E2BSandboxHandle(sandbox)

        with pytest.raises(ExternalServiceError, match="TimeoutError: page load timeout"):
            await handle.browser_action("click", {"selector": "#go"})

    @pytest.mark.asyncio
    async def test_unsupported_browser_action(self):
        """测试不支持的浏览器操作"""
        handle = E2BSandboxHandle(_mock_sandbox())

        with pytest.raises(ValueError):
            await handle.browser_action("scroll", {})

    @pytest.mark.asyncio
    async def test_file_operations(self):
        """测试文件操作"""
        sandbox = _mock_sandbox()
        sandbox.files.list.return_value = [
            SimpleNamespace(name="data", path="/workspace/data", type="dir")
        ]
        handle = E2BSandboxHandle(sandbox)

        written = await handle.file_op("write", {"path": "/workspace/a.txt", "content": "x"})
        read = await handle.file_op("read", {"path": "/workspace/a.txt"})
        listed = await handle.file_op("list", {})

        sandbox.files.write.assert_awaited_once_with("/workspace/a.txt", "x")
        assert written == {"path": "/workspace/a.txt", "written": True}
        assert read["content"] == "content"
        assert listed["path"] == "/workspace"
        assert listed["entries"] == [{"name": "data", "path": "/workspace/data", "type": "dir"}]

    @pytest.mark.asyncio
    async def test_lifecycle_delegates(self):
        """测试生命周期方法委托给 AsyncSandbox"""
        sandbox = _mock_sandbox()
        handle = E2BSandboxHandle(sandbox)

        await handle.set_timeout(300)
        assert await handle.is_running() is True
        await handle.kill()

        sandbox.set_timeout.assert_awaited_once_with(300)
        sandbox.kill.assert_awaited_once()
