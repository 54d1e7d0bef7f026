"""
Docker Sandbox Provider 单元测试

docker 命令通过 mock _run_docker 模拟，不依赖本地 Docker
"""

from unittest.mock import AsyncMock, patch

import pytest

from domains.execution.domain.policy import ResourceLimits, SandboxSecurityPolicy
from domains.execution.infrastructure.sandbox.providers.docker_provider import (
    CONTAINER_PREFIX,
    SANDBOX_USER,
    DockerSandboxHandle,
    DockerSandboxProvider,
    build_firewall_script,
)
from exceptions import ExternalServiceError, SandboxError

RUN_DOCKER = "domains.execution.infrastructure.sandbox.providers.docker_provider._run_docker"


class TestBuildRunCommand:
    """测试 docker run 参数构建"""

    def test_resource_limits_without_allowed_hosts(self):
        """测试资源限制，无白名单时不限制出网"""
        provider = DockerSandboxProvider(image="python:3.11-slim")
        policy = SandboxSecurityPolicy(
            resource_limits=ResourceLimits(cpu_limit=0.5, memory_mb=256, timeout_sec=60)
        )

        args = provider.build_run_command("sandbox-abc", policy, {"purpose": "test"})

        assert args[:4] == ["run", "-d", "--name", "sandbox-abc"]
        assert args[args.index("--memory") + 1] == "256m"
        assert args[args.index("--cpus") + 1] == "0.5"
        assert "--network" not in args
        assert "--cap-add" not in args
        assert args[args.index("--label") + 1] == "purpose=test"
        assert args[-4:] == ["python:3.11-slim", "tail", "-f", "/dev/null"]

    def test_net_admin_with_allowed_hosts(self):
        """测试有出网白名单时授予 NET_ADMIN 以安装防火墙"""
        provider = DockerSandboxProvider()
        policy = SandboxSecurityPolicy(allowed_hosts=("example.com",))

        args = provider.build_run_command("sandbox-abc", policy)

        assert "--network" not in args
        assert args[args.index("--cap-add") + 1] == "NET_ADMIN"

    def test_image_override(self):
        """测试指定镜像"""
        provider = DockerSandboxProvider(image="python:3.11-slim")

        args = provider.build_run_command(
            "sandbox-abc", SandboxSecurityPolicy(), image="node:20-slim"
        )

        assert "node:20-slim" in args
        assert "python:3.11-slim" not in args


class TestFirewallScript:
    """测试出网防火墙脚本"""

    def test_allowed_hosts_resolved(self):
        """测试白名单主机解析后放行，其余丢弃"""
        script = build_firewall_script(("api.example.com", "*.example.org"))

        assert "getent ahostsv4 api.example.com" in script
        assert "getent ahostsv4 example.org" in script
        assert "*.example.org" not in script
        assert "iptables -A OUTPUT -p udp --dport 53 -j ACCEPT" in script
        assert script.splitlines()[0] == "set -e"
        assert script.splitlines()[-1] == "iptables -P OUTPUT DROP"

    def test_host_quoted(self):
        """测试主机名被 shell 转义"""
        script = build_firewall_script(("bad host;rm -rf /",))

        assert "getent ahostsv4 'bad host;rm -rf /'" in script


class TestDockerProvider:
    """测试容器创建"""

    @pytest.mark.asyncio
    async def test_create(self):
        """测试创建容器"""
        provider = DockerSandboxProvider()
        with patch(RUN_DOCKER, new=AsyncMock(return_value=(0, "cid", "", None))) as run:
            handle = await provider.create(SandboxSecurityPolicy(), 60)

        assert handle.sandbox_id.startswith(CONTAINER_PREFIX)
        assert run.await_args.args[0][0] == "run"

    @pytest.mark.asyncio
    async def test_create_failure(self):
        """测试创建失败"""
        provider = DockerSandboxProvider()
        with (
            patch(RUN_DOCKER, new=AsyncMock(return_value=(125, "", "no such image", None))),
            pytest.raises(ExternalServiceError, match="no such image"),
        ):
            await provider.create(SandboxSecurityPolicy(), 60)

    @pytest.mark.asyncio
    async def test_create_restricts_egress(self):
        """测试有白名单时安装防火墙并切换到非 root 用户"""
        provider = DockerSandboxProvider()
        policy = SandboxSecurityPolicy(allowed_hosts=("api.example.com",))
        run = AsyncMock(return_value=(0, "", "", None))

        with patch(RUN_DOCKER, new=run):
            handle = await provider.create(policy, 60)
            await handle.run_command("ls")

        calls = [call.args[0] for call in run.await_args_list]
        assert calls[0][0] == "run"
        assert "NET_ADMIN" in calls[0]
        firewall = calls[1]
        assert firewall[firewall.index("-u") + 1] == "root"
        assert "getent ahostsv4 api.example.com" in firewall[-1]
        assert "chown -R" in calls[2][-1]
        assert handle.user == SANDBOX_USER
        assert calls[3][calls[3].index("-u") + 1] == SANDBOX_USER

    @pytest.mark.asyncio
    async def test_create_without_hosts_skips_firewall(self):
        """测试无白名单时不安装防火墙"""
        provider = DockerSandboxProvider()
        run = AsyncMock(return_value=(0, "", "", None))

        with patch(RUN_DOCKER, new=run):
            handle = await provider.create(SandboxSecurityPolicy(), 60)

        assert run.await_count == 1
        assert handle.user is None

    @pytest.mark.asyncio
    async def test_firewall_failure_removes_container(self):
        """测试防火墙安装失败时删除容器并抛出"""
        provider = DockerSandboxProvider()
        policy = SandboxSecurityPolicy(allowed_hosts=("api.example.com",))
        run = AsyncMock(
            side_effect=[
                (0, "cid", "", None),
                (127, "", "iptables: not found", None),
                (0, "", "", None),
            ]
        )

        with (
            patch(RUN_DOCKER, new=run),
            pytest.raises(ExternalServiceError, match="iptables: not found"),
        ):
            await provider.create(policy, 60)

        assert run.await_args.args[0][:2] == ["rm", "-f"]


class TestDockerHandle:
    """测试容器句柄"""

    @pytest.fixture
    def handle(self):
        return DockerSandboxHandle("sandbox-test", timeout_seconds=600)

    @pytest.mark.asyncio
    async def test_run_command(self, handle):
        """测试命令输出转发"""
        chunks = []
        with patch(RUN_DOCKER, new=AsyncMock(return_value=(0, "hello\n", "", None))) as run:
            output = await handle.run_command("echo hello", on_stdout=chunks.append)

        assert output.stdout == "hello"
        assert output.exit_code == 0
        assert chunks == ["hello\n"]
        args = run.await_args.args[0]
        assert args[0] == "exec"
        assert args[-3:] == ["sh", "-c", "echo hello"]

    @pytest.mark.asyncio
    async def test_run_command_timeout(self, handle):
        """测试超时通过 error 返回"""
        with patch(
            RUN_DOCKER,
            new=AsyncMock(return_value=(-1, "", "", "Execution timed out after 5 seconds")),
        ):
            output = await handle.run_command("python slow.py", timeout=5)

        assert output.error == "Execution timed out after 5 seconds"

    @pytest.mark.asyncio
    async def test_timeout_enforced_in_container(self, handle):
        """测试超时由容器内的 timeout 命令强制执行"""
        with patch(RUN_DOCKER, new=AsyncMock(return_value=(124, "", "", None))) as run:
            output = await handle.run_command("python slow.py", timeout=5)

        args = run.await_args.args[0]
        assert args[-7:] == ["timeout", "-k", "5", "5", "sh", "-c", "python slow.py"]
        assert run.await_args.kwargs["timeout"] > 5
        assert output.exit_code == 124
        assert output.error == "Execution timed out after 5 seconds"

    @pytest.mark.asyncio
    async def test_browser_unsupported(self, handle):
        """测试不支持浏览器"""
        with pytest.raises(SandboxError, match="not supported"):
            await handle.launch_browser()

    @pytest.mark.asyncio
    async def test_file_list(self, handle):
        """测试列目录解析"""
        with patch(RUN_DOCKER, new=AsyncMock(return_value=(0, "data/\nREADME.md\n", "", None))):
            result = await handle.file_op("list", {"path": "/workspace"})

        assert result["entries"] == [
            {"name": "data", "path": "/workspace/data", "type": "dir"},
            {"name": "README.md", "path": "/workspace/README.md", "type": "file"},
        ]

    @pytest.mark.asyncio
    async def test_file_write_uses_stdin(self, handle):
        """测试写文件内容通过标准输入传递"""
        with patch(RUN_DOCKER, new=AsyncMock(return_value=(0, "", "", None))) as run:
            await handle.file_op("write", {"path": "/workspace/a b.txt", "content": "x"})

        assert run.await_args.kwargs["input_text"] == "x"
        script = run.await_args.args[0][-1]
        assert "'/workspace/a b.txt'" in script
        assert script.startswith('mkdir -p "$(dirname ')

    @pytest.mark.asyncio
    async def test_file_read_failure(self, handle):
        """测试读文件失败"""
        with (
            patch(RUN_DOCKER, new=AsyncMock(return_value=(1, "", "No such file", None))),
            pytest.raises(ExternalServiceError, match="No such file"),
        ):
            await handle.file_op("read", {"path": "/nope"})

    @pytest.mark.asyncio
    async def test_is_running(self, handle):
        """测试存活探测"""
        with patch(RUN_DOCKER, new=AsyncMock(return_value=(0, "true\n", "", None))):
            assert await handle.is_running() is True
        with patch(RUN_DOCKER, new=AsyncMock(return_value=(0, "false\n", "", None))):
            assert await handle.is_running() is False

    @pytest.mark.asyncio
    async def test_expired_deadline_not_running(self, handle):
        """测试超过截止时间视为停止"""
        handle.deadline = 0.0
        with patch(RUN_DOCKER, new=AsyncMock()) as run:
            assert await handle.is_running() is False
        run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_kill_missing_container_ok(self, handle):
        """测试删除不存在的容器不报错"""
        with patch(
            RUN_DOCKER, new=AsyncMock(return_value=(1, "", "Error: No such container", None))
        ):
            await handle.kill()

    @pytest.mark.asyncio
    async def test_kill_failure(self, handle):
        """测试删除失败"""
        with (
            patch(RUN_DOCKER, new=AsyncMock(return_value=(1, "", "daemon down", None))),
            pytest.raises(ExternalServiceError),
        ):
            await handle.kill()
