"""
Docker Sandbox Provider - 本地 Docker 沙箱

每个沙箱对应一个常驻容器（tail -f /dev/null），命令与文件操作通过 docker exec 执行。

特点：
- 资源限制通过 --memory / --cpus 设置
- 安全策略列出允许的主机时以 NET_ADMIN 启动，创建后安装 iptables 出网白名单，
  之后命令以非 root 用户执行；镜像需要提供 iptables 与 getent，否则创建失败
- 没有列出允许的主机时不限制出网
- 命令超时由容器内的 timeout 强制执行
- 不支持浏览器自动化
- 输出在命令结束后一次性回调，不是实时流
"""

from __future__ import annotations

import asyncio
import shlex
import subprocess
import time
from typing import TYPE_CHECKING, Any
import uuid

from domains.execution.domain.interfaces import SandboxHandle, SandboxProvider
from domains.execution.domain.types import CommandOutput
from exceptions import ExternalServiceError, SandboxError
from utils.logging import get_logger

if TYPE_CHECKING:
    from domains.execution.domain.interfaces import OutputCallback
    from domains.execution.domain.policy import SandboxSecurityPolicy

logger = get_logger(__name__)

# 容器名称前缀，用于识别和清理
CONTAINER_PREFIX = "sandbox-"

# 出网受限时执行命令的用户（nobody），没有 NET_ADMIN 权限，无法修改防火墙
SANDBOX_USER = "65534:65534"

# coreutils timeout 超时退出码，以及 TERM 之后再发送 KILL 的等待秒数
TIMEOUT_EXIT_CODE = 124
KILL_GRACE_SECONDS = 5


def build_firewall_script(allowed_hosts: tuple[str, ...]) -> str:
    """构建出网白名单的 iptables 脚本

    放行回环、已建立连接、DNS 以及白名单主机解析出的 IPv4 地址，其余出站流量丢弃。
    "*.example.com" 只能放行 example.com 本身解析出的地址。
    """
    lines = [
        "set -e",
        "iptables -A OUTPUT -o lo -j ACCEPT",
        "iptables -A OUTPUT -m conntrack --ctstate ESTABLISHED,RELATED -j ACCEPT",
        "iptables -A OUTPUT -p udp --dport 53 -j ACCEPT",
        "iptables -A OUTPUT -p tcp --dport 53 -j ACCEPT",
    ]
    for host in allowed_hosts:
        name = shlex.quote(host[2:] if host.startswith("*.") else host)
        lines.append(
            f"for ip in $(getent ahostsv4 {name} | awk '{{print $1}}' | sort -u); do "
            f'iptables -A OUTPUT -d "$ip" -j ACCEPT; done'
        )
    lines.append("iptables -P OUTPUT DROP")
    return "\n".join(lines)


async def _run_docker(
    args: list[str],
    *,
    input_text: str | None = None,
    timeout: float | None = None,
) -> tuple[int, str, str, str | None]:
    """在线程中执行 docker 命令，返回 (returncode, stdout, stderr, error)"""

    def run() -> tuple[int, str, str, str | None]:
        try:
            result = subprocess.run(
                ["docker", *args],
                input=input_text,
                capture_output=True,
                timeout=timeout,
                text=True,
                encoding="utf-8",
                errors="replace",  # 替换无法解码的字符，避免崩溃
                check=False,
            )
            return (result.returncode, result.stdout, result.stderr, None)
        except subprocess.TimeoutExpired:
            return (-1, "", "", f"Execution timed out after {timeout} seconds")
        except OSError as e:
            return (-1, "", "", str(e))

    return await asyncio.to_thread(run)


class DockerSandboxHandle(SandboxHandle):
    """Docker 容器句柄"""

    def __init__(
        self,
        container_name: str,
        workspace: str = "/workspace",
        timeout_seconds: int | None = None,
        user: str | None = None,
    ) -> None:
        self.container_name = container_name
        self.workspace = workspace
        # docker exec -u，None 表示镜像默认用户
        self.user = user
        self.deadline: float | None = (
            time.monotonic() + timeout_seconds if timeout_seconds else None
        )

    @property
    def sandbox_id(self) -> str:
        return self.container_name

    async def _exec(
        self,
        command: str,
        *,
        input_text: str | None = None,
        timeout: float | None = None,
        user: str | None = None,
    ) -> tuple[int, str, str, str | None]:
        args = ["exec"]
        if input_text is not None:
            args.append("-i")
        exec_user = user or self.user
        if exec_user:
            args.extend(["-u", exec_user, "-e", f"HOME={self.workspace}"])
        args.extend(
            [
                "-w",
                self.workspace,
                "-e",
                "LANG=C.UTF-8",
                "-e",
                "LC_ALL=C.UTF-8",
                self.container_name,
            ]
        )
        local_timeout = None
        if timeout:
            # 超时在容器内由 timeout 强制执行，本地超时只作为兜底
            args.extend(["timeout", "-k", str(KILL_GRACE_SECONDS), f"{timeout:g}"])
            local_timeout = timeout + KILL_GRACE_SECONDS + 5
        args.extend(["sh", "-c", command])
        return await _run_docker(args, input_text=input_text, timeout=local_timeout)

    async def restrict_egress(self, allowed_hosts: tuple[str, ...]) -> None:
        """安装出网防火墙，之后命令以非 root 用户执行

        Raises:
            ExternalServiceError: 镜像缺少 iptables 或规则安装失败
        """
        returncode, _, stderr, error = await self._exec(
            build_firewall_script(allowed_hosts), user="root", timeout=120
        )
        if error or returncode != 0:
            raise ExternalServiceError(
                "docker", f"Failed to apply egress firewall: {error or stderr.strip()}"
            )

        workspace = shlex.quote(self.workspace)
        returncode, _, stderr, error = await self._exec(
            f"mkdir -p {workspace} && chown -R {SANDBOX_USER} {workspace}", user="root"
        )
        if error or returncode != 0:
            raise ExternalServiceError(
                "docker", f"Failed to prepare workspace: {error or stderr.strip()}"
            )
        self.user = SANDBOX_USER
        logger.info(
            "Egress restricted for sandbox %s: %s", self.container_name, list(allowed_hosts)
        )

    async def run_command(
        self,
        command: str,
        *,
        timeout: float | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> CommandOutput:
        returncode, stdout, stderr, error = await self._exec(command, timeout=timeout)
        if timeout and error is None and returncode == TIMEOUT_EXIT_CODE:
            error = f"Execution timed out after {timeout:g} seconds"
        if stdout and on_stdout:
            on_stdout(stdout)
        if stderr and on_stderr:
            on_stderr(stderr)
        return CommandOutput(
            stdout=stdout.strip(),
            stderr=stderr.strip(),
            exit_code=returncode,
            error=error,
        )

    async def launch_browser(self) -> None:
        raise SandboxError(
            "Browser automation is not supported by the docker sandbox provider",
            sandbox_id=self.sandbox_id,
        )

    async def browser_action(self, action: str, params: dict[str, Any]) -> dict[str, Any]:
        raise SandboxError(
            "Browser automation is not supported by the docker sandbox provider",
            sandbox_id=self.sandbox_id,
        )

    async def file_op(self, action: str, params: dict[str, Any]) -> dict[str, Any]:
        path = params.get("path") or (self.workspace if action == "list" else None)
        if not path:
            raise ValueError(f"path is required for file operation: {action}")
        quoted = shlex.quote(path)

        if action == "write":
            returncode, _, stderr, error = await self._exec(
                f'mkdir -p "$(dirname {quoted})" && cat > {quoted}',
                input_text=params.get("content", ""),
            )
            result: dict[str, Any] = {"path": path, "written": True}
        elif action == "read":
            returncode, stdout, stderr, error = await self._exec(f"cat {quoted}")
            result = {"path": path, "content": stdout}
        elif action == "list":
            returncode, stdout, stderr, error = await self._exec(f"ls -1Ap {quoted}")
            entries = [
                {
                    "name": line.rstrip("/"),
                    "path": f"{path.rstrip('/')}/{line.rstrip('/')}",
                    "type": "dir" if line.endswith("/") else "file",
                }
                for line in stdout.splitlines()
                if line
            ]
            result = {"path": path, "entries": entries}
        elif action == "remove":
            returncode, _, stderr, error = await self._exec(f"rm -rf {quoted}")
            result = {"path": path, "removed": True}
        else:
            raise ValueError(f"Unsupported file operation: {action}")

        if error or returncode != 0:
            raise ExternalServiceError("docker", error or stderr.strip() or f"{action} failed")
        return result

    async def set_timeout(self, seconds: int) -> None:
        # 容器本身没有超时，记录截止时间供 is_running 判断
        self.deadline = time.monotonic() + seconds

    async def is_running(self) -> bool:
        if self.deadline is not None and time.monotonic() > self.deadline:
            return False
        returncode, stdout, _, error = await _run_docker(
            ["inspect", "-f", "{{.State.Running}}", self.container_name],
            timeout=30,
        )
        return error is None and returncode == 0 and stdout.strip() == "true"

    async def kill(self) -> None:
        returncode, _, stderr, error = await _run_docker(
            ["rm", "-f", self.container_name],
            timeout=60,
        )
        if error or (returncode != 0 and "No such container" not in stderr):
            raise ExternalServiceError(
                "docker", f"Failed to remove container {self.container_name}: {error or stderr}"
            )
        logger.info("Removed sandbox container: %s", self.container_name)


class DockerSandboxProvider(SandboxProvider):
    """Docker 沙箱提供方"""

    name = "docker"

    def __init__(
        self,
        image: str = "python:3.11-slim",
        workspace: str = "/workspace",
    ) -> None:
        self.image = image
        self.workspace = workspace

    def build_run_command(
        self,
        container_name: str,
        policy: SandboxSecurityPolicy,
        metadata: dict[str, str] | None = None,
        image: str | None = None,
    ) -> list[str]:
        """构建 docker run 参数"""
        limits = policy.resource_limits
        args = [
            "run",
            "-d",  # 后台运行
            "--name",
            container_name,
            "--memory",
            f"{limits.memory_mb}m",
            "--cpus",
            str(limits.cpu_limit),
            "-e",
            "LANG=C.UTF-8",
            "-e",
            "LC_ALL=C.UTF-8",
        ]
        # 出网白名单需要在容器内安装防火墙规则
        if policy.allowed_hosts:
            args.extend(["--cap-add", "NET_ADMIN"])
        for key, value in (metadata or {}).items():
            args.extend(["--label", f"{key}={value}"])
        args.extend(["-w", self.workspace, image or self.image, "tail", "-f", "/dev/null"])
        return args

    async def create(
        self,
        policy: SandboxSecurityPolicy,
        timeout_seconds: int,
        *,
        credentials: str | None = None,
        template: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> SandboxHandle:
        container_name = f"{CONTAINER_PREFIX}{uuid.uuid4().hex[:12]}"
        # template 指定镜像
        args = self.build_run_command(container_name, policy, metadata, image=template)

        logger.info("Starting sandbox container: %s", container_name)
        returncode, _, stderr, error = await _run_docker(args, timeout=300)
        if error or returncode != 0:
            logger.error("Failed to start sandbox container: %s", error or stderr)
            raise ExternalServiceError(
                "docker", f"Failed to start sandbox container: {error or stderr.strip()}"
            )

        handle = DockerSandboxHandle(container_name, self.workspace, timeout_seconds)
        if policy.allowed_hosts:
            try:
                await handle.restrict_egress(policy.allowed_hosts)
            except ExternalServiceError:
                # 防火墙未生效的容器不能交给调用方
                try:
                    await handle.kill()
                except ExternalServiceError as kill_error:
                    logger.warning(
                        "Failed to remove unrestricted container %s: %s",
                        container_name,
                        kill_error,
                    )
                raise
        return handle

    async def connect(self, sandbox_id: str, *, credentials: str | None = None) -> SandboxHandle:
        handle = DockerSandboxHandle(sandbox_id, self.workspace)
        if not await handle.is_running():
            raise SandboxError(
                f"Sandbox container not running: {sandbox_id}", sandbox_id=sandbox_id
            )
        return handle
