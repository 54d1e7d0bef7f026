"""
E2B Sandbox Provider - E2B 远程沙箱

基于 e2b-code-interpreter 的 AsyncSandbox：
- 命令: sandbox.commands.run，stdout/stderr 流式回调
- 文件: sandbox.files
- 浏览器: 在沙箱的 Python 内核中运行 Playwright，页面对象在多次调用间保持
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from e2b import CommandExitException, TimeoutException
from e2b_code_interpreter import AsyncSandbox

from domains.execution.domain.interfaces import SandboxHandle, SandboxProvider
from domains.execution.domain.types import CommandOutput
from exceptions import ExternalServiceError
from utils.logging import get_logger

if TYPE_CHECKING:
    from domains.execution.domain.interfaces import OutputCallback
    from domains.execution.domain.policy import SandboxSecurityPolicy

logger = get_logger(__name__)

# 所有 IPv4 流量，等同 SDK 的 ALL_TRAFFIC
ALL_TRAFFIC = "0.0.0.0/0"

_PLAYWRIGHT_INSTALL = (
    "python -c 'import playwright' 2>/dev/null || "
    "(pip install -q playwright && python -m playwright install --with-deps chromium)"
)

_BROWSER_LAUNCH_CODE = """
import json
from playwright.async_api import async_playwright

_pw = await async_playwright().start()
_browser = await _pw.chromium.launch()
_page = await _browser.new_page()
print(json.dumps({"launched": True}))
"""

_BROWSER_ACTION_CODE: dict[str, str] = {
    "navigate": """
await _page.goto(_params["url"], wait_until="domcontentloaded")
print(json.dumps({"url": _page.url, "title": await _page.title()}))
""",
    "click": """
await _page.click(_params["selector"])
print(json.dumps({"clicked": _params["selector"], "url": _page.url}))
""",
    "type": """
await _page.fill(_params["selector"], _params.get("value", ""))
print(json.dumps({"typed": _params["selector"]}))
""",
    "extract": """
if _params.get("selector"):
    _content = await _page.inner_text(_params["selector"])
else:
    _content = await _page.inner_text("body")
print(json.dumps({"url": _page.url, "content": _content}))
""",
}


class E2BSandboxHandle(SandboxHandle):
    """E2B 沙箱句柄"""

    def __init__(self, sandbox: AsyncSandbox) -> None:
        self._sandbox = sandbox

    @property
    def sandbox_id(self) -> str:
        return self._sandbox.sandbox_id

    async def run_command(
        self,
        command: str,
        *,
        timeout: float | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> CommandOutput:
        try:
            result = await self._sandbox.commands.run(
                command,
                timeout=timeout,
                on_stdout=on_stdout,
                on_stderr=on_stderr,
            )
        except CommandExitException as e:
            # 非零退出码
            return CommandOutput(stdout=e.stdout, stderr=e.stderr, exit_code=e.exit_code)
        except TimeoutException:
            return CommandOutput(
                exit_code=-1,
                error=f"Execution timed out after {timeout} seconds",
            )
        return CommandOutput(
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            error=result.error,
        )

    async def _run_kernel(self, code: str) -> dict[str, Any]:
        execution = await self._sandbox.run_code(code)
        if execution.error:
            raise ExternalServiceError(
                "e2b",
                f"{execution.error.name}: {execution.error.value}",
            )
        stdout = "".join(execution.logs.stdout).strip()
        if not stdout:
            return {}
        return json.loads(stdout.splitlines()[-1])

    async def launch_browser(self) -> None:
        install = await self.run_command(_PLAYWRIGHT_INSTALL, timeout=600)
        if install.exit_code != 0 or install.error:
            raise ExternalServiceError(
                "e2b", f"Failed to install browser: {install.error or install.stderr}"
            )
        await self._run_kernel(_BROWSER_LAUNCH_CODE)
        logger.debug("Browser launched in sandbox %s", self.sandbox_id)

    async def browser_action(self, action: str, params: dict[str, Any]) -> dict[str, Any]:
        template = _BROWSER_ACTION_CODE.get(action)
        if template is None:
            raise ValueError(f"Unsupported browser action: {action}")
        # json.dumps 的输出同时是合法的 Python 字符串字面量
        code = f"_params = json.loads({json.dumps(json.dumps(params))})\n{template}"
        return await self._run_kernel(code)

    async def file_op(self, action: str, params: dict[str, Any]) -> dict[str, Any]:
        path = params.get("path")
        files = self._sandbox.files

        if action == "list":
            target = path or "/workspace"
            entries = await files.list(target)
            return {
                "path": target,
                "entries": [
                    {
                        "name": entry.name,
                        "path": entry.path,
                        "type": getattr(entry.type, "value", entry.type),
                    }
                    for entry in entries
                ],
            }

        if not path:
            raise ValueError(f"path is required for file operation: {action}")

        if action == "write":
            await files.write(path, params.get("content", ""))
            return {"path": path, "written": True}
        if action == "read":
            return {"path": path, "content": await files.read(path)}
        if action == "remove":
            await files.remove(path)
            return {"path": path, "removed": True}
        raise ValueError(f"Unsupported file operation: {action}")

    async def set_timeout(self, seconds: int) -> None:
        await self._sandbox.set_timeout(seconds)

    async def is_running(self) -> bool:
        return await self._sandbox.is_running()

    async def kill(self) -> None:
        await self._sandbox.kill()


def build_network_options(policy: SandboxSecurityPolicy) -> dict[str, list[str]] | None:
    """出网白名单对应的 AsyncSandbox.create network 参数，allow_out 优先于 deny_out"""
    if not policy.allowed_hosts:
        return None
    return {"allow_out": list(policy.allowed_hosts), "deny_out": [ALL_TRAFFIC]}


class E2BSandboxProvider(SandboxProvider):
    """E2B 沙箱提供方

    CPU / 内存由模板决定。安全策略列出允许的主机时，通过 SDK 的 network 选项
    拒绝全部出站流量，仅放行白名单主机；未列出时不限制出网。
    """

    name = "e2b"

    def __init__(self, api_key: str | None = None, template: str | None = None) -> None:
        self.api_key = api_key
        self.template = template

    async def create(
        self,
        policy: SandboxSecurityPolicy,
        timeout_seconds: int,
        *,
        credentials: str | None = None,
        template: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> SandboxHandle:
        kwargs: dict[str, Any] = {
            "timeout": timeout_seconds,
            "metadata": metadata or {},
            "api_key": credentials or self.api_key,
        }
        if template or self.template:
            kwargs["template"] = template or self.template
        network = build_network_options(policy)
        if network is not None:
            kwargs["network"] = network

        try:
            sandbox = await AsyncSandbox.create(**kwargs)
        except Exception as e:
            raise ExternalServiceError(
                "e2b", f"Failed to create E2B sandbox: {e}", original_error=e
            ) from e

        logger.info(
            "Created E2B sandbox %s (timeout=%ss, allowed_hosts=%s)",
            sandbox.sandbox_id,
            timeout_seconds,
            list(policy.allowed_hosts) or "*",
        )
        return E2BSandboxHandle(sandbox)

    async def connect(self, sandbox_id: str, *, credentials: str | None = None) -> SandboxHandle:
        try:
            sandbox = await AsyncSandbox.connect(sandbox_id, api_key=credentials or self.api_key)
        except Exception as e:
            raise ExternalServiceError(
                "e2b", f"Failed to connect to E2B sandbox {sandbox_id}: {e}", original_error=e
            ) from e
        return E2BSandboxHandle(sandbox)
