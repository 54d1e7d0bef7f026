"""
Sandbox Security Policy - 沙箱安全策略

创建会话时绑定，之后不可修改：
- allowed_commands: 精确匹配或 "<prefix> *" 前缀通配，空列表拒绝所有命令
- allowed_hosts: 出网白名单，支持 "*.example.com"，空列表不限制
- resource_limits: CPU / 内存 / 超时
"""

from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field


class ResourceLimits(BaseModel):
    """资源限制"""

    model_config = ConfigDict(frozen=True)

    cpu_limit: float = Field(default=1.0, gt=0, description="CPU 核数")
    memory_mb: int = Field(default=512, gt=0, description="内存 (MB)")
    timeout_sec: int = Field(default=300, gt=0, description="会话超时 (秒)")


class SandboxSecurityPolicy(BaseModel):
    """沙箱安全策略"""

    model_config = ConfigDict(frozen=True)

    allowed_hosts: tuple[str, ...] = ()
    allowed_commands: tuple[str, ...] = ()
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)

    def is_command_allowed(self, command: str) -> bool:
        """检查命令是否在白名单内"""
        for pattern in self.allowed_commands:
            if pattern == command:
                return True
            if pattern.endswith(" *"):
                # "git *" 的前缀为 "git"
                if command.startswith(pattern[:-2]):
                    return True
        return False

    def is_host_allowed(self, host: str) -> bool:
        """检查主机是否允许访问"""
        if not self.allowed_hosts:
            return True
        host = host.lower()
        for pattern in self.allowed_hosts:
            pattern = pattern.lower()
            if pattern.startswith("*."):
                suffix = pattern[1:]
                if host.endswith(suffix) or host == pattern[2:]:
                    return True
            elif host == pattern:
                return True
        return False

    def is_url_allowed(self, url: str) -> bool:
        host = urlparse(url).hostname
        if host is None:
            return not self.allowed_hosts
        return self.is_host_allowed(host)
