"""
Exceptions - 自定义异常类

提供统一的异常层次结构，便于错误处理和 API 响应。
"""

from typing import Any


class ExecutionEngineError(Exception):
    """执行引擎基础异常

    所有自定义异常的基类。

    Attributes:
        message: 错误消息
        code: 错误代码（可选）
        details: 额外详情（可选）
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        if self.code:
            return f"[{self.code}] {self.message}"
        return self.message


class ValidationError(ExecutionEngineError):
    """验证错误

    工具参数不符合参数定义时抛出，处理函数不会被调用。
    """

    def __init__(
        self,
        message: str = "Validation failed",
        code: str = "VALIDATION_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code, details)


class NotFoundError(ExecutionEngineError):
    """资源不存在"""

    def __init__(
        self,
        resource: str,
        resource_id: str | None = None,
        code: str = "NOT_FOUND",
    ) -> None:
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} not found: {resource_id}"
        super().__init__(message, code, {"resource": resource, "id": resource_id})
        self.resource = resource
        self.resource_id = resource_id


class ConflictError(ExecutionEngineError):
    """资源冲突

    当操作导致资源冲突时抛出（如复用已释放的沙箱 ID）。
    """

    def __init__(
        self,
        message: str = "Resource conflict",
        code: str = "CONFLICT",
        resource: str | None = None,
    ) -> None:
        details = {"resource": resource} if resource else {}
        super().__init__(message, code, details)


class PolicyViolationError(ExecutionEngineError):
    """安全策略违规

    命令或网络访问不在沙箱安全策略的白名单内。
    """

    def __init__(
        self,
        message: str = "Operation not allowed",
        code: str = "POLICY_VIOLATION",
        rule: str | None = None,
        value: str | None = None,
    ) -> None:
        details: dict[str, Any] = {}
        if rule:
            details["rule"] = rule
        if value is not None:
            details["value"] = value
        super().__init__(message, code, details)


class SandboxError(ExecutionEngineError):
    """沙箱错误

    沙箱创建、初始化或生命周期操作失败时抛出。
    """

    def __init__(
        self,
        message: str = "Sandbox operation failed",
        code: str = "SANDBOX_ERROR",
        sandbox_id: str | None = None,
    ) -> None:
        details = {"sandbox_id": sandbox_id} if sandbox_id else {}
        super().__init__(message, code, details)
        self.sandbox_id = sandbox_id


class ExternalServiceError(ExecutionEngineError):
    """外部服务错误

    当调用外部服务（沙箱提供方、Docker 等）失败时抛出。
    """

    def __init__(
        self,
        service: str,
        message: str | None = None,
        code: str = "EXTERNAL_SERVICE_ERROR",
        original_error: Exception | None = None,
    ) -> None:
        msg = message or f"External service error: {service}"
        super().__init__(msg, code, {"service": service})
        self.service = service
        self.original_error = original_error


class ToolExecutionError(ExecutionEngineError):
    """工具执行错误

    步骤分发失败（工具返回失败、沙箱调用失败、缺少命令等）时抛出。
    """

    def __init__(
        self,
        tool_name: str,
        message: str | None = None,
        code: str = "TOOL_EXECUTION_ERROR",
        original_error: Exception | None = None,
    ) -> None:
        msg = message or f"Tool execution failed: {tool_name}"
        super().__init__(msg, code, {"tool": tool_name})
        self.tool_name = tool_name
        self.original_error = original_error
