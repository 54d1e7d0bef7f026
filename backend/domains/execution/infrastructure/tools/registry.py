"""
Tool Registry - 工具注册表

管理工具的注册、参数校验与执行。

执行契约：
- 参数校验失败时不调用处理函数
- 任何失败（工具不存在、校验失败、无处理函数、处理函数抛异常）都转换为
  ToolExecutionResult(success=False)，不向调用方传播异常
"""

from collections.abc import Iterable, Mapping
import inspect
from typing import Any

from domains.execution.infrastructure.tools.base import (
    ToolCategory,
    ToolDefinition,
    ToolExecutionResult,
    ToolParameter,
)
from exceptions import ValidationError
from utils.logging import get_logger

logger = get_logger(__name__)

# 按工具 ID 关键字自动归类
_AUTO_CATEGORY_KEYWORDS: tuple[tuple[tuple[str, ...], ToolCategory], ...] = (
    (("browser", "web"), ToolCategory.WEB_INTERACTION),
    (("database",), ToolCategory.DATABASE),
    (("file",), ToolCategory.FILE_OPERATIONS),
)


def _matches_type(value: Any, expected: str) -> bool:
    if expected == "string":
        return isinstance(value, str)
    if expected == "number":
        # bool 是 int 的子类，需要排除
        return isinstance(value, int | float) and not isinstance(value, bool)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "object":
        return isinstance(value, Mapping)
    if expected == "array":
        return isinstance(value, list | tuple)
    return True


class ToolRegistry:
    """工具注册表"""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._categories: dict[ToolCategory, set[str]] = {
            category: set() for category in ToolCategory
        }

    def register(
        self,
        tool: ToolDefinition,
        categories: Iterable[ToolCategory] | None = None,
    ) -> None:
        """注册工具，相同 ID 覆盖旧定义"""
        if tool.id in self._tools:
            logger.debug("Overwriting tool definition: %s", tool.id)
            for tool_ids in self._categories.values():
                tool_ids.discard(tool.id)

        self._tools[tool.id] = tool

        resolved = list(categories) if categories is not None else self._auto_categories(tool.id)
        for category in resolved:
            self._categories[category].add(tool.id)

    @staticmethod
    def _auto_categories(tool_id: str) -> list[ToolCategory]:
        lowered = tool_id.lower()
        return [
            category
            for keywords, category in _AUTO_CATEGORY_KEYWORDS
            if any(keyword in lowered for keyword in keywords)
        ]

    def unregister(self, tool_id: str) -> bool:
        """注销工具"""
        if self._tools.pop(tool_id, None) is None:
            return False
        for tool_ids in self._categories.values():
            tool_ids.discard(tool_id)
        return True

    def get(self, tool_id: str) -> ToolDefinition | None:
        """获取工具"""
        return self._tools.get(tool_id)

    def has(self, tool_id: str) -> bool:
        return tool_id in self._tools

    def get_all(self) -> list[ToolDefinition]:
        """列出所有工具"""
        return list(self._tools.values())

    def get_by_category(self, category: ToolCategory) -> list[ToolDefinition]:
        """按分类列出工具"""
        return [self._tools[tool_id] for tool_id in sorted(self._categories[category])]

    def to_openai_tools(self, tool_ids: list[str] | None = None) -> list[dict[str, Any]]:
        """转换为 OpenAI 工具格式，供规划器使用"""
        if tool_ids is None:
            tools = self.get_all()
        else:
            tools = [tool for tool_id in tool_ids if (tool := self.get(tool_id)) is not None]
        return [tool.to_openai_tool() for tool in tools]

    @staticmethod
    def validate_parameters(tool: ToolDefinition, params: Mapping[str, Any]) -> None:
        """校验参数

        Raises:
            ValidationError: 缺少必填参数、枚举不匹配或类型不匹配
        """
        for param_name, definition in tool.parameters.items():
            value = params.get(param_name)
            if value is None:
                if definition.required:
                    raise ValidationError(
                        f"Missing required parameter: {param_name}",
                        details={"tool": tool.id, "parameter": param_name},
                    )
                continue
            _check_value(tool.id, param_name, definition, value)

    async def execute(
        self,
        tool_id: str,
        params: Mapping[str, Any] | None = None,
    ) -> ToolExecutionResult:
        """执行工具"""
        params = dict(params or {})
        tool = self.get(tool_id)
        if tool is None:
            return ToolExecutionResult(success=False, error=f"Tool not found: {tool_id}")

        try:
            self.validate_parameters(tool, params)
        except ValidationError as e:
            logger.info("Tool %s parameter validation failed: %s", tool_id, e.message)
            return ToolExecutionResult(
                success=False, error=f"Parameter validation failed: {e.message}"
            )

        if tool.handler is None:
            return ToolExecutionResult(
                success=False, error=f"Tool {tool_id} does not have an execution handler"
            )

        try:
            result = tool.handler(params)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.warning("Tool %s raised during execution: %s", tool_id, e, exc_info=True)
            error_msg = f"{type(e).__name__}: {e!s}" if str(e) else type(e).__name__
            return ToolExecutionResult(success=False, error=f"Tool execution error: {error_msg}")

        return ToolExecutionResult(success=True, result=result)


def _check_value(tool_id: str, param_name: str, definition: ToolParameter, value: Any) -> None:
    details = {"tool": tool_id, "parameter": param_name}
    if definition.enum is not None and value not in definition.enum:
        allowed = ", ".join(str(option) for option in definition.enum)
        raise ValidationError(
            f"Parameter {param_name} must be one of: {allowed}",
            details=details,
        )
    if not _matches_type(value, definition.type):
        article = "an" if definition.type in ("object", "array") else "a"
        raise ValidationError(
            f"Parameter {param_name} must be {article} {definition.type}",
            details=details,
        )
