"""
测试数据工厂

使用 factory pattern 创建测试数据
"""

from collections.abc import Callable
from typing import Any

from domains.execution.domain.types import ExecutionPlan, ExecutionStep
from domains.execution.infrastructure.tools.base import ToolDefinition, ToolParameter


def create_test_tool(
    tool_id: str,
    handler: Callable[..., Any] | None,
    parameters: dict[str, ToolParameter] | None = None,
    **kwargs: Any,
) -> ToolDefinition:
    """创建测试工具定义"""
    return ToolDefinition(
        id=tool_id,
        name=kwargs.pop("name", tool_id),
        description=kwargs.pop("description", f"Test tool {tool_id}"),
        parameters=parameters or {},
        handler=handler,
        **kwargs,
    )


def create_test_step(
    step_id: str,
    tool_id: str | None = None,
    depends_on: list[str] | None = None,
    parameters: dict[str, Any] | None = None,
    description: str | None = None,
) -> ExecutionStep:
    """创建测试步骤"""
    return ExecutionStep(
        id=step_id,
        description=description or f"Step {step_id}",
        depends_on=depends_on or [],
        tool_id=tool_id,
        parameters=parameters or {},
    )


def create_test_plan(*steps: ExecutionStep, required_tools: list[str] | None = None) -> ExecutionPlan:
    """创建测试计划"""
    return ExecutionPlan(
        steps=list(steps),
        required_tools=required_tools
        if required_tools is not None
        else sorted({s.tool_id for s in steps if s.tool_id}),
    )
