"""
Tools - 工具注册表与内置沙箱工具
"""

from domains.execution.infrastructure.tools.base import (
    ToolCategory,
    ToolDefinition,
    ToolExecutionResult,
    ToolParameter,
)
from domains.execution.infrastructure.tools.registry import ToolRegistry

__all__ = [
    "ToolCategory",
    "ToolDefinition",
    "ToolExecutionResult",
    "ToolParameter",
    "ToolRegistry",
]
