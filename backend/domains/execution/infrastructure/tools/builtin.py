"""
Builtin Tools - 内置沙箱工具定义

沙箱工具没有处理函数：执行引擎把它们路由到沙箱会话，
注册表中的参数定义仅用于分发前校验和向规划器导出。
"""

from domains.execution.infrastructure.tools.base import (
    ToolCategory,
    ToolDefinition,
    ToolParameter,
)
from domains.execution.infrastructure.tools.registry import ToolRegistry

BROWSER_AUTOMATION = ToolDefinition(
    id="browser_automation",
    name="Browser Automation",
    description="Automate browser interactions for web tasks",
    parameters={
        "url": ToolParameter(type="string", description="URL to navigate to"),
        "action": ToolParameter(
            type="string",
            enum=["navigate", "click", "type", "extract"],
            description="Action to perform",
        ),
        "selector": ToolParameter(type="string", description="CSS selector for element"),
        "value": ToolParameter(type="string", description="Value to type"),
    },
)

FILE_OPERATIONS = ToolDefinition(
    id="file_operations",
    name="File Operations",
    description="Read, write and list files inside the sandbox workspace",
    parameters={
        "action": ToolParameter(
            type="string",
            enum=["write", "read", "list", "remove"],
            description="File operation to perform",
        ),
        "path": ToolParameter(type="string", required=True, description="Target path"),
        "content": ToolParameter(type="string", description="Content to write"),
    },
)

SHELL_COMMAND = ToolDefinition(
    id="shell_command",
    name="Shell Command",
    description="Run an allow-listed shell command inside the sandbox",
    parameters={
        "command": ToolParameter(type="string", description="Command line to run"),
    },
)

CODE_EXECUTION = ToolDefinition(
    id="code_execution",
    name="Code Execution",
    description="Run a code snippet or interpreter command inside the sandbox",
    parameters={
        "code": ToolParameter(type="string", description="Code to run"),
        "command": ToolParameter(type="string", description="Command line to run"),
    },
)


def register_sandbox_tools(registry: ToolRegistry) -> ToolRegistry:
    """注册沙箱工具定义"""
    registry.register(BROWSER_AUTOMATION, [ToolCategory.WEB_INTERACTION])
    registry.register(FILE_OPERATIONS, [ToolCategory.FILE_OPERATIONS])
    registry.register(SHELL_COMMAND, [ToolCategory.CODE_EXECUTION])
    registry.register(CODE_EXECUTION, [ToolCategory.CODE_EXECUTION])
    return registry
