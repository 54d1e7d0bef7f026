"""
Tool Base - 工具定义

工具定义由参数描述和处理函数组成，处理函数可以是同步或异步函数。
"""

from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

ParameterType = Literal["string", "number", "boolean", "object", "array"]

ToolHandler = Callable[[dict[str, Any]], Any | Awaitable[Any]]


class ToolCategory(str, Enum):
    """工具分类"""

    WEB_INTERACTION = "web_interaction"
    DATA_PROCESSING = "data_processing"
    CODE_EXECUTION = "code_execution"
    FILE_OPERATIONS = "file_operations"
    COMMUNICATION = "communication"
    DATABASE = "database"


class ToolParameter(BaseModel):
    """工具参数定义"""

    type: ParameterType
    required: bool = False
    enum: list[Any] | None = None
    description: str | None = None


class ToolDefinition(BaseModel):
    """工具定义"""

    id: str = Field(..., min_length=1)
    name: str | None = None
    description: str = ""
    parameters: dict[str, ToolParameter] = Field(default_factory=dict)
    handler: ToolHandler | None = Field(default=None, exclude=True)

    def to_openai_tool(self) -> dict[str, Any]:
        """转换为 OpenAI 工具格式"""
        properties: dict[str, Any] = {}
        for param_name, param in self.parameters.items():
            schema: dict[str, Any] = {"type": param.type}
            if param.description:
                schema["description"] = param.description
            if param.enum is not None:
                schema["enum"] = list(param.enum)
            properties[param_name] = schema

        return {
            "type": "function",
            "function": {
                "name": self.id,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": [n for n, p in self.parameters.items() if p.required],
                },
            },
        }


class ToolExecutionResult(BaseModel):
    """工具执行结果"""

    success: bool
    result: Any = None
    error: str | None = None
