"""
Execution API Schemas - 执行接口请求/响应模型
"""

from typing import Any

from pydantic import BaseModel, Field

from domains.execution.domain.types import ExecutionContext, ExecutionPlan, ExecutionResult


class ExecutePlanRequest(BaseModel):
    """执行计划请求"""

    organization_id: str = Field(..., min_length=1, description="组织 ID")
    plan: ExecutionPlan = Field(..., description="待执行的计划")


class ExecutePlanResponse(BaseModel):
    """执行计划响应"""

    result: ExecutionResult
    context: ExecutionContext


class SandboxStatsResponse(BaseModel):
    """沙箱池统计"""

    total_sandboxes: int
    running: int
    stopped: int
    error: int
    by_purpose: dict[str, int]


class ToolListResponse(BaseModel):
    """工具列表（OpenAI 函数声明格式）"""

    tools: list[dict[str, Any]]
