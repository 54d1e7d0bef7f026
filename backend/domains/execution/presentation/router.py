"""
Execution API - 计划执行接口

请求解析后直接转交执行引擎，接口层不包含业务逻辑。
"""

from fastapi import APIRouter

from domains.execution.domain.types import ExecutionContext, ExecutionPlan
from domains.execution.presentation.deps import (
    EngineDep,
    MemoryStoreDep,
    SandboxPoolDep,
    ToolRegistryDep,
)
from domains.execution.presentation.schemas import (
    ExecutePlanRequest,
    ExecutePlanResponse,
    SandboxStatsResponse,
    ToolListResponse,
)
from exceptions import NotFoundError

router = APIRouter()


@router.post("/executions", response_model=ExecutePlanResponse)
async def execute_plan(request: ExecutePlanRequest, engine: EngineDep) -> ExecutePlanResponse:
    """执行计划

    步骤失败不会返回错误状态码，失败信息在 result.failed_steps 中。
    """
    context = ExecutionContext.for_plan(request.plan, request.organization_id)
    result = await engine.execute_plan(request.plan, context)
    return ExecutePlanResponse(result=result, context=context)


@router.get("/executions/{execution_id}", response_model=ExecutionContext)
async def get_execution(execution_id: str, memory_store: MemoryStoreDep) -> ExecutionContext:
    """获取执行记录"""
    context = await memory_store.retrieve_execution(execution_id)
    if context is None:
        raise NotFoundError("Execution", execution_id)
    return context


@router.post("/executions/{execution_id}/recovery", response_model=ExecutionPlan)
async def recover_execution(execution_id: str, engine: EngineDep) -> ExecutionPlan:
    """为失败的执行生成恢复计划"""
    plan = await engine.recover_execution(execution_id)
    if plan is None:
        raise NotFoundError("Execution", execution_id)
    return plan


@router.get("/sandboxes/stats", response_model=SandboxStatsResponse)
async def sandbox_stats(sandbox_pool: SandboxPoolDep) -> SandboxStatsResponse:
    """沙箱池统计"""
    return SandboxStatsResponse(**sandbox_pool.get_stats())


@router.get("/tools", response_model=ToolListResponse)
async def list_tools(tool_registry: ToolRegistryDep) -> ToolListResponse:
    """已注册工具（供规划器使用）"""
    return ToolListResponse(tools=tool_registry.to_openai_tools())
