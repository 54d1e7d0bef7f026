"""
Execution API Dependencies - 执行接口依赖注入

引擎、沙箱池等对象在应用 lifespan 中创建并挂在 app.state 上。
"""

from typing import Annotated

from fastapi import Depends, Request

from domains.execution.application.engine import ExecutionEngine
from domains.execution.domain.interfaces import ExecutionMemoryStore
from domains.execution.infrastructure.sandbox.pool_manager import SandboxPoolManager
from domains.execution.infrastructure.tools.registry import ToolRegistry


def get_engine(request: Request) -> ExecutionEngine:
    return request.app.state.engine


def get_sandbox_pool(request: Request) -> SandboxPoolManager:
    return request.app.state.sandbox_pool


def get_tool_registry(request: Request) -> ToolRegistry:
    return request.app.state.tool_registry


def get_memory_store(request: Request) -> ExecutionMemoryStore:
    return request.app.state.memory_store


EngineDep = Annotated[ExecutionEngine, Depends(get_engine)]
SandboxPoolDep = Annotated[SandboxPoolManager, Depends(get_sandbox_pool)]
ToolRegistryDep = Annotated[ToolRegistry, Depends(get_tool_registry)]
MemoryStoreDep = Annotated[ExecutionMemoryStore, Depends(get_memory_store)]
