"""
Execution Engine - 计划执行引擎

按依赖顺序执行计划中的步骤：

1. 依赖为空的步骤进入就绪队列（按计划顺序）
2. 从就绪队列取出步骤，标记 running 后分发执行，同时运行的步骤数不超过 max_concurrency
3. 步骤成功后标记 completed，依赖全部完成的步骤进入就绪队列
4. 步骤失败后标记 failed，不再启动新步骤；已在运行的步骤等待其结束并记录结果
5. 结束后设置计划状态、保存执行上下文、返回结构化结果

步骤分发按 StepAction 路由：沙箱命令 / 浏览器 / 文件操作走沙箱池，
注册工具走 ToolRegistry，没有工具绑定的步骤作为未解析步骤返回。
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any
import uuid

from domains.execution.domain.types import (
    ExecutionContext,
    ExecutionPlan,
    ExecutionResult,
    ExecutionStep,
    ExecutionStepStatus,
    StepAction,
    StepDetail,
    StepState,
    utc_now,
)
from exceptions import ExecutionEngineError, ToolExecutionError, ValidationError
from utils.logging import get_logger

if TYPE_CHECKING:
    from domains.execution.domain.interfaces import ExecutionMemoryStore
    from domains.execution.infrastructure.sandbox.pool_manager import SandboxPoolManager
    from domains.execution.infrastructure.sandbox.session import SandboxSession
    from domains.execution.infrastructure.tools.registry import ToolRegistry

logger = get_logger(__name__)

# 恢复计划的预计完成时间
RECOVERY_ESTIMATE = timedelta(minutes=5)


@dataclass
class _StepOutcome:
    success: bool
    result: Any = None
    error: str | None = None
    unresolved: bool = False


@dataclass
class _RunResources:
    """单次运行内共享的沙箱会话，首次需要时创建"""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    session: SandboxSession | None = None


class ExecutionEngine:
    """
    计划执行引擎

    Args:
        tool_registry: 工具注册表
        memory_store: 执行记录存储
        sandbox_pool: 沙箱池，未配置时沙箱步骤直接失败
        max_concurrency: 同时运行的步骤数上限，1 表示严格顺序执行
        release_sandbox_after_run: 运行结束后释放本次使用的沙箱
        sandbox_purpose: 创建沙箱时的用途标签
        credentials: 沙箱提供方凭证
    """

    def __init__(
        self,
        tool_registry: ToolRegistry,
        memory_store: ExecutionMemoryStore,
        sandbox_pool: SandboxPoolManager | None = None,
        *,
        max_concurrency: int = 1,
        release_sandbox_after_run: bool = True,
        sandbox_purpose: str = "plan-execution",
        credentials: str | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.tool_registry = tool_registry
        self.memory_store = memory_store
        self.sandbox_pool = sandbox_pool
        self.max_concurrency = max_concurrency
        self.release_sandbox_after_run = release_sandbox_after_run
        self.sandbox_purpose = sandbox_purpose
        self.credentials = credentials

    # =========================================================================
    # 计划执行
    # =========================================================================

    async def execute_plan(
        self,
        plan: ExecutionPlan,
        context: ExecutionContext,
    ) -> ExecutionResult:
        """执行计划

        步骤级错误记录在结果和上下文中，不会抛出。
        """
        steps_by_id = {step.id: step for step in plan.steps}
        plan_order = {step.id: index for index, step in enumerate(plan.steps)}
        for step in plan.steps:
            context.steps.setdefault(step.id, ExecutionStepStatus())

        context.status = StepState.RUNNING
        logger.info(
            "Executing plan with %d steps (execution=%s, organization=%s)",
            len(plan.steps),
            context.id,
            context.organization_id,
        )

        resources = _RunResources()
        completed: set[str] = set()
        failed_steps: list[str] = []
        unresolved_steps: list[str] = []
        details: list[StepDetail] = []

        ready: deque[str] = deque(step.id for step in plan.steps if not step.depends_on)
        scheduled: set[str] = set(ready)
        in_flight: dict[asyncio.Task[_StepOutcome], str] = {}
        halted = False

        try:
            while ready or in_flight:
                while ready and not halted and len(in_flight) < self.max_concurrency:
                    step = steps_by_id[ready.popleft()]
                    self._mark_running(context, step)
                    task = asyncio.create_task(self._run_step(step, context, resources))
                    in_flight[task] = step.id

                if not in_flight:
                    break

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: plan_order[in_flight[t]]):
                    step = steps_by_id[in_flight.pop(task)]
                    outcome = task.result()
                    details.append(self._record_outcome(context, step, outcome))

                    if not outcome.success:
                        failed_steps.append(step.id)
                        halted = True
                        continue

                    completed.add(step.id)
                    if outcome.unresolved:
                        unresolved_steps.append(step.id)

                    for candidate in plan.steps:
                        if candidate.id in scheduled:
                            continue
                        if set(candidate.depends_on) <= completed:
                            ready.append(candidate.id)
                            scheduled.add(candidate.id)

                if halted and ready:
                    logger.info(
                        "Execution %s halted, %d ready steps not started",
                        context.id,
                        len(ready),
                    )
                    ready.clear()
        finally:
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
            await self._release_resources(resources)

        context.status = StepState.FAILED if failed_steps else StepState.COMPLETED
        all_completed = len(completed) == len(plan.steps)

        try:
            await self.memory_store.store_execution(context)
        except Exception as e:
            logger.error("Failed to store execution %s: %s", context.id, e, exc_info=True)

        if failed_steps:
            next_steps = ["Retry failed steps with modified parameters"]
        elif all_completed:
            next_steps = ["Task completed successfully"]
        else:
            next_steps = ["Continue with remaining steps"]
        if unresolved_steps:
            next_steps.append(f"Resolve unresolved steps: {', '.join(unresolved_steps)}")

        logger.info(
            "Execution %s finished: status=%s, completed=%d, failed=%s, unresolved=%s",
            context.id,
            context.status.value,
            len(completed),
            failed_steps,
            unresolved_steps,
        )
        return ExecutionResult(
            execution_id=context.id,
            success=not failed_steps,
            details=details,
            failed_steps=failed_steps,
            next_steps=next_steps,
            unresolved_steps=unresolved_steps,
        )

    @staticmethod
    def _mark_running(context: ExecutionContext, step: ExecutionStep) -> None:
        step_status = context.steps[step.id]
        step_status.status = StepState.RUNNING
        step_status.start_time = utc_now()
        logger.debug("Step %s started: %s", step.id, step.description)

    @staticmethod
    def _record_outcome(
        context: ExecutionContext,
        step: ExecutionStep,
        outcome: _StepOutcome,
    ) -> StepDetail:
        step_status = context.steps[step.id]
        step_status.end_time = utc_now()
        if outcome.success:
            step_status.status = StepState.COMPLETED
            step_status.result = outcome.result
        else:
            step_status.status = StepState.FAILED
            step_status.error = outcome.error
            logger.warning("Step %s failed: %s", step.id, outcome.error)

        return StepDetail(
            step_id=step.id,
            description=step.description,
            success=outcome.success,
            result=outcome.result,
            error=outcome.error,
        )

    async def _run_step(
        self,
        step: ExecutionStep,
        context: ExecutionContext,
        resources: _RunResources,
    ) -> _StepOutcome:
        """执行单个步骤，异常转换为失败结果"""
        try:
            if step.action == StepAction.UNRESOLVED:
                return _StepOutcome(
                    success=True,
                    result={"message": f"Executed step: {step.description}", "unresolved": True},
                    unresolved=True,
                )
            if step.action == StepAction.REGISTERED_TOOL:
                result = await self._dispatch_tool(step)
            else:
                result = await self._dispatch_sandbox(step, context, resources)
            return _StepOutcome(success=True, result=result)
        except ValidationError as e:
            return _StepOutcome(success=False, error=f"Parameter validation failed: {e.message}")
        except ExecutionEngineError as e:
            return _StepOutcome(success=False, error=e.message)
        except Exception as e:
            logger.exception("Unexpected error in step %s", step.id)
            return _StepOutcome(success=False, error=str(e) or type(e).__name__)

    # =========================================================================
    # 步骤分发
    # =========================================================================

    async def _dispatch_tool(self, step: ExecutionStep) -> Any:
        tool_id = step.tool_id or ""
        outcome = await self.tool_registry.execute(tool_id, step.parameters)
        if not outcome.success:
            raise ToolExecutionError(tool_id, f"Tool execution failed: {outcome.error}")
        return outcome.result

    async def _dispatch_sandbox(
        self,
        step: ExecutionStep,
        context: ExecutionContext,
        resources: _RunResources,
    ) -> Any:
        tool_id = step.tool_id or ""
        params = dict(step.parameters)

        definition = self.tool_registry.get(tool_id)
        if definition is not None:
            self.tool_registry.validate_parameters(definition, params)

        command: str | None = None
        if step.action == StepAction.SHELL_COMMAND:
            command = params.get("command") or params.get("code")
            if not command:
                raise ToolExecutionError(tool_id, "No command specified")

        session = await self._acquire_session(tool_id, context, resources)
        try:
            if step.action == StepAction.BROWSER_ACTION:
                action = params.pop("action", None) or "navigate"
                result = await session.execute_browser_action(action, params)
                if not result.success:
                    raise ToolExecutionError(tool_id, f"Browser action failed: {result.error}")
                return result.data

            if step.action == StepAction.FILE_OPERATION:
                action = params.pop("action", None) or "read"
                result = await session.execute_file_operation(action, params)
                if not result.success:
                    raise ToolExecutionError(tool_id, f"File operation failed: {result.error}")
                return result.data

            result = await session.execute_command(command or "")
            if not result.success:
                raise ToolExecutionError(tool_id, f"Command execution failed: {result.error}")
            return {"output": result.output, "exit_code": result.exit_code}
        finally:
            if self.sandbox_pool is not None and session.sandbox_id:
                self.sandbox_pool.update_last_used(session.sandbox_id)

    async def _acquire_session(
        self,
        tool_id: str,
        context: ExecutionContext,
        resources: _RunResources,
    ) -> SandboxSession:
        async with resources.lock:
            if resources.session is None:
                if self.sandbox_pool is None:
                    raise ToolExecutionError(tool_id, "No sandbox pool configured")
                resources.session = await self.sandbox_pool.create_sandbox(
                    credentials=self.credentials,
                    purpose=self.sandbox_purpose,
                    organization_id=context.organization_id,
                )
            return resources.session

    async def _release_resources(self, resources: _RunResources) -> None:
        session = resources.session
        if session is None or self.sandbox_pool is None or not self.release_sandbox_after_run:
            return
        if session.sandbox_id is None:
            return
        try:
            await self.sandbox_pool.release_sandbox(session.sandbox_id)
        except Exception as e:
            logger.warning("Failed to release sandbox %s: %s", session.sandbox_id, e)

    # =========================================================================
    # 失败恢复
    # =========================================================================

    def recover_from_failure(self, context: ExecutionContext) -> ExecutionPlan:
        """为失败步骤生成恢复计划

        每个失败步骤对应一个无依赖的恢复步骤，工具与参数留给上层规划器选择。
        """
        recovery_steps = [
            ExecutionStep(
                id=str(uuid.uuid4()),
                description=f"Recovery for failed step {step_id}",
                depends_on=[],
            )
            for step_id in context.failed_step_ids()
        ]
        return ExecutionPlan(
            steps=recovery_steps,
            required_tools=[],
            estimated_completion=utc_now() + RECOVERY_ESTIMATE,
        )

    async def recover_execution(self, execution_id: str) -> ExecutionPlan | None:
        """按执行 ID 读取上下文并生成恢复计划"""
        context = await self.memory_store.retrieve_execution(execution_id)
        if context is None:
            return None
        return self.recover_from_failure(context)
