"""
Execution Domain Types - 执行领域类型

定义计划执行所需的核心数据结构：
- ExecutionStep / ExecutionPlan: 由规划器产生的不可变计划（DAG）
- ExecutionContext / ExecutionStepStatus: 单次运行的可变状态记录
- ExecutionResult / StepDetail: 返回给调用方的结构化结果
- SandboxExecutionResult / AuditEntry / CommandOutput: 沙箱操作结果
"""

from __future__ import annotations

from collections import deque
from datetime import UTC, datetime
from enum import Enum
from typing import Any
import uuid

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """当前 UTC 时间"""
    return datetime.now(UTC)


class StepState(str, Enum):
    """步骤 / 计划状态

    pending -> running -> completed | failed
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepAction(str, Enum):
    """步骤动作类型

    在计划构造时确定，分发阶段只按此枚举路由。
    """

    SHELL_COMMAND = "shell_command"
    BROWSER_ACTION = "browser_action"
    FILE_OPERATION = "file_operation"
    REGISTERED_TOOL = "registered_tool"
    UNRESOLVED = "unresolved"

    @property
    def is_sandbox(self) -> bool:
        return self in _SANDBOX_ACTIONS


_SANDBOX_ACTIONS = frozenset(
    {StepAction.SHELL_COMMAND, StepAction.BROWSER_ACTION, StepAction.FILE_OPERATION}
)

# 在沙箱中执行的工具 ID（子串匹配）
SANDBOX_TOOL_IDS: tuple[str, ...] = (
    "browser_automation",
    "file_operations",
    "code_execution",
    "shell_command",
)


def classify_step_action(tool_id: str | None) -> StepAction:
    """根据工具 ID 推断步骤动作类型

    沙箱工具按族归类：browser -> 浏览器操作，file -> 文件操作，shell/code -> 命令。
    """
    if not tool_id:
        return StepAction.UNRESOLVED
    if any(sandbox_id in tool_id for sandbox_id in SANDBOX_TOOL_IDS):
        if "browser" in tool_id:
            return StepAction.BROWSER_ACTION
        if "file" in tool_id:
            return StepAction.FILE_OPERATION
        if "shell" in tool_id or "code" in tool_id:
            return StepAction.SHELL_COMMAND
    return StepAction.REGISTERED_TOOL


class _CamelModel(BaseModel):
    """同时接受 snake_case 与 camelCase 字段名"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExecutionStep(_CamelModel):
    """执行步骤（不可变）"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    description: str = ""
    depends_on: list[str] = Field(default_factory=list)
    tool_id: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    action: StepAction = StepAction.UNRESOLVED

    @model_validator(mode="before")
    @classmethod
    def _derive_action(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("action"):
            tool_id = data.get("tool_id", data.get("toolId"))
            data = {**data, "action": classify_step_action(tool_id)}
        return data

    @model_validator(mode="after")
    def _check_action(self) -> ExecutionStep:
        if self.action != StepAction.UNRESOLVED and not self.tool_id:
            raise ValueError(f"Step {self.id} has action {self.action.value} but no tool_id")
        return self


class ExecutionPlan(_CamelModel):
    """执行计划

    构造时校验依赖图：步骤 ID 唯一、依赖均存在、无环。
    """

    model_config = ConfigDict(frozen=True)

    steps: list[ExecutionStep] = Field(default_factory=list)
    required_tools: list[str] = Field(default_factory=list)
    estimated_completion: datetime | None = None

    @model_validator(mode="after")
    def _check_graph(self) -> ExecutionPlan:
        ids = [step.id for step in self.steps]
        seen: set[str] = set()
        for step_id in ids:
            if step_id in seen:
                raise ValueError(f"Duplicate step id: {step_id}")
            seen.add(step_id)

        for step in self.steps:
            for dep in step.depends_on:
                if dep not in seen:
                    raise ValueError(f"Step {step.id} depends on unknown step: {dep}")

        # Kahn 拓扑排序检测环
        indegree = {step.id: len(set(step.depends_on)) for step in self.steps}
        dependents: dict[str, list[str]] = {step_id: [] for step_id in ids}
        for step in self.steps:
            for dep in set(step.depends_on):
                dependents[dep].append(step.id)
        queue = deque(step_id for step_id, degree in indegree.items() if degree == 0)
        visited = 0
        while queue:
            current = queue.popleft()
            visited += 1
            for child in dependents[current]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    queue.append(child)
        if visited != len(ids):
            cyclic = sorted(step_id for step_id, degree in indegree.items() if degree > 0)
            raise ValueError(f"Dependency cycle detected among steps: {', '.join(cyclic)}")
        return self

    def get_step(self, step_id: str) -> ExecutionStep | None:
        return next((step for step in self.steps if step.id == step_id), None)


class ExecutionStepStatus(_CamelModel):
    """单个步骤的运行状态"""

    status: StepState = StepState.PENDING
    start_time: datetime | None = None
    end_time: datetime | None = None
    result: Any = None
    error: str | None = None


class ExecutionContext(_CamelModel):
    """执行上下文

    单次运行的可变记录，运行结束后持久化用于审计与恢复。
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    organization_id: str
    start_time: datetime = Field(default_factory=utc_now)
    status: StepState = StepState.PENDING
    steps: dict[str, ExecutionStepStatus] = Field(default_factory=dict)

    @classmethod
    def for_plan(cls, plan: ExecutionPlan, organization_id: str) -> ExecutionContext:
        """为计划创建上下文，所有步骤初始为 pending"""
        return cls(
            organization_id=organization_id,
            steps={step.id: ExecutionStepStatus() for step in plan.steps},
        )

    def failed_step_ids(self) -> list[str]:
        return [
            step_id
            for step_id, step_status in self.steps.items()
            if step_status.status == StepState.FAILED
        ]


class StepDetail(_CamelModel):
    """步骤执行明细"""

    step_id: str
    description: str
    success: bool
    result: Any = None
    error: str | None = None


class ExecutionResult(_CamelModel):
    """计划执行结果"""

    execution_id: str
    success: bool
    details: list[StepDetail] = Field(default_factory=list)
    failed_steps: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    # 没有工具绑定、由上层模型在运行时解析的步骤
    unresolved_steps: list[str] = Field(default_factory=list)


# =============================================================================
# 沙箱结果类型
# =============================================================================


class CommandOutput(BaseModel):
    """远程命令原始输出"""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    error: str | None = None


class SandboxExecutionResult(BaseModel):
    """沙箱操作结果"""

    success: bool
    output: str = ""
    error: str | None = None
    exit_code: int | None = None
    data: Any = None

    @classmethod
    def failure(cls, error: str, exit_code: int | None = None) -> SandboxExecutionResult:
        return cls(success=False, error=error, exit_code=exit_code)


class AuditEntry(BaseModel):
    """审计日志条目"""

    operation: str
    success: bool
    detail: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)
