"""API 请求与响应数据模型定义，约束任务委派、状态查询、健康与目录接口的结构。"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from comet_orchestrator.config import get_settings
from comet_orchestrator.domain.enums import (
    ErrorCode,
    HealthLevel,
    OverallHealth,
    ResultStatus,
    StepStatus,
    TaskState,
)


class TaskCreateRequest(BaseModel):
    """任务委派请求体；`async` 是保留字，模型内以 async_ 承载。"""
    model_config = ConfigDict(populate_by_name=True)

    description: str = Field(min_length=1)
    target_id: str | None = None
    timeout_ms: int | None = None
    async_: bool = Field(default=False, alias="async")
    template: str | None = None

    @field_validator("timeout_ms")
    @classmethod
    def _timeout_in_range(cls, value: int | None) -> int | None:
        if value is None:
            return value
        settings = get_settings()
        if not settings.task_timeout_min_ms <= value <= settings.task_timeout_max_ms:
            raise ValueError(
                f"timeout_ms must be between {settings.task_timeout_min_ms} and {settings.task_timeout_max_ms}"
            )
        return value


class TaskErrorResponse(BaseModel):
    code: ErrorCode
    message: str
    recoverable: bool
    failed_step: int | None = None


class TaskResultResponse(BaseModel):
    """任务结果响应模型。"""
    status: ResultStatus
    payload: Any = None
    duration_ms: int
    tools_invoked: list[str]
    steps_completed: int
    steps_total: int
    error: TaskErrorResponse | None = None
    task_id: str | None = None


class TaskStepResponse(BaseModel):
    tool_name: str
    provider_id: str
    params: dict[str, Any]
    optional: bool
    description: str
    result: Any = None
    status: StepStatus
    duration_ms: int | None = None


class TaskStatusResponse(BaseModel):
    """任务详情响应模型，异步任务完成后 result 字段可用。"""
    id: str
    description: str
    template_name: str
    state: TaskState
    target_id: str | None
    current_step_index: int
    timeout_ms: int
    started_at: int | None
    completed_at: int | None
    steps: list[TaskStepResponse]
    result: TaskResultResponse | None = None


class TaskCancelResponse(BaseModel):
    task_id: str
    cancelled: bool


class ComponentHealthResponse(BaseModel):
    name: str
    status: HealthLevel
    reason: str | None = None
    latency_ms: int | None = None


class HealthStatusResponse(BaseModel):
    """聚合健康检查响应模型。"""
    overall: OverallHealth
    components: dict[str, ComponentHealthResponse]
    checked_at: int
    duration_ms: int


class TemplateResponse(BaseModel):
    name: str
    description: str
    trigger_patterns: list[str]
    steps: list[dict[str, Any]]


class ToolResponse(BaseModel):
    name: str
    qualified_name: str
    provider_id: str
    category: str
    description: str
    is_canonical: bool


class MonitorStateResponse(BaseModel):
    """监视服务状态；不可用时仅含 available 与 reason。"""
    available: bool
    reason: str | None = None
    timestamp: str | None = None
    windows: list[dict[str, Any]] | None = None
    window_count: int | None = None
    tabs: list[dict[str, Any]] | None = None
    tab_count: int | None = None
