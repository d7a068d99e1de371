"""领域数据结构定义：工具描述、任务模板、任务委派、执行结果与健康快照等值对象。"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any

from comet_orchestrator.domain.enums import (
    ErrorCode,
    HealthLevel,
    OverallHealth,
    ResultStatus,
    StepStatus,
    TaskState,
    ToolCategory,
    WakeTechnique,
)


def now_ms() -> int:
    """当前墙钟时间（毫秒），任务时间戳与截止时间统一使用该口径。"""
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class ToolDescriptor:
    """工具元信息描述对象，由路由器初始化时生成，之后不可变。"""
    name: str
    qualified_name: str
    provider_id: str
    category: ToolCategory
    schema: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    is_canonical: bool = True


@dataclass(slots=True)
class ToolResult:
    """单次工具调用结果。"""
    tool_name: str
    provider_id: str
    success: bool
    data: Any = None
    duration_ms: int = 0
    error: str | None = None


@dataclass(frozen=True, slots=True)
class TaskTemplateStep:
    """模板中的抽象步骤原型，注册后不再修改。"""
    tool_name: str
    provider_id: str
    description: str = ""
    param_template: dict[str, Any] = field(default_factory=dict)
    optional: bool = False


@dataclass(frozen=True, slots=True)
class TaskTemplate:
    """命名任务模板：触发词、默认参数与有序步骤列表。

    requires_url 为真时模板不走触发词匹配，而要求文本中出现 URL；
    required_keywords 非空时还要求至少出现其中一个关键词。
    """
    name: str
    description: str
    trigger_patterns: tuple[str, ...]
    steps: tuple[TaskTemplateStep, ...]
    default_params: dict[str, Any] = field(default_factory=dict)
    requires_url: bool = False
    required_keywords: tuple[str, ...] = ()


@dataclass(slots=True)
class TaskStep:
    """模板步骤的运行时实例，仅由所属任务的执行器修改。"""
    tool_name: str
    provider_id: str
    params: dict[str, Any]
    optional: bool = False
    description: str = ""
    result: Any = None
    status: StepStatus = StepStatus.pending
    duration_ms: int | None = None


@dataclass(slots=True)
class TaskError:
    """任务结果中的结构化错误。"""
    code: ErrorCode
    message: str
    recoverable: bool = False
    failed_step: int | None = None


@dataclass(slots=True)
class TaskResult:
    """任务执行结果，由同步 delegate 返回或异步任务完成后通过轮询读取。"""
    status: ResultStatus
    payload: Any = None
    duration_ms: int = 0
    tools_invoked: list[str] = field(default_factory=list)
    steps_completed: int = 0
    steps_total: int = 0
    error: TaskError | None = None
    task_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class TaskDelegation:
    """任务委派实例：队列与执行器按 id 共享同一对象。"""
    id: str
    description: str
    template_name: str
    steps: list[TaskStep]
    timeout_ms: int
    target_id: str | None = None
    state: TaskState = TaskState.pending
    current_step_index: int = 0
    started_at: int | None = None
    completed_at: int | None = None
    result: TaskResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ComponentHealthResult:
    """单组件健康探测快照。"""
    name: str
    status: HealthLevel
    reason: str | None = None
    latency_ms: int | None = None


@dataclass(slots=True)
class HealthCheckResult:
    """聚合健康检查快照，按 TTL 缓存。"""
    overall: OverallHealth
    components: dict[str, ComponentHealthResult]
    checked_at: int
    duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class WakeResult:
    """休眠组件唤醒结果。"""
    success: bool
    technique: WakeTechnique
    attempts: int
    duration_ms: int
    error: str | None = None


@dataclass(slots=True)
class TemplateSuggestion:
    """未命中模板时返回的候选模板及关键词重合度。"""
    name: str
    description: str
    confidence: float


@dataclass(slots=True)
class EnrichmentPayload:
    """未命中模板时的富化回退载荷。"""
    description: str
    available_templates: list[TemplateSuggestion]
    tool_inventory: list[dict[str, str]]
    server_health: dict[str, HealthLevel]
    matched: bool = False
