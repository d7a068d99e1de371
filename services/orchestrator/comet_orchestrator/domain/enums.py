"""领域枚举定义：统一任务状态、步骤状态、结果状态、健康等级与工具分类取值。"""

from __future__ import annotations

from enum import Enum


class TaskState(str, Enum):
    """任务委派生命周期状态枚举，只允许 pending → running → 终态 单向推进。"""
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskState.completed, TaskState.failed, TaskState.cancelled}


class StepStatus(str, Enum):
    """单个步骤执行状态枚举。"""
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    skipped = "skipped"


class ResultStatus(str, Enum):
    """对外返回的任务结果状态枚举。"""
    success = "success"
    failure = "failure"
    partial = "partial"
    cancelled = "cancelled"
    pending = "pending"


class ErrorCode(str, Enum):
    """任务结果错误码枚举。"""
    invalid_template = "INVALID_TEMPLATE"
    no_template_match = "NO_TEMPLATE_MATCH"
    timeout = "TIMEOUT"
    step_failed = "STEP_FAILED"
    cancelled = "CANCELLED"


class HealthLevel(str, Enum):
    """单组件健康等级枚举。"""
    healthy = "healthy"
    degraded = "degraded"
    unreachable = "unreachable"
    unknown = "unknown"


class OverallHealth(str, Enum):
    """聚合后的整体健康等级枚举。"""
    healthy = "healthy"
    degraded = "degraded"
    down = "down"


class ToolCategory(str, Enum):
    """工具分类枚举。"""
    ai = "ai"
    dom = "dom"
    tab = "tab"
    monitor = "monitor"
    meta = "meta"


class WakeTechnique(str, Enum):
    """休眠唤醒所使用的技术枚举。"""
    page_target = "page_target"
    management_toggle = "management_toggle"
    none = "none"
