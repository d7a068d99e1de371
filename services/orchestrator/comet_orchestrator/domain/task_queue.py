"""按目标分组的任务队列：每个目标一个 FIFO 与一个活动槽，并提供全局按 id 查询与取消。"""

from __future__ import annotations

from collections import deque

from comet_orchestrator.domain.enums import TaskState
from comet_orchestrator.domain.models import TaskDelegation, now_ms

GLOBAL_TARGET = "__global__"


def target_key(target_id: str | None) -> str:
    """无目标的任务统一归入全局队列。"""
    return target_id if target_id is not None else GLOBAL_TARGET


class TaskQueue:
    """任务队列，保证同一目标同一时刻至多一个 running 任务。"""
    def __init__(self) -> None:
        self._queues: dict[str, deque[TaskDelegation]] = {}
        self._active: dict[str, TaskDelegation] = {}
        self._registry: dict[str, TaskDelegation] = {}

    def enqueue(self, task: TaskDelegation) -> None:
        """追加到目标队列尾部，并登记到全局索引。"""
        self._queues.setdefault(target_key(task.target_id), deque()).append(task)
        self._registry[task.id] = task

    def dequeue(self, target: str) -> TaskDelegation | None:
        """活动槽仍在运行时返回 None；否则清理过期活动槽并弹出队首置为 running。"""
        active = self._active.get(target)
        if active is not None and active.state == TaskState.running:
            return None
        if active is not None:
            del self._active[target]

        pending = self._queues.get(target)
        if not pending:
            return None
        task = pending.popleft()
        task.state = TaskState.running
        task.started_at = now_ms()
        self._active[target] = task
        return task

    def complete_active(self, target: str) -> None:
        """释放活动槽并打上完成时间；仍处于 running 的任务视为正常完成。"""
        active = self._active.pop(target, None)
        if active is None:
            return
        if active.state == TaskState.running:
            active.state = TaskState.completed
        if active.completed_at is None:
            active.completed_at = now_ms()

    def get_active_task(self, target: str) -> TaskDelegation | None:
        return self._active.get(target)

    def get_queue_depth(self, target: str) -> int:
        pending = self._queues.get(target)
        return len(pending) if pending else 0

    def cancel(self, task_id: str) -> bool:
        """取消任务：从待执行队列移除，若为活动任务则清空活动槽；已终态任务不再改变。"""
        task = self._registry.get(task_id)
        if task is None:
            return False
        if task.state.is_terminal:
            return task.state == TaskState.cancelled

        task.state = TaskState.cancelled
        task.completed_at = now_ms()

        key = target_key(task.target_id)
        pending = self._queues.get(key)
        if pending is not None and task in pending:
            pending.remove(task)
        if self._active.get(key) is task:
            del self._active[key]
        return True

    def get_task(self, task_id: str) -> TaskDelegation | None:
        return self._registry.get(task_id)
