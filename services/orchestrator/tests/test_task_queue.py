"""任务队列测试：验证按目标 FIFO、单活动槽约束与取消语义。"""

from comet_orchestrator.domain.enums import TaskState
from comet_orchestrator.domain.models import TaskDelegation
from comet_orchestrator.domain.task_queue import GLOBAL_TARGET, TaskQueue, target_key


def _task(task_id: str, target_id: str | None = "tab-1") -> TaskDelegation:
    return TaskDelegation(
        id=task_id,
        description=task_id,
        template_name="screenshot",
        steps=[],
        timeout_ms=1_000,
        target_id=target_id,
    )


def test_fifo_order_per_target() -> None:
    """同一目标的任务按入队顺序出队。"""
    queue = TaskQueue()
    for task_id in ("A", "B", "C"):
        queue.enqueue(_task(task_id))

    order = []
    while (task := queue.dequeue("tab-1")) is not None:
        order.append(task.id)
        queue.complete_active("tab-1")

    assert order == ["A", "B", "C"]
    assert queue.get_task("A").state == TaskState.completed
    assert queue.get_task("A").completed_at is not None


def test_second_dequeue_blocked_while_active_running() -> None:
    queue = TaskQueue()
    queue.enqueue(_task("A"))
    queue.enqueue(_task("B"))

    first = queue.dequeue("tab-1")
    assert first.state == TaskState.running
    assert first.started_at is not None
    assert queue.dequeue("tab-1") is None
    assert queue.get_active_task("tab-1") is first
    assert queue.get_queue_depth("tab-1") == 1


def test_targets_are_independent() -> None:
    """不同目标各自拥有活动槽。"""
    queue = TaskQueue()
    queue.enqueue(_task("A", "tab-1"))
    queue.enqueue(_task("B", "tab-2"))
    queue.enqueue(_task("G", None))

    assert queue.dequeue("tab-1").id == "A"
    assert queue.dequeue("tab-2").id == "B"
    assert queue.dequeue(GLOBAL_TARGET).id == "G"
    assert target_key(None) == GLOBAL_TARGET


def test_cancel_queued_task_removes_it() -> None:
    queue = TaskQueue()
    queue.enqueue(_task("A"))
    queue.enqueue(_task("B"))

    assert queue.cancel("B") is True
    assert queue.get_task("B").state == TaskState.cancelled
    assert queue.get_task("B").completed_at is not None
    assert queue.get_queue_depth("tab-1") == 1


def test_cancel_active_task_does_not_touch_other_targets() -> None:
    """取消活动任务只清空自身目标的活动槽。"""
    queue = TaskQueue()
    queue.enqueue(_task("A", "tab-1"))
    queue.enqueue(_task("B", "tab-2"))
    queue.enqueue(_task("C", "tab-2"))
    queue.dequeue("tab-1")
    other = queue.dequeue("tab-2")

    assert queue.cancel("A") is True
    assert queue.get_task("A").state == TaskState.cancelled
    assert queue.get_active_task("tab-1") is None
    assert queue.get_active_task("tab-2") is other
    assert other.state == TaskState.running
    assert queue.get_queue_depth("tab-2") == 1


def test_cancel_terminal_or_unknown_task() -> None:
    """已终态任务不再改变状态；重复取消返回 True。"""
    queue = TaskQueue()
    queue.enqueue(_task("A"))
    queue.dequeue("tab-1")
    queue.complete_active("tab-1")

    assert queue.cancel("A") is False
    assert queue.get_task("A").state == TaskState.completed
    assert queue.cancel("missing") is False

    queue.enqueue(_task("B"))
    assert queue.cancel("B") is True
    assert queue.cancel("B") is True
    assert queue.get_task("B").state == TaskState.cancelled


def test_complete_active_keeps_failed_state() -> None:
    queue = TaskQueue()
    queue.enqueue(_task("A"))
    task = queue.dequeue("tab-1")
    task.state = TaskState.failed

    queue.complete_active("tab-1")

    assert task.state == TaskState.failed
    assert queue.get_active_task("tab-1") is None
