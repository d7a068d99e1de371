"""任务接口：委派任务、查询与取消任务、组件健康、监视状态与模板/工具目录。"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException

from comet_orchestrator.api.v1.schemas import (
    HealthStatusResponse,
    MonitorStateResponse,
    TaskCancelResponse,
    TaskCreateRequest,
    TaskResultResponse,
    TaskStatusResponse,
    TemplateResponse,
    ToolResponse,
)
from comet_orchestrator.application.container import get_monitor_proxy, get_orchestrator
from comet_orchestrator.application.orchestrator import TaskOrchestrator
from comet_orchestrator.infra.monitor.proxy import MonitorProxy

router = APIRouter()


def _service() -> TaskOrchestrator:
    return get_orchestrator()


def _monitor() -> MonitorProxy:
    return get_monitor_proxy()


@router.post("/tasks", response_model=TaskResultResponse)
async def create_task(
    body: TaskCreateRequest,
    orchestrator: TaskOrchestrator = Depends(_service),
) -> TaskResultResponse:
    """委派任务；结构化失败（未命中模板、步骤失败等）同样以 200 返回。"""
    result = await orchestrator.delegate(
        body.description,
        target_id=body.target_id,
        timeout_ms=body.timeout_ms,
        async_=body.async_,
        template=body.template,
    )
    return TaskResultResponse.model_validate(result.to_dict())


@router.get("/tasks/{task_id}", response_model=TaskStatusResponse)
async def get_task(
    task_id: str,
    orchestrator: TaskOrchestrator = Depends(_service),
) -> TaskStatusResponse:
    task = orchestrator.get_task_status(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"task not found: {task_id}")
    return TaskStatusResponse.model_validate(task.to_dict())


@router.post("/tasks/{task_id}/cancel", response_model=TaskCancelResponse)
async def cancel_task(
    task_id: str,
    orchestrator: TaskOrchestrator = Depends(_service),
) -> TaskCancelResponse:
    """取消任务；已终态的任务返回 cancelled=false（已取消的除外）。"""
    if orchestrator.get_task_status(task_id) is None:
        raise HTTPException(status_code=404, detail=f"task not found: {task_id}")
    return TaskCancelResponse(task_id=task_id, cancelled=orchestrator.cancel_task(task_id))


@router.get("/status", response_model=HealthStatusResponse)
async def get_status(
    force: bool = False,
    orchestrator: TaskOrchestrator = Depends(_service),
) -> HealthStatusResponse:
    result = await orchestrator.health(force)
    return HealthStatusResponse.model_validate(result.to_dict())


@router.get("/templates", response_model=list[TemplateResponse])
async def list_templates(orchestrator: TaskOrchestrator = Depends(_service)) -> list[TemplateResponse]:
    return [TemplateResponse(**item) for item in orchestrator.list_templates()]


@router.get("/tools", response_model=list[ToolResponse])
async def list_tools(orchestrator: TaskOrchestrator = Depends(_service)) -> list[ToolResponse]:
    return [ToolResponse(**item) for item in orchestrator.list_tools()]


@router.get("/monitor", response_model=MonitorStateResponse, response_model_exclude_none=True)
async def get_monitor_state(
    section: Literal["windows", "tabs", "all"] = "all",
    monitor: MonitorProxy = Depends(_monitor),
) -> MonitorStateResponse:
    """转发监视服务的窗口与标签页状态；服务不可达时 available=false。"""
    return MonitorStateResponse.model_validate(await monitor.get_state(section))
