"""API 总路由配置，在统一前缀下注册任务相关子路由。"""

from __future__ import annotations

from fastapi import APIRouter

from comet_orchestrator.api.v1.tasks import router as tasks_router
from comet_orchestrator.config import get_settings

settings = get_settings()

api_router = APIRouter(prefix=settings.api_prefix)
api_router.include_router(tasks_router, tags=["tasks"])
