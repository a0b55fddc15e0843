"""API 总路由配置，按业务域注册 sync 与 skills 子路由。"""

from __future__ import annotations

from fastapi import APIRouter

from gtm_orchestrator.api.v1.skills import router as skills_router
from gtm_orchestrator.api.v1.sync import router as sync_router
from gtm_orchestrator.config import get_settings

settings = get_settings()

api_router = APIRouter(prefix=settings.api_prefix)
api_router.include_router(sync_router, tags=["sync"])
api_router.include_router(skills_router, tags=["skills"])
