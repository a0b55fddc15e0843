"""HTTP 入口：建表、注册内置技能，挂载同步与技能路由。"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request, Response

from gtm_orchestrator.api.router import api_router
from gtm_orchestrator.application.container import (
    get_agent_registry,
    get_skill_registry,
    shutdown_container_resources,
)
from gtm_orchestrator.config import get_settings
from gtm_orchestrator.infra.db.session import init_db
from gtm_orchestrator.infra.logging.context import bind_log_context
from gtm_orchestrator.infra.logging.setup import configure_logging, shutdown_logging

settings = get_settings()
configure_logging(settings, process_role="api")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    init_db()
    # 在接收请求前构建注册中心，内置技能图非法时直接启动失败。
    stats = get_skill_registry().stats()
    logger.info("api ready", extra={"event": "api.startup.succeeded", "payload_preview": stats})
    try:
        yield
    finally:
        logger.info("api stopping", extra={"event": "api.shutdown.started"})
        shutdown_container_resources()
        shutdown_logging()


async def request_context(request: Request, call_next) -> Response:
    """为每个请求绑定 request_id（优先取 X-Request-Id），记录耗时与状态码。"""
    request_id = request.headers.get("X-Request-Id") or uuid4().hex
    route = f"{request.method} {request.url.path}"
    started = time.perf_counter()
    status_code = 500
    with bind_log_context(request_id=request_id):
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            logger.log(
                logging.INFO if status_code < 500 else logging.ERROR,
                "http %s -> %s",
                route,
                status_code,
                extra={
                    "event": "http.request.completed" if status_code < 500 else "http.request.failed",
                    "op": route,
                    "status_code": status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
    response.headers["X-Request-Id"] = request_id
    return response


def create_app() -> FastAPI:
    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    application.middleware("http")(request_context)

    @application.get("/health")
    def health() -> dict[str, Any]:
        """存活探针，附带已注册技能与 Agent 的数量。"""
        return {
            "status": "ok",
            "skills": get_skill_registry().stats(),
            "agents": len(get_agent_registry().all()),
        }

    application.include_router(api_router)
    return application


app = create_app()
