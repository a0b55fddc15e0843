"""异步任务定义：连接器同步、每日定时同步、按需技能运行与定时技能扇出。"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy.exc import OperationalError

from gtm_orchestrator.application.container import (
    get_skill_registry,
    get_skill_runtime,
    get_skill_scheduler,
    get_sync_coordinator,
    get_sync_worker,
)
from gtm_orchestrator.domain.models import RunSeed
from gtm_orchestrator.infra.logging.context import bind_log_context
from gtm_orchestrator.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="gtm_orchestrator.worker.tasks.run_sync_task")
def run_sync_task(
    self,
    workspace_id: str,
    sync_id: str,
    connector_type: str,
    mode: str,
    sync_type: str = "manual",
) -> dict[str, Any]:
    """执行一次连接器同步；数据库瞬时错误按退避策略重试。"""
    with bind_log_context(workspace_id=workspace_id, task_id=self.request.id):
        logger.info(
            "sync task started",
            extra={
                "event": "sync.task.started",
                "sync_id": sync_id,
                "payload_preview": {"connector_type": connector_type, "mode": mode, "sync_type": sync_type},
            },
        )
        try:
            result = get_sync_worker().run(sync_id, workspace_id, connector_type, mode)
        except OperationalError as exc:
            countdown = 30 if self.request.retries == 0 else 120
            logger.warning(
                "sync task transient database error",
                extra={
                    "event": "sync.task.retrying",
                    "external_service": "database",
                    "payload_preview": {"countdown": countdown, "retries": self.request.retries},
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise self.retry(exc=exc, max_retries=2, countdown=countdown)
        except Exception as exc:
            logger.exception(
                "sync task failed",
                extra={"event": "sync.task.failed", "error_type": type(exc).__name__, "error": str(exc)},
            )
            raise
        logger.info("sync task finished", extra={"event": "sync.task.succeeded", "sync_id": sync_id})
        return result.to_dict()


@celery_app.task(bind=True, name="gtm_orchestrator.worker.tasks.run_skill_task")
def run_skill_task(
    self,
    workspace_id: str,
    skill_id: str,
    business_context: dict[str, Any] | None = None,
    time_config: dict[str, str] | None = None,
    trigger_type: str = "on_demand",
) -> dict[str, Any]:
    """按需运行单个技能。"""
    with bind_log_context(workspace_id=workspace_id, task_id=self.request.id):
        skill = get_skill_registry().get(skill_id)
        if skill is None:
            raise KeyError(f"unknown skill_id: {skill_id}")
        seed = RunSeed(
            workspace_id=workspace_id,
            business_context=business_context or {},
            time_config=time_config,
            trigger_type=trigger_type,
        )
        result = asyncio.run(get_skill_runtime().execute(skill, seed))
        return {"run_id": result.run_id, "status": result.status.value, "errors": result.errors}


@celery_app.task(bind=True, name="gtm_orchestrator.worker.tasks.run_scheduled_skills_task")
def run_scheduled_skills_task(self, skill_ids: list[str]) -> list[dict[str, Any]]:
    """beat 触发的定时技能扇出。"""
    with bind_log_context(task_id=self.request.id):
        logger.info(
            "scheduled skills task started",
            extra={"event": "scheduler.task.started", "payload_preview": {"skill_ids": skill_ids}},
        )
        return get_skill_scheduler().run_scheduled(skill_ids, trigger_type="scheduled")


@celery_app.task(bind=True, name="gtm_orchestrator.worker.tasks.run_scheduled_sync_task")
def run_scheduled_sync_task(self) -> list[dict[str, Any]]:
    """beat 触发的每日同步：对所有已连接数据源提交 scheduled 同步作业。"""
    with bind_log_context(task_id=self.request.id):
        logger.info("scheduled sync task started", extra={"event": "sync.schedule.started"})
        return get_sync_coordinator().submit_scheduled()
