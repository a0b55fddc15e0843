"""作业队列：将同步与技能作业投递到 Celery。"""

from __future__ import annotations

import logging
import time
from typing import Any, Mapping, Protocol

from celery import Celery

logger = logging.getLogger(__name__)

JOB_TASKS: dict[str, str] = {
    "connector_sync": "gtm_orchestrator.worker.tasks.run_sync_task",
    "skill_run": "gtm_orchestrator.worker.tasks.run_skill_task",
}


class JobQueue(Protocol):
    """作业队列协议：投递成功返回 job_id。"""

    def create_job(
        self,
        *,
        workspace_id: str,
        job_type: str,
        payload: Mapping[str, Any],
        priority: int = 0,
    ) -> str: ...


class CeleryJobQueue:
    """基于 Celery send_task 的作业队列实现。"""
    def __init__(self, celery_app: Celery, *, max_priority: int = 9) -> None:
        self._celery_app = celery_app
        self._max_priority = max_priority

    def _celery_priority(self, priority: int) -> int:
        # 业务优先级越大越紧急；Redis 传输下 Celery 数值越小越先消费。
        return max(0, min(self._max_priority, self._max_priority - priority))

    def create_job(
        self,
        *,
        workspace_id: str,
        job_type: str,
        payload: Mapping[str, Any],
        priority: int = 0,
    ) -> str:
        task_name = JOB_TASKS.get(job_type)
        if task_name is None:
            raise ValueError(f"unsupported job type: {job_type}")
        started = time.perf_counter()
        try:
            result = self._celery_app.send_task(
                task_name,
                kwargs={"workspace_id": workspace_id, **dict(payload)},
                priority=self._celery_priority(priority),
            )
        except Exception as exc:
            logger.error(
                "job enqueue failed",
                extra={
                    "event": "queue.enqueue.failed",
                    "external_service": "redis",
                    "op": job_type,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "workspace_id": workspace_id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise
        logger.info(
            "job enqueued",
            extra={
                "event": "queue.enqueue.succeeded",
                "external_service": "redis",
                "op": job_type,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "workspace_id": workspace_id,
                "payload_preview": {"job_id": result.id, "priority": priority},
            },
        )
        return str(result.id)
