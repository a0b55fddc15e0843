"""Celery 应用：sync/skills 两条队列、基于 Redis 优先级的投递，以及由技能 cron 生成的 beat 表。"""

from __future__ import annotations

import logging
import sys

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init, worker_process_shutdown

from gtm_orchestrator.application.container import get_skill_registry, shutdown_container_resources
from gtm_orchestrator.application.scheduler import group_by_cron
from gtm_orchestrator.config import get_settings
from gtm_orchestrator.infra.db.session import init_db
from gtm_orchestrator.infra.logging.setup import configure_logging, shutdown_logging

TASKS_MODULE = "gtm_orchestrator.worker.tasks"
SCHEDULED_SKILLS_TASK = f"{TASKS_MODULE}.run_scheduled_skills_task"
SCHEDULED_SYNC_TASK = f"{TASKS_MODULE}.run_scheduled_sync_task"

settings = get_settings()
logger = logging.getLogger(__name__)


def crontab_from_expression(expression: str) -> crontab:
    """五段式 cron 表达式（m h dom mon dow）转为 Celery crontab；段数不对抛 ValueError。"""
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"invalid cron expression: {expression!r}")
    names = ("minute", "hour", "day_of_month", "month_of_year", "day_of_week")
    return crontab(**dict(zip(names, fields)))


def build_beat_schedule() -> dict[str, dict[str, object]]:
    """同一 cron 表达式下的技能合并为一个 beat 条目，由任务内部逐个 workspace 展开。"""
    grouped = group_by_cron(get_skill_registry().list_scheduled())
    return {
        "skills-" + "_".join(expression.split()): {
            "task": SCHEDULED_SKILLS_TASK,
            "schedule": crontab_from_expression(expression),
            "kwargs": {"skill_ids": skill_ids},
        }
        for expression, skill_ids in grouped.items()
    }


def build_sync_beat_schedule(expression: str) -> dict[str, dict[str, object]]:
    return {"connector-sync-daily": {"task": SCHEDULED_SYNC_TASK, "schedule": crontab_from_expression(expression)}}


def _process_role(argv: list[str]) -> str | None:
    words = {item.lower() for item in argv}
    return next((role for role in ("beat", "worker") if role in words), None)


process_role = _process_role(sys.argv[1:])
if process_role:
    configure_logging(settings, process_role=process_role)

celery_app = Celery("gtm_orchestrator", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.update(
    imports=(TASKS_MODULE,),
    task_default_queue="default",
    task_routes={
        f"{TASKS_MODULE}.run_sync_task": {"queue": "sync"},
        f"{TASKS_MODULE}.run_skill_task": {"queue": "skills"},
        SCHEDULED_SKILLS_TASK: {"queue": "skills"},
        SCHEDULED_SYNC_TASK: {"queue": "sync"},
    },
    # 长任务独占预取槽位，优先级才能在队列层面生效。
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_track_started=True,
    broker_connection_retry_on_startup=True,
    broker_transport_options={"priority_steps": list(range(10)), "queue_order_strategy": "priority"},
    timezone="UTC",
    enable_utc=True,
    beat_schedule={**build_beat_schedule(), **build_sync_beat_schedule(settings.scheduled_sync_cron)},
)
if settings.celery_task_always_eager:
    celery_app.conf.update(task_always_eager=True, task_eager_propagates=True)

if process_role:
    logger.info(
        "celery %s configured",
        process_role,
        extra={
            "event": "celery.config.loaded",
            "external_service": "redis",
            "op": process_role,
            "payload_preview": {
                "always_eager": settings.celery_task_always_eager,
                "beat_entries": sorted(celery_app.conf.beat_schedule),
            },
        },
    )


@worker_process_init.connect
def _prepare_worker_process(**_: object) -> None:
    init_db()


@worker_process_shutdown.connect
def _release_worker_process(**_: object) -> None:
    shutdown_container_resources()
    shutdown_logging()
