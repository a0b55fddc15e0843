"""依赖容器模块，负责单例化创建注册中心、仓储、运行时与应用服务对象。"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache
from importlib import import_module

from gtm_orchestrator.application.functions import FunctionTable, register_builtin_functions
from gtm_orchestrator.application.post_sync import PostSyncTrigger
from gtm_orchestrator.application.runtime import SkillRuntime
from gtm_orchestrator.application.scheduler import SkillScheduler
from gtm_orchestrator.application.step_executor import StepExecutor
from gtm_orchestrator.application.sync_coordinator import SyncJobCoordinator
from gtm_orchestrator.application.sync_worker import ConnectorSyncer, SyncWorker
from gtm_orchestrator.config import get_settings
from gtm_orchestrator.domain.skills.library.catalog import bootstrap_agent_registry, bootstrap_skill_registry
from gtm_orchestrator.domain.skills.registry import AgentRegistry, SkillRegistry
from gtm_orchestrator.infra.db.repository import (
    ConnectionRepository,
    CrmRepository,
    SkillRunRepository,
    SyncLogRepository,
)
from gtm_orchestrator.infra.db.session import SessionLocal
from gtm_orchestrator.infra.model.client import ModelClient
from gtm_orchestrator.infra.queue import CeleryJobQueue

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_skill_registry() -> SkillRegistry:
    """获取技能注册中心单例，首次构建时注册全部内置技能。
    返回:
    - 已填充的 SkillRegistry；内置技能图结构非法时抛出 InvalidGraphError。
    """
    settings = get_settings()
    return bootstrap_skill_registry(SkillRegistry(settings.skill_registry_policy))


@lru_cache(maxsize=1)
def get_agent_registry() -> AgentRegistry:
    settings = get_settings()
    return bootstrap_agent_registry(AgentRegistry(settings.agent_registry_policy))


@lru_cache(maxsize=1)
def get_sync_log_repository() -> SyncLogRepository:
    return SyncLogRepository(SessionLocal)


@lru_cache(maxsize=1)
def get_connection_repository() -> ConnectionRepository:
    return ConnectionRepository(SessionLocal)


@lru_cache(maxsize=1)
def get_skill_run_repository() -> SkillRunRepository:
    return SkillRunRepository(SessionLocal)


@lru_cache(maxsize=1)
def get_crm_repository() -> CrmRepository:
    return CrmRepository(SessionLocal)


@lru_cache(maxsize=1)
def get_function_table() -> FunctionTable:
    """获取计算函数表单例。"""
    return register_builtin_functions(
        FunctionTable(),
        crm=get_crm_repository(),
        connections=get_connection_repository(),
    )


@lru_cache(maxsize=1)
def get_model_client() -> ModelClient:
    settings = get_settings()
    return ModelClient(
        base_url=settings.model_base_url,
        api_key=settings.model_api_key,
        model=settings.model_name,
        timeout_seconds=settings.model_request_timeout_seconds,
        default_max_tokens=settings.model_max_tokens,
    )


@lru_cache(maxsize=1)
def get_skill_runtime() -> SkillRuntime:
    """获取技能运行时单例。
    返回:
    - 绑定函数表、模型客户端与运行记录仓储的 SkillRuntime。
    """
    settings = get_settings()
    executor = StepExecutor(
        functions=get_function_table(),
        model_invoker=get_model_client(),
        default_timeout_seconds=settings.step_timeout_seconds,
    )
    return SkillRuntime(
        executor=executor,
        run_store=get_skill_run_repository(),
        max_concurrency=settings.skill_max_concurrency,
    )


@lru_cache(maxsize=1)
def get_post_sync_executor() -> ThreadPoolExecutor:
    settings = get_settings()
    return ThreadPoolExecutor(max_workers=settings.post_sync_max_workers, thread_name_prefix="post-sync")


@lru_cache(maxsize=1)
def get_post_sync_trigger() -> PostSyncTrigger:
    return PostSyncTrigger(
        registry=get_skill_registry(),
        runtime=get_skill_runtime(),
        executor=get_post_sync_executor(),
        agents=get_agent_registry(),
    )


@lru_cache(maxsize=1)
def get_job_queue() -> CeleryJobQueue:
    # 延迟导入，避免 celery_app 与容器之间的循环依赖。
    from gtm_orchestrator.worker.celery_app import celery_app

    return CeleryJobQueue(celery_app)


@lru_cache(maxsize=1)
def get_sync_coordinator() -> SyncJobCoordinator:
    """获取同步协调器单例。"""
    settings = get_settings()
    return SyncJobCoordinator(
        sync_logs=get_sync_log_repository(),
        connections=get_connection_repository(),
        job_queue=get_job_queue(),
        stale_lock_minutes=settings.sync_stale_lock_minutes,
        manual_priority=settings.manual_sync_priority,
        scheduled_priority=settings.scheduled_sync_priority,
    )


def load_connector_syncer(target: str) -> ConnectorSyncer:
    """按 "module:factory" 导入并调用零参工厂，返回同步实现。"""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"invalid connector syncer target: {target!r}")
    factory = getattr(import_module(module_name), attr)
    return factory()


@lru_cache(maxsize=1)
def get_connector_syncers() -> dict[str, ConnectorSyncer]:
    """加载 settings.connector_syncers 中配置的同步实现；未配置的连接器类型在同步时标记为 failed。"""
    syncers = {
        connector_type: load_connector_syncer(target)
        for connector_type, target in get_settings().connector_syncers_map().items()
    }
    logger.info(
        "connector syncers loaded",
        extra={"event": "container.syncers.loaded", "payload_preview": sorted(syncers)},
    )
    return syncers


@lru_cache(maxsize=1)
def get_sync_worker() -> SyncWorker:
    return SyncWorker(
        sync_logs=get_sync_log_repository(),
        connections=get_connection_repository(),
        syncers=get_connector_syncers(),
        post_sync=get_post_sync_trigger(),
    )


@lru_cache(maxsize=1)
def get_skill_scheduler() -> SkillScheduler:
    settings = get_settings()
    return SkillScheduler(
        registry=get_skill_registry(),
        runtime=get_skill_runtime(),
        connections=get_connection_repository(),
        run_store=get_skill_run_repository(),
        agents=get_agent_registry(),
        recent_run_window_hours=settings.recent_run_window_hours,
    )


def shutdown_container_resources() -> None:
    """关闭后台执行器并清理依赖容器缓存。"""
    if get_post_sync_executor.cache_info().currsize:
        get_post_sync_executor().shutdown(wait=True)

    # 按依赖顺序清理缓存，确保后续请求可重新构建全新实例。
    for provider in (
        get_skill_scheduler,
        get_sync_worker,
        get_connector_syncers,
        get_sync_coordinator,
        get_job_queue,
        get_post_sync_trigger,
        get_post_sync_executor,
        get_skill_runtime,
        get_model_client,
        get_function_table,
        get_crm_repository,
        get_skill_run_repository,
        get_connection_repository,
        get_sync_log_repository,
        get_agent_registry,
        get_skill_registry,
    ):
        provider.cache_clear()
    logger.info("container resources released", extra={"event": "container.shutdown"})
