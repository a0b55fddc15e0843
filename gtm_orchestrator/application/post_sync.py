"""同步完成后的技能触发：筛选 post_sync 技能并隔离执行。"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from gtm_orchestrator.application.runtime import SkillRuntime
from gtm_orchestrator.domain.enums import Trigger
from gtm_orchestrator.domain.models import ConnectorSyncResult, RunSeed, SkillDefinition, SkillRunResult
from gtm_orchestrator.domain.skills.registry import AgentRegistry, SkillRegistry
from gtm_orchestrator.infra.logging.context import bind_log_context

logger = logging.getLogger(__name__)

EVENT_TRIGGERS: dict[str, Trigger] = {
    "sync_completed": Trigger.post_sync,
}


@dataclass(slots=True)
class TriggerDispatch:
    """一次触发的派发结果；futures 仅用于观测，调用方无需等待。"""
    skill_ids: list[str]
    futures: list[Future[SkillRunResult | None]] = field(default_factory=list)


class PostSyncTrigger:
    """同步完成事件处理器。

    每个技能作为独立任务提交到执行器，任务内部捕获并记录所有异常，
    单个技能失败不会影响其他技能，也不会回传给同步流程。
    """

    def __init__(
        self,
        *,
        registry: SkillRegistry,
        runtime: SkillRuntime,
        executor: Executor,
        agents: AgentRegistry | None = None,
    ) -> None:
        self._registry = registry
        self._runtime = runtime
        self._executor = executor
        self._agents = agents

    def on_sync_completed(
        self,
        workspace_id: str,
        results: Iterable[ConnectorSyncResult | Mapping[str, Any]],
    ) -> TriggerDispatch:
        payload = {
            "event": "sync_completed",
            "results": [item.to_dict() if isinstance(item, ConnectorSyncResult) else dict(item) for item in results],
        }
        return self._dispatch(workspace_id, Trigger.post_sync, payload)

    def on_event(self, event: str, workspace_id: str, payload: Mapping[str, Any] | None = None) -> TriggerDispatch:
        """按事件名映射触发器；未知事件不派发任何技能。"""
        trigger = EVENT_TRIGGERS.get(event)
        if trigger is None:
            logger.info(
                "event ignored",
                extra={"event": "trigger.event.ignored", "workspace_id": workspace_id, "op": event},
            )
            return TriggerDispatch(skill_ids=[])
        if trigger is Trigger.post_sync:
            return self.on_sync_completed(workspace_id, (payload or {}).get("results") or [])
        return self._dispatch(workspace_id, trigger, {"event": event, **dict(payload or {})})

    def _dispatch(self, workspace_id: str, trigger: Trigger, payload: dict[str, Any]) -> TriggerDispatch:
        skills = [
            skill
            for skill in self._registry.list_by_trigger(trigger)
            if self._agents is None or self._agents.is_skill_enabled(skill.id)
        ]
        dispatch = TriggerDispatch(skill_ids=[skill.id for skill in skills])
        logger.info(
            "post-sync skills dispatched",
            extra={
                "event": "trigger.dispatched",
                "workspace_id": workspace_id,
                "op": trigger.value,
                "payload_preview": {"skill_ids": dispatch.skill_ids},
            },
        )
        for skill in skills:
            dispatch.futures.append(self._executor.submit(self._run_isolated, skill, workspace_id, payload))
        return dispatch

    def _run_isolated(
        self,
        skill: SkillDefinition,
        workspace_id: str,
        payload: dict[str, Any],
    ) -> SkillRunResult | None:
        seed = RunSeed(workspace_id=workspace_id, trigger_payload=payload, trigger_type=Trigger.post_sync.value)
        with bind_log_context(workspace_id=workspace_id):
            try:
                result = asyncio.run(self._runtime.execute(skill, seed))
            except Exception as exc:
                logger.exception(
                    "post-sync skill failed",
                    extra={
                        "event": "trigger.skill.failed",
                        "skill_id": skill.id,
                        "workspace_id": workspace_id,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                return None
        logger.info(
            "post-sync skill finished",
            extra={
                "event": "trigger.skill.finished",
                "skill_id": skill.id,
                "workspace_id": workspace_id,
                "payload_preview": {"run_id": result.run_id, "status": result.status.value},
            },
        )
        return result
