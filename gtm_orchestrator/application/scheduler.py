"""定时技能调度：按 cron 表达式对所有活跃工作区扇出执行技能。"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from gtm_orchestrator.application.runtime import SkillRuntime
from gtm_orchestrator.domain.models import RunSeed, SkillDefinition
from gtm_orchestrator.domain.skills.registry import AgentRegistry, SkillRegistry
from gtm_orchestrator.infra.db.repository import ConnectionRepository, SkillRunRepository

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def group_by_cron(skills: Iterable[SkillDefinition]) -> dict[str, list[str]]:
    """按 cron 表达式聚合技能 ID，用于生成 beat 条目。"""
    groups: dict[str, list[str]] = {}
    for skill in skills:
        if skill.schedule is not None and skill.schedule.cron:
            groups.setdefault(skill.schedule.cron, []).append(skill.id)
    return groups


class SkillScheduler:
    def __init__(
        self,
        *,
        registry: SkillRegistry,
        runtime: SkillRuntime,
        connections: ConnectionRepository,
        run_store: SkillRunRepository,
        agents: AgentRegistry | None = None,
        recent_run_window_hours: int = 6,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._runtime = runtime
        self._connections = connections
        self._run_store = run_store
        self._agents = agents
        self._recent_window = timedelta(hours=recent_run_window_hours)
        self._clock = clock

    def run_scheduled(self, skill_ids: Iterable[str], trigger_type: str = "scheduled") -> list[dict[str, Any]]:
        """对每个活跃工作区执行给定技能，返回逐项结果摘要。

        跳过规则：技能未注册、所属 Agent 全部停用、窗口期内已运行过。
        单个技能失败只记录，不影响其余技能。
        """
        workspaces = self._connections.list_active_workspaces()
        summary: list[dict[str, Any]] = []
        for skill_id in skill_ids:
            skill = self._registry.get(skill_id)
            if skill is None:
                logger.warning("scheduled skill not registered", extra={"event": "scheduler.skill.unknown", "skill_id": skill_id})
                summary.append({"skill_id": skill_id, "workspace_id": None, "status": "unknown_skill"})
                continue
            if self._agents is not None and not self._agents.is_skill_enabled(skill_id):
                summary.append({"skill_id": skill_id, "workspace_id": None, "status": "disabled"})
                continue
            for workspace_id in workspaces:
                summary.append(self._run_one(skill, workspace_id, trigger_type))
        logger.info(
            "scheduled skills finished",
            extra={"event": "scheduler.run.finished", "payload_preview": summary},
        )
        return summary

    def _run_one(self, skill: SkillDefinition, workspace_id: str, trigger_type: str) -> dict[str, Any]:
        since = self._clock() - self._recent_window
        if self._run_store.has_run_since(workspace_id, skill.id, since):
            return {"skill_id": skill.id, "workspace_id": workspace_id, "status": "skipped_recent"}
        seed = RunSeed(workspace_id=workspace_id, trigger_type=trigger_type)
        try:
            result = asyncio.run(self._runtime.execute(skill, seed))
        except Exception as exc:
            logger.exception(
                "scheduled skill failed",
                extra={
                    "event": "scheduler.skill.failed",
                    "skill_id": skill.id,
                    "workspace_id": workspace_id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            return {"skill_id": skill.id, "workspace_id": workspace_id, "status": "error", "error": str(exc)}
        return {
            "skill_id": skill.id,
            "workspace_id": workspace_id,
            "status": result.status.value,
            "run_id": result.run_id,
        }
