"""定时调度测试：按 cron 分组、活跃工作区扇出与近期运行去重。"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Mapping

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from gtm_orchestrator.application.functions import FunctionTable
from gtm_orchestrator.application.runtime import SkillRuntime
from gtm_orchestrator.application.scheduler import SkillScheduler, group_by_cron
from gtm_orchestrator.application.step_executor import StepExecutor
from gtm_orchestrator.domain.enums import SkillCategory, Tier, Trigger
from gtm_orchestrator.domain.models import (
    AgentDefinition,
    RunContext,
    RunSeed,
    SkillDefinition,
    SkillSchedule,
    StepDefinition,
)
from gtm_orchestrator.domain.skills.registry import AgentRegistry, SkillRegistry
from gtm_orchestrator.infra.db.models import Base
from gtm_orchestrator.infra.db.repository import ConnectionRepository, SkillRunRepository

NOW = datetime(2026, 3, 13, 16, 0, tzinfo=timezone.utc)


def _skill(skill_id: str, cron: str | None) -> SkillDefinition:
    return SkillDefinition(
        id=skill_id,
        name=skill_id,
        version="1.0.0",
        category=SkillCategory.reporting,
        tier=Tier.compute,
        steps=(StepDefinition(id="only", name="only", tier=Tier.compute, compute_fn="count", output_key="out"),),
        schedule=SkillSchedule(cron=cron, triggers=frozenset({Trigger.cron}) if cron else frozenset()),
    )


def _setup(tmp_path: Path, calls: list[str]) -> tuple[SkillRegistry, SkillRuntime, ConnectionRepository, SkillRunRepository]:
    engine = create_engine(f"sqlite:///{tmp_path / 'scheduler.db'}", future=True)
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, class_=Session)
    connections = ConnectionRepository(factory)
    connections.upsert("ws-a", "hubspot")
    connections.upsert("ws-b", "salesforce", status="healthy")
    connections.upsert("ws-c", "gong", status="disconnected")

    def _count(args: Mapping[str, Any], ctx: RunContext) -> int:
        calls.append(ctx.workspace_id)
        return len(calls)

    table = FunctionTable()
    table.register("count", _count)
    runs = SkillRunRepository(factory)
    runtime = SkillRuntime(executor=StepExecutor(functions=table), run_store=runs, clock=lambda: NOW)
    registry = SkillRegistry()
    registry.register_all([_skill("rep-scorecard", "0 16 * * 5"), _skill("digest", "0 16 * * 5"), _skill("manual", None)])
    return registry, runtime, connections, runs


def test_group_by_cron_collects_skills_sharing_an_expression() -> None:
    skills = [_skill("a", "0 8 * * 1"), _skill("b", "0 16 * * 5"), _skill("c", "0 8 * * 1"), _skill("d", None)]

    assert group_by_cron(skills) == {"0 8 * * 1": ["a", "c"], "0 16 * * 5": ["b"]}


def test_scheduled_skill_runs_once_per_active_workspace(tmp_path: Path) -> None:
    calls: list[str] = []
    registry, runtime, connections, runs = _setup(tmp_path, calls)
    scheduler = SkillScheduler(registry=registry, runtime=runtime, connections=connections, run_store=runs, clock=lambda: NOW)

    summary = scheduler.run_scheduled(["rep-scorecard", "unknown-skill"])

    assert sorted(calls) == ["ws-a", "ws-b"]
    assert [(item["workspace_id"], item["status"]) for item in summary] == [
        ("ws-a", "completed"),
        ("ws-b", "completed"),
        (None, "unknown_skill"),
    ]
    assert runs.list_runs("ws-a")[0].trigger_type == "scheduled"


def test_recent_run_is_skipped(tmp_path: Path) -> None:
    calls: list[str] = []
    registry, runtime, connections, runs = _setup(tmp_path, calls)
    asyncio.run(runtime.execute(registry.get("rep-scorecard"), RunSeed(workspace_id="ws-a")))
    later = NOW + timedelta(hours=2)
    scheduler = SkillScheduler(
        registry=registry,
        runtime=runtime,
        connections=connections,
        run_store=runs,
        recent_run_window_hours=6,
        clock=lambda: later,
    )

    summary = scheduler.run_scheduled(["rep-scorecard"])

    assert {item["workspace_id"]: item["status"] for item in summary} == {"ws-a": "skipped_recent", "ws-b": "completed"}
    assert calls == ["ws-a", "ws-b"]


def test_skill_owned_only_by_disabled_agent_is_not_run(tmp_path: Path) -> None:
    calls: list[str] = []
    registry, runtime, connections, runs = _setup(tmp_path, calls)
    agents = AgentRegistry()
    agents.register(AgentDefinition(id="team-performance", name="Team", skill_ids=("rep-scorecard",), enabled=False))
    scheduler = SkillScheduler(
        registry=registry, runtime=runtime, connections=connections, run_store=runs, agents=agents, clock=lambda: NOW
    )

    summary = scheduler.run_scheduled(["rep-scorecard", "digest"])

    assert summary[0] == {"skill_id": "rep-scorecard", "workspace_id": None, "status": "disabled"}
    assert [item["status"] for item in summary[1:]] == ["completed", "completed"]
    assert sorted(calls) == ["ws-a", "ws-b"]
