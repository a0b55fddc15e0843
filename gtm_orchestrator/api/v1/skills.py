"""技能接口：技能目录、按需运行、运行记录与 Agent 启停。"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException, status

from gtm_orchestrator.api.v1.schemas import (
    AgentResponse,
    AgentToggleRequest,
    SkillResponse,
    SkillRunItem,
    SkillRunQueuedResponse,
    SkillRunRequest,
)
from gtm_orchestrator.application.container import (
    get_agent_registry,
    get_job_queue,
    get_skill_registry,
    get_skill_run_repository,
    get_skill_runtime,
)
from gtm_orchestrator.application.runtime import SkillRuntime
from gtm_orchestrator.domain.errors import InvalidGraphError, UnknownFunctionError
from gtm_orchestrator.domain.models import AgentDefinition
from gtm_orchestrator.domain.skills.registry import AgentRegistry, SkillRegistry
from gtm_orchestrator.infra.db.models import SkillRunORM
from gtm_orchestrator.infra.db.repository import SkillRunRepository
from gtm_orchestrator.infra.queue import JobQueue

router = APIRouter()


def _registry() -> SkillRegistry:
    return get_skill_registry()


def _agents() -> AgentRegistry:
    return get_agent_registry()


def _runs() -> SkillRunRepository:
    return get_skill_run_repository()


def _runtime() -> SkillRuntime:
    return get_skill_runtime()


def _queue() -> JobQueue:
    return get_job_queue()


def _run_item(row: SkillRunORM) -> SkillRunItem:
    return SkillRunItem(
        run_id=row.run_id,
        skill_id=row.skill_id,
        workspace_id=row.workspace_id,
        status=row.status,
        trigger_type=row.trigger_type,
        steps=row.steps,
        output=row.output,
        evidence=row.evidence,
        error=row.error,
        duration_ms=row.duration_ms,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


def _agent_item(agent: AgentDefinition) -> AgentResponse:
    return AgentResponse(
        id=agent.id,
        name=agent.name,
        skill_ids=list(agent.skill_ids),
        category=agent.category.value,
        enabled=agent.enabled,
        description=agent.description,
    )


@router.get("/skills", response_model=list[SkillResponse])
def list_skills(
    category: str | None = None,
    trigger: str | None = None,
    registry: SkillRegistry = Depends(_registry),
) -> list[SkillResponse]:
    """按可选分类/触发器过滤并返回技能列表。"""
    try:
        skills = registry.list_by_category(category) if category else registry.all()
        if trigger:
            allowed = {item.id for item in registry.list_by_trigger(trigger)}
            skills = [item for item in skills if item.id in allowed]
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return [SkillResponse(**item.descriptor()) for item in skills]


@router.get("/skills/{skill_id}", response_model=SkillResponse)
def get_skill(skill_id: str, registry: SkillRegistry = Depends(_registry)) -> SkillResponse:
    skill = registry.get(skill_id)
    if skill is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"unknown skill_id: {skill_id}")
    return SkillResponse(**skill.descriptor())


@router.post(
    "/workspaces/{workspace_id}/skills/{skill_id}/run",
    response_model=SkillRunQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def run_skill(
    workspace_id: str,
    skill_id: str,
    body: SkillRunRequest | None = None,
    registry: SkillRegistry = Depends(_registry),
    runtime: SkillRuntime = Depends(_runtime),
    queue: JobQueue = Depends(_queue),
) -> SkillRunQueuedResponse:
    """校验技能后投递按需运行作业。"""
    body = body or SkillRunRequest()
    skill = registry.get(skill_id)
    if skill is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"unknown skill_id: {skill_id}")
    try:
        runtime.preflight(skill)
    except (InvalidGraphError, UnknownFunctionError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    job_id = await asyncio.to_thread(
        queue.create_job,
        workspace_id=workspace_id,
        job_type="skill_run",
        payload={
            "skill_id": skill_id,
            "business_context": body.business_context,
            "time_config": body.time_config,
            "trigger_type": "on_demand",
        },
        priority=1,
    )
    return SkillRunQueuedResponse(workspace_id=workspace_id, skill_id=skill_id, job_id=job_id)


@router.get("/workspaces/{workspace_id}/skill-runs", response_model=list[SkillRunItem])
async def list_skill_runs(
    workspace_id: str,
    skill_id: str | None = None,
    limit: int = 50,
    runs: SkillRunRepository = Depends(_runs),
) -> list[SkillRunItem]:
    rows = await asyncio.to_thread(runs.list_runs, workspace_id, skill_id, max(1, min(limit, 200)))
    return [_run_item(row) for row in rows]


@router.get("/skill-runs/{run_id}", response_model=SkillRunItem)
async def get_skill_run(run_id: str, runs: SkillRunRepository = Depends(_runs)) -> SkillRunItem:
    row = await asyncio.to_thread(runs.get, run_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"skill run not found: {run_id}")
    return _run_item(row)


@router.get("/agents", response_model=list[AgentResponse])
def list_agents(agents: AgentRegistry = Depends(_agents)) -> list[AgentResponse]:
    return [_agent_item(item) for item in agents.all()]


@router.patch("/agents/{agent_id}", response_model=AgentResponse)
def toggle_agent(
    agent_id: str,
    body: AgentToggleRequest,
    agents: AgentRegistry = Depends(_agents),
) -> AgentResponse:
    """启用或停用 Agent。"""
    agent = agents.get(agent_id)
    if agent is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"unknown agent_id: {agent_id}")
    agents.set_enabled(agent_id, body.enabled)
    return _agent_item(agent)
