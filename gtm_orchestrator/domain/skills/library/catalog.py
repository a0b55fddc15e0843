"""内置技能与 Agent 目录，以及启动时的注册入口。"""

from __future__ import annotations

from gtm_orchestrator.domain.enums import SkillCategory
from gtm_orchestrator.domain.models import AgentDefinition, SkillDefinition
from gtm_orchestrator.domain.skills.graph import validate_step_graph
from gtm_orchestrator.domain.skills.library.pipeline_hygiene import PIPELINE_HYGIENE
from gtm_orchestrator.domain.skills.library.rep_scorecard import REP_SCORECARD
from gtm_orchestrator.domain.skills.library.single_thread_alert import SINGLE_THREAD_ALERT
from gtm_orchestrator.domain.skills.registry import AgentRegistry, SkillRegistry


def builtin_skills() -> list[SkillDefinition]:
    return [PIPELINE_HYGIENE, SINGLE_THREAD_ALERT, REP_SCORECARD]


def builtin_agents() -> list[AgentDefinition]:
    # Agent 定义含可变 enabled 标志，每次返回新实例。
    return [
        AgentDefinition(
            id="pipeline-health",
            name="Pipeline Health Agent",
            skill_ids=("pipeline-hygiene", "single-thread-alert"),
            category=SkillCategory.pipeline,
            description="Watches open pipeline after every sync.",
        ),
        AgentDefinition(
            id="team-performance",
            name="Team Performance Agent",
            skill_ids=("rep-scorecard",),
            category=SkillCategory.reporting,
            description="Weekly rep scorecards.",
        ),
    ]


def bootstrap_skill_registry(registry: SkillRegistry) -> SkillRegistry:
    """校验并注册全部内置技能；图结构非法时启动即失败。"""
    skills = builtin_skills()
    for skill in skills:
        validate_step_graph(skill)
    registry.register_all(skills)
    return registry


def bootstrap_agent_registry(registry: AgentRegistry) -> AgentRegistry:
    registry.register_all(builtin_agents())
    return registry
