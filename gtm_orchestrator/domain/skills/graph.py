"""步骤依赖图校验与拓扑辅助函数。"""

from __future__ import annotations

from typing import Iterable

from gtm_orchestrator.domain.enums import Tier
from gtm_orchestrator.domain.errors import InvalidGraphError
from gtm_orchestrator.domain.models import SkillDefinition, StepDefinition


def validate_step_graph(skill: SkillDefinition) -> None:
    """在执行任何步骤前校验技能的步骤图。

    规则：
    - step id 与 output_key 在技能内唯一；
    - depends_on 只能引用声明顺序在前的步骤，禁止自引用与悬空引用；
    - compute 步骤必须声明 compute_fn，model 步骤必须声明 model；
    - 依赖图无环（前向引用规则已保证，这里仍做一次 DFS 兜底）。

    任一规则不满足即抛出 InvalidGraphError。
    """
    seen: set[str] = set()
    output_keys: set[str] = set()
    for step in skill.steps:
        if step.id in seen:
            raise InvalidGraphError(skill.id, step.id, "duplicate step id")
        if step.output_key in output_keys:
            raise InvalidGraphError(skill.id, step.id, f"duplicate output key {step.output_key}")
        if step.tier is Tier.compute and not step.compute_fn:
            raise InvalidGraphError(skill.id, step.id, "compute step without compute_fn")
        if step.tier is Tier.model and step.model is None:
            raise InvalidGraphError(skill.id, step.id, "model step without model invocation")
        for dep in sorted(step.depends_on):
            if dep == step.id:
                raise InvalidGraphError(skill.id, step.id, "step depends on itself")
            if dep not in seen:
                known = any(item.id == dep for item in skill.steps)
                reason = f"forward reference to {dep}" if known else f"unknown dependency {dep}"
                raise InvalidGraphError(skill.id, step.id, reason)
        seen.add(step.id)
        output_keys.add(step.output_key)

    cycle_step = find_cycle(skill.steps)
    if cycle_step is not None:
        raise InvalidGraphError(skill.id, cycle_step, "dependency cycle")


def find_cycle(steps: Iterable[StepDefinition]) -> str | None:
    """返回参与环的任一步骤 id，无环时返回 None。"""
    graph = {step.id: step.depends_on for step in steps}
    visiting: set[str] = set()
    done: set[str] = set()

    def _visit(node: str) -> str | None:
        if node in done:
            return None
        if node in visiting:
            return node
        visiting.add(node)
        for dep in sorted(graph.get(node, ())):
            if dep in graph:
                found = _visit(dep)
                if found is not None:
                    return found
        visiting.discard(node)
        done.add(node)
        return None

    for node in graph:
        found = _visit(node)
        if found is not None:
            return found
    return None


def transitive_dependents(steps: Iterable[StepDefinition], step_id: str) -> set[str]:
    """返回直接或间接依赖 step_id 的全部步骤 id。"""
    steps = list(steps)
    result: set[str] = set()
    frontier = {step_id}
    while frontier:
        next_frontier = {
            step.id
            for step in steps
            if step.id not in result and step.depends_on & frontier
        }
        result |= next_frontier
        frontier = next_frontier
    return result


def topological_order(steps: Iterable[StepDefinition]) -> list[str]:
    """按声明顺序稳定的拓扑序（Kahn 算法）。"""
    steps = list(steps)
    remaining = {step.id: set(step.depends_on) for step in steps}
    order: list[str] = []
    while remaining:
        ready = [step.id for step in steps if step.id in remaining and not remaining[step.id]]
        if not ready:
            break
        for step_id in ready:
            order.append(step_id)
            del remaining[step_id]
        for deps in remaining.values():
            deps.difference_update(ready)
    return order
