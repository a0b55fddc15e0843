"""注册中心：管理技能/Agent 定义的注册、查询与分类统计。"""

from __future__ import annotations

import logging
from typing import Generic, Iterable, Protocol, TypeVar

from gtm_orchestrator.domain.enums import DuplicatePolicy, SkillCategory, Trigger
from gtm_orchestrator.domain.errors import DuplicateIdError
from gtm_orchestrator.domain.models import AgentDefinition, SkillDefinition, SkillSchedule

logger = logging.getLogger(__name__)


class _Definition(Protocol):
    id: str
    category: SkillCategory
    schedule: SkillSchedule | None

    def is_scheduled(self) -> bool: ...


DefinitionT = TypeVar("DefinitionT", bound=_Definition)


class Registry(Generic[DefinitionT]):
    """通用定义注册中心，重复 ID 的处理方式由实例级策略决定。"""

    kind = "definition"

    def __init__(self, policy: DuplicatePolicy | str = DuplicatePolicy.strict) -> None:
        """初始化注册中心。
        参数:
        - policy: strict 时重复注册抛出 DuplicateIdError；lenient 时告警并覆盖。
        """
        self.policy = DuplicatePolicy(policy)
        self._items: dict[str, DefinitionT] = {}

    def register(self, definition: DefinitionT) -> None:
        """注册单个定义。
        参数:
        - definition: 待注册定义，以 id 为唯一键。
        返回:
        - 无返回；strict 模式下重复 ID 会抛出 DuplicateIdError。
        """
        if definition.id in self._items:
            if self.policy is DuplicatePolicy.strict:
                raise DuplicateIdError(definition.id)
            logger.warning(
                "duplicate definition overwritten",
                extra={
                    "event": "registry.duplicate.overwritten",
                    "op": "register",
                    "registry_kind": self.kind,
                    "definition_id": definition.id,
                },
            )
        self._items[definition.id] = definition

    def register_all(self, definitions: Iterable[DefinitionT]) -> None:
        for definition in definitions:
            self.register(definition)

    def get(self, definition_id: str) -> DefinitionT | None:
        """按 ID 查询定义，不存在时返回 None。"""
        return self._items.get(definition_id)

    def __contains__(self, definition_id: object) -> bool:
        return definition_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def all(self) -> list[DefinitionT]:
        return list(self._items.values())

    def list_by_category(self, category: SkillCategory | str) -> list[DefinitionT]:
        target = SkillCategory(category)
        return [item for item in self._items.values() if item.category == target]

    def list_scheduled(self) -> list[DefinitionT]:
        """返回带有非空调度配置的定义。"""
        return [item for item in self._items.values() if item.is_scheduled()]

    def list_by_trigger(self, trigger: Trigger | str) -> list[DefinitionT]:
        """返回触发器集合包含指定触发器的定义，保持注册顺序。"""
        target = Trigger(trigger)
        return [
            item
            for item in self._items.values()
            if item.schedule is not None and item.schedule.has_trigger(target)
        ]

    def stats(self) -> dict[str, object]:
        """返回总数与按分类计数。"""
        by_category: dict[str, int] = {}
        for item in self._items.values():
            by_category[item.category.value] = by_category.get(item.category.value, 0) + 1
        return {"total": len(self._items), "by_category": by_category}


class SkillRegistry(Registry[SkillDefinition]):
    """技能注册中心，默认严格模式。"""

    kind = "skill"

    def list_descriptors(self) -> list[dict[str, object]]:
        return [item.descriptor() for item in self._items.values()]


class AgentRegistry(Registry[AgentDefinition]):
    """Agent 注册中心，默认宽松模式，支持运行期启停。"""

    kind = "agent"

    def __init__(self, policy: DuplicatePolicy | str = DuplicatePolicy.lenient) -> None:
        super().__init__(policy)

    def set_enabled(self, agent_id: str, enabled: bool) -> bool:
        """切换 Agent 启用状态，返回是否找到该 Agent。"""
        agent = self._items.get(agent_id)
        if agent is None:
            return False
        agent.enabled = enabled
        logger.info(
            "agent toggled",
            extra={"event": "registry.agent.toggled", "definition_id": agent_id, "enabled": enabled},
        )
        return True

    def agents_for_skill(self, skill_id: str) -> list[AgentDefinition]:
        return [item for item in self._items.values() if skill_id in item.skill_ids]

    def is_skill_enabled(self, skill_id: str) -> bool:
        """技能未被任何 Agent 引用时视为启用；被引用时至少一个 Agent 启用即可。"""
        owners = self.agents_for_skill(skill_id)
        return not owners or any(item.enabled for item in owners)
