"""领域数据结构定义：技能/步骤定义、运行上下文、运行结果与同步请求等值对象。"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Mapping

from gtm_orchestrator.domain.enums import (
    OutputFormat,
    RunStatus,
    SkillCategory,
    StepStatus,
    SyncMode,
    SyncType,
    Tier,
    Trigger,
)

if TYPE_CHECKING:
    from gtm_orchestrator.domain.evidence import EvidenceBundle
    from gtm_orchestrator.domain.time_windows import TimeWindows

    EvidenceBuilderFn = Callable[[Mapping[str, Any], "RunContext"], EvidenceBundle]


@dataclass(frozen=True, slots=True)
class ModelInvocation:
    """模型步骤调用描述：提示词模板（支持 {{var}} 占位）与可选 JSON schema。"""
    prompt: str
    schema: dict[str, Any] | None = None
    capability: str = "reason"
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass(frozen=True, slots=True)
class StepDefinition:
    """技能内单个步骤的声明式定义。"""
    id: str
    name: str
    tier: Tier
    output_key: str
    compute_fn: str | None = None
    model: ModelInvocation | None = None
    compute_args: Mapping[str, Any] = field(default_factory=dict)
    depends_on: frozenset[str] = frozenset()
    timeout_seconds: float | None = None


@dataclass(frozen=True, slots=True)
class SkillSchedule:
    """调度配置：cron 表达式和/或触发器集合。"""
    cron: str | None = None
    triggers: frozenset[Trigger] = frozenset()

    def is_empty(self) -> bool:
        return not self.cron and not self.triggers

    def has_trigger(self, trigger: Trigger) -> bool:
        return trigger in self.triggers


@dataclass(frozen=True, slots=True)
class TimeConfig:
    """技能时间范围配置，可在运行时被覆盖。"""
    analysis_window: str = "current_quarter"
    change_window: str = "last_7d"


@dataclass(frozen=True, slots=True)
class SkillDefinition:
    """技能定义：注册后不可变，由运行时按依赖顺序解释执行。"""
    id: str
    name: str
    version: str
    category: SkillCategory
    tier: Tier
    steps: tuple[StepDefinition, ...]
    description: str = ""
    required_tools: frozenset[str] = frozenset()
    required_context: frozenset[str] = frozenset()
    schedule: SkillSchedule | None = None
    output_format: OutputFormat = OutputFormat.structured
    time_config: TimeConfig = TimeConfig()
    evidence_builder: EvidenceBuilderFn | None = field(default=None, compare=False, repr=False)
    estimated_duration: str = ""

    def step(self, step_id: str) -> StepDefinition | None:
        return next((item for item in self.steps if item.id == step_id), None)

    def is_scheduled(self) -> bool:
        return self.schedule is not None and not self.schedule.is_empty()

    def descriptor(self) -> dict[str, Any]:
        """返回用于接口展示的技能元信息。"""
        schedule = self.schedule or SkillSchedule()
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "category": self.category.value,
            "tier": self.tier.value,
            "output_format": self.output_format.value,
            "required_tools": sorted(self.required_tools),
            "required_context": sorted(self.required_context),
            "cron": schedule.cron,
            "triggers": sorted(item.value for item in schedule.triggers),
            "steps": [
                {
                    "id": step.id,
                    "name": step.name,
                    "tier": step.tier.value,
                    "depends_on": sorted(step.depends_on),
                    "output_key": step.output_key,
                }
                for step in self.steps
            ],
            "has_evidence_builder": self.evidence_builder is not None,
        }


@dataclass(slots=True)
class AgentDefinition:
    """Agent 定义：组合多个技能，仅 enabled 标志允许在运行期变更。"""
    id: str
    name: str
    skill_ids: tuple[str, ...]
    category: SkillCategory = SkillCategory.reporting
    schedule: SkillSchedule | None = None
    enabled: bool = True
    description: str = ""

    def is_scheduled(self) -> bool:
        return self.schedule is not None and not self.schedule.is_empty()


@dataclass(slots=True)
class RunSeed:
    """技能运行种子参数：由调用方提供。"""
    workspace_id: str
    business_context: Mapping[str, Any] = field(default_factory=dict)
    trigger_payload: Mapping[str, Any] | None = None
    time_config: Mapping[str, str] | None = None
    skill_outputs: Mapping[str, Any] = field(default_factory=dict)
    trigger_type: str = Trigger.on_demand.value


class RunContext:
    """单次技能运行的上下文；步骤输出只追加，按 step id 与 output_key 双索引。"""

    def __init__(
        self,
        *,
        run_id: str,
        workspace_id: str,
        skill_id: str,
        time_windows: TimeWindows,
        business_context: Mapping[str, Any] | None = None,
        trigger_payload: Mapping[str, Any] | None = None,
        skill_outputs: Mapping[str, Any] | None = None,
    ) -> None:
        self.run_id = run_id
        self.workspace_id = workspace_id
        self.skill_id = skill_id
        self.time_windows = time_windows
        self.business_context = MappingProxyType(dict(business_context or {}))
        self.trigger_payload = MappingProxyType(dict(trigger_payload or {}))
        self.skill_outputs = dict(skill_outputs or {})
        self._step_outputs: dict[str, Any] = {}
        self._named_outputs: dict[str, Any] = {}

    @property
    def step_outputs(self) -> Mapping[str, Any]:
        return MappingProxyType(self._step_outputs)

    @property
    def named_outputs(self) -> Mapping[str, Any]:
        return MappingProxyType(self._named_outputs)

    def has_output(self, step_id: str) -> bool:
        return step_id in self._step_outputs

    def record_output(self, step: StepDefinition, result: Any) -> None:
        """写入步骤输出；同一步骤或 output_key 只允许写一次。"""
        if step.id in self._step_outputs or step.output_key in self._named_outputs:
            raise ValueError(f"output already recorded for step {step.id}")
        self._step_outputs[step.id] = result
        self._named_outputs[step.output_key] = result

    def output(self, key: str, default: Any = None) -> Any:
        return self._named_outputs.get(key, default)


@dataclass(slots=True)
class StepResult:
    """单步执行结果。"""
    step_id: str
    status: StepStatus
    tier: Tier
    output_key: str
    duration_ms: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "tier": self.tier.value,
            "output_key": self.output_key,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


@dataclass(slots=True)
class SkillRunResult:
    """技能运行结果，部分成功时仍携带已完成步骤的输出。"""
    run_id: str
    skill_id: str
    workspace_id: str
    status: RunStatus
    output_format: OutputFormat
    steps: list[StepResult]
    step_outputs: dict[str, Any]
    named_outputs: dict[str, Any]
    evidence: EvidenceBundle | None
    duration_ms: float
    started_at: datetime
    completed_at: datetime
    errors: list[dict[str, str]] = field(default_factory=list)

    def step(self, step_id: str) -> StepResult | None:
        return next((item for item in self.steps if item.step_id == step_id), None)

    def step_status(self, step_id: str) -> StepStatus | None:
        result = self.step(step_id)
        return result.status if result else None


@dataclass(frozen=True, slots=True)
class SyncRequest:
    """同步提交请求；mode 为空时自动识别。"""
    workspace_id: str
    connector_type: str
    sync_type: SyncType = SyncType.manual
    mode: SyncMode | None = None


@dataclass(slots=True)
class SyncSubmission:
    """同步提交回执：不等待同步完成即返回。"""
    sync_id: str
    job_id: str
    workspace_id: str
    connector_type: str
    mode: SyncMode
    status: str = "queued"
    reaped_sync_ids: tuple[str, ...] = ()


@dataclass(slots=True)
class ConnectorSyncResult:
    """单个连接器同步结果，作为 post_sync 触发载荷的一部分。"""
    connector: str
    status: str
    records_synced: int = 0
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "connector": self.connector,
            "status": self.status,
            "records_synced": self.records_synced,
            "message": self.message,
        }
