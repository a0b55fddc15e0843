"""证据构建：参数、数据源、评估记录与结论的累积，以及实体到记录的归一化适配。

证据包是技能运行的结构化产出，供报告与告警消费方使用。约束：
- 每条结论的 entity_ids 必须是记录 id 的子集，保证可追溯；
- 汇总一组记录的结论，其严重级别等于这些记录严重级别的最大值。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Sequence

from gtm_orchestrator.domain.enums import Severity
from gtm_orchestrator.domain.errors import EvidenceFrozenError

logger = logging.getLogger(__name__)

FieldValue = str | int | float | bool | None


@dataclass(frozen=True, slots=True)
class Parameter:
    """技能使用的阈值/参数，便于用户查看假设。"""
    name: str
    display_name: str
    value: FieldValue
    description: str = ""
    configurable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "value": self.value,
            "description": self.description,
            "configurable": self.configurable,
        }


@dataclass(frozen=True, slots=True)
class DataSourceDescriptor:
    """参与本次分析的数据源（含未连接的数据源）。"""
    source: str
    connected: bool
    last_sync: str | None = None
    records_available: int = 0
    records_used: int = 0
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "connected": self.connected,
            "last_sync": self.last_sync,
            "records_available": self.records_available,
            "records_used": self.records_used,
            "note": self.note,
        }


@dataclass(frozen=True, slots=True)
class EvidenceRecord:
    """归一化后的评估记录。"""
    entity_type: str
    entity_id: str
    severity: Severity
    entity_name: str = ""
    owner_email: str | None = None
    owner_name: str | None = None
    fields: Mapping[str, FieldValue] = field(default_factory=dict)
    derived: Mapping[str, FieldValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # 复制后只读暴露，build() 之后的证据包不可再被修改。
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))
        object.__setattr__(self, "derived", MappingProxyType(dict(self.derived)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "owner_email": self.owner_email,
            "owner_name": self.owner_name,
            "fields": dict(self.fields),
            "derived": dict(self.derived),
            "severity": self.severity.value,
        }


@dataclass(frozen=True, slots=True)
class Claim:
    """叙述中的一条结论及其支撑实体。"""
    claim_id: str
    claim_text: str
    entity_type: str
    entity_ids: tuple[str, ...]
    metric_name: str
    metric_values: tuple[FieldValue, ...]
    threshold_applied: str
    severity: Severity

    def to_dict(self) -> dict[str, Any]:
        return {
            "claim_id": self.claim_id,
            "claim_text": self.claim_text,
            "entity_type": self.entity_type,
            "entity_ids": list(self.entity_ids),
            "metric_name": self.metric_name,
            "metric_values": list(self.metric_values),
            "threshold_applied": self.threshold_applied,
            "severity": self.severity.value,
        }


@dataclass(frozen=True, slots=True)
class EvidenceBundle:
    """不可变证据包。"""
    parameters: tuple[Parameter, ...] = ()
    data_sources: tuple[DataSourceDescriptor, ...] = ()
    records: tuple[EvidenceRecord, ...] = ()
    claims: tuple[Claim, ...] = ()

    def record_ids(self) -> set[str]:
        return {item.entity_id for item in self.records}

    def claim(self, claim_id: str) -> Claim | None:
        return next((item for item in self.claims if item.claim_id == claim_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "parameters": [item.to_dict() for item in self.parameters],
            "data_sources": [item.to_dict() for item in self.data_sources],
            "records": [item.to_dict() for item in self.records],
            "claims": [item.to_dict() for item in self.claims],
        }


def max_severity(severities: Iterable[Severity]) -> Severity | None:
    """返回最高严重级别；空输入返回 None。"""
    result: Severity | None = None
    for item in severities:
        if result is None or item.rank > result.rank:
            result = item
    return result


def check_invariants(bundle: EvidenceBundle) -> list[str]:
    """校验可追溯性与严重级别单调性，返回违规描述列表。"""
    violations: list[str] = []
    by_id: dict[str, EvidenceRecord] = {}
    for record in bundle.records:
        by_id.setdefault(record.entity_id, record)
    for claim in bundle.claims:
        missing = [entity_id for entity_id in claim.entity_ids if entity_id not in by_id]
        if missing:
            violations.append(f"claim {claim.claim_id} references unknown records: {', '.join(missing)}")
            continue
        expected = max_severity(by_id[entity_id].severity for entity_id in claim.entity_ids)
        if expected is not None and claim.severity != expected:
            violations.append(
                f"claim {claim.claim_id} severity {claim.severity.value} != max record severity {expected.value}"
            )
    return violations


class EvidenceBuilder:
    """证据包累积器：追加有序，build() 之后冻结。"""

    def __init__(self) -> None:
        self._parameters: list[Parameter] = []
        self._data_sources: list[DataSourceDescriptor] = []
        self._records: list[EvidenceRecord] = []
        self._claims: list[Claim] = []
        self._built: EvidenceBundle | None = None

    def _ensure_open(self) -> None:
        if self._built is not None:
            raise EvidenceFrozenError("evidence bundle already built")

    def add_parameter(self, parameter: Parameter) -> EvidenceBuilder:
        self._ensure_open()
        self._parameters.append(parameter)
        return self

    def add_data_source(self, source: DataSourceDescriptor) -> EvidenceBuilder:
        self._ensure_open()
        self._data_sources.append(source)
        return self

    def add_record(self, record: EvidenceRecord) -> EvidenceBuilder:
        self._ensure_open()
        self._records.append(record)
        return self

    def add_records(self, records: Iterable[EvidenceRecord]) -> EvidenceBuilder:
        self._ensure_open()
        self._records.extend(records)
        return self

    def add_claim(self, claim: Claim) -> EvidenceBuilder:
        self._ensure_open()
        self._claims.append(claim)
        return self

    def add_claim_for_records(
        self,
        *,
        claim_id: str,
        claim_text: str,
        records: Sequence[EvidenceRecord],
        metric_name: str,
        threshold_applied: str,
        metric_values: Sequence[FieldValue] | None = None,
        entity_type: str | None = None,
        severity: Severity | None = None,
    ) -> EvidenceBuilder:
        """按记录集合生成结论：实体 ID 取自记录，严重级别取记录最大值。

        records 为空时必须显式给出 severity。
        """
        derived = max_severity(item.severity for item in records)
        if derived is None:
            if severity is None:
                raise ValueError(f"claim {claim_id} has no records; severity is required")
            derived = severity
        if metric_values is None:
            metric_values = [_lookup_metric(item, metric_name) for item in records]
        return self.add_claim(
            Claim(
                claim_id=claim_id,
                claim_text=claim_text,
                entity_type=entity_type or (records[0].entity_type if records else "deal"),
                entity_ids=tuple(item.entity_id for item in records),
                metric_name=metric_name,
                metric_values=tuple(metric_values),
                threshold_applied=threshold_applied,
                severity=derived,
            )
        )

    def build(self) -> EvidenceBundle:
        """冻结并返回证据包；重复调用返回同一对象。"""
        if self._built is None:
            self._built = EvidenceBundle(
                parameters=tuple(self._parameters),
                data_sources=tuple(self._data_sources),
                records=tuple(self._records),
                claims=tuple(self._claims),
            )
        return self._built


def _lookup_metric(record: EvidenceRecord, metric_name: str) -> FieldValue:
    if metric_name in record.fields:
        return record.fields[metric_name]
    return record.derived.get(metric_name)


# ---------------------------------------------------------------------------
# 实体 -> 记录 适配器
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class FieldSpec:
    """规范字段映射：按顺序尝试多个源字段名，缺失时使用类型默认值。"""
    sources: tuple[str, ...]
    kind: str = "text"

    @property
    def default(self) -> FieldValue:
        if self.kind == "number":
            return 0
        if self.kind == "date":
            return None
        if self.kind == "bool":
            return False
        return ""


def number(*sources: str) -> FieldSpec:
    return FieldSpec(sources, "number")


def text(*sources: str) -> FieldSpec:
    return FieldSpec(sources, "text")


def date_field(*sources: str) -> FieldSpec:
    return FieldSpec(sources, "date")


def boolean(*sources: str) -> FieldSpec:
    return FieldSpec(sources, "bool")


DEAL_FIELDS: dict[str, FieldSpec] = {
    "deal_name": text("name", "deal_name", "dealName"),
    "amount": number("amount"),
    "stage": text("stage", "stage_normalized"),
    "owner": text("owner", "owner_name", "ownerName"),
    "close_date": date_field("close_date", "closeDate"),
}

REP_FIELDS: dict[str, FieldSpec] = {
    "rep_name": text("name", "rep_name", "owner"),
    "open_deals": number("open_deals", "openDeals"),
    "pipeline_value": number("pipeline_value", "pipelineValue"),
}


def _read(raw: Any, key: str) -> Any:
    if isinstance(raw, Mapping):
        return raw.get(key)
    return getattr(raw, key, None)


def _first_present(raw: Any, keys: Sequence[str]) -> Any:
    for key in keys:
        value = _read(raw, key)
        if value is not None and value != "":
            return value
    return None


def _coerce(value: Any, field_spec: FieldSpec) -> tuple[FieldValue, bool]:
    """按字段类型转换取值，返回 (值, 是否合法)。"""
    if value is None:
        return field_spec.default, False
    if field_spec.kind == "number":
        if isinstance(value, bool):
            return int(value), True
        if isinstance(value, (int, float)):
            return value, True
        try:
            return float(str(value)), True
        except ValueError:
            return field_spec.default, False
    if field_spec.kind == "date":
        if isinstance(value, (datetime, date)):
            return value.isoformat(), True
        if isinstance(value, str):
            return value, True
        return field_spec.default, False
    if field_spec.kind == "bool":
        return bool(value), True
    return str(value), True


def _map_fields(raw: Any, mapping: Mapping[str, FieldSpec], missing: list[str]) -> dict[str, FieldValue]:
    values: dict[str, FieldValue] = {}
    for name, field_spec in mapping.items():
        value, ok = _coerce(_first_present(raw, field_spec.sources), field_spec)
        if not ok:
            missing.append(name)
        values[name] = value
    return values


def entity_to_record(
    raw: Any,
    *,
    entity_type: str,
    severity: Severity | str,
    id_keys: Sequence[str],
    name_keys: Sequence[str],
    fields: Mapping[str, FieldSpec],
    derived: Mapping[str, FieldSpec] | None = None,
    extra_derived: Mapping[str, FieldValue] | None = None,
    owner_email_keys: Sequence[str] = ("owner_email", "ownerEmail"),
    owner_name_keys: Sequence[str] = ("owner_name", "ownerName", "owner"),
    default_name: str = "Unnamed",
) -> EvidenceRecord:
    """将异构连接器对象归一化为 EvidenceRecord。

    缺失或无法解析的字段以默认值代替（数值 0、字符串 ''、日期 None），
    并记录告警日志；单条脏数据不会中断整个证据构建。
    """
    missing: list[str] = []
    if raw is None or not (isinstance(raw, Mapping) or hasattr(raw, "__dict__") or hasattr(raw, "__slots__")):
        missing.append("<source>")
        raw = {}

    entity_id = _first_present(raw, id_keys)
    if entity_id is None:
        missing.append("entity_id")
    entity_name = _first_present(raw, name_keys)
    owner_email = _first_present(raw, owner_email_keys)
    owner_name = _first_present(raw, owner_name_keys)

    record_fields = _map_fields(raw, fields, missing)
    record_derived = _map_fields(raw, derived or {}, missing)
    if extra_derived:
        record_derived.update(extra_derived)

    if missing:
        logger.warning(
            "evidence record built with defaults",
            extra={
                "event": "evidence.record.defaults_applied",
                "payload_preview": {
                    "entity_type": entity_type,
                    "entity_id": str(entity_id or ""),
                    "missing_fields": missing,
                },
            },
        )

    return EvidenceRecord(
        entity_type=entity_type,
        entity_id=str(entity_id or ""),
        entity_name=str(entity_name or default_name),
        owner_email=str(owner_email) if owner_email is not None else None,
        owner_name=str(owner_name) if owner_name is not None else None,
        fields=record_fields,
        derived=record_derived,
        severity=Severity(severity),
    )


def deal_to_record(
    deal: Any,
    severity: Severity | str,
    *,
    fields: Mapping[str, FieldSpec] | None = None,
    derived: Mapping[str, FieldSpec] | None = None,
    extra_derived: Mapping[str, FieldValue] | None = None,
) -> EvidenceRecord:
    """将商机对象转换为记录。"""
    return entity_to_record(
        deal,
        entity_type="deal",
        severity=severity,
        id_keys=("id", "deal_id", "dealId"),
        name_keys=("name", "deal_name", "dealName"),
        fields=fields if fields is not None else DEAL_FIELDS,
        derived=derived,
        extra_derived=extra_derived,
    )


def rep_to_record(
    rep: Any,
    severity: Severity | str,
    *,
    fields: Mapping[str, FieldSpec] | None = None,
    derived: Mapping[str, FieldSpec] | None = None,
    extra_derived: Mapping[str, FieldValue] | None = None,
) -> EvidenceRecord:
    """将销售代表对象转换为记录，以邮箱作为实体 ID。"""
    return entity_to_record(
        rep,
        entity_type="rep",
        severity=severity,
        id_keys=("email", "rep_email", "owner_email", "owner"),
        name_keys=("name", "rep_name", "owner_name", "owner"),
        owner_email_keys=("email", "rep_email", "owner_email"),
        owner_name_keys=("name", "rep_name", "owner_name", "owner"),
        fields=fields if fields is not None else REP_FIELDS,
        derived=derived,
        extra_derived=extra_derived,
        default_name="Unknown",
    )


_DISCONNECTED_NOTES = {
    "hubspot": "Not connected: CRM deal data incomplete",
    "salesforce": "Not connected: CRM deal data incomplete",
    "gong": "Not connected: call transcript data unavailable",
    "fireflies": "Not connected: call transcript data unavailable",
}
_CONNECTED_STATUSES = {"connected", "healthy", "synced", "active"}


def build_data_sources(
    connections: Iterable[Any],
    relevant_sources: Sequence[str],
    record_counts: Mapping[str, int] | None = None,
) -> list[DataSourceDescriptor]:
    """根据工作区连接状态生成数据源描述；未连接的数据源同样列出并附说明。"""
    by_name = {_read(item, "connector_name"): item for item in connections}
    counts = record_counts or {}
    descriptors: list[DataSourceDescriptor] = []
    for source in relevant_sources:
        conn = by_name.get(source)
        if conn is not None and _read(conn, "status") in _CONNECTED_STATUSES:
            last_sync = _read(conn, "last_sync_at")
            count = int(counts.get(source, 0))
            descriptors.append(
                DataSourceDescriptor(
                    source=source,
                    connected=True,
                    last_sync=last_sync.isoformat() if isinstance(last_sync, datetime) else last_sync,
                    records_available=count,
                    records_used=count,
                )
            )
        else:
            descriptors.append(
                DataSourceDescriptor(
                    source=source,
                    connected=False,
                    note=_DISCONNECTED_NOTES.get(source, "Not connected"),
                )
            )
    return descriptors
