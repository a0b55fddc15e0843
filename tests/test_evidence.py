"""证据构建测试：有序累积、冻结、严重级别单调性、可追溯性与适配器默认值。"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone

import pytest

from gtm_orchestrator.domain.enums import Severity
from gtm_orchestrator.domain.errors import EvidenceFrozenError
from gtm_orchestrator.domain.evidence import (
    Claim,
    DataSourceDescriptor,
    EvidenceBuilder,
    EvidenceRecord,
    Parameter,
    build_data_sources,
    check_invariants,
    deal_to_record,
    max_severity,
    number,
    rep_to_record,
)


def _record(entity_id: str, severity: Severity, **fields: object) -> EvidenceRecord:
    return EvidenceRecord(entity_type="deal", entity_id=entity_id, severity=severity, fields=fields)


def test_bundle_preserves_insertion_order() -> None:
    """构建后读取的参数、数据源、记录与结论保持追加顺序且内容不丢失。"""
    records = [_record(f"d{index}", Severity.warning, amount=index * 100) for index in range(5)]
    builder = EvidenceBuilder()
    builder.add_parameter(Parameter(name="stale_days", display_name="Stale days", value=14, configurable=True))
    builder.add_data_source(DataSourceDescriptor(source="hubspot", connected=True, records_available=5, records_used=5))
    for item in records:
        builder.add_record(item)
    builder.add_claim_for_records(
        claim_id="stale",
        claim_text="5 stale deals",
        records=records,
        metric_name="amount",
        threshold_applied="14 days",
    )
    bundle = builder.build()

    assert [item.entity_id for item in bundle.records] == ["d0", "d1", "d2", "d3", "d4"]
    assert bundle.records == tuple(records)
    assert bundle.parameters[0].value == 14
    assert bundle.data_sources[0].source == "hubspot"
    claim = bundle.claim("stale")
    assert claim is not None
    assert claim.entity_ids == ("d0", "d1", "d2", "d3", "d4")
    assert claim.metric_values == (0, 100, 200, 300, 400)
    assert bundle.to_dict()["records"][2]["fields"] == {"amount": 200}


def test_claim_severity_is_max_of_records() -> None:
    records = [
        _record("a", Severity.healthy),
        _record("b", Severity.critical),
        _record("c", Severity.warning),
    ]
    builder = EvidenceBuilder().add_records(records)
    builder.add_claim_for_records(
        claim_id="mixed",
        claim_text="mixed",
        records=records,
        metric_name="amount",
        threshold_applied="n/a",
        severity=Severity.healthy,
    )
    bundle = builder.build()

    assert bundle.claims[0].severity is Severity.critical
    assert check_invariants(bundle) == []
    assert max_severity([]) is None
    assert max_severity([Severity.warning, Severity.healthy]) is Severity.warning


def test_claim_without_records_requires_explicit_severity() -> None:
    builder = EvidenceBuilder()
    with pytest.raises(ValueError):
        builder.add_claim_for_records(
            claim_id="empty", claim_text="none", records=[], metric_name="amount", threshold_applied="n/a"
        )

    builder.add_claim_for_records(
        claim_id="empty",
        claim_text="none",
        records=[],
        metric_name="amount",
        threshold_applied="n/a",
        severity=Severity.healthy,
    )
    assert builder.build().claims[0].entity_ids == ()


def test_builder_is_frozen_after_build() -> None:
    builder = EvidenceBuilder().add_record(_record("a", Severity.healthy))
    bundle = builder.build()

    assert builder.build() is bundle
    with pytest.raises(EvidenceFrozenError):
        builder.add_record(_record("b", Severity.healthy))
    with pytest.raises(EvidenceFrozenError):
        builder.add_parameter(Parameter(name="x", display_name="x", value=1))


def test_built_records_are_read_only() -> None:
    bundle = EvidenceBuilder().add_record(_record("a", Severity.warning, amount=500)).build()
    record = bundle.records[0]

    with pytest.raises(TypeError):
        record.fields["amount"] = 0  # type: ignore[index]
    with pytest.raises(TypeError):
        record.derived["stale"] = True  # type: ignore[index]
    assert record.fields == {"amount": 500}
    assert record.to_dict()["fields"] == {"amount": 500}


def test_check_invariants_reports_untraceable_and_non_monotonic_claims() -> None:
    builder = EvidenceBuilder().add_record(_record("a", Severity.warning))
    builder.add_claim(
        Claim(
            claim_id="ghost",
            claim_text="refers to missing record",
            entity_type="deal",
            entity_ids=("a", "zzz"),
            metric_name="amount",
            metric_values=(1, 2),
            threshold_applied="n/a",
            severity=Severity.warning,
        )
    )
    builder.add_claim(
        Claim(
            claim_id="understated",
            claim_text="severity lower than records",
            entity_type="deal",
            entity_ids=("a",),
            metric_name="amount",
            metric_values=(1,),
            threshold_applied="n/a",
            severity=Severity.healthy,
        )
    )

    violations = check_invariants(builder.build())

    assert len(violations) == 2
    assert "zzz" in violations[0]
    assert "understated" in violations[1]


def test_deal_adapter_applies_defaults_and_logs(caplog: pytest.LogCaptureFixture) -> None:
    """缺失字段使用默认值（数值 0、字符串空串、日期 None），并记录告警。"""
    with caplog.at_level(logging.WARNING, logger="gtm_orchestrator.domain.evidence"):
        record = deal_to_record({"id": "d1", "amount": "not-a-number"}, "warning")

    assert record.entity_id == "d1"
    assert record.entity_name == "Unnamed"
    assert record.severity is Severity.warning
    assert record.fields["amount"] == 0
    assert record.fields["stage"] == ""
    assert record.fields["close_date"] is None
    events = [item for item in caplog.records if getattr(item, "event", None) == "evidence.record.defaults_applied"]
    assert events
    assert "amount" in events[0].payload_preview["missing_fields"]


def test_deal_adapter_reads_alternate_keys_and_objects() -> None:
    @dataclass
    class _Deal:
        dealId: str
        dealName: str
        amount: float
        stage: str
        ownerName: str
        closeDate: date
        daysStale: int

    record = deal_to_record(
        _Deal("x1", "Acme", 1200.5, "negotiation", "Pat", date(2026, 3, 1), 21),
        Severity.critical,
        derived={"days_since_activity": number("daysStale")},
    )

    assert record.entity_id == "x1"
    assert record.entity_name == "Acme"
    assert record.fields["amount"] == 1200.5
    assert record.fields["owner"] == "Pat"
    assert record.fields["close_date"] == "2026-03-01"
    assert record.derived["days_since_activity"] == 21


def test_adapters_never_raise_for_malformed_input() -> None:
    record = deal_to_record(None, Severity.healthy)
    rep = rep_to_record(42, Severity.healthy)

    assert record.entity_id == ""
    assert rep.entity_id == ""
    assert rep.entity_name == "Unknown"
    assert rep.entity_type == "rep"


def test_build_data_sources_marks_disconnected_sources() -> None:
    synced = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
    sources = build_data_sources(
        [{"connector_name": "hubspot", "status": "connected", "last_sync_at": synced}],
        ["hubspot", "gong"],
        {"hubspot": 12},
    )

    assert sources[0] == DataSourceDescriptor(
        source="hubspot",
        connected=True,
        last_sync=synced.isoformat(),
        records_available=12,
        records_used=12,
    )
    assert sources[1].connected is False
    assert sources[1].note == "Not connected: call transcript data unavailable"
