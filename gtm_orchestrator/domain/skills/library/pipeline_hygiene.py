"""pipeline-hygiene 技能：停滞商机与临近关单商机的周度健康检查。"""

from __future__ import annotations

from typing import Any, Mapping

from gtm_orchestrator.domain.enums import OutputFormat, Severity, SkillCategory, Tier, Trigger
from gtm_orchestrator.domain.evidence import (
    EvidenceBuilder,
    EvidenceBundle,
    Parameter,
    build_data_sources,
    deal_to_record,
    number,
)
from gtm_orchestrator.domain.models import (
    ModelInvocation,
    RunContext,
    SkillDefinition,
    SkillSchedule,
    StepDefinition,
    TimeConfig,
)

STALE_DAYS = 14
CRITICAL_STALE_DAYS = 30
CLOSING_WITHIN_DAYS = 30

_REPORT_PROMPT = """You are reviewing pipeline hygiene for {{company_name}}.

Pipeline summary: {{pipeline_summary}}
Stale deals (no activity for {{stale_deals.stale_days}}+ days): {{stale_deals.count}} worth {{stale_deals.total_value}}
Deals closing within {{closing_soon.within_days}} days: {{closing_soon.closing}}
Past-due deals: {{closing_soon.past_due}}

Summarize the three most important hygiene issues and the owner actions that fix them."""

_REPORT_SCHEMA = {
    "type": "object",
    "properties": {
        "headline": {"type": "string"},
        "issues": {"type": "array", "items": {"type": "string"}},
        "actions": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["headline", "issues", "actions"],
}

_STALE_DERIVED = {"days_since_activity": number("days_since_activity")}


def _stale_severity(deal: Mapping[str, Any]) -> Severity:
    days = deal.get("days_since_activity")
    if days is None or days >= CRITICAL_STALE_DAYS:
        return Severity.critical
    return Severity.warning


def build_pipeline_hygiene_evidence(outputs: Mapping[str, Any], ctx: RunContext) -> EvidenceBundle:
    summary = outputs.get("pipeline_summary") or {}
    stale = outputs.get("stale_deals") or {}
    closing = outputs.get("closing_soon") or {}

    builder = EvidenceBuilder()
    builder.add_parameter(
        Parameter(
            name="stale_days",
            display_name="Stale threshold (days)",
            value=stale.get("stale_days", STALE_DAYS),
            description="Deals without activity for at least this many days are stale.",
            configurable=True,
        )
    ).add_parameter(
        Parameter(
            name="closing_within_days",
            display_name="Closing window (days)",
            value=closing.get("within_days", CLOSING_WITHIN_DAYS),
            description="Deals with a close date inside this window are reviewed.",
            configurable=True,
        )
    )
    for source in build_data_sources(
        summary.get("connections", []),
        ["hubspot", "salesforce"],
        {item["connector_name"]: summary.get("deal_count", 0) for item in summary.get("connections", [])},
    ):
        builder.add_data_source(source)

    # 每个商机只生成一条记录，严重级别取其命中规则的最大值。
    deals: dict[str, dict[str, Any]] = {}
    severities: dict[str, Severity] = {}
    flags: dict[str, dict[str, Any]] = {}

    def _collect(deal: Mapping[str, Any], severity: Severity, **flag_values: Any) -> None:
        deal_id = str(deal.get("id") or "")
        deals.setdefault(deal_id, dict(deal))
        current = severities.get(deal_id)
        if current is None or severity.rank > current.rank:
            severities[deal_id] = severity
        flags.setdefault(deal_id, {"stale": False, "past_due": False}).update(flag_values)

    for deal in stale.get("deals", []):
        _collect(deal, _stale_severity(deal), stale=True)
    for deal in closing.get("past_due", []):
        _collect(deal, Severity.critical, past_due=True)
    for deal in closing.get("closing", []):
        _collect(deal, Severity.healthy)

    records = {
        deal_id: deal_to_record(deal, severities[deal_id], derived=_STALE_DERIVED, extra_derived=flags[deal_id])
        for deal_id, deal in deals.items()
    }
    builder.add_records(records.values())
    stale_records = [records[deal_id] for deal_id in records if flags[deal_id]["stale"]]
    past_due_records = [records[deal_id] for deal_id in records if flags[deal_id]["past_due"]]

    if stale_records:
        builder.add_claim_for_records(
            claim_id="stale_deals",
            claim_text=f"{len(stale_records)} open deals have had no activity for {stale.get('stale_days', STALE_DAYS)}+ days",
            records=stale_records,
            metric_name="days_since_activity",
            threshold_applied=f"{stale.get('stale_days', STALE_DAYS)} days",
        )
    if past_due_records:
        builder.add_claim_for_records(
            claim_id="past_due_deals",
            claim_text=f"{len(past_due_records)} open deals are past their close date",
            records=past_due_records,
            metric_name="close_date",
            threshold_applied="close_date < today",
        )
    return builder.build()


PIPELINE_HYGIENE = SkillDefinition(
    id="pipeline-hygiene",
    name="Pipeline Hygiene Check",
    version="1.0.0",
    category=SkillCategory.pipeline,
    tier=Tier.mixed,
    description="Flags stale and past-due deals and summarizes the hygiene actions for each owner.",
    required_tools=frozenset(
        {"resolve_time_windows", "gather_pipeline_summary", "aggregate_stale_deals", "aggregate_closing_soon"}
    ),
    required_context=frozenset({"company_name"}),
    schedule=SkillSchedule(
        cron="0 8 * * 1",
        triggers=frozenset({Trigger.post_sync, Trigger.cron, Trigger.on_demand}),
    ),
    output_format=OutputFormat.slack,
    time_config=TimeConfig(analysis_window="current_quarter", change_window="last_7d"),
    steps=(
        StepDefinition(
            id="resolve-time-windows",
            name="Resolve Time Windows",
            tier=Tier.compute,
            compute_fn="resolve_time_windows",
            output_key="windows",
        ),
        StepDefinition(
            id="gather-pipeline-summary",
            name="Gather Pipeline Summary",
            tier=Tier.compute,
            compute_fn="gather_pipeline_summary",
            output_key="pipeline_summary",
        ),
        StepDefinition(
            id="aggregate-stale-deals",
            name="Aggregate Stale Deals",
            tier=Tier.compute,
            compute_fn="aggregate_stale_deals",
            compute_args={"stale_days": STALE_DAYS},
            output_key="stale_deals",
        ),
        StepDefinition(
            id="aggregate-closing-soon",
            name="Aggregate Deals Closing Soon",
            tier=Tier.compute,
            compute_fn="aggregate_closing_soon",
            compute_args={"within_days": CLOSING_WITHIN_DAYS},
            output_key="closing_soon",
        ),
        StepDefinition(
            id="synthesize-hygiene-report",
            name="Synthesize Hygiene Report",
            tier=Tier.model,
            model=ModelInvocation(prompt=_REPORT_PROMPT, schema=_REPORT_SCHEMA, capability="reason", max_tokens=2000),
            depends_on=frozenset({"gather-pipeline-summary", "aggregate-stale-deals", "aggregate-closing-soon"}),
            output_key="report",
        ),
    ),
    evidence_builder=build_pipeline_hygiene_evidence,
    estimated_duration="30s",
)
