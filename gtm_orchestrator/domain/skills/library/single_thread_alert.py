"""single-thread-alert 技能：只有一个联系人参与的商机风险提醒。"""

from __future__ import annotations

from typing import Any, Mapping

from gtm_orchestrator.domain.enums import OutputFormat, Severity, SkillCategory, Tier, Trigger
from gtm_orchestrator.domain.evidence import EvidenceBuilder, EvidenceBundle, Parameter, build_data_sources, deal_to_record, number
from gtm_orchestrator.domain.models import RunContext, SkillDefinition, SkillSchedule, StepDefinition, TimeConfig

CRITICAL_AMOUNT = 50_000


def build_single_thread_evidence(outputs: Mapping[str, Any], ctx: RunContext) -> EvidenceBundle:
    summary = outputs.get("pipeline_summary") or {}
    threading = outputs.get("threading") or {}

    builder = EvidenceBuilder()
    builder.add_parameter(
        Parameter(
            name="critical_amount",
            display_name="Critical deal size",
            value=CRITICAL_AMOUNT,
            description="Single-threaded deals at or above this amount are critical.",
            configurable=True,
        )
    )
    for source in build_data_sources(summary.get("connections", []), ["hubspot", "salesforce"]):
        builder.add_data_source(source)

    records = [
        deal_to_record(
            deal,
            Severity.critical if float(deal.get("amount") or 0) >= CRITICAL_AMOUNT else Severity.warning,
            derived={"contact_count": number("contact_count")},
        )
        for deal in threading.get("deals", [])
    ]
    builder.add_records(records)
    if records:
        builder.add_claim_for_records(
            claim_id="single_threaded_deals",
            claim_text=f"{len(records)} open deals rely on a single contact",
            records=records,
            metric_name="contact_count",
            threshold_applied="contact_count <= 1",
        )
    return builder.build()


SINGLE_THREAD_ALERT = SkillDefinition(
    id="single-thread-alert",
    name="Single-Thread Risk Alert",
    version="1.0.0",
    category=SkillCategory.deals,
    tier=Tier.compute,
    description="Identifies deals with only one contact engaged.",
    required_tools=frozenset({"gather_pipeline_summary", "find_single_threaded_deals"}),
    schedule=SkillSchedule(triggers=frozenset({Trigger.post_sync, Trigger.on_demand})),
    output_format=OutputFormat.slack,
    time_config=TimeConfig(analysis_window="all_time", change_window="since_last_run"),
    steps=(
        StepDefinition(
            id="gather-pipeline-summary",
            name="Gather Pipeline Summary",
            tier=Tier.compute,
            compute_fn="gather_pipeline_summary",
            output_key="pipeline_summary",
        ),
        StepDefinition(
            id="find-single-threaded-deals",
            name="Find Single-Threaded Deals",
            tier=Tier.compute,
            compute_fn="find_single_threaded_deals",
            compute_args={"min_amount": 0},
            output_key="threading",
        ),
    ),
    evidence_builder=build_single_thread_evidence,
    estimated_duration="10s",
)
