"""rep-scorecard 技能：按销售代表汇总在途管道与停滞比例。"""

from __future__ import annotations

from typing import Any, Mapping

from gtm_orchestrator.domain.enums import OutputFormat, Severity, SkillCategory, Tier, Trigger
from gtm_orchestrator.domain.evidence import EvidenceBuilder, EvidenceBundle, Parameter, build_data_sources, number, rep_to_record
from gtm_orchestrator.domain.models import RunContext, SkillDefinition, SkillSchedule, StepDefinition, TimeConfig

WARNING_STALE_RATIO = 0.25
CRITICAL_STALE_RATIO = 0.5

_REP_DERIVED = {"stale_deals": number("stale_deals"), "stale_ratio": number("stale_ratio")}


def _rep_severity(rep: Mapping[str, Any]) -> Severity:
    ratio = float(rep.get("stale_ratio") or 0)
    if ratio >= CRITICAL_STALE_RATIO:
        return Severity.critical
    if ratio >= WARNING_STALE_RATIO:
        return Severity.warning
    return Severity.healthy


def build_rep_scorecard_evidence(outputs: Mapping[str, Any], ctx: RunContext) -> EvidenceBundle:
    summary = outputs.get("pipeline_summary") or {}
    performance = outputs.get("owner_performance") or {}

    builder = EvidenceBuilder()
    builder.add_parameter(
        Parameter(
            name="critical_stale_ratio",
            display_name="Critical stale ratio",
            value=CRITICAL_STALE_RATIO,
            description="Share of a rep's open deals that are stale before the rep is flagged critical.",
        )
    )
    for source in build_data_sources(summary.get("connections", []), ["hubspot", "salesforce"]):
        builder.add_data_source(source)

    records = [rep_to_record(rep, _rep_severity(rep), derived=_REP_DERIVED) for rep in performance.get("reps", [])]
    builder.add_records(records)
    flagged = [item for item in records if item.severity is not Severity.healthy]
    if flagged:
        builder.add_claim_for_records(
            claim_id="reps_with_stale_pipeline",
            claim_text=f"{len(flagged)} reps have at least {int(WARNING_STALE_RATIO * 100)}% of open deals stale",
            records=flagged,
            metric_name="stale_ratio",
            threshold_applied=f"stale_ratio >= {WARNING_STALE_RATIO}",
        )
    return builder.build()


REP_SCORECARD = SkillDefinition(
    id="rep-scorecard",
    name="Rep Scorecard",
    version="1.0.0",
    category=SkillCategory.reporting,
    tier=Tier.compute,
    description="Per-rep open pipeline and stale-deal ratio.",
    required_tools=frozenset({"gather_pipeline_summary", "compute_owner_performance"}),
    schedule=SkillSchedule(cron="0 16 * * 5", triggers=frozenset({Trigger.cron, Trigger.on_demand})),
    output_format=OutputFormat.markdown,
    time_config=TimeConfig(analysis_window="current_quarter", change_window="last_7d"),
    steps=(
        StepDefinition(
            id="gather-pipeline-summary",
            name="Gather Pipeline Summary",
            tier=Tier.compute,
            compute_fn="gather_pipeline_summary",
            output_key="pipeline_summary",
        ),
        StepDefinition(
            id="compute-owner-performance",
            name="Compute Owner Performance",
            tier=Tier.compute,
            compute_fn="compute_owner_performance",
            compute_args={"stale_days": 14},
            output_key="owner_performance",
        ),
    ),
    evidence_builder=build_rep_scorecard_evidence,
    estimated_duration="10s",
)
