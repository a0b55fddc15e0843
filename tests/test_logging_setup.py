"""日志格式化与路由过滤测试。"""

from __future__ import annotations

import json
import logging

from gtm_orchestrator.infra.logging.context import bind_log_context, get_log_context
from gtm_orchestrator.infra.logging.setup import (
    DebugRoutingFilter,
    StructuredJsonFormatter,
    redact_text,
    render_payload_preview,
)


def _record(level: int = logging.INFO, name: str = "gtm_orchestrator.application.runtime", **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(name, level, __file__, 1, "skill run finished", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def _formatter(chars: int = 200) -> StructuredJsonFormatter:
    return StructuredJsonFormatter(
        service="gtm-orchestrator",
        process_role="worker",
        redaction_mode="default",
        payload_preview_chars=chars,
    )


def test_formatter_emits_context_and_extra_fields() -> None:
    record = _record(event="skill.run.completed", duration_ms="12.5", skill_id="pipeline-hygiene")

    with bind_log_context(workspace_id="ws-1", run_id="run-1"):
        entry = json.loads(_formatter().format(record))

    assert entry["event"] == "skill.run.completed"
    assert entry["workspace_id"] == "ws-1"
    assert entry["run_id"] == "run-1"
    assert entry["request_id"] is None
    assert entry["duration_ms"] == 12.5
    assert entry["process_role"] == "worker"
    assert entry["fields"] == {"skill_id": "pipeline-hygiene"}


def test_payload_preview_is_redacted_and_truncated() -> None:
    preview = render_payload_preview({"api_key=abc123": 1}, max_chars=1000, redaction_mode="default")
    assert "abc123" not in (preview or "")

    long_preview = render_payload_preview("x" * 50, max_chars=10, redaction_mode="off")
    assert long_preview == "x" * 10 + "...(truncated)"
    assert redact_text("Authorization: Bearer tok", "default") == "Authorization: Bearer ***"


def test_debug_routing_allows_selected_workspace() -> None:
    routing = DebugRoutingFilter(min_level=logging.INFO, debug_modules={"gtm_orchestrator.infra"}, debug_workspace_ids={"ws-debug"})

    assert routing.filter(_record(logging.WARNING)) is True
    assert routing.filter(_record(logging.DEBUG)) is False
    assert routing.filter(_record(logging.DEBUG, name="gtm_orchestrator.infra.queue")) is True
    with bind_log_context(workspace_id="ws-debug"):
        assert routing.filter(_record(logging.DEBUG)) is True


def test_bind_log_context_restores_previous_values() -> None:
    with bind_log_context(workspace_id="outer"):
        with bind_log_context(workspace_id="inner", task_id="t-1"):
            assert get_log_context()["workspace_id"] == "inner"
        assert get_log_context()["workspace_id"] == "outer"
        assert get_log_context()["task_id"] is None


def test_strict_mode_also_masks_contact_emails() -> None:
    text = "hubspot token pat-na1-0f3c9a1e-7d2b-4c55-9e1a-2b7c4d6e8f90 owner=pat@example.com"

    standard = redact_text(text, "standard") or ""
    strict = redact_text(text, "strict") or ""

    assert "0f3c9a1e" not in standard
    assert "pat@example.com" in standard
    assert "pat@example.com" not in strict
    assert "client_secret=***" in (redact_text("client_secret=s3cr3t", "standard") or "")
