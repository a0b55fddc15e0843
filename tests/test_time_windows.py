"""时间窗口解析测试。"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from gtm_orchestrator.domain.models import TimeConfig
from gtm_orchestrator.domain.time_windows import resolve_time_windows

NOW = datetime(2026, 2, 14, 9, 30, tzinfo=timezone.utc)


def test_current_quarter_with_previous_period() -> None:
    windows = resolve_time_windows(TimeConfig(), now=NOW)

    assert windows.analysis_start == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert windows.previous_start == datetime(2025, 10, 1, tzinfo=timezone.utc)
    assert windows.previous_end == windows.analysis_start
    assert windows.change_start == NOW - timedelta(days=7)
    assert windows.analysis_end == NOW


def test_overrides_and_since_last_run() -> None:
    last_run = NOW - timedelta(hours=30)
    windows = resolve_time_windows(
        TimeConfig(analysis_window="current_quarter", change_window="last_7d"),
        {"analysis_window": "trailing_30d", "change_window": "since_last_run"},
        now=NOW,
        last_run_at=last_run,
    )

    assert windows.analysis_window == "trailing_30d"
    assert windows.analysis_start == NOW - timedelta(days=30)
    assert windows.change_start == last_run


def test_all_time_has_open_start() -> None:
    windows = resolve_time_windows(TimeConfig(analysis_window="all_time", change_window="since_last_run"), now=NOW)

    assert windows.analysis_start is None
    assert windows.previous_start is None
    assert windows.change_start == NOW - timedelta(days=7)
    assert windows.to_dict()["analysis_range"]["start"] is None
