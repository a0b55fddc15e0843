"""时间窗口解析：将技能 time_config 转换为具体的分析/变化/对比区间。"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from gtm_orchestrator.domain.models import TimeConfig

_TRAILING_DAYS = {
    "trailing_90d": 90,
    "trailing_30d": 30,
    "trailing_7d": 7,
}
_CHANGE_DAYS = {
    "last_7d": 7,
    "last_14d": 14,
    "last_30d": 30,
}


@dataclass(frozen=True, slots=True)
class TimeWindows:
    """已解析的时间窗口。"""
    analysis_start: datetime | None
    analysis_end: datetime
    change_start: datetime
    previous_start: datetime | None
    previous_end: datetime | None
    analysis_window: str
    change_window: str

    def to_dict(self) -> dict[str, Any]:
        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "analysis_range": {"start": _iso(self.analysis_start), "end": _iso(self.analysis_end)},
            "change_range": {"start": _iso(self.change_start), "end": _iso(self.analysis_end)},
            "previous_period_range": {"start": _iso(self.previous_start), "end": _iso(self.previous_end)},
            "config": {"analysis_window": self.analysis_window, "change_window": self.change_window},
        }


def _quarter_start(now: datetime) -> datetime:
    month = ((now.month - 1) // 3) * 3 + 1
    return now.replace(month=month, day=1, hour=0, minute=0, second=0, microsecond=0)


def _previous_quarter_start(start: datetime) -> datetime:
    month = start.month - 3
    year = start.year
    if month < 1:
        month += 12
        year -= 1
    return start.replace(year=year, month=month)


def resolve_time_windows(
    config: TimeConfig,
    overrides: Mapping[str, str] | None = None,
    *,
    now: datetime | None = None,
    last_run_at: datetime | None = None,
) -> TimeWindows:
    """按配置与运行时覆盖解析时间窗口；未知窗口名按 all_time 处理。"""
    current = now or datetime.now(timezone.utc)
    analysis_window = (overrides or {}).get("analysis_window") or config.analysis_window
    change_window = (overrides or {}).get("change_window") or config.change_window

    analysis_start: datetime | None
    previous_start: datetime | None = None
    previous_end: datetime | None = None
    if analysis_window == "current_quarter":
        analysis_start = _quarter_start(current)
        previous_start = _previous_quarter_start(analysis_start)
        previous_end = analysis_start
    elif analysis_window == "current_month":
        analysis_start = current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        previous_end = analysis_start
        previous_start = (analysis_start - timedelta(days=1)).replace(day=1)
    elif analysis_window in _TRAILING_DAYS:
        span = timedelta(days=_TRAILING_DAYS[analysis_window])
        analysis_start = current - span
        previous_start = analysis_start - span
        previous_end = analysis_start
    else:
        analysis_start = None

    if change_window == "since_last_run" and last_run_at is not None:
        change_start = last_run_at
    else:
        change_start = current - timedelta(days=_CHANGE_DAYS.get(change_window, 7))

    return TimeWindows(
        analysis_start=analysis_start,
        analysis_end=current,
        change_start=change_start,
        previous_start=previous_start,
        previous_end=previous_end,
        analysis_window=analysis_window,
        change_window=change_window,
    )
