"""作业队列与 beat 调度配置测试。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import pytest

from gtm_orchestrator.infra.queue import CeleryJobQueue
from gtm_orchestrator.worker.celery_app import (
    build_beat_schedule,
    build_sync_beat_schedule,
    celery_app,
    crontab_from_expression,
)


@dataclass
class _AsyncResult:
    id: str


class _CeleryStub:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    def send_task(self, name: str, kwargs: dict[str, Any], priority: int) -> _AsyncResult:
        self.sent.append({"name": name, "kwargs": kwargs, "priority": priority})
        return _AsyncResult(id=f"task-{len(self.sent)}")


def test_sync_job_is_sent_with_inverted_priority() -> None:
    celery = _CeleryStub()
    queue = CeleryJobQueue(celery)

    manual = queue.create_job(workspace_id="ws-1", job_type="connector_sync", payload={"sync_id": "s1"}, priority=1)
    scheduled = queue.create_job(workspace_id="ws-1", job_type="connector_sync", payload={"sync_id": "s2"}, priority=0)

    assert (manual, scheduled) == ("task-1", "task-2")
    assert celery.sent[0]["name"] == "gtm_orchestrator.worker.tasks.run_sync_task"
    assert celery.sent[0]["kwargs"] == {"workspace_id": "ws-1", "sync_id": "s1"}
    assert celery.sent[0]["priority"] < celery.sent[1]["priority"]


def test_unsupported_job_type_is_rejected() -> None:
    with pytest.raises(ValueError):
        CeleryJobQueue(_CeleryStub()).create_job(workspace_id="ws-1", job_type="export", payload={})


def test_crontab_from_expression() -> None:
    schedule = crontab_from_expression("0 8 * * 1")

    assert schedule.minute == {0}
    assert schedule.hour == {8}
    assert schedule.day_of_week == {1}
    with pytest.raises(ValueError):
        crontab_from_expression("0 8 * *")


def test_beat_schedule_has_one_entry_per_cron_expression() -> None:
    schedule = build_beat_schedule()

    assert schedule["skills-0_8_*_*_1"]["kwargs"] == {"skill_ids": ["pipeline-hygiene"]}
    assert schedule["skills-0_16_*_*_5"]["kwargs"] == {"skill_ids": ["rep-scorecard"]}
    assert all(item["task"] == "gtm_orchestrator.worker.tasks.run_scheduled_skills_task" for item in schedule.values())


def test_daily_sync_is_registered_with_beat_and_routed_to_sync_queue() -> None:
    entry = build_sync_beat_schedule("0 2 * * *")["connector-sync-daily"]

    assert entry["task"] == "gtm_orchestrator.worker.tasks.run_scheduled_sync_task"
    assert entry["schedule"].hour == {2}
    assert entry["schedule"].minute == {0}
    assert "connector-sync-daily" in celery_app.conf.beat_schedule
    assert celery_app.conf.task_routes["gtm_orchestrator.worker.tasks.run_scheduled_sync_task"] == {"queue": "sync"}
