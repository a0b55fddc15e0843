"""同步协调器测试：互斥锁、僵死锁回收、增量/全量识别与入队失败处理。"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Mapping

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from gtm_orchestrator.application.sync_coordinator import SyncJobCoordinator
from gtm_orchestrator.domain.enums import SyncMode, SyncStatus, SyncType
from gtm_orchestrator.domain.errors import ConflictError
from gtm_orchestrator.domain.models import SyncRequest
from gtm_orchestrator.infra.db.models import Base, SyncLogORM
from gtm_orchestrator.infra.db.repository import STALE_SYNC_ERROR, ConnectionRepository, SyncLogRepository

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _session_factory(db_path: Path) -> sessionmaker[Session]:
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, class_=Session)


class _QueueStub:
    """记录投递作业的队列桩。"""

    def __init__(self, error: Exception | None = None) -> None:
        self.jobs: list[dict[str, Any]] = []
        self.error = error

    def create_job(self, *, workspace_id: str, job_type: str, payload: Mapping[str, Any], priority: int = 0) -> str:
        if self.error is not None:
            raise self.error
        self.jobs.append({"workspace_id": workspace_id, "job_type": job_type, "payload": dict(payload), "priority": priority})
        return f"job-{len(self.jobs)}"


def _coordinator(factory: sessionmaker[Session], queue: _QueueStub, now: datetime = NOW) -> SyncJobCoordinator:
    return SyncJobCoordinator(
        sync_logs=SyncLogRepository(factory),
        connections=ConnectionRepository(factory),
        job_queue=queue,
        stale_lock_minutes=60,
        manual_priority=1,
        scheduled_priority=0,
        clock=lambda: now,
    )


def test_first_sync_for_workspace_is_full_and_creates_one_pending_row(tmp_path: Path) -> None:
    factory = _session_factory(tmp_path / "sync.db")
    queue = _QueueStub()
    submission = _coordinator(factory, queue).submit(SyncRequest(workspace_id="ws-1", connector_type="hubspot"))

    assert submission.mode is SyncMode.full
    assert submission.status == "queued"
    assert submission.job_id == "job-1"
    assert queue.jobs[0]["job_type"] == "connector_sync"
    assert queue.jobs[0]["priority"] == 1
    assert queue.jobs[0]["payload"] == {
        "sync_id": submission.sync_id,
        "connector_type": "hubspot",
        "mode": "full",
        "sync_type": "manual",
    }
    repo = SyncLogRepository(factory)
    row = repo.get(submission.sync_id)
    assert row is not None
    assert row.status == SyncStatus.pending.value
    assert row.job_id == "job-1"
    assert repo.count_active("ws-1", "hubspot") == 1


def test_second_submission_conflicts_with_first_lock(tmp_path: Path) -> None:
    factory = _session_factory(tmp_path / "sync.db")
    queue = _QueueStub()
    coordinator = _coordinator(factory, queue)
    first = coordinator.submit(SyncRequest(workspace_id="ws-1", connector_type="hubspot"))

    with pytest.raises(ConflictError) as exc_info:
        coordinator.submit(SyncRequest(workspace_id="ws-1", connector_type="hubspot"))

    assert exc_info.value.existing_sync_id == first.sync_id
    assert len(queue.jobs) == 1
    assert SyncLogRepository(factory).count_active("ws-1", "hubspot") == 1


def test_other_connector_or_workspace_does_not_conflict(tmp_path: Path) -> None:
    factory = _session_factory(tmp_path / "sync.db")
    coordinator = _coordinator(factory, _QueueStub())
    coordinator.submit(SyncRequest(workspace_id="ws-1", connector_type="hubspot"))
    coordinator.submit(SyncRequest(workspace_id="ws-1", connector_type="gong"))
    coordinator.submit(SyncRequest(workspace_id="ws-2", connector_type="hubspot"))

    repo = SyncLogRepository(factory)
    assert repo.count_active("ws-1", "hubspot") == 1
    assert repo.count_active("ws-1", "gong") == 1
    assert repo.count_active("ws-2", "hubspot") == 1


def test_submit_or_conflict_returns_error_instead_of_raising(tmp_path: Path) -> None:
    factory = _session_factory(tmp_path / "sync.db")
    coordinator = _coordinator(factory, _QueueStub())
    first = coordinator.submit(SyncRequest(workspace_id="ws-1", connector_type="hubspot", sync_type=SyncType.scheduled))

    outcome = coordinator.submit_or_conflict(
        SyncRequest(workspace_id="ws-1", connector_type="hubspot", sync_type=SyncType.scheduled)
    )

    assert isinstance(outcome, ConflictError)
    assert outcome.existing_sync_id == first.sync_id


def test_running_sync_older_than_threshold_is_reaped(tmp_path: Path) -> None:
    """运行超过 60 分钟的锁被回收为 failed，新提交随即成功。"""
    factory = _session_factory(tmp_path / "sync.db")
    with factory.begin() as db:
        db.add(
            SyncLogORM(
                id="stuck",
                workspace_id="ws-1",
                connector_type="hubspot",
                sync_type="manual",
                status=SyncStatus.running.value,
                mode="full",
                started_at=NOW - timedelta(minutes=61),
                errors=[],
            )
        )

    submission = _coordinator(factory, _QueueStub()).submit(SyncRequest(workspace_id="ws-1", connector_type="hubspot"))

    assert submission.reaped_sync_ids == ("stuck",)
    stuck = SyncLogRepository(factory).get("stuck")
    assert stuck is not None
    assert stuck.status == SyncStatus.failed.value
    assert stuck.errors == [STALE_SYNC_ERROR]
    assert stuck.completed_at is not None


def test_running_sync_within_threshold_still_conflicts(tmp_path: Path) -> None:
    factory = _session_factory(tmp_path / "sync.db")
    with factory.begin() as db:
        db.add(
            SyncLogORM(
                id="busy",
                workspace_id="ws-1",
                connector_type="hubspot",
                status=SyncStatus.running.value,
                started_at=NOW - timedelta(minutes=59),
                errors=[],
            )
        )

    with pytest.raises(ConflictError) as exc_info:
        _coordinator(factory, _QueueStub()).submit(SyncRequest(workspace_id="ws-1", connector_type="hubspot"))

    assert exc_info.value.existing_sync_id == "busy"


def test_watermark_selects_incremental_and_explicit_mode_wins(tmp_path: Path) -> None:
    factory = _session_factory(tmp_path / "sync.db")
    ConnectionRepository(factory).upsert("ws-1", "hubspot", last_sync_at=NOW - timedelta(days=1))
    queue = _QueueStub()
    coordinator = _coordinator(factory, queue)

    auto = coordinator.submit(SyncRequest(workspace_id="ws-1", connector_type="hubspot"))
    SyncLogRepository(factory).mark_completed(auto.sync_id, records_synced=3, now=NOW)
    forced = coordinator.submit(SyncRequest(workspace_id="ws-1", connector_type="hubspot", mode=SyncMode.full))

    assert auto.mode is SyncMode.incremental
    assert forced.mode is SyncMode.full
    assert [job["payload"]["mode"] for job in queue.jobs] == ["incremental", "full"]


def test_enqueue_failure_marks_row_failed_and_releases_lock(tmp_path: Path) -> None:
    factory = _session_factory(tmp_path / "sync.db")
    with pytest.raises(ConnectionError):
        _coordinator(factory, _QueueStub(error=ConnectionError("redis down"))).submit(
            SyncRequest(workspace_id="ws-1", connector_type="hubspot")
        )

    repo = SyncLogRepository(factory)
    history = repo.list_history("ws-1")
    assert len(history) == 1
    assert history[0].status == SyncStatus.failed.value
    assert "enqueue failed: redis down" in history[0].errors
    assert repo.count_active("ws-1", "hubspot") == 0

    retry = _coordinator(factory, _QueueStub()).submit(SyncRequest(workspace_id="ws-1", connector_type="hubspot"))
    assert retry.sync_id != history[0].id


def test_partial_index_allows_history_but_rejects_second_active_row(tmp_path: Path) -> None:
    factory = _session_factory(tmp_path / "sync.db")
    with factory.begin() as db:
        db.add(SyncLogORM(id="done", workspace_id="ws-1", connector_type="hubspot", status="completed", started_at=NOW))
        db.add(SyncLogORM(id="active", workspace_id="ws-1", connector_type="hubspot", status="pending", started_at=NOW))

    with pytest.raises(IntegrityError):
        with factory.begin() as db:
            db.add(SyncLogORM(id="dup", workspace_id="ws-1", connector_type="hubspot", status="running", started_at=NOW))


def test_concurrent_insert_is_reported_as_conflict(tmp_path: Path) -> None:
    """查重通过后、插入前被另一进程抢先占锁，唯一索引冲突转换为 ConflictError。"""
    db_path = tmp_path / "sync.db"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, class_=Session)
    competitor = _session_factory(db_path)
    fired: list[bool] = []

    def _race(conn: Any, cursor: Any, statement: str, parameters: Any, context: Any, executemany: bool) -> None:
        if fired or not statement.startswith("INSERT INTO sync_log"):
            return
        fired.append(True)
        with competitor.begin() as db:
            db.add(SyncLogORM(id="winner", workspace_id="ws-1", connector_type="hubspot", status="pending", started_at=NOW))

    event.listen(engine, "before_cursor_execute", _race)
    queue = _QueueStub()

    with pytest.raises(ConflictError) as exc_info:
        _coordinator(factory, queue).submit(SyncRequest(workspace_id="ws-1", connector_type="hubspot"))

    assert exc_info.value.existing_sync_id == "winner"
    assert queue.jobs == []
    assert SyncLogRepository(factory).count_active("ws-1", "hubspot") == 1


def test_history_and_status_report_latest_sync(tmp_path: Path) -> None:
    factory = _session_factory(tmp_path / "sync.db")
    ConnectionRepository(factory).upsert("ws-1", "hubspot", last_sync_at=NOW - timedelta(hours=2))
    coordinator = _coordinator(factory, _QueueStub())
    submission = coordinator.submit(SyncRequest(workspace_id="ws-1", connector_type="hubspot"))

    history = coordinator.history("ws-1")
    status = coordinator.status("ws-1")

    assert [item["sync_id"] for item in history] == [submission.sync_id]
    assert history[0]["mode"] == "incremental"
    assert status["syncing"] is True
    assert status["connectors"][0]["connector_type"] == "hubspot"
    assert status["connectors"][0]["last_sync_at"] == (NOW - timedelta(hours=2)).isoformat()
    assert status["connectors"][0]["latest_sync"]["status"] == "pending"


def test_scheduled_fan_out_submits_each_connected_source_once(tmp_path: Path) -> None:
    """每日同步：每个已连接数据源一条 scheduled 作业，已在同步的连接跳过，断开的连接不参与。"""
    factory = _session_factory(tmp_path / "sync.db")
    connections = ConnectionRepository(factory)
    connections.upsert("ws-1", "hubspot", last_sync_at=NOW - timedelta(days=1))
    connections.upsert("ws-1", "salesforce")
    connections.upsert("ws-2", "hubspot", status="disconnected")
    queue = _QueueStub()
    coordinator = _coordinator(factory, queue)
    manual = coordinator.submit(SyncRequest(workspace_id="ws-1", connector_type="salesforce"))

    summary = coordinator.submit_scheduled()

    assert [(item["workspace_id"], item["connector_type"], item["status"]) for item in summary] == [
        ("ws-1", "hubspot", "queued"),
        ("ws-1", "salesforce", "conflict"),
    ]
    assert summary[0]["mode"] == "incremental"
    assert summary[1]["sync_id"] == manual.sync_id
    scheduled_jobs = [job for job in queue.jobs if job["payload"]["sync_type"] == "scheduled"]
    assert len(scheduled_jobs) == 1
    assert scheduled_jobs[0]["priority"] == 0
    assert SyncLogRepository(factory).get(summary[0]["sync_id"]).sync_type == SyncType.scheduled.value


def test_scheduled_fan_out_records_enqueue_failure_and_continues(tmp_path: Path) -> None:
    factory = _session_factory(tmp_path / "sync.db")
    connections = ConnectionRepository(factory)
    connections.upsert("ws-1", "hubspot")
    connections.upsert("ws-2", "hubspot")

    summary = _coordinator(factory, _QueueStub(error=ConnectionError("redis down"))).submit_scheduled()

    assert [item["status"] for item in summary] == ["error", "error"]
    assert "redis down" in summary[0]["error"]
    assert SyncLogRepository(factory).count_active("ws-1", "hubspot") == 0
