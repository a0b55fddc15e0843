"""同步作业执行测试：状态推进、水位前移、失败记录与 post_sync 触发。"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from gtm_orchestrator.application.sync_worker import SyncWorker
from gtm_orchestrator.domain.enums import SyncMode, SyncStatus, SyncType
from gtm_orchestrator.domain.models import ConnectorSyncResult
from gtm_orchestrator.infra.db.models import Base
from gtm_orchestrator.infra.db.repository import ConnectionRepository, SyncLogRepository, as_utc

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _session_factory(db_path: Path) -> sessionmaker[Session]:
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, class_=Session)


class _SyncerStub:
    def __init__(self, records: int = 0, error: Exception | None = None) -> None:
        self.records = records
        self.error = error
        self.calls: list[tuple[str, SyncMode, datetime | None]] = []

    def sync(self, workspace_id: str, mode: SyncMode, since: datetime | None) -> int:
        self.calls.append((workspace_id, mode, since))
        if self.error is not None:
            raise self.error
        return self.records


class _PostSyncStub:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[tuple[str, list[ConnectorSyncResult]]] = []
        self.error = error

    def on_sync_completed(self, workspace_id: str, results: Any) -> None:
        self.calls.append((workspace_id, list(results)))
        if self.error is not None:
            raise self.error


def _reserve(factory: sessionmaker[Session], mode: SyncMode | None = None) -> tuple[str, SyncMode]:
    reservation = SyncLogRepository(factory).reserve(
        workspace_id="ws-1",
        connector_type="hubspot",
        sync_type=SyncType.manual,
        requested_mode=mode,
        now=NOW - timedelta(minutes=1),
        stale_after=timedelta(minutes=60),
    )
    return reservation.sync_id, reservation.mode


def _worker(factory: sessionmaker[Session], syncer: _SyncerStub | None, post_sync: Any = None) -> SyncWorker:
    return SyncWorker(
        sync_logs=SyncLogRepository(factory),
        connections=ConnectionRepository(factory),
        syncers={"hubspot": syncer} if syncer is not None else {},
        post_sync=post_sync,
        clock=lambda: NOW,
    )


def test_successful_sync_completes_row_advances_watermark_and_fires_post_sync(tmp_path: Path) -> None:
    factory = _session_factory(tmp_path / "worker.db")
    sync_id, mode = _reserve(factory)
    syncer = _SyncerStub(records=42)
    post_sync = _PostSyncStub()

    result = _worker(factory, syncer, post_sync).run(sync_id, "ws-1", "hubspot", mode.value)

    assert result.status == "completed"
    assert result.records_synced == 42
    assert syncer.calls == [("ws-1", SyncMode.full, None)]
    row = SyncLogRepository(factory).get(sync_id)
    assert row.status == SyncStatus.completed.value
    assert row.records_synced == 42
    conn = ConnectionRepository(factory).get("ws-1", "hubspot")
    assert as_utc(conn.last_sync_at) == NOW
    assert post_sync.calls[0][0] == "ws-1"
    assert post_sync.calls[0][1][0].records_synced == 42


def test_incremental_sync_receives_previous_watermark(tmp_path: Path) -> None:
    factory = _session_factory(tmp_path / "worker.db")
    previous = NOW - timedelta(days=2)
    ConnectionRepository(factory).upsert("ws-1", "hubspot", last_sync_at=previous)
    sync_id, mode = _reserve(factory)
    syncer = _SyncerStub(records=1)

    _worker(factory, syncer).run(sync_id, "ws-1", "hubspot", mode.value)

    assert mode is SyncMode.incremental
    assert syncer.calls == [("ws-1", SyncMode.incremental, previous)]


def test_syncer_error_marks_row_failed_and_keeps_watermark(tmp_path: Path) -> None:
    factory = _session_factory(tmp_path / "worker.db")
    previous = NOW - timedelta(days=2)
    ConnectionRepository(factory).upsert("ws-1", "hubspot", last_sync_at=previous)
    sync_id, mode = _reserve(factory)
    post_sync = _PostSyncStub()

    with pytest.raises(TimeoutError):
        _worker(factory, _SyncerStub(error=TimeoutError("api slow")), post_sync).run(sync_id, "ws-1", "hubspot", mode.value)

    row = SyncLogRepository(factory).get(sync_id)
    assert row.status == SyncStatus.failed.value
    assert row.errors == ["TimeoutError: api slow"]
    assert as_utc(ConnectionRepository(factory).get("ws-1", "hubspot").last_sync_at) == previous
    assert post_sync.calls == []


def test_missing_syncer_marks_row_failed(tmp_path: Path) -> None:
    factory = _session_factory(tmp_path / "worker.db")
    sync_id, mode = _reserve(factory)

    result = _worker(factory, None).run(sync_id, "ws-1", "hubspot", mode.value)

    assert result.status == "failed"
    row = SyncLogRepository(factory).get(sync_id)
    assert row.status == SyncStatus.failed.value
    assert row.errors == ["no connector syncer registered for hubspot"]


def test_row_that_is_no_longer_pending_is_ignored(tmp_path: Path) -> None:
    factory = _session_factory(tmp_path / "worker.db")
    sync_id, mode = _reserve(factory)
    SyncLogRepository(factory).mark_failed(sync_id, "Sync timed out (exceeded 1 hour)", now=NOW)
    syncer = _SyncerStub(records=5)

    result = _worker(factory, syncer).run(sync_id, "ws-1", "hubspot", mode.value)

    assert result.message == "not pending"
    assert syncer.calls == []


def test_post_sync_failure_does_not_fail_completed_sync(tmp_path: Path) -> None:
    factory = _session_factory(tmp_path / "worker.db")
    sync_id, mode = _reserve(factory)

    result = _worker(factory, _SyncerStub(records=3), _PostSyncStub(error=RuntimeError("pool closed"))).run(
        sync_id, "ws-1", "hubspot", mode.value
    )

    assert result.status == "completed"
    assert SyncLogRepository(factory).get(sync_id).status == SyncStatus.completed.value


def test_watermark_never_moves_backwards(tmp_path: Path) -> None:
    factory = _session_factory(tmp_path / "worker.db")
    connections = ConnectionRepository(factory)
    connections.advance_watermark("ws-1", "hubspot", NOW)
    connections.advance_watermark("ws-1", "hubspot", NOW - timedelta(hours=1))

    assert as_utc(connections.get("ws-1", "hubspot").last_sync_at) == NOW
