"""同步作业执行体：由 worker 调用，推进同步日志状态与增量水位，并触发 post_sync 技能。"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Mapping, Protocol

from gtm_orchestrator.application.post_sync import PostSyncTrigger
from gtm_orchestrator.domain.enums import SyncMode, SyncStatus
from gtm_orchestrator.domain.models import ConnectorSyncResult
from gtm_orchestrator.infra.db.repository import ConnectionRepository, SyncLogRepository, as_utc

logger = logging.getLogger(__name__)


class ConnectorSyncer(Protocol):
    """连接器同步协议：拉取并写入归一化数据，返回同步条数。"""

    def sync(self, workspace_id: str, mode: SyncMode, since: datetime | None) -> int: ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncWorker:
    def __init__(
        self,
        *,
        sync_logs: SyncLogRepository,
        connections: ConnectionRepository,
        syncers: Mapping[str, ConnectorSyncer],
        post_sync: PostSyncTrigger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sync_logs = sync_logs
        self._connections = connections
        self._syncers = syncers
        self._post_sync = post_sync
        self._clock = clock

    def run(self, sync_id: str, workspace_id: str, connector_type: str, mode: str) -> ConnectorSyncResult:
        row = self._sync_logs.get(sync_id)
        if row is None:
            raise KeyError(f"sync not found: {sync_id}")
        if row.status != SyncStatus.pending.value:
            # 已被回收或重复投递的作业直接忽略。
            logger.warning(
                "sync job not pending, ignored",
                extra={"event": "sync.run.ignored", "sync_id": sync_id, "payload_preview": {"status": row.status}},
            )
            return ConnectorSyncResult(connector=connector_type, status=row.status, message="not pending")

        sync_mode = SyncMode(mode)
        syncer = self._syncers.get(connector_type)
        if syncer is None:
            message = f"no connector syncer registered for {connector_type}"
            self._sync_logs.mark_failed(sync_id, message, now=self._clock())
            logger.error(
                "sync failed",
                extra={"event": "sync.run.failed", "sync_id": sync_id, "connector_type": connector_type, "error": message},
            )
            return ConnectorSyncResult(connector=connector_type, status=SyncStatus.failed.value, message=message)

        started_at = self._clock()
        self._sync_logs.mark_running(sync_id, now=started_at)
        since = None
        if sync_mode is SyncMode.incremental:
            conn = self._connections.get(workspace_id, connector_type)
            since = as_utc(conn.last_sync_at) if conn else None

        started = time.perf_counter()
        try:
            records = syncer.sync(workspace_id, sync_mode, since)
        except Exception as exc:
            self._sync_logs.mark_failed(sync_id, f"{type(exc).__name__}: {exc}", now=self._clock())
            logger.exception(
                "sync failed",
                extra={
                    "event": "sync.run.failed",
                    "external_service": connector_type,
                    "sync_id": sync_id,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise

        self._sync_logs.mark_completed(sync_id, records_synced=records, now=self._clock())
        # 以开始时间作为新水位，同步期间的变更在下一次增量中补齐。
        self._connections.advance_watermark(workspace_id, connector_type, started_at)
        result = ConnectorSyncResult(connector=connector_type, status=SyncStatus.completed.value, records_synced=records)
        logger.info(
            "sync completed",
            extra={
                "event": "sync.run.completed",
                "external_service": connector_type,
                "sync_id": sync_id,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "payload_preview": {"records_synced": records, "mode": sync_mode.value},
            },
        )
        self._fire_post_sync(workspace_id, result)
        return result

    def _fire_post_sync(self, workspace_id: str, result: ConnectorSyncResult) -> None:
        if self._post_sync is None:
            return
        try:
            self._post_sync.on_sync_completed(workspace_id, [result])
        except Exception as exc:
            # 同步本身已成功，触发失败只记录。
            logger.exception(
                "post-sync dispatch failed",
                extra={"event": "trigger.dispatch.failed", "error_type": type(exc).__name__, "error": str(exc)},
            )
