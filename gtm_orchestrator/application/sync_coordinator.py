"""同步作业协调器：防止同一连接器重复同步、识别增量/全量模式并惰性回收僵死锁。"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from gtm_orchestrator.domain.enums import SyncType
from gtm_orchestrator.domain.errors import ConflictError, StaleLockReapedError
from gtm_orchestrator.domain.models import SyncRequest, SyncSubmission
from gtm_orchestrator.infra.db.repository import ConnectionRepository, SyncLogRepository, as_utc
from gtm_orchestrator.infra.queue import JobQueue

logger = logging.getLogger(__name__)

SYNC_JOB_TYPE = "connector_sync"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncJobCoordinator:
    def __init__(
        self,
        *,
        sync_logs: SyncLogRepository,
        connections: ConnectionRepository,
        job_queue: JobQueue,
        stale_lock_minutes: int = 60,
        manual_priority: int = 1,
        scheduled_priority: int = 0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sync_logs = sync_logs
        self._connections = connections
        self._job_queue = job_queue
        self._stale_after = timedelta(minutes=stale_lock_minutes)
        self._priorities = {SyncType.manual: manual_priority, SyncType.scheduled: scheduled_priority}
        self._clock = clock

    def submit(self, request: SyncRequest) -> SyncSubmission:
        """提交同步作业，不等待同步完成。

        同一 workspace+connector 已有 pending/running 记录时抛出 ConflictError；
        running 超过阈值的记录会先被回收为 failed。入队失败时该记录标记为 failed 并重新抛出。
        """
        reservation = self._sync_logs.reserve(
            workspace_id=request.workspace_id,
            connector_type=request.connector_type,
            sync_type=request.sync_type,
            requested_mode=request.mode,
            now=self._clock(),
            stale_after=self._stale_after,
        )
        for reaped_id in reservation.reaped_sync_ids:
            notice = StaleLockReapedError(reaped_id, request.workspace_id, request.connector_type)
            logger.warning(
                str(notice),
                extra={
                    "event": "sync.lock.reaped",
                    "workspace_id": request.workspace_id,
                    "connector_type": request.connector_type,
                    "sync_id": reaped_id,
                    "error_type": type(notice).__name__,
                },
            )

        payload = {
            "sync_id": reservation.sync_id,
            "connector_type": request.connector_type,
            "mode": reservation.mode.value,
            "sync_type": request.sync_type.value,
        }
        try:
            job_id = self._job_queue.create_job(
                workspace_id=request.workspace_id,
                job_type=SYNC_JOB_TYPE,
                payload=payload,
                priority=self._priorities[request.sync_type],
            )
        except Exception as exc:
            self._sync_logs.mark_failed(reservation.sync_id, f"enqueue failed: {exc}", now=self._clock())
            logger.error(
                "sync enqueue failed",
                extra={
                    "event": "sync.submit.enqueue_failed",
                    "workspace_id": request.workspace_id,
                    "connector_type": request.connector_type,
                    "sync_id": reservation.sync_id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise
        self._sync_logs.attach_job(reservation.sync_id, job_id)

        logger.info(
            "sync submitted",
            extra={
                "event": "sync.submit.queued",
                "workspace_id": request.workspace_id,
                "connector_type": request.connector_type,
                "sync_id": reservation.sync_id,
                "payload_preview": {"job_id": job_id, "mode": reservation.mode.value},
            },
        )
        return SyncSubmission(
            sync_id=reservation.sync_id,
            job_id=job_id,
            workspace_id=request.workspace_id,
            connector_type=request.connector_type,
            mode=reservation.mode,
            reaped_sync_ids=reservation.reaped_sync_ids,
        )

    def submit_or_conflict(self, request: SyncRequest) -> SyncSubmission | ConflictError:
        """调度路径使用：冲突视为正常跳过，返回异常对象而不抛出。"""
        try:
            return self.submit(request)
        except ConflictError as exc:
            logger.info(
                "sync skipped, already active",
                extra={
                    "event": "sync.submit.conflict",
                    "workspace_id": request.workspace_id,
                    "connector_type": request.connector_type,
                    "sync_id": exc.existing_sync_id,
                },
            )
            return exc

    def submit_scheduled(self) -> list[dict[str, Any]]:
        """每日定时同步：为每个已连接的 workspace+connector 提交一次 scheduled 同步。

        已有活跃同步的连接记为 conflict 跳过；单个连接入队失败只记录，不影响其余连接。
        """
        summary: list[dict[str, Any]] = []
        for conn in self._connections.list_active_connections():
            item: dict[str, Any] = {"workspace_id": conn.workspace_id, "connector_type": conn.connector_name}
            request = SyncRequest(
                workspace_id=conn.workspace_id,
                connector_type=conn.connector_name,
                sync_type=SyncType.scheduled,
            )
            try:
                outcome = self.submit_or_conflict(request)
            except Exception as exc:
                logger.exception(
                    "scheduled sync submit failed",
                    extra={
                        "event": "sync.schedule.submit_failed",
                        "workspace_id": conn.workspace_id,
                        "connector_type": conn.connector_name,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                item.update(status="error", error=f"{type(exc).__name__}: {exc}")
            else:
                if isinstance(outcome, ConflictError):
                    item.update(status="conflict", sync_id=outcome.existing_sync_id)
                else:
                    item.update(status="queued", sync_id=outcome.sync_id, mode=outcome.mode.value)
            summary.append(item)
        logger.info(
            "scheduled sync fan-out finished",
            extra={
                "event": "sync.schedule.finished",
                "payload_preview": {
                    "connections": len(summary),
                    "queued": sum(1 for item in summary if item["status"] == "queued"),
                },
            },
        )
        return summary

    def history(self, workspace_id: str, connector_type: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        return [_sync_to_dict(row) for row in self._sync_logs.list_history(workspace_id, connector_type, limit)]

    def status(self, workspace_id: str) -> dict[str, Any]:
        """返回工作区各连接器的水位与最近一次同步。"""
        history = self._sync_logs.list_history(workspace_id, limit=200)
        latest: dict[str, dict[str, Any]] = {}
        for row in history:
            latest.setdefault(row.connector_type, _sync_to_dict(row))
        connectors = []
        for conn in self._connections.list_for_workspace(workspace_id):
            watermark = as_utc(conn.last_sync_at)
            connectors.append(
                {
                    "connector_type": conn.connector_name,
                    "status": conn.status,
                    "last_sync_at": watermark.isoformat() if watermark else None,
                    "latest_sync": latest.pop(conn.connector_name, None),
                }
            )
        for connector_type, row in latest.items():
            connectors.append(
                {"connector_type": connector_type, "status": None, "last_sync_at": None, "latest_sync": row}
            )
        return {
            "workspace_id": workspace_id,
            "syncing": any(item["latest_sync"] and item["latest_sync"]["status"] in ("pending", "running") for item in connectors),
            "connectors": connectors,
        }


def _sync_to_dict(row: Any) -> dict[str, Any]:
    started = as_utc(row.started_at)
    completed = as_utc(row.completed_at)
    return {
        "sync_id": row.id,
        "workspace_id": row.workspace_id,
        "connector_type": row.connector_type,
        "sync_type": row.sync_type,
        "status": row.status,
        "mode": row.mode,
        "job_id": row.job_id,
        "records_synced": row.records_synced,
        "errors": list(row.errors or []),
        "started_at": started.isoformat() if started else None,
        "completed_at": completed.isoformat() if completed else None,
    }
