"""同步接口：提交连接器同步、查询同步历史与状态、接收同步完成事件。"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from gtm_orchestrator.api.v1.schemas import (
    SyncCompletedEvent,
    SyncLogItem,
    SyncStatusResponse,
    SyncSubmitRequest,
    SyncSubmitResponse,
    TriggerDispatchResponse,
)
from gtm_orchestrator.application.container import get_post_sync_trigger, get_sync_coordinator
from gtm_orchestrator.application.post_sync import PostSyncTrigger
from gtm_orchestrator.application.sync_coordinator import SyncJobCoordinator
from gtm_orchestrator.domain.errors import ConflictError
from gtm_orchestrator.domain.models import ConnectorSyncResult, SyncRequest

router = APIRouter()
logger = logging.getLogger(__name__)


def _coordinator() -> SyncJobCoordinator:
    return get_sync_coordinator()


def _trigger() -> PostSyncTrigger:
    return get_post_sync_trigger()


@router.post(
    "/workspaces/{workspace_id}/connectors/{connector_type}/sync",
    response_model=SyncSubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_sync(
    workspace_id: str,
    connector_type: str,
    body: SyncSubmitRequest | None = None,
    coordinator: SyncJobCoordinator = Depends(_coordinator),
) -> SyncSubmitResponse:
    """提交同步作业；已有活跃同步时返回 409 并附带其 sync_id。"""
    body = body or SyncSubmitRequest()
    request = SyncRequest(
        workspace_id=workspace_id,
        connector_type=connector_type,
        sync_type=body.sync_type,
        mode=body.mode,
    )
    try:
        submission = await asyncio.to_thread(coordinator.submit, request)
    except ConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "sync_id": exc.existing_sync_id},
        ) from exc
    return SyncSubmitResponse(
        sync_id=submission.sync_id,
        job_id=submission.job_id,
        workspace_id=submission.workspace_id,
        connector_type=submission.connector_type,
        mode=submission.mode.value,
        status=submission.status,
        reaped_sync_ids=list(submission.reaped_sync_ids),
    )


@router.get("/workspaces/{workspace_id}/sync/history", response_model=list[SyncLogItem])
async def sync_history(
    workspace_id: str,
    connector_type: str | None = None,
    limit: int = 20,
    coordinator: SyncJobCoordinator = Depends(_coordinator),
) -> list[SyncLogItem]:
    rows = await asyncio.to_thread(coordinator.history, workspace_id, connector_type, max(1, min(limit, 200)))
    return [SyncLogItem(**item) for item in rows]


@router.get("/workspaces/{workspace_id}/sync/status", response_model=SyncStatusResponse)
async def sync_status(
    workspace_id: str,
    coordinator: SyncJobCoordinator = Depends(_coordinator),
) -> SyncStatusResponse:
    return SyncStatusResponse(**await asyncio.to_thread(coordinator.status, workspace_id))


@router.post(
    "/workspaces/{workspace_id}/events/sync-completed",
    response_model=TriggerDispatchResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def sync_completed(
    workspace_id: str,
    event: SyncCompletedEvent,
    trigger: PostSyncTrigger = Depends(_trigger),
) -> TriggerDispatchResponse:
    """接收外部同步完成事件并派发 post_sync 技能，不等待技能执行结束。"""
    results = [ConnectorSyncResult(**item.model_dump()) for item in event.results]
    dispatch = trigger.on_sync_completed(workspace_id, results)
    return TriggerDispatchResponse(workspace_id=workspace_id, event="sync_completed", skill_ids=dispatch.skill_ids)
