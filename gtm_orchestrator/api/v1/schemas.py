"""API 请求/响应数据模型定义，约束同步、技能与运行记录接口结构。"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from gtm_orchestrator.domain.enums import SyncMode, SyncType


class SyncSubmitRequest(BaseModel):
    """同步提交请求体；mode 为空时按水位自动识别。"""
    mode: SyncMode | None = None
    sync_type: SyncType = SyncType.manual


class SyncSubmitResponse(BaseModel):
    """同步提交响应模型。"""
    sync_id: str
    job_id: str
    workspace_id: str
    connector_type: str
    mode: str
    status: str
    reaped_sync_ids: list[str] = Field(default_factory=list)


class SyncLogItem(BaseModel):
    sync_id: str
    workspace_id: str
    connector_type: str
    sync_type: str
    status: str
    mode: str
    job_id: str | None
    records_synced: int
    errors: list[str]
    started_at: str | None
    completed_at: str | None


class ConnectorStatusItem(BaseModel):
    connector_type: str
    status: str | None
    last_sync_at: str | None
    latest_sync: SyncLogItem | None


class SyncStatusResponse(BaseModel):
    """工作区同步状态响应模型。"""
    workspace_id: str
    syncing: bool
    connectors: list[ConnectorStatusItem]


class ConnectorResultItem(BaseModel):
    connector: str
    status: str
    records_synced: int = 0
    message: str | None = None


class SyncCompletedEvent(BaseModel):
    """外部同步完成事件请求体。"""
    results: list[ConnectorResultItem] = Field(default_factory=list)


class TriggerDispatchResponse(BaseModel):
    workspace_id: str
    event: str
    skill_ids: list[str]


class SkillStepItem(BaseModel):
    id: str
    name: str
    tier: str
    depends_on: list[str]
    output_key: str


class SkillResponse(BaseModel):
    """技能元数据接口响应模型。"""
    id: str
    name: str
    version: str
    description: str
    category: str
    tier: str
    output_format: str
    required_tools: list[str]
    required_context: list[str]
    cron: str | None
    triggers: list[str]
    steps: list[SkillStepItem]
    has_evidence_builder: bool


class SkillRunRequest(BaseModel):
    """按需运行技能请求体。"""
    business_context: dict[str, Any] = Field(default_factory=dict)
    time_config: dict[str, str] | None = None


class SkillRunQueuedResponse(BaseModel):
    workspace_id: str
    skill_id: str
    job_id: str
    status: str = "queued"


class SkillRunItem(BaseModel):
    """技能运行记录响应模型。"""
    run_id: str
    skill_id: str
    workspace_id: str
    status: str
    trigger_type: str
    steps: list[dict[str, Any]] | None
    output: dict[str, Any] | None
    evidence: dict[str, Any] | None
    error: str | None
    duration_ms: float
    started_at: datetime
    completed_at: datetime | None


class AgentResponse(BaseModel):
    id: str
    name: str
    skill_ids: list[str]
    category: str
    enabled: bool
    description: str


class AgentToggleRequest(BaseModel):
    enabled: bool
