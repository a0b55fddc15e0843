"""仓储实现：封装同步锁、连接水位、技能运行记录与 CRM 数据读取。"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from gtm_orchestrator.domain.enums import ACTIVE_SYNC_STATUSES, SyncMode, SyncStatus, SyncType
from gtm_orchestrator.domain.errors import ConflictError
from gtm_orchestrator.domain.models import SkillRunResult
from gtm_orchestrator.infra.db.models import ConnectionORM, DealORM, SkillRunORM, SyncLogORM

STALE_SYNC_ERROR = "Sync timed out (exceeded 1 hour)"
CONNECTED_STATUSES = ("connected", "healthy", "synced")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite 读回的时间不带时区，统一按 UTC 解释。"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(slots=True)
class SyncReservation:
    """同步锁占用结果。"""
    sync_id: str
    mode: SyncMode
    reaped_sync_ids: tuple[str, ...]


class SyncLogRepository:
    """同步日志仓储：在单个事务内完成回收、查重、模式识别与占锁。"""
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def reserve(
        self,
        *,
        workspace_id: str,
        connector_type: str,
        sync_type: SyncType,
        requested_mode: SyncMode | None,
        now: datetime,
        stale_after: timedelta,
    ) -> SyncReservation:
        """占用 workspace+connector 的同步锁。

        事务内顺序：
        1. 将 started_at 早于 now - stale_after 的 running 记录置为 failed；
        2. 存在 pending/running 记录时抛出 ConflictError；
        3. 显式模式优先，否则有水位则增量、无水位则全量；
        4. 插入 pending 记录。

        并发插入被部分唯一索引拦截时，同样转换为 ConflictError。
        """
        sync_id = str(uuid.uuid4())
        try:
            with self._session_factory.begin() as db:
                stale_rows = db.execute(
                    select(SyncLogORM.id).where(
                        SyncLogORM.workspace_id == workspace_id,
                        SyncLogORM.connector_type == connector_type,
                        SyncLogORM.status == SyncStatus.running.value,
                        SyncLogORM.started_at < now - stale_after,
                    )
                ).scalars().all()
                reaped = tuple(stale_rows)
                if reaped:
                    db.execute(
                        update(SyncLogORM)
                        .where(SyncLogORM.id.in_(reaped))
                        .values(
                            status=SyncStatus.failed.value,
                            completed_at=now,
                            errors=[STALE_SYNC_ERROR],
                        )
                    )

                existing = db.execute(
                    select(SyncLogORM.id)
                    .where(
                        SyncLogORM.workspace_id == workspace_id,
                        SyncLogORM.connector_type == connector_type,
                        SyncLogORM.status.in_(ACTIVE_SYNC_STATUSES),
                    )
                    .order_by(SyncLogORM.started_at.asc())
                    .limit(1)
                ).scalars().first()
                if existing is not None:
                    raise ConflictError(workspace_id, connector_type, existing)

                mode = requested_mode
                if mode is None:
                    watermark = db.execute(
                        select(ConnectionORM.last_sync_at).where(
                            ConnectionORM.workspace_id == workspace_id,
                            ConnectionORM.connector_name == connector_type,
                        )
                    ).scalars().first()
                    mode = SyncMode.incremental if watermark is not None else SyncMode.full

                db.add(
                    SyncLogORM(
                        id=sync_id,
                        workspace_id=workspace_id,
                        connector_type=connector_type,
                        sync_type=sync_type.value,
                        status=SyncStatus.pending.value,
                        mode=mode.value,
                        started_at=now,
                        errors=[],
                    )
                )
                db.flush()
        except IntegrityError as exc:
            # 并发提交在唯一索引上失败，说明另一请求已先占锁。
            active = self.find_active(workspace_id, connector_type)
            raise ConflictError(workspace_id, connector_type, active.id if active else None) from exc
        return SyncReservation(sync_id=sync_id, mode=mode, reaped_sync_ids=reaped)

    def attach_job(self, sync_id: str, job_id: str) -> None:
        with self._session_factory.begin() as db:
            row = db.get(SyncLogORM, sync_id)
            if row is None:
                raise KeyError(f"sync not found: {sync_id}")
            row.job_id = job_id

    def mark_running(self, sync_id: str, *, now: datetime | None = None) -> None:
        """进入 running，并以开始执行时间作为超时回收基准。"""
        with self._session_factory.begin() as db:
            row = db.get(SyncLogORM, sync_id)
            if row is None:
                raise KeyError(f"sync not found: {sync_id}")
            row.status = SyncStatus.running.value
            row.started_at = now or utcnow()

    def mark_completed(self, sync_id: str, *, records_synced: int, now: datetime | None = None) -> None:
        with self._session_factory.begin() as db:
            row = db.get(SyncLogORM, sync_id)
            if row is None:
                raise KeyError(f"sync not found: {sync_id}")
            row.status = SyncStatus.completed.value
            row.records_synced = records_synced
            row.completed_at = now or utcnow()

    def mark_failed(self, sync_id: str, error: str, *, now: datetime | None = None) -> None:
        """标记失败并追加错误信息。"""
        with self._session_factory.begin() as db:
            row = db.get(SyncLogORM, sync_id)
            if row is None:
                raise KeyError(f"sync not found: {sync_id}")
            row.status = SyncStatus.failed.value
            row.errors = [*(row.errors or []), error]
            row.completed_at = now or utcnow()

    def get(self, sync_id: str) -> SyncLogORM | None:
        with self._session_factory() as db:
            return db.get(SyncLogORM, sync_id)

    def find_active(self, workspace_id: str, connector_type: str) -> SyncLogORM | None:
        with self._session_factory() as db:
            stmt = (
                select(SyncLogORM)
                .where(
                    SyncLogORM.workspace_id == workspace_id,
                    SyncLogORM.connector_type == connector_type,
                    SyncLogORM.status.in_(ACTIVE_SYNC_STATUSES),
                )
                .order_by(SyncLogORM.started_at.asc())
            )
            return db.execute(stmt).scalars().first()

    def list_history(self, workspace_id: str, connector_type: str | None = None, limit: int = 20) -> list[SyncLogORM]:
        """按开始时间倒序查询同步历史。"""
        with self._session_factory() as db:
            stmt = select(SyncLogORM).where(SyncLogORM.workspace_id == workspace_id)
            if connector_type:
                stmt = stmt.where(SyncLogORM.connector_type == connector_type)
            stmt = stmt.order_by(SyncLogORM.started_at.desc()).limit(limit)
            return list(db.execute(stmt).scalars().all())

    def count_active(self, workspace_id: str, connector_type: str) -> int:
        with self._session_factory() as db:
            stmt = select(func.count()).select_from(SyncLogORM).where(
                SyncLogORM.workspace_id == workspace_id,
                SyncLogORM.connector_type == connector_type,
                SyncLogORM.status.in_(ACTIVE_SYNC_STATUSES),
            )
            return int(db.execute(stmt).scalar_one())


class ConnectionRepository:
    """连接器仓储：连接状态与增量同步水位。"""
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get(self, workspace_id: str, connector_name: str) -> ConnectionORM | None:
        with self._session_factory() as db:
            stmt = select(ConnectionORM).where(
                ConnectionORM.workspace_id == workspace_id,
                ConnectionORM.connector_name == connector_name,
            )
            return db.execute(stmt).scalars().first()

    def upsert(
        self,
        workspace_id: str,
        connector_name: str,
        *,
        status: str = "connected",
        last_sync_at: datetime | None = None,
    ) -> ConnectionORM:
        """按 workspace+connector 幂等写入连接记录。"""
        with self._session_factory.begin() as db:
            row = db.execute(
                select(ConnectionORM).where(
                    ConnectionORM.workspace_id == workspace_id,
                    ConnectionORM.connector_name == connector_name,
                )
            ).scalars().first()
            if row is None:
                row = ConnectionORM(workspace_id=workspace_id, connector_name=connector_name)
            row.status = status
            if last_sync_at is not None:
                row.last_sync_at = last_sync_at
            db.add(row)
            db.flush()
            return row

    def advance_watermark(self, workspace_id: str, connector_name: str, synced_at: datetime) -> None:
        """同步成功后推进水位，水位只前进不回退。"""
        with self._session_factory.begin() as db:
            row = db.execute(
                select(ConnectionORM).where(
                    ConnectionORM.workspace_id == workspace_id,
                    ConnectionORM.connector_name == connector_name,
                )
            ).scalars().first()
            if row is None:
                db.add(
                    ConnectionORM(
                        workspace_id=workspace_id,
                        connector_name=connector_name,
                        status="connected",
                        last_sync_at=synced_at,
                    )
                )
                return
            current = as_utc(row.last_sync_at)
            if current is None or current < as_utc(synced_at):
                row.last_sync_at = synced_at

    def list_for_workspace(self, workspace_id: str) -> list[ConnectionORM]:
        with self._session_factory() as db:
            stmt = (
                select(ConnectionORM)
                .where(ConnectionORM.workspace_id == workspace_id)
                .order_by(ConnectionORM.connector_name.asc())
            )
            return list(db.execute(stmt).scalars().all())

    def list_active_connections(self) -> list[ConnectionORM]:
        with self._session_factory() as db:
            stmt = (
                select(ConnectionORM)
                .where(ConnectionORM.status.in_(CONNECTED_STATUSES))
                .order_by(ConnectionORM.workspace_id.asc(), ConnectionORM.connector_name.asc())
            )
            return list(db.execute(stmt).scalars().all())

    def list_active_workspaces(self) -> list[str]:
        """返回至少有一个已连接数据源的工作区。"""
        with self._session_factory() as db:
            stmt = (
                select(ConnectionORM.workspace_id)
                .where(ConnectionORM.status.in_(CONNECTED_STATUSES))
                .distinct()
                .order_by(ConnectionORM.workspace_id.asc())
            )
            return list(db.execute(stmt).scalars().all())


class SkillRunRepository:
    """技能运行记录仓储。"""
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def save(self, result: SkillRunResult, *, trigger_type: str) -> None:
        """写入一次运行结果；同一 run_id 重复写入时覆盖。"""
        errors = "; ".join(f"{item['step_id']}: {item['error']}" for item in result.errors) or None
        with self._session_factory.begin() as db:
            row = db.get(SkillRunORM, result.run_id) or SkillRunORM(run_id=result.run_id)
            row.skill_id = result.skill_id
            row.workspace_id = result.workspace_id
            row.status = result.status.value
            row.trigger_type = trigger_type
            row.steps = [item.to_dict() for item in result.steps]
            row.output = _jsonable(result.named_outputs)
            row.evidence = result.evidence.to_dict() if result.evidence is not None else None
            row.error = errors
            row.duration_ms = result.duration_ms
            row.started_at = result.started_at
            row.completed_at = result.completed_at
            db.add(row)

    def get(self, run_id: str) -> SkillRunORM | None:
        with self._session_factory() as db:
            return db.get(SkillRunORM, run_id)

    def list_runs(self, workspace_id: str, skill_id: str | None = None, limit: int = 50) -> list[SkillRunORM]:
        with self._session_factory() as db:
            stmt = select(SkillRunORM).where(SkillRunORM.workspace_id == workspace_id)
            if skill_id:
                stmt = stmt.where(SkillRunORM.skill_id == skill_id)
            stmt = stmt.order_by(SkillRunORM.started_at.desc()).limit(limit)
            return list(db.execute(stmt).scalars().all())

    def last_run_at(self, workspace_id: str, skill_id: str) -> datetime | None:
        with self._session_factory() as db:
            stmt = select(func.max(SkillRunORM.started_at)).where(
                SkillRunORM.workspace_id == workspace_id,
                SkillRunORM.skill_id == skill_id,
            )
            return as_utc(db.execute(stmt).scalar_one_or_none())

    def has_run_since(self, workspace_id: str, skill_id: str, since: datetime) -> bool:
        """判断窗口内是否已有运行记录；比较在 SQL 中完成。"""
        with self._session_factory() as db:
            stmt = select(func.count()).select_from(SkillRunORM).where(
                SkillRunORM.workspace_id == workspace_id,
                SkillRunORM.skill_id == skill_id,
                SkillRunORM.started_at >= since,
            )
            return int(db.execute(stmt).scalar_one()) > 0


class CrmRepository:
    """CRM 归一化数据只读仓储，返回脱离会话的字典。"""
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def list_deals(self, workspace_id: str, *, include_closed: bool = False) -> list[dict[str, Any]]:
        with self._session_factory() as db:
            stmt = select(DealORM).where(DealORM.workspace_id == workspace_id)
            if not include_closed:
                stmt = stmt.where(~DealORM.stage.like("closed%"))
            stmt = stmt.order_by(DealORM.amount.desc(), DealORM.id.asc())
            return [_deal_to_dict(row) for row in db.execute(stmt).scalars().all()]

    def add_deals(self, workspace_id: str, deals: list[dict[str, Any]]) -> int:
        """按主键写入或更新商机，返回写入条数。"""
        with self._session_factory.begin() as db:
            for payload in deals:
                row = db.get(DealORM, payload["id"]) or DealORM(id=payload["id"], workspace_id=workspace_id)
                for key in (
                    "source",
                    "name",
                    "amount",
                    "stage",
                    "owner_email",
                    "owner_name",
                    "close_date",
                    "last_activity_at",
                    "contact_count",
                ):
                    if key in payload:
                        setattr(row, key, payload[key])
                db.add(row)
        return len(deals)


def _deal_to_dict(row: DealORM) -> dict[str, Any]:
    return {
        "id": row.id,
        "workspace_id": row.workspace_id,
        "source": row.source,
        "name": row.name,
        "amount": row.amount,
        "stage": row.stage,
        "owner_email": row.owner_email,
        "owner_name": row.owner_name,
        "close_date": row.close_date,
        "last_activity_at": as_utc(row.last_activity_at),
        "contact_count": row.contact_count,
    }


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)
