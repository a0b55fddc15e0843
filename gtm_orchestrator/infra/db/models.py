"""数据库 ORM 模型定义：同步日志、连接水位、技能运行记录与 CRM 商机表结构。"""

from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import JSON, Date, DateTime, Float, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_ACTIVE_SYNC_PREDICATE = text("status IN ('pending', 'running')")


class Base(DeclarativeBase):
    """SQLAlchemy 声明式基类。"""
    pass


class SyncLogORM(Base):
    """同步日志表：记录每次连接器同步，兼作 workspace+connector 维度的互斥锁。"""
    __tablename__ = "sync_log"
    __table_args__ = (
        # 部分唯一索引：同一 workspace+connector 同时最多一条 pending/running 记录。
        Index(
            "uq_sync_log_active",
            "workspace_id",
            "connector_type",
            unique=True,
            sqlite_where=_ACTIVE_SYNC_PREDICATE,
            postgresql_where=_ACTIVE_SYNC_PREDICATE,
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    connector_type: Mapped[str] = mapped_column(String(64), index=True)
    sync_type: Mapped[str] = mapped_column(String(16), default="manual")
    status: Mapped[str] = mapped_column(String(16), index=True)
    mode: Mapped[str] = mapped_column(String(16), default="full")
    job_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    records_synced: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[list | None] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ConnectionORM(Base):
    """工作区连接器表，last_sync_at 为增量同步水位。"""
    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("workspace_id", "connector_name", name="uq_connections_workspace_connector"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    connector_name: Mapped[str] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(32), default="connected")
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class SkillRunORM(Base):
    """技能运行记录表。"""
    __tablename__ = "skill_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    skill_id: Mapped[str] = mapped_column(String(128), index=True)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(16), index=True)
    trigger_type: Mapped[str] = mapped_column(String(32), default="on_demand")
    steps: Mapped[list | None] = mapped_column(JSON, nullable=True)
    output: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    evidence: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text(), nullable=True)
    duration_ms: Mapped[float] = mapped_column(Float, default=0.0)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DealORM(Base):
    """归一化后的 CRM 商机表，由连接器同步写入，供计算函数查询。"""
    __tablename__ = "deals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    source: Mapped[str] = mapped_column(String(32), default="hubspot")
    name: Mapped[str] = mapped_column(String(255), default="")
    amount: Mapped[float] = mapped_column(Float, default=0.0)
    stage: Mapped[str] = mapped_column(String(64), default="")
    owner_email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    owner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    contact_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
