"""数据库引擎与会话工厂；init_db 负责建表（含同步锁的部分唯一索引）。"""

from __future__ import annotations

import logging
import time

from sqlalchemy import Engine, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from gtm_orchestrator.config import get_settings
from gtm_orchestrator.infra.db.models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    # sqlite 连接会被 worker 线程池与 asyncio.to_thread 跨线程复用。
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, pool_pre_ping=True, connect_args=connect_args, future=True)


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, class_=Session)


def init_db(bind: Engine | None = None) -> None:
    """按 ORM 元数据建表；已存在的表和索引会被跳过。"""
    target = bind or engine
    started = time.perf_counter()
    tables = sorted(Base.metadata.tables)
    try:
        Base.metadata.create_all(bind=target)
    except SQLAlchemyError as exc:
        logger.exception(
            "schema bootstrap failed",
            extra={
                "event": "db.schema.failed",
                "external_service": target.dialect.name,
                "op": "create_all",
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )
        raise
    logger.info(
        "schema ready",
        extra={
            "event": "db.schema.ready",
            "external_service": target.dialect.name,
            "op": "create_all",
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            "payload_preview": {"tables": tables},
        },
    )
