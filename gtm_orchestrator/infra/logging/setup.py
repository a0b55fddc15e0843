"""日志初始化。

所有进程（api / worker / beat）共用一套管线：
- 业务线程只把 LogRecord 放入内存队列，由 QueueListener 在后台线程落盘；
- 入队前注入 contextvars 中的 workspace/run/task 标识，并按级别与 DEBUG 白名单过滤；
- 落盘格式为单行 JSON，CRM OAuth 令牌、模型密钥等凭据在格式化阶段脱敏。
"""

from __future__ import annotations

import json
import logging
import logging.config
import re
import sys
from datetime import datetime, timezone
from logging.handlers import QueueListener, RotatingFileHandler
from pathlib import Path
from queue import SimpleQueue
from typing import Any

from gtm_orchestrator.config import Settings
from gtm_orchestrator.infra.logging.context import CONTEXT_KEYS, get_log_context

SERVICE_NAME = "gtm-orchestrator"

_listener: QueueListener | None = None

# Bearer 头只遮值，保留 scheme 便于排查认证方式。
_BEARER = re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/=-]+")
_CREDENTIAL_PAIR = re.compile(
    r"(?i)\b(api[-_]?key|access[-_]token|refresh[-_]token|client[-_]secret|password|secret)(\s*[:=]\s*\"?)([^\s,;\"]+)"
)
# HubSpot private app token: pat-<region>-<uuid>
_HUBSPOT_PAT = re.compile(r"\bpat-[a-z0-9]{2,4}-[0-9a-f-]{16,}\b", re.IGNORECASE)
# strict 模式额外遮盖联系人邮箱。
_EMAIL = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")

# 格式化器单独输出的顶层字段，其余 extra 才进入 fields。
_PROMOTED_ATTRS = (
    "event",
    "external_service",
    "op",
    "duration_ms",
    "status_code",
    "error_type",
    "error",
    "payload_preview",
)
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "taskName",
}
_NOT_EXTRA = _RECORD_ATTRS | set(_PROMOTED_ATTRS) | set(CONTEXT_KEYS)

_QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "celery": logging.INFO,
}


def redact_text(value: str | None, mode: str) -> str | None:
    """按脱敏模式处理文本。

    mode:
    - off: 原样返回；
    - standard/default: 遮盖 Bearer 令牌、键值形式的凭据与 HubSpot 私有应用令牌；
    - strict: 在 standard 基础上再遮盖邮箱地址。
    """
    if value is None:
        return None
    text = str(value)
    normalized = mode.lower()
    if normalized == "off":
        return text
    text = _BEARER.sub(r"\1***", text)
    text = _CREDENTIAL_PAIR.sub(r"\1\2***", text)
    text = _HUBSPOT_PAT.sub("pat-***", text)
    if normalized == "strict":
        text = _EMAIL.sub("***@***", text)
    return text


def render_payload_preview(payload: Any, *, max_chars: int, redaction_mode: str) -> str | None:
    """序列化 payload 为脱敏后的预览文本，超过 max_chars 截断。"""
    if payload is None:
        return None
    serialized = payload if isinstance(payload, str) else json.dumps(
        payload, ensure_ascii=False, sort_keys=True, default=str
    )
    preview = redact_text(serialized, redaction_mode) or ""
    if len(preview) > max_chars:
        preview = f"{preview[:max_chars]}...(truncated)"
    return preview


def _as_number(value: Any) -> int | float | None:
    if value is None or isinstance(value, (int, float)):
        return value
    try:
        number = float(str(value))
    except ValueError:
        return None
    return int(number) if number.is_integer() and "." not in str(value) else number


class ContextInjectionFilter(logging.Filter):
    """入队前把 contextvars 固化到 record 上，后台线程格式化时才不会丢失。"""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in get_log_context().items():
            if value is not None and getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class DebugRoutingFilter(logging.Filter):
    """低于 min_level 的记录默认丢弃；DEBUG 记录可按模块前缀或 workspace 放行。"""

    def __init__(self, *, min_level: int, debug_modules: set[str], debug_workspace_ids: set[str]) -> None:
        super().__init__()
        self.min_level = min_level
        self.debug_modules = frozenset(debug_modules)
        self.debug_workspace_ids = frozenset(debug_workspace_ids)

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= self.min_level:
            return True
        if record.levelno > logging.DEBUG:
            return False
        name = record.name
        if any(name == prefix or name.startswith(prefix + ".") for prefix in self.debug_modules):
            return True
        workspace_id = getattr(record, "workspace_id", None) or get_log_context()["workspace_id"]
        return workspace_id in self.debug_workspace_ids


class StructuredJsonFormatter(logging.Formatter):
    """单行 JSON 格式化器，字段顺序固定，未知 extra 统一放入 fields。"""

    def __init__(
        self,
        *,
        service: str,
        process_role: str,
        redaction_mode: str,
        payload_preview_chars: int,
    ) -> None:
        super().__init__()
        self.service = service
        self.process_role = process_role
        self.redaction_mode = redaction_mode
        self.payload_preview_chars = payload_preview_chars

    def _redact(self, value: Any) -> str | None:
        return None if value is None else redact_text(str(value), self.redaction_mode)

    def _context(self, record: logging.LogRecord) -> dict[str, Any]:
        ambient = get_log_context()
        return {key: getattr(record, key, None) or ambient[key] for key in CONTEXT_KEYS}

    def _fields(self, record: logging.LogRecord) -> dict[str, Any] | None:
        extra = {key: value for key, value in vars(record).items() if key not in _NOT_EXTRA}
        # 经一次 JSON 往返，保证 datetime/Enum 等值可序列化。
        return json.loads(json.dumps(extra, ensure_ascii=False, default=str)) if extra else None

    def format(self, record: logging.LogRecord) -> str:
        error = getattr(record, "error", None)
        if error is None and record.exc_info:
            error = self.formatException(record.exc_info)
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc)

        entry: dict[str, Any] = {
            "ts": timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "service": self.service,
            "process_role": self.process_role,
            "module": record.name,
            "event": getattr(record, "event", None),
            **self._context(record),
            "external_service": getattr(record, "external_service", None),
            "op": getattr(record, "op", None),
            "duration_ms": _as_number(getattr(record, "duration_ms", None)),
            "status_code": _as_number(getattr(record, "status_code", None)),
            "message": self._redact(record.getMessage()),
            "error_type": getattr(record, "error_type", None),
            "error": self._redact(error),
            "payload_preview": render_payload_preview(
                getattr(record, "payload_preview", None),
                max_chars=self.payload_preview_chars,
                redaction_mode=self.redaction_mode,
            ),
            "fields": self._fields(record),
        }
        return json.dumps(entry, ensure_ascii=False)


def _parse_level(level_text: str) -> int:
    level = logging.getLevelName(str(level_text).upper())
    return level if isinstance(level, int) else logging.INFO


def _log_file_for(settings: Settings, process_role: str) -> Path:
    log_dir = settings.log_dir if settings.log_dir.is_absolute() else Path.cwd() / settings.log_dir
    log_dir = log_dir.resolve()
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / f"{process_role}.jsonl"


def configure_logging(settings: Settings, *, process_role: str) -> Path:
    """为当前进程安装日志管线并返回 JSONL 文件路径。

    根 logger 只挂一个 QueueHandler；文件与 stderr（仅 ERROR 以上）由后台监听线程写入。
    重复调用会先停掉上一次的监听器。
    """
    global _listener
    shutdown_logging()

    log_file = _log_file_for(settings, process_role)
    records: SimpleQueue[logging.LogRecord] = SimpleQueue()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "context": {"()": ContextInjectionFilter},
                "routing": {
                    "()": DebugRoutingFilter,
                    "min_level": _parse_level(settings.log_level),
                    "debug_modules": set(settings.log_debug_modules_list()),
                    "debug_workspace_ids": set(settings.log_debug_workspace_ids_list()),
                },
            },
            "handlers": {
                "enqueue": {
                    "class": "logging.handlers.QueueHandler",
                    "queue": records,
                    "filters": ["context", "routing"],
                },
            },
            "root": {"level": "DEBUG", "handlers": ["enqueue"]},
        }
    )

    formatter = StructuredJsonFormatter(
        service=SERVICE_NAME,
        process_role=process_role,
        redaction_mode=settings.log_redaction_mode,
        payload_preview_chars=settings.log_payload_preview_chars,
    )
    jsonl = RotatingFileHandler(
        log_file,
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    errors = logging.StreamHandler(sys.stderr)
    errors.setLevel(logging.ERROR)
    for handler in (jsonl, errors):
        handler.setFormatter(formatter)

    _listener = QueueListener(records, jsonl, errors, respect_handler_level=True)
    _listener.start()

    for name, level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)
    return log_file


def shutdown_logging() -> None:
    """刷出队列中剩余的记录并关闭落盘句柄。"""
    global _listener
    listener, _listener = _listener, None
    if listener is None:
        return
    listener.stop()
    for handler in listener.handlers:
        handler.close()
