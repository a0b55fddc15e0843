"""领域枚举定义：统一技能层级、触发器、严重级别与同步状态取值。"""

from __future__ import annotations

from enum import Enum


class Tier(str, Enum):
    """步骤执行层级：纯计算或模型驱动。"""
    compute = "compute"
    model = "model"
    mixed = "mixed"


class SkillCategory(str, Enum):
    """技能分类枚举。"""
    pipeline = "pipeline"
    deals = "deals"
    accounts = "accounts"
    calls = "calls"
    forecasting = "forecasting"
    reporting = "reporting"
    operations = "operations"


class OutputFormat(str, Enum):
    slack = "slack"
    markdown = "markdown"
    json = "json"
    structured = "structured"


class Trigger(str, Enum):
    """技能调度触发器词表。"""
    post_sync = "post_sync"
    on_demand = "on_demand"
    cron = "cron"


class Severity(str, Enum):
    """证据严重级别，按 healthy < warning < critical 排序。"""
    healthy = "healthy"
    warning = "warning"
    critical = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.healthy: 0, Severity.warning: 1, Severity.critical: 2}


class StepStatus(str, Enum):
    """单步执行状态。"""
    completed = "completed"
    failed = "failed"
    skipped = "skipped"


class RunStatus(str, Enum):
    """技能运行生命周期状态。"""
    running = "running"
    completed = "completed"
    failed = "failed"


class SyncStatus(str, Enum):
    """同步日志生命周期状态。"""
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


ACTIVE_SYNC_STATUSES = (SyncStatus.pending.value, SyncStatus.running.value)


class SyncMode(str, Enum):
    full = "full"
    incremental = "incremental"


class SyncType(str, Enum):
    manual = "manual"
    scheduled = "scheduled"


class DuplicatePolicy(str, Enum):
    """注册中心重复 ID 策略。"""
    strict = "strict"
    lenient = "lenient"
