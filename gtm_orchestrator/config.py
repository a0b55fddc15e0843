"""运行配置：数据库、Redis/Celery、模型网关、同步锁与技能运行参数，均可由环境变量覆盖。"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _csv_to_list(value: str) -> list[str]:
    """逗号分隔字符串转列表，丢弃空项。"""
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """字段名即环境变量名（大小写不敏感），.env 文件优先级低于进程环境。"""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "GTM Skill Orchestrator"
    api_prefix: str = "/api/v1"
    environment: str = "dev"

    database_url: str = "sqlite:///./gtm_orchestrator.db"
    redis_url: str = "redis://localhost:6379/0"
    celery_task_always_eager: bool = False

    # 同步锁：running 超过该时长视为僵死，在下一次提交时惰性回收。
    sync_stale_lock_minutes: int = 60
    manual_sync_priority: int = 1
    scheduled_sync_priority: int = 0
    # 每日定时同步（UTC），为所有已连接数据源提交 scheduled 同步。
    scheduled_sync_cron: str = "0 2 * * *"
    # 连接器同步实现：逗号分隔的 "<connector>=<module>:<factory>"，factory 为零参可调用对象。
    connector_syncers: str = ""

    # 技能运行：默认每次运行串行执行步骤，调大后允许独立分支并发。
    skill_max_concurrency: int = 1
    step_timeout_seconds: float = 120.0
    recent_run_window_hours: int = 6
    post_sync_max_workers: int = 4
    # strict: 重复注册直接报错；lenient: 告警后覆盖。
    skill_registry_policy: str = "strict"
    agent_registry_policy: str = "lenient"

    model_base_url: str = "https://api.openai.com/v1"
    model_api_key: str | None = None
    model_name: str = "gpt-4o-mini"
    model_request_timeout_seconds: int = 60
    model_max_tokens: int = 4096

    log_dir: Path = Field(default=Path("./logs"))
    log_level: str = "INFO"
    log_debug_modules: str = ""
    log_debug_workspace_ids: str = ""
    log_redaction_mode: str = "standard"
    log_payload_preview_chars: int = 2000
    log_max_bytes: int = 20 * 1024 * 1024
    log_backup_count: int = 5

    def connector_syncers_map(self) -> dict[str, str]:
        """解析 connector_syncers 为 {连接器类型: "module:factory"}，忽略空项。"""
        pairs = (item.partition("=") for item in _csv_to_list(self.connector_syncers))
        return {name.strip(): target.strip() for name, _, target in pairs if name.strip() and target.strip()}

    def log_debug_modules_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_modules)

    def log_debug_workspace_ids_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_workspace_ids)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """构建并缓存 Settings。"""
    return Settings()
