"""领域异常体系：注册、图校验、步骤执行、同步锁与证据构建相关错误。"""

from __future__ import annotations


class OrchestratorError(Exception):
    """编排核心异常基类。"""


class DuplicateIdError(OrchestratorError):
    """严格模式下重复注册同一 ID。"""

    def __init__(self, definition_id: str) -> None:
        super().__init__(f"duplicate definition id: {definition_id}")
        self.definition_id = definition_id


class InvalidGraphError(OrchestratorError):
    """步骤依赖图非法（环、悬空引用、前向引用等），在执行任何步骤前抛出。"""

    def __init__(self, skill_id: str, step_id: str, reason: str) -> None:
        super().__init__(f"invalid step graph in skill {skill_id}: step {step_id}: {reason}")
        self.skill_id = skill_id
        self.step_id = step_id
        self.reason = reason


class UnknownFunctionError(OrchestratorError):
    """步骤引用了未注册的计算函数。"""

    def __init__(self, function_name: str, step_id: str | None = None) -> None:
        suffix = f" (step {step_id})" if step_id else ""
        super().__init__(f"unknown compute function: {function_name}{suffix}")
        self.function_name = function_name
        self.step_id = step_id


class StepExecutionError(OrchestratorError):
    """包装步骤底层函数抛出的任意异常。"""

    def __init__(self, step_id: str, message: str) -> None:
        super().__init__(f"step {step_id} failed: {message}")
        self.step_id = step_id
        self.message = message


class ConflictError(OrchestratorError):
    """同一 workspace+connector 已存在活跃同步。"""

    def __init__(self, workspace_id: str, connector_type: str, existing_sync_id: str | None) -> None:
        super().__init__(
            f"{connector_type} sync already in progress for workspace {workspace_id}"
        )
        self.workspace_id = workspace_id
        self.connector_type = connector_type
        self.existing_sync_id = existing_sync_id


class StaleLockReapedError(OrchestratorError):
    """提示性异常：历史同步因超时被回收为 failed，不向新请求抛出。"""

    def __init__(self, sync_id: str, workspace_id: str, connector_type: str) -> None:
        super().__init__(f"stale {connector_type} sync {sync_id} reaped for workspace {workspace_id}")
        self.sync_id = sync_id
        self.workspace_id = workspace_id
        self.connector_type = connector_type


class EvidenceFrozenError(OrchestratorError):
    """证据包 build() 之后再追加内容。"""
