"""日志上下文：用 contextvars 在协程与线程间传递 request/workspace/run/task 标识。"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

CONTEXT_KEYS = ("request_id", "workspace_id", "run_id", "task_id")

_CONTEXT: dict[str, ContextVar[str | None]] = {key: ContextVar(f"log_{key}", default=None) for key in CONTEXT_KEYS}


def get_log_context() -> dict[str, str | None]:
    return {key: var.get() for key, var in _CONTEXT.items()}


@contextmanager
def bind_log_context(**fields: str | None) -> Iterator[None]:
    """在 with 范围内覆盖给定字段，退出时恢复外层值；未传入的字段保持不变。

    显式传 None 会在范围内清空该字段。未知字段名抛 TypeError。
    """
    unknown = set(fields) - set(CONTEXT_KEYS)
    if unknown:
        raise TypeError(f"unknown log context fields: {sorted(unknown)}")
    tokens = [(_CONTEXT[key], _CONTEXT[key].set(value)) for key, value in fields.items()]
    try:
        yield
    finally:
        while tokens:
            var, token = tokens.pop()
            var.reset(token)
