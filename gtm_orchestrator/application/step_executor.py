"""步骤执行器：按层级分派 compute/model 步骤，统一超时与异常包装。"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Mapping

from gtm_orchestrator.application.functions import FunctionTable
from gtm_orchestrator.domain.enums import Tier
from gtm_orchestrator.domain.errors import StepExecutionError, UnknownFunctionError
from gtm_orchestrator.domain.models import RunContext, SkillDefinition, StepDefinition
from gtm_orchestrator.infra.model.client import ModelInvoker, ModelRequest

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][\w.]*)\s*\}\}")
_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def _lookup(path: str, scopes: tuple[Mapping[str, Any], ...]) -> tuple[bool, Any]:
    head, *rest = path.split(".")
    for scope in scopes:
        if head not in scope:
            continue
        value = scope[head]
        for part in rest:
            if isinstance(value, Mapping) and part in value:
                value = value[part]
            else:
                return False, None
        return True, value
    return False, None


def render_prompt(template: str, *scopes: Mapping[str, Any]) -> str:
    """替换 {{var}} / {{var.path}} 占位符；按 scopes 顺序查找，找不到时保留原文。"""

    def _replace(match: re.Match[str]) -> str:
        found, value = _lookup(match.group(1), scopes)
        if not found:
            return match.group(0)
        if isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False, default=str)

    return _PLACEHOLDER.sub(_replace, template)


def parse_structured_reply(text: str) -> Any:
    """解析模型 JSON 回复，兼容 ```json 代码块包裹。"""
    stripped = text.strip()
    fenced = _FENCE.match(stripped)
    if fenced:
        stripped = fenced.group(1)
    return json.loads(stripped)


class StepExecutor:
    def __init__(
        self,
        *,
        functions: FunctionTable,
        model_invoker: ModelInvoker | None = None,
        default_timeout_seconds: float = 120.0,
    ) -> None:
        self._functions = functions
        self._model_invoker = model_invoker
        self._default_timeout_seconds = default_timeout_seconds

    def check_resolvable(self, skill: SkillDefinition) -> None:
        """确认技能引用的计算函数全部已注册，否则抛出 UnknownFunctionError。"""
        for step in skill.steps:
            if step.tier is Tier.compute and step.compute_fn not in self._functions:
                raise UnknownFunctionError(str(step.compute_fn), step.id)

    async def execute(self, step: StepDefinition, args: Mapping[str, Any], ctx: RunContext) -> Any:
        """执行单个步骤；任何底层异常与超时都包装为 StepExecutionError。"""
        timeout = step.timeout_seconds or self._default_timeout_seconds
        try:
            if step.tier is Tier.model:
                return await asyncio.wait_for(self._run_model(step, args, ctx), timeout=timeout)
            return await asyncio.wait_for(self._run_compute(step, args, ctx), timeout=timeout)
        except StepExecutionError:
            raise
        except UnknownFunctionError as exc:
            raise StepExecutionError(step.id, str(exc)) from exc
        except asyncio.TimeoutError as exc:
            raise StepExecutionError(step.id, f"timed out after {timeout:g}s") from exc
        except Exception as exc:
            raise StepExecutionError(step.id, f"{type(exc).__name__}: {exc}") from exc

    async def _run_compute(self, step: StepDefinition, args: Mapping[str, Any], ctx: RunContext) -> Any:
        fn = self._functions.get(str(step.compute_fn))
        if fn is None:
            raise UnknownFunctionError(str(step.compute_fn), step.id)
        if self._functions.is_async(str(step.compute_fn)):
            return await fn(args, ctx)
        # 同步函数可能访问数据库，放到线程中避免阻塞事件循环。
        return await asyncio.to_thread(fn, args, ctx)

    async def _run_model(self, step: StepDefinition, args: Mapping[str, Any], ctx: RunContext) -> Any:
        if self._model_invoker is None:
            raise StepExecutionError(step.id, "no model invoker configured")
        invocation = step.model
        if invocation is None:
            raise StepExecutionError(step.id, "model step without invocation")
        prompt = render_prompt(invocation.prompt, ctx.named_outputs, ctx.business_context, args)
        request = ModelRequest(
            prompt=prompt,
            schema=invocation.schema,
            capability=invocation.capability,
            max_tokens=invocation.max_tokens,
            temperature=invocation.temperature,
            metadata={"workspace_id": ctx.workspace_id, "skill_id": ctx.skill_id, "step_id": step.id},
        )
        reply = await self._model_invoker.invoke(request)
        if invocation.schema is None:
            return reply
        try:
            return parse_structured_reply(reply)
        except json.JSONDecodeError as exc:
            logger.warning(
                "model reply is not valid json",
                extra={
                    "event": "skill.step.model_reply_invalid",
                    "op": step.id,
                    "payload_preview": reply,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise StepExecutionError(step.id, f"model reply is not valid JSON: {exc}") from exc
