"""技能运行时：校验步骤图，按依赖就绪顺序调度步骤并汇总证据。"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from gtm_orchestrator.application.step_executor import StepExecutor
from gtm_orchestrator.domain.enums import RunStatus, StepStatus
from gtm_orchestrator.domain.errors import OrchestratorError, StepExecutionError
from gtm_orchestrator.domain.evidence import EvidenceBundle
from gtm_orchestrator.domain.models import RunContext, RunSeed, SkillDefinition, SkillRunResult, StepDefinition, StepResult
from gtm_orchestrator.domain.skills.graph import validate_step_graph
from gtm_orchestrator.domain.time_windows import resolve_time_windows
from gtm_orchestrator.infra.db.repository import SkillRunRepository
from gtm_orchestrator.infra.logging.context import bind_log_context

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SkillRuntime:
    """技能运行时。

    调度规则：
    - 就绪集合为依赖全部 completed 的步骤，按声明顺序启动，同时最多 max_concurrency 个；
    - 步骤失败后，其直接或间接依赖者标记为 skipped，互不依赖的步骤继续执行；
    - 任一步骤 failed/skipped 时运行状态为 failed，否则为 completed。
    """

    def __init__(
        self,
        *,
        executor: StepExecutor,
        run_store: SkillRunRepository | None = None,
        max_concurrency: int = 1,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._executor = executor
        self._run_store = run_store
        self._max_concurrency = max_concurrency
        self._clock = clock

    def validate(self, skill: SkillDefinition) -> None:
        """执行前校验步骤图；图非法时抛出 InvalidGraphError，此时不会执行任何步骤。"""
        validate_step_graph(skill)

    def preflight(self, skill: SkillDefinition) -> None:
        """入队前的完整检查：步骤图合法且计算函数全部可解析。

        execute 本身不做函数检查，未注册的函数只让对应步骤失败。
        """
        self.validate(skill)
        self._executor.check_resolvable(skill)

    async def execute(self, skill: SkillDefinition, seed: RunSeed) -> SkillRunResult:
        try:
            self.validate(skill)
        except OrchestratorError as exc:
            logger.error(
                "skill validation failed",
                extra={
                    "event": "skill.run.invalid",
                    "workspace_id": seed.workspace_id,
                    "skill_id": skill.id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise

        run_id = str(uuid.uuid4())
        with bind_log_context(workspace_id=seed.workspace_id, run_id=run_id):
            return await self._run(skill, seed, run_id)

    async def _run(self, skill: SkillDefinition, seed: RunSeed, run_id: str) -> SkillRunResult:
        started_at = self._clock()
        started = time.perf_counter()
        last_run_at = await self._last_run_at(skill, seed)
        ctx = RunContext(
            run_id=run_id,
            workspace_id=seed.workspace_id,
            skill_id=skill.id,
            time_windows=resolve_time_windows(
                skill.time_config,
                seed.time_config,
                now=started_at,
                last_run_at=last_run_at,
            ),
            business_context=seed.business_context,
            trigger_payload=seed.trigger_payload,
            skill_outputs=seed.skill_outputs,
        )
        logger.info(
            "skill run started",
            extra={
                "event": "skill.run.started",
                "skill_id": skill.id,
                "payload_preview": {"trigger_type": seed.trigger_type, "steps": len(skill.steps)},
            },
        )

        results: dict[str, StepResult] = {}
        pending = [step for step in skill.steps]
        running: dict[asyncio.Task[Any], tuple[StepDefinition, float]] = {}
        try:
            while pending or running:
                self._skip_blocked(pending, results)
                for step in list(pending):
                    if len(running) >= self._max_concurrency:
                        break
                    if all(_is_completed(results, dep) for dep in step.depends_on):
                        pending.remove(step)
                        args = self._build_args(step, skill, ctx)
                        logger.debug(
                            "skill step started",
                            extra={"event": "skill.step.started", "op": step.id, "skill_id": skill.id},
                        )
                        task = asyncio.create_task(self._executor.execute(step, args, ctx))
                        running[task] = (step, time.perf_counter())
                if not running:
                    break
                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                order = {step.id: index for index, step in enumerate(skill.steps)}
                for task in sorted(done, key=lambda item: order[running[item][0].id]):
                    step, step_started = running.pop(task)
                    results[step.id] = self._collect(task, step, step_started, ctx)
        finally:
            for task in running:
                task.cancel()

        evidence = self._build_evidence(skill, ctx)
        ordered = [results[step.id] for step in skill.steps if step.id in results]
        errors = [{"step_id": item.step_id, "error": item.error or ""} for item in ordered if item.status is not StepStatus.completed]
        status = RunStatus.failed if errors else RunStatus.completed
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        result = SkillRunResult(
            run_id=run_id,
            skill_id=skill.id,
            workspace_id=seed.workspace_id,
            status=status,
            output_format=skill.output_format,
            steps=ordered,
            step_outputs=dict(ctx.step_outputs),
            named_outputs=dict(ctx.named_outputs),
            evidence=evidence,
            duration_ms=duration_ms,
            started_at=started_at,
            completed_at=self._clock(),
            errors=errors,
        )
        log = logger.info if status is RunStatus.completed else logger.warning
        log(
            "skill run finished",
            extra={
                "event": f"skill.run.{status.value}",
                "skill_id": skill.id,
                "duration_ms": duration_ms,
                "payload_preview": {"errors": errors} if errors else None,
            },
        )
        await self._persist(result, seed)
        return result

    def _skip_blocked(self, pending: list[StepDefinition], results: dict[str, StepResult]) -> None:
        # 依赖均在前面声明，一次顺序遍历即可完成级联。
        for step in list(pending):
            blocker = next(
                (
                    dep
                    for dep in sorted(step.depends_on)
                    if dep in results and results[dep].status is not StepStatus.completed
                ),
                None,
            )
            if blocker is None:
                continue
            pending.remove(step)
            results[step.id] = StepResult(
                step_id=step.id,
                status=StepStatus.skipped,
                tier=step.tier,
                output_key=step.output_key,
                error=f"dependency {blocker} did not complete",
            )
            logger.info(
                "skill step skipped",
                extra={"event": "skill.step.skipped", "op": step.id, "payload_preview": {"blocked_by": blocker}},
            )

    def _build_args(self, step: StepDefinition, skill: SkillDefinition, ctx: RunContext) -> dict[str, Any]:
        args: dict[str, Any] = {
            "workspace_id": ctx.workspace_id,
            "time_windows": ctx.time_windows.to_dict(),
            "trigger": dict(ctx.trigger_payload),
        }
        for dep in step.depends_on:
            dep_step = skill.step(dep)
            if dep_step is not None:
                args[dep_step.output_key] = ctx.output(dep_step.output_key)
        # 静态参数优先于上下文值。
        args.update(step.compute_args)
        return args

    def _collect(
        self,
        task: asyncio.Task[Any],
        step: StepDefinition,
        step_started: float,
        ctx: RunContext,
    ) -> StepResult:
        duration_ms = round((time.perf_counter() - step_started) * 1000, 2)
        try:
            output = task.result()
        except StepExecutionError as exc:
            logger.warning(
                "skill step failed",
                extra={
                    "event": "skill.step.failed",
                    "op": step.id,
                    "duration_ms": duration_ms,
                    "error_type": type(exc.__cause__ or exc).__name__,
                    "error": exc.message,
                },
            )
            return StepResult(
                step_id=step.id,
                status=StepStatus.failed,
                tier=step.tier,
                output_key=step.output_key,
                duration_ms=duration_ms,
                error=exc.message,
            )
        ctx.record_output(step, output)
        logger.info(
            "skill step succeeded",
            extra={"event": "skill.step.succeeded", "op": step.id, "duration_ms": duration_ms},
        )
        return StepResult(
            step_id=step.id,
            status=StepStatus.completed,
            tier=step.tier,
            output_key=step.output_key,
            duration_ms=duration_ms,
        )

    def _build_evidence(self, skill: SkillDefinition, ctx: RunContext) -> EvidenceBundle | None:
        if skill.evidence_builder is None:
            return None
        try:
            return skill.evidence_builder(ctx.named_outputs, ctx)
        except Exception as exc:
            # 证据构建失败不影响运行状态，仅缺失证据包。
            logger.exception(
                "evidence build failed",
                extra={
                    "event": "skill.evidence.failed",
                    "skill_id": skill.id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            return None

    async def _last_run_at(self, skill: SkillDefinition, seed: RunSeed) -> datetime | None:
        change_window = (seed.time_config or {}).get("change_window") or skill.time_config.change_window
        if self._run_store is None or change_window != "since_last_run":
            return None
        return await asyncio.to_thread(self._run_store.last_run_at, seed.workspace_id, skill.id)

    async def _persist(self, result: SkillRunResult, seed: RunSeed) -> None:
        if self._run_store is None:
            return
        try:
            await asyncio.to_thread(self._run_store.save, result, trigger_type=seed.trigger_type)
        except Exception as exc:
            logger.exception(
                "skill run persistence failed",
                extra={
                    "event": "skill.run.persist_failed",
                    "external_service": "database",
                    "skill_id": result.skill_id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )


def _is_completed(results: dict[str, StepResult], step_id: str) -> bool:
    item = results.get(step_id)
    return item is not None and item.status is StepStatus.completed
