"""计算函数表与内置计算函数。

计算函数签名统一为 ``fn(args, ctx) -> result``，可为同步或协程函数；
args 由运行时合并上下文与依赖输出后传入。
"""

from __future__ import annotations

import inspect
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterator, Mapping, Union

from gtm_orchestrator.domain.models import RunContext
from gtm_orchestrator.infra.db.repository import ConnectionRepository, CrmRepository, as_utc

ComputeFunction = Callable[[Mapping[str, Any], RunContext], Union[Any, Awaitable[Any]]]


class FunctionTable:
    """计算函数注册表：名称到可调用对象的映射。"""

    def __init__(self) -> None:
        self._functions: dict[str, ComputeFunction] = {}

    def register(self, name: str, fn: ComputeFunction) -> None:
        if name in self._functions:
            raise ValueError(f"compute function already registered: {name}")
        self._functions[name] = fn

    def get(self, name: str) -> ComputeFunction | None:
        return self._functions.get(name)

    def is_async(self, name: str) -> bool:
        fn = self._functions.get(name)
        return fn is not None and inspect.iscoroutinefunction(fn)

    def names(self) -> list[str]:
        return sorted(self._functions)

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    def __iter__(self) -> Iterator[str]:
        return iter(self._functions)


def _now(ctx: RunContext) -> datetime:
    return ctx.time_windows.analysis_end


def _as_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        return date.fromisoformat(value[:10])
    return None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _days_since(value: datetime | None, now: datetime) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return max(0, (now - value).days)


def _deal_view(deal: Mapping[str, Any], now: datetime) -> dict[str, Any]:
    """把仓储返回的商机转换为可序列化的输出视图。"""
    close_date = _as_date(deal.get("close_date"))
    last_activity = deal.get("last_activity_at")
    return {
        "id": deal["id"],
        "name": deal.get("name") or "",
        "amount": float(deal.get("amount") or 0),
        "stage": deal.get("stage") or "",
        "owner_email": deal.get("owner_email"),
        "owner_name": deal.get("owner_name"),
        "close_date": close_date.isoformat() if close_date else None,
        "last_activity_at": last_activity.isoformat() if isinstance(last_activity, datetime) else None,
        "days_since_activity": _days_since(last_activity, now),
        "contact_count": int(deal.get("contact_count") or 0),
        "source": deal.get("source"),
    }


def register_builtin_functions(
    table: FunctionTable,
    *,
    crm: CrmRepository,
    connections: ConnectionRepository,
) -> FunctionTable:
    """注册内置技能依赖的计算函数。"""

    def resolve_time_windows(args: Mapping[str, Any], ctx: RunContext) -> dict[str, Any]:
        return ctx.time_windows.to_dict()

    def gather_pipeline_summary(args: Mapping[str, Any], ctx: RunContext) -> dict[str, Any]:
        now = _now(ctx)
        deals = [_deal_view(item, now) for item in crm.list_deals(ctx.workspace_id)]
        by_stage: dict[str, dict[str, float]] = {}
        by_owner: dict[str, dict[str, float]] = {}
        for deal in deals:
            stage = by_stage.setdefault(deal["stage"] or "unknown", {"count": 0, "value": 0.0})
            stage["count"] += 1
            stage["value"] += deal["amount"]
            owner = by_owner.setdefault(deal["owner_email"] or "unassigned", {"count": 0, "value": 0.0})
            owner["count"] += 1
            owner["value"] += deal["amount"]
        connected = [
            {
                "connector_name": item.connector_name,
                "status": item.status,
                "last_sync_at": _iso(as_utc(item.last_sync_at)),
            }
            for item in connections.list_for_workspace(ctx.workspace_id)
        ]
        return {
            "deal_count": len(deals),
            "total_value": round(sum(item["amount"] for item in deals), 2),
            "by_stage": by_stage,
            "by_owner": by_owner,
            "connections": connected,
        }

    def aggregate_stale_deals(args: Mapping[str, Any], ctx: RunContext) -> dict[str, Any]:
        stale_days = int(args.get("stale_days", 14))
        now = _now(ctx)
        stale = []
        for item in crm.list_deals(ctx.workspace_id):
            view = _deal_view(item, now)
            days = view["days_since_activity"]
            if days is None or days >= stale_days:
                stale.append(view)
        return {
            "stale_days": stale_days,
            "count": len(stale),
            "total_value": round(sum(item["amount"] for item in stale), 2),
            "deals": stale,
        }

    def aggregate_closing_soon(args: Mapping[str, Any], ctx: RunContext) -> dict[str, Any]:
        within_days = int(args.get("within_days", 30))
        today = _now(ctx).date()
        horizon = today + timedelta(days=within_days)
        closing: list[dict[str, Any]] = []
        past_due: list[dict[str, Any]] = []
        for item in crm.list_deals(ctx.workspace_id):
            view = _deal_view(item, _now(ctx))
            close_date = _as_date(view["close_date"])
            if close_date is None:
                continue
            if close_date < today:
                past_due.append(view)
            elif close_date <= horizon:
                closing.append(view)
        return {
            "within_days": within_days,
            "closing": closing,
            "past_due": past_due,
            "closing_value": round(sum(item["amount"] for item in closing), 2),
        }

    def find_single_threaded_deals(args: Mapping[str, Any], ctx: RunContext) -> dict[str, Any]:
        min_amount = float(args.get("min_amount", 0))
        now = _now(ctx)
        deals = [_deal_view(item, now) for item in crm.list_deals(ctx.workspace_id)]
        flagged = [item for item in deals if item["contact_count"] <= 1 and item["amount"] >= min_amount]
        return {
            "min_amount": min_amount,
            "open_deals": len(deals),
            "count": len(flagged),
            "total_value": round(sum(item["amount"] for item in flagged), 2),
            "deals": flagged,
        }

    def compute_owner_performance(args: Mapping[str, Any], ctx: RunContext) -> dict[str, Any]:
        stale_days = int(args.get("stale_days", 14))
        now = _now(ctx)
        reps: dict[str, dict[str, Any]] = {}
        for item in crm.list_deals(ctx.workspace_id):
            view = _deal_view(item, now)
            email = view["owner_email"] or "unassigned"
            rep = reps.setdefault(
                email,
                {
                    "email": email,
                    "name": view["owner_name"] or email,
                    "open_deals": 0,
                    "pipeline_value": 0.0,
                    "stale_deals": 0,
                },
            )
            rep["open_deals"] += 1
            rep["pipeline_value"] += view["amount"]
            days = view["days_since_activity"]
            if days is None or days >= stale_days:
                rep["stale_deals"] += 1
        for rep in reps.values():
            rep["pipeline_value"] = round(rep["pipeline_value"], 2)
            rep["stale_ratio"] = round(rep["stale_deals"] / rep["open_deals"], 3) if rep["open_deals"] else 0.0
        ordered = sorted(reps.values(), key=lambda item: (-item["pipeline_value"], item["email"]))
        return {"stale_days": stale_days, "reps": ordered}

    for name, fn in (
        ("resolve_time_windows", resolve_time_windows),
        ("gather_pipeline_summary", gather_pipeline_summary),
        ("aggregate_stale_deals", aggregate_stale_deals),
        ("aggregate_closing_soon", aggregate_closing_soon),
        ("find_single_threaded_deals", find_single_threaded_deals),
        ("compute_owner_performance", compute_owner_performance),
    ):
        table.register(name, fn)
    return table
