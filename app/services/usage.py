"""Read-side aggregation over the usage log."""

from collections import Counter, OrderedDict
from datetime import datetime, timedelta
from typing import Any

from app.core.exceptions import BadRequestError
from app.services.catalog import OperationCatalog
from app.store.base import MeteringStore
from app.store.types import UsageRecord, utcnow

TIME_RANGES = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}
TOP_ENDPOINTS = 5


def _is_success(entry: UsageRecord) -> bool:
    return 200 <= entry.status_code < 300


class UsageAnalytics:
    def __init__(self, store: MeteringStore, catalog: OperationCatalog) -> None:
        self._store = store
        self._catalog = catalog

    async def summary(self, account_id: str, time_range: str = "7d", now: datetime | None = None) -> dict[str, Any]:
        if time_range not in TIME_RANGES:
            raise BadRequestError(
                f"Invalid time_range: {time_range}", details={"allowed": list(TIME_RANGES)}
            )
        end = now or utcnow()
        start = end - TIME_RANGES[time_range]
        entries = await self._store.list_usage(account_id, since=start, until=end)
        total = len(entries)

        daily: OrderedDict[str, int] = OrderedDict()
        for e in entries:
            day = e.created_at.date().isoformat()
            daily[day] = daily.get(day, 0) + 1

        codes = Counter(e.status_code for e in entries)
        by_name = Counter(e.operation for e in entries)
        api_usage_by_name = [{"name": name, "calls": calls} for name, calls in by_name.items()]

        return {
            "totalCalls": total,
            "averageResponseTime": (sum(e.latency_ms for e in entries) / total) if total else 0,
            "apiUsageByName": api_usage_by_name,
            "usageOverTime": [{"date": day, "calls": calls} for day, calls in daily.items()],
            "statusCodeDistribution": [
                {"code": code, "count": count, "percentage": count / total}
                for code, count in sorted(codes.items())
            ],
            "topEndpoints": sorted(api_usage_by_name, key=lambda x: x["calls"], reverse=True)[:TOP_ENDPOINTS],
            "successRate": (sum(1 for e in entries if _is_success(e)) / total) if total else 0,
            "totalCreditsUsed": sum(e.credits_charged for e in entries),
        }

    async def operation_stats(self, account_id: str, operation: str) -> dict[str, Any]:
        entries = await self._store.list_usage(account_id, operation=operation)
        total = len(entries)
        spec = self._catalog.get(operation)
        success = sum(1 for e in entries if _is_success(e))
        return {
            "totalCalls": total,
            "lastUsed": entries[-1].created_at if entries else None,
            "status": spec.status if spec else "unknown",
            "successRate": round(success / total * 100) if total else 0,
            "creditsUsed": sum(e.credits_charged for e in entries),
        }
