"""Per-user and system-wide rollups computed on demand from the record store.

Nothing is cached: every call reads a fresh snapshot of the store. Daily trend
buckets are zero-filled over a trailing window that ends today (UTC).
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from ..access import Action, Principal, can_see_identity, ensure_allowed
from ..ai.types import TestResult, TestType
from ..datalake.models import TestQuery, TestRecord
from ..datalake.records import TestRecordStore


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def positivity_rate(positive: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(positive * 100.0 / total, 2)


@dataclass
class StatisticsAggregator:
    store: TestRecordStore
    trend_window_days: int = 30
    recent_tests: int = 5
    admin_recent_tests: int = 10
    clock: Callable[[], datetime] = field(default=_utcnow)

    def user_stats(self, principal: Principal, owner_id: str) -> dict[str, Any]:
        ensure_allowed(principal, Action.VIEW_STATS, owner_id)
        records = self.store.scan(TestQuery(owner_id=owner_id))
        by_result = _count_results(records)
        total = len(records)
        return {
            "totalTests": total,
            "positiveTests": by_result[TestResult.POSITIVE.value],
            "negativeTests": by_result[TestResult.NEGATIVE.value],
            "invalidTests": by_result[TestResult.INVALID.value],
            "inconclusiveTests": by_result[TestResult.INCONCLUSIVE.value],
            "positivityRate": positivity_rate(by_result[TestResult.POSITIVE.value], total),
            "byResult": by_result,
            "byTestType": _count_types(records),
            "recentTests": [
                record_summary(record, principal)
                for record in _most_recent(records, self.recent_tests)
            ],
        }

    def system_stats(self, principal: Principal, query: TestQuery | None = None) -> dict[str, Any]:
        ensure_allowed(principal, Action.SYSTEM_STATS)
        records = self.store.scan(query or TestQuery())
        now = self.clock().astimezone(timezone.utc)
        today = now.date()
        by_result = _count_results(records)
        total = len(records)
        return {
            "totalTests": total,
            "totalUsers": len({record.owner_id for record in records}),
            "todayTests": sum(1 for record in records if record.test_date.date() == today),
            "positivityRate": positivity_rate(by_result[TestResult.POSITIVE.value], total),
            "byResult": by_result,
            "byTestType": _count_types(records),
            "byDate": self._daily_trend(records, today),
            "geographicClusters": geographic_clusters(records),
            "recentTests": [
                record_summary(record, principal, include_owner=True)
                for record in _most_recent(records, self.admin_recent_tests)
            ],
        }

    def _daily_trend(self, records: Iterable[TestRecord], today) -> list[dict[str, Any]]:
        window = max(1, int(self.trend_window_days))
        start = today - timedelta(days=window - 1)
        counts: Counter = Counter()
        positives: Counter = Counter()
        for record in records:
            day = record.test_date.date()
            if start <= day <= today:
                counts[day] += 1
                if record.result is TestResult.POSITIVE:
                    positives[day] += 1
        buckets = []
        for offset in range(window):
            day = start + timedelta(days=offset)
            buckets.append(
                {"date": day.isoformat(), "count": counts[day], "positive": positives[day]}
            )
        return buckets


def geographic_clusters(records: Iterable[TestRecord]) -> list[dict[str, Any]]:
    """Group records by location label, falling back to coordinates rounded to 0.01°."""
    clusters: dict[str, dict[str, Any]] = {}
    for record in records:
        label = (record.location or "").strip()
        if label:
            key = label.casefold()
        elif record.has_coordinates:
            # Adding 0.0 folds -0.0 into 0.0 so both sides of zero share a cell.
            lat = round(record.latitude, 2) + 0.0
            lng = round(record.longitude, 2) + 0.0
            label = f"{lat:.2f},{lng:.2f}"
            key = label
        else:
            continue
        cluster = clusters.setdefault(
            key, {"location": label, "total": 0, "positive": 0, "lat": [], "lng": []}
        )
        cluster["total"] += 1
        if record.result is TestResult.POSITIVE:
            cluster["positive"] += 1
        if record.has_coordinates:
            cluster["lat"].append(record.latitude)
            cluster["lng"].append(record.longitude)

    output = []
    for key, cluster in sorted(clusters.items(), key=lambda item: (-item[1]["total"], item[0])):
        coordinates = None
        if cluster["lat"]:
            coordinates = {
                "lat": round(sum(cluster["lat"]) / len(cluster["lat"]), 6),
                "lng": round(sum(cluster["lng"]) / len(cluster["lng"]), 6),
            }
        output.append(
            {
                "location": cluster["location"],
                "coordinates": coordinates,
                "testCount": cluster["total"],
                "positiveCount": cluster["positive"],
                "positivityRate": positivity_rate(cluster["positive"], cluster["total"]),
            }
        )
    return output


def record_summary(
    record: TestRecord, principal: Principal, *, include_owner: bool = False
) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "id": record.id,
        "testType": record.test_type.value,
        "result": record.result.value,
        "confidence": record.confidence,
        "location": record.location,
        "testDate": record.test_date.isoformat(),
        "isAnonymous": record.is_anonymous,
    }
    if include_owner:
        summary["ownerId"] = (
            record.owner_id
            if can_see_identity(principal, record.owner_id, record.is_anonymous)
            else None
        )
    return summary


def _count_results(records: Iterable[TestRecord]) -> dict[str, int]:
    counts = {result.value: 0 for result in TestResult}
    for record in records:
        counts[record.result.value] += 1
    return counts


def _count_types(records: Iterable[TestRecord]) -> dict[str, int]:
    counts = {test_type.value: 0 for test_type in TestType}
    for record in records:
        counts[record.test_type.value] += 1
    return counts


def _most_recent(records: list[TestRecord], limit: int) -> list[TestRecord]:
    ordered = sorted(records, key=lambda record: (record.test_date, record.id), reverse=True)
    return ordered[: max(0, limit)]


__all__ = ["StatisticsAggregator", "geographic_clusters", "positivity_rate", "record_summary"]
