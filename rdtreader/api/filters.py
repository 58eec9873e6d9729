"""Translate list/stats query parameters into store queries."""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Optional

from ..ai.types import TestResult
from ..datalake.models import PageRequest, TestQuery
from ..errors import ValidationError
from .service import parse_test_type


def parse_result(value: Optional[str]) -> Optional[TestResult]:
    if value is None or not value.strip():
        return None
    try:
        return TestResult(value.strip().upper())
    except ValueError:
        allowed = ", ".join(member.value for member in TestResult)
        raise ValidationError(
            f"Result must be one of: {allowed}", "INVALID_RESULT", field="result"
        ) from None


def parse_date_bound(value: Optional[str], field: str, *, end: bool = False) -> Optional[datetime]:
    """Parse an ISO date or timestamp; a bare end date covers the whole day."""
    if value is None or not value.strip():
        return None
    text = value.strip()
    try:
        if len(text) == 10:
            day = date.fromisoformat(text)
            return datetime.combine(day, time.max if end else time.min, tzinfo=timezone.utc)
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO 8601 date", field=field) from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def build_query(
    *,
    test_type: Optional[str] = None,
    result: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    search: Optional[str] = None,
    location: Optional[str] = None,
    owner_id: Optional[str] = None,
) -> TestQuery:
    query = TestQuery(
        test_type=parse_test_type(test_type) if test_type else None,
        result=parse_result(result),
        start_date=parse_date_bound(start_date, "startDate"),
        end_date=parse_date_bound(end_date, "endDate", end=True),
        search=(search or "").strip() or None,
        location=(location or "").strip() or None,
        owner_id=(owner_id or "").strip() or None,
    )
    if query.start_date and query.end_date and query.start_date > query.end_date:
        raise ValidationError("startDate must not be after endDate", field="startDate")
    return query


def build_page_request(
    page: int, limit: int, sort_by: Optional[str], sort_order: Optional[str]
) -> PageRequest:
    try:
        return PageRequest(
            page=page,
            limit=limit,
            sort_by=sort_by or "test_date",
            sort_order=sort_order or "desc",
        )
    except ValueError as exc:
        field = "sortOrder" if "order" in str(exc) else "sortBy"
        raise ValidationError(str(exc), field=field) from exc


__all__ = ["build_page_request", "build_query", "parse_date_bound", "parse_result"]
