from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from ..ai.types import TestResult, TestType

T = TypeVar("T")

SORT_KEYS = ("test_date", "created_at", "test_type", "result", "confidence")
_SORT_ALIASES = {
    "date": "test_date",
    "testdate": "test_date",
    "createdat": "created_at",
    "type": "test_type",
    "testtype": "test_type",
}
MAX_PAGE_LIMIT = 100


@dataclass(frozen=True)
class TestRecord:
    id: str
    owner_id: str
    test_type: TestType
    result: TestResult
    confidence: float
    image_ref: str
    test_date: datetime
    created_at: datetime
    updated_at: datetime
    location: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    is_anonymous: bool = False
    is_reported: bool = False
    analysis: dict[str, Any] = field(default_factory=dict)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "test_type": self.test_type.value,
            "result": self.result.value,
            "confidence": self.confidence,
            "image_ref": self.image_ref,
            "location": self.location,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "is_anonymous": self.is_anonymous,
            "is_reported": self.is_reported,
            "test_date": self.test_date.isoformat(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "analysis": self.analysis,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TestRecord":
        return cls(
            id=str(data["id"]),
            owner_id=str(data["owner_id"]),
            test_type=TestType(data["test_type"]),
            result=TestResult(data["result"]),
            confidence=float(data["confidence"]),
            image_ref=str(data["image_ref"]),
            location=data.get("location"),
            latitude=_optional_float(data.get("latitude")),
            longitude=_optional_float(data.get("longitude")),
            is_anonymous=bool(data.get("is_anonymous", False)),
            is_reported=bool(data.get("is_reported", False)),
            test_date=parse_timestamp(data["test_date"]),
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_timestamp(data.get("updated_at") or data["created_at"]),
            analysis=dict(data.get("analysis") or {}),
        )


@dataclass(frozen=True)
class LocationInfo:
    location: str | None = None
    latitude: float | None = None
    longitude: float | None = None


@dataclass
class TestQuery:
    test_type: TestType | None = None
    result: TestResult | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    search: str | None = None
    location: str | None = None
    owner_id: str | None = None

    def matches(self, record: TestRecord) -> bool:
        if self.owner_id is not None and record.owner_id != self.owner_id:
            return False
        if self.test_type is not None and record.test_type is not self.test_type:
            return False
        if self.result is not None and record.result is not self.result:
            return False
        if self.start_date is not None and record.test_date < self.start_date:
            return False
        if self.end_date is not None and record.test_date > self.end_date:
            return False
        if self.location:
            if self.location.casefold() not in (record.location or "").casefold():
                return False
        if self.search:
            needle = self.search.strip().casefold()
            haystack = " ".join(
                (record.test_type.value, record.result.value, record.location or "")
            ).casefold()
            if needle and needle not in haystack and needle not in haystack.replace("_", " "):
                return False
        return True


@dataclass
class PageRequest:
    page: int = 1
    limit: int = 10
    sort_by: str = "test_date"
    sort_order: str = "desc"

    def __post_init__(self) -> None:
        self.page = max(1, int(self.page or 1))
        self.limit = max(1, min(MAX_PAGE_LIMIT, int(self.limit or 1)))
        self.sort_by = normalize_sort_key(self.sort_by)
        order = str(self.sort_order or "desc").strip().lower()
        if order not in {"asc", "desc"}:
            raise ValueError(f"sort order must be 'asc' or 'desc', got {self.sort_order!r}")
        self.sort_order = order

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass
class Page(Generic[T]):
    items: list[T]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0

    def pagination(self) -> dict[str, Any]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "totalPages": self.total_pages,
            "hasNext": self.page < self.total_pages,
            "hasPrev": self.page > 1,
        }


def normalize_sort_key(value: str | None) -> str:
    key = str(value or "test_date").strip()
    lowered = key.lower().replace("-", "_")
    key = _SORT_ALIASES.get(lowered.replace("_", ""), lowered)
    if key not in SORT_KEYS:
        raise ValueError(f"cannot sort by {value!r}; expected one of {', '.join(SORT_KEYS)}")
    return key


def sort_value(record: TestRecord, key: str) -> Any:
    if key == "test_type":
        return record.test_type.value
    if key == "result":
        return record.result.value
    return getattr(record, key)


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


__all__ = [
    "TestRecord",
    "TestType",
    "TestResult",
    "LocationInfo",
    "TestQuery",
    "PageRequest",
    "Page",
    "SORT_KEYS",
    "MAX_PAGE_LIMIT",
    "normalize_sort_key",
    "sort_value",
    "parse_timestamp",
]
