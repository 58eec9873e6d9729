from __future__ import annotations

import contextlib
import json
import logging
import os
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

from ..access import Action, Principal, ensure_allowed
from ..ai.types import ClassificationResult, TestType
from ..errors import NotFoundError, TransientStoreError, ValidationError
from .models import LocationInfo, Page, PageRequest, TestQuery, TestRecord, sort_value

logger = logging.getLogger(__name__)

MAX_LOCATION_LENGTH = 500
# Allowed clock skew between the submitting device and the server.
TEST_DATE_SKEW = timedelta(minutes=5)
_PATCHABLE_FIELDS = frozenset({"location", "is_anonymous"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TestRecordStore:
    """Persist one JSON document per test record under ``root``.

    All records are indexed in memory. Records are immutable values and every
    write swaps a whole record under the store lock, so readers never observe a
    half-written record or a result paired with a stale confidence.
    """

    def __init__(self, root: Path, clock: Callable[[], datetime] = _utcnow) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._lock = threading.RLock()
        self._records: dict[str, TestRecord] = {}
        self._load()

    @property
    def root(self) -> Path:
        return self._root

    def create(
        self,
        principal: Principal,
        *,
        test_type: TestType,
        classification: ClassificationResult,
        image_ref: str,
        location_info: LocationInfo | None = None,
        is_anonymous: bool = False,
        test_date: datetime | None = None,
    ) -> TestRecord:
        ensure_allowed(principal, Action.CREATE, principal.id)
        info = validate_location(location_info or LocationInfo())
        now = self._clock()
        taken_at = self._validate_test_date(test_date, now)
        record = TestRecord(
            id=uuid.uuid4().hex,
            owner_id=principal.id,
            test_type=TestType(test_type),
            result=classification.result,
            confidence=float(classification.confidence),
            image_ref=image_ref,
            location=info.location,
            latitude=info.latitude,
            longitude=info.longitude,
            is_anonymous=bool(is_anonymous),
            test_date=taken_at,
            created_at=now,
            updated_at=now,
            analysis=_analysis_payload(classification),
        )
        with self._lock:
            self._write(record)
            self._records[record.id] = record
        logger.info(
            "Created test record id=%s owner=%s type=%s result=%s confidence=%.2f",
            record.id,
            record.owner_id,
            record.test_type.value,
            record.result.value,
            record.confidence,
        )
        return record

    def get(self, record_id: str, principal: Principal) -> TestRecord:
        record = self._require(record_id)
        ensure_allowed(principal, Action.READ, record.owner_id)
        return record

    def list(
        self,
        principal: Principal,
        owner_id: str | None,
        query: TestQuery | None = None,
        page: PageRequest | None = None,
    ) -> Page[TestRecord]:
        """List records of ``owner_id``, or system-wide when it is None."""
        ensure_allowed(principal, Action.LIST, owner_id)
        query = query or TestQuery()
        page = page or PageRequest()
        if owner_id is not None:
            query = replace(query, owner_id=owner_id)
        matches = self.scan(query)
        # Stable tie-break on id keeps paging deterministic.
        matches.sort(key=lambda record: record.id)
        matches.sort(
            key=lambda record: sort_value(record, page.sort_by),
            reverse=page.sort_order == "desc",
        )
        items = matches[page.offset : page.offset + page.limit]
        return Page(items=items, page=page.page, limit=page.limit, total=len(matches))

    def update(self, record_id: str, principal: Principal, patch: Mapping[str, Any]) -> TestRecord:
        unknown = sorted(set(patch) - _PATCHABLE_FIELDS)
        if unknown:
            raise ValidationError(
                "Only location and isAnonymous can be updated",
                "FIELD_NOT_UPDATABLE",
                errors=[{"field": name, "message": "Field cannot be updated"} for name in unknown],
            )
        with self._lock:
            record = self._require(record_id)
            ensure_allowed(principal, Action.UPDATE, record.owner_id)
            changes: dict[str, Any] = {}
            if "location" in patch:
                location = validate_location(LocationInfo(location=patch["location"])).location
                changes["location"] = location
            if "is_anonymous" in patch:
                value = patch["is_anonymous"]
                if not isinstance(value, bool):
                    raise ValidationError(
                        "isAnonymous must be a boolean", field="isAnonymous"
                    )
                changes["is_anonymous"] = value
            if not changes:
                return record
            updated = replace(record, updated_at=self._clock(), **changes)
            self._write(updated)
            self._records[updated.id] = updated
        logger.info("Updated test record id=%s fields=%s", record_id, sorted(changes))
        return updated

    def apply_classification(
        self,
        record_id: str,
        principal: Principal,
        classification: ClassificationResult,
    ) -> TestRecord:
        """Overwrite result, confidence and analysis together after a re-analysis."""
        with self._lock:
            record = self._require(record_id)
            ensure_allowed(principal, Action.REANALYZE, record.owner_id)
            updated = replace(
                record,
                result=classification.result,
                confidence=float(classification.confidence),
                analysis=_analysis_payload(classification),
                updated_at=self._clock(),
            )
            self._write(updated)
            self._records[updated.id] = updated
        logger.info(
            "Re-analysed test record id=%s result=%s->%s confidence=%.2f->%.2f",
            record_id,
            record.result.value,
            updated.result.value,
            record.confidence,
            updated.confidence,
        )
        return updated

    def set_reported(self, record_id: str, principal: Principal, reported: bool) -> TestRecord:
        with self._lock:
            record = self._require(record_id)
            ensure_allowed(principal, Action.REPORT, record.owner_id)
            updated = replace(record, is_reported=bool(reported), updated_at=self._clock())
            self._write(updated)
            self._records[updated.id] = updated
        logger.info("Set reported=%s on test record id=%s by=%s", reported, record_id, principal.id)
        return updated

    def delete(self, record_id: str, principal: Principal) -> TestRecord:
        """Remove a record and return it so the caller can release its image."""
        with self._lock:
            record = self._require(record_id)
            ensure_allowed(principal, Action.DELETE, record.owner_id)
            self._unlink(record.id)
            self._records.pop(record.id, None)
        logger.info("Deleted test record id=%s owner=%s by=%s", record.id, record.owner_id, principal.id)
        return record

    def purge_owner(self, owner_id: str, principal: Principal) -> list[TestRecord]:
        ensure_allowed(principal, Action.PURGE_OWNER, owner_id, resource="User")
        with self._lock:
            removed = [record for record in self._records.values() if record.owner_id == owner_id]
            for record in removed:
                self._unlink(record.id)
                self._records.pop(record.id, None)
        logger.info("Purged %d test records of owner=%s by=%s", len(removed), owner_id, principal.id)
        return removed

    def scan(self, query: TestQuery | None = None) -> list[TestRecord]:
        """Snapshot of matching records; callers are responsible for authorisation."""
        with self._lock:
            records = list(self._records.values())
        if query is None:
            return records
        return [record for record in records if query.matches(record)]

    def referenced_images(self) -> set[str]:
        with self._lock:
            return {record.image_ref for record in self._records.values()}

    def owner_ids(self) -> set[str]:
        with self._lock:
            return {record.owner_id for record in self._records.values()}

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    def _require(self, record_id: str) -> TestRecord:
        with self._lock:
            record = self._records.get(str(record_id))
        if record is None:
            raise NotFoundError("Test not found", "TEST_NOT_FOUND")
        return record

    def _validate_test_date(self, test_date: datetime | None, now: datetime) -> datetime:
        if test_date is None:
            return now
        if test_date.tzinfo is None:
            test_date = test_date.replace(tzinfo=timezone.utc)
        test_date = test_date.astimezone(timezone.utc)
        if test_date > now + TEST_DATE_SKEW:
            raise ValidationError("Test date cannot be in the future", field="testDate")
        return test_date

    def _path(self, record_id: str) -> Path:
        return self._root / f"{record_id}.json"

    def _write(self, record: TestRecord) -> None:
        path = self._path(record.id)
        tmp_path = path.with_suffix(".part")
        try:
            tmp_path.write_text(json.dumps(record.to_dict(), indent=2), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            logger.error("Failed to persist test record id=%s: %s", record.id, exc)
            raise TransientStoreError("Failed to persist test record") from exc

    def _unlink(self, record_id: str) -> None:
        try:
            self._path(record_id).unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("Failed to delete test record id=%s: %s", record_id, exc)
            raise TransientStoreError("Failed to delete test record") from exc

    def _load(self) -> None:
        loaded = 0
        for path in sorted(self._root.glob("*.json")):
            try:
                record = TestRecord.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable test record %s: %s", path, exc)
                continue
            self._records[record.id] = record
            loaded += 1
        logger.info("Loaded %d test records from %s", loaded, self._root)


def validate_location(info: LocationInfo) -> LocationInfo:
    errors: list[dict[str, str]] = []
    location = info.location
    if location is not None:
        if not isinstance(location, str):
            errors.append({"field": "location", "message": "Location must be text"})
        else:
            location = location.strip() or None
            if location is not None and len(location) > MAX_LOCATION_LENGTH:
                errors.append(
                    {
                        "field": "location",
                        "message": f"Location cannot exceed {MAX_LOCATION_LENGTH} characters",
                    }
                )
    latitude = _coordinate(info.latitude, "latitude", 90.0, errors)
    longitude = _coordinate(info.longitude, "longitude", 180.0, errors)
    if (info.latitude is None) != (info.longitude is None):
        errors.append(
            {"field": "latitude", "message": "Latitude and longitude must be provided together"}
        )
        errors.append(
            {"field": "longitude", "message": "Latitude and longitude must be provided together"}
        )
    if errors:
        raise ValidationError("Invalid location", "INVALID_LOCATION", errors=errors)
    return LocationInfo(location=location, latitude=latitude, longitude=longitude)


def _coordinate(
    value: Any, name: str, bound: float, errors: list[dict[str, str]]
) -> float | None:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        errors.append({"field": name, "message": f"{name.capitalize()} must be a number"})
        return None
    if not -bound <= number <= bound:
        errors.append(
            {"field": name, "message": f"{name.capitalize()} must be between {-bound:g} and {bound:g}"}
        )
        return None
    return number


def _analysis_payload(classification: ClassificationResult) -> dict[str, Any]:
    return {
        "sub_signals": classification.sub_signals.to_dict(),
        "metadata": dict(classification.metadata),
    }


__all__ = ["TestRecordStore", "validate_location"]
