from __future__ import annotations

import csv
import io
from datetime import datetime, timezone

from ..access import Action, Principal, can_see_identity, ensure_allowed
from ..datalake.models import TestQuery, TestRecord
from ..datalake.records import TestRecordStore

EXPORT_COLUMNS = (
    "Test ID",
    "Owner ID",
    "Test Type",
    "Result",
    "Confidence",
    "Location",
    "Latitude",
    "Longitude",
    "Anonymous",
    "Reported",
    "Test Date",
    "Created At",
)


def export_tests_csv(
    store: TestRecordStore, principal: Principal, query: TestQuery | None = None
) -> str:
    """Render matching records as CSV, newest first; anonymous owners are blanked."""
    ensure_allowed(principal, Action.EXPORT)
    records = sorted(
        store.scan(query or TestQuery()),
        key=lambda record: (record.test_date, record.id),
        reverse=True,
    )
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS)
    for record in records:
        writer.writerow(_row(record, principal))
    return buffer.getvalue()


def export_filename(now: datetime | None = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
    return f"tests_export_{stamp}.csv"


def _row(record: TestRecord, principal: Principal) -> list[object]:
    owner = (
        record.owner_id
        if can_see_identity(principal, record.owner_id, record.is_anonymous)
        else ""
    )
    return [
        record.id,
        owner,
        record.test_type.value,
        record.result.value,
        record.confidence,
        record.location or "",
        "" if record.latitude is None else record.latitude,
        "" if record.longitude is None else record.longitude,
        record.is_anonymous,
        record.is_reported,
        record.test_date.isoformat(),
        record.created_at.isoformat(),
    ]


__all__ = ["EXPORT_COLUMNS", "export_filename", "export_tests_csv"]
