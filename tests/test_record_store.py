from __future__ import annotations

import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from rdtreader.access import Principal, Role
from rdtreader.ai.types import ClassificationResult, LineSignal, SubSignals, TestResult, TestType
from rdtreader.datalake.models import LocationInfo, PageRequest, TestQuery
from rdtreader.datalake.records import TestRecordStore
from rdtreader.errors import ForbiddenError, NotFoundError, TransientStoreError, ValidationError


ALICE = Principal("alice")
BOB = Principal("bob")
ADMIN = Principal("admin-1", Role.ADMIN)
SUPER = Principal("root", Role.SUPER_ADMIN)


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _classification(result: TestResult, confidence: float) -> ClassificationResult:
    return ClassificationResult(
        result=result,
        confidence=confidence,
        sub_signals=SubSignals(
            control_line=LineSignal(result is not TestResult.INVALID, 0.8),
            test_line=LineSignal(result is TestResult.POSITIVE, 0.6),
        ),
        metadata={"model": "stub"},
    )


class RecordStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name) / "records"
        self.clock = _Clock()
        self.store = TestRecordStore(self.root, clock=self.clock)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _create(self, principal=ALICE, result=TestResult.NEGATIVE, confidence=0.9, **kwargs):
        kwargs.setdefault("test_type", TestType.COVID_19)
        kwargs.setdefault("image_ref", f"2026/03/10/{principal.id}-{self.store.count()}.jpg")
        return self.store.create(
            principal, classification=_classification(result, confidence), **kwargs
        )

    def test_created_record_is_retrievable_by_owner(self) -> None:
        record = self._create(
            location_info=LocationInfo("Nairobi", -1.29, 36.82), is_anonymous=True
        )
        fetched = self.store.get(record.id, ALICE)
        self.assertEqual(fetched, record)
        self.assertEqual(fetched.owner_id, "alice")
        self.assertEqual(fetched.test_date, self.clock.now)
        self.assertEqual(fetched.created_at, self.clock.now)
        self.assertTrue(fetched.is_anonymous)
        self.assertFalse(fetched.is_reported)
        self.assertEqual(fetched.analysis["metadata"], {"model": "stub"})
        self.assertTrue((self.root / f"{record.id}.json").exists())

    def test_records_survive_reload(self) -> None:
        record = self._create(result=TestResult.POSITIVE, confidence=0.77)
        reopened = TestRecordStore(self.root, clock=self.clock)
        self.assertEqual(reopened.get(record.id, ALICE), record)

    def test_unreadable_files_are_skipped_on_load(self) -> None:
        self._create()
        (self.root / "broken.json").write_text("{not json", encoding="utf-8")
        reopened = TestRecordStore(self.root, clock=self.clock)
        self.assertEqual(reopened.count(), 1)

    def test_failed_write_leaves_no_record(self) -> None:
        with mock.patch("rdtreader.datalake.records.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(TransientStoreError):
                self._create()
        self.assertEqual(self.store.count(), 0)
        self.assertEqual(list(self.root.glob("*.part")), [])

    def test_other_user_cannot_see_or_touch_record(self) -> None:
        record = self._create()
        with self.assertRaises(NotFoundError):
            self.store.get(record.id, BOB)
        with self.assertRaises(NotFoundError):
            self.store.update(record.id, BOB, {"location": "Elsewhere"})
        with self.assertRaises(NotFoundError):
            self.store.delete(record.id, BOB)
        with self.assertRaises(NotFoundError):
            self.store.apply_classification(
                record.id, BOB, _classification(TestResult.POSITIVE, 0.5)
            )
        self.assertEqual(self.store.get(record.id, ALICE), record)

    def test_missing_record_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError) as ctx:
            self.store.get("does-not-exist", ALICE)
        self.assertEqual(ctx.exception.code, "TEST_NOT_FOUND")

    def test_update_only_changes_location_and_anonymity(self) -> None:
        record = self._create()
        self.clock.advance(minutes=5)
        updated = self.store.update(
            record.id, ALICE, {"location": "  Kisumu ", "is_anonymous": True}
        )
        self.assertEqual(updated.location, "Kisumu")
        self.assertTrue(updated.is_anonymous)
        self.assertEqual(updated.result, record.result)
        self.assertEqual(updated.updated_at, self.clock.now)
        self.assertEqual(updated.created_at, record.created_at)

        with self.assertRaises(ValidationError) as ctx:
            self.store.update(record.id, ALICE, {"result": "POSITIVE"})
        self.assertEqual(ctx.exception.code, "FIELD_NOT_UPDATABLE")
        with self.assertRaises(ValidationError):
            self.store.update(record.id, ALICE, {"is_anonymous": "yes"})

    def test_reanalysis_overwrites_result_and_confidence_together(self) -> None:
        record = self._create(result=TestResult.NEGATIVE, confidence=0.9)
        updated = self.store.apply_classification(
            record.id, ALICE, _classification(TestResult.POSITIVE, 0.65)
        )
        self.assertEqual((updated.result, updated.confidence), (TestResult.POSITIVE, 0.65))
        self.assertEqual(updated.image_ref, record.image_ref)
        self.assertEqual(self.store.get(record.id, ALICE), updated)

    def test_concurrent_readers_never_see_mixed_result_and_confidence(self) -> None:
        record = self._create(result=TestResult.NEGATIVE, confidence=0.9)
        valid = {(TestResult.NEGATIVE, 0.9), (TestResult.POSITIVE, 0.6)}
        seen: set[tuple[TestResult, float]] = set()
        stop = threading.Event()

        def reader() -> None:
            while not stop.is_set():
                current = self.store.get(record.id, ALICE)
                seen.add((current.result, current.confidence))

        threads = [threading.Thread(target=reader) for _ in range(3)]
        for thread in threads:
            thread.start()
        try:
            for index in range(50):
                result, confidence = sorted(valid)[index % 2]
                self.store.apply_classification(
                    record.id, ALICE, _classification(result, confidence)
                )
        finally:
            stop.set()
            for thread in threads:
                thread.join()
        self.assertTrue(seen)
        self.assertTrue(seen <= valid)

    def test_location_validation(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self._create(location_info=LocationInfo(latitude=10.0))
        fields = {item["field"] for item in ctx.exception.errors}
        self.assertEqual(fields, {"latitude", "longitude"})
        with self.assertRaises(ValidationError):
            self._create(location_info=LocationInfo(latitude=91.0, longitude=0.0))
        with self.assertRaises(ValidationError):
            self._create(location_info=LocationInfo(latitude=0.0, longitude=-181.0))
        with self.assertRaises(ValidationError):
            self._create(location_info=LocationInfo(location="x" * 501))
        self.assertEqual(self.store.count(), 0)

    def test_test_date_cannot_be_in_the_future(self) -> None:
        earlier = self.clock.now - timedelta(days=2)
        record = self._create(test_date=earlier)
        self.assertEqual(record.test_date, earlier)
        self.assertEqual(record.created_at, self.clock.now)
        with self.assertRaises(ValidationError):
            self._create(test_date=self.clock.now + timedelta(hours=1))

    def test_positive_list_sorted_by_confidence_descending(self) -> None:
        for confidence in (0.6, 0.9, 0.7, 0.95, 0.8):
            self._create(result=TestResult.POSITIVE, confidence=confidence)
        self._create(result=TestResult.NEGATIVE, confidence=0.99)
        self._create(BOB, result=TestResult.POSITIVE, confidence=0.97)

        page = self.store.list(
            ALICE,
            "alice",
            TestQuery(result=TestResult.POSITIVE),
            PageRequest(page=1, limit=2, sort_by="confidence", sort_order="desc"),
        )

        self.assertEqual([record.confidence for record in page.items], [0.95, 0.9])
        self.assertEqual(
            page.pagination(),
            {
                "page": 1,
                "limit": 2,
                "total": 5,
                "totalPages": 3,
                "hasNext": True,
                "hasPrev": False,
            },
        )

    def test_list_filters_and_search(self) -> None:
        self._create(test_type=TestType.PREGNANCY, location_info=LocationInfo("Mombasa"))
        self._create(test_type=TestType.STREP_A, result=TestResult.POSITIVE)
        self.clock.advance(days=3)
        self._create(test_type=TestType.INFLUENZA_A, location_info=LocationInfo("Nakuru"))

        by_type = self.store.list(ALICE, "alice", TestQuery(test_type=TestType.STREP_A))
        self.assertEqual([r.test_type for r in by_type.items], [TestType.STREP_A])

        search = self.store.list(ALICE, "alice", TestQuery(search="mombasa"))
        self.assertEqual(len(search.items), 1)
        self.assertEqual(self.store.list(ALICE, "alice", TestQuery(search="strep a")).total, 1)

        recent = self.store.list(
            ALICE, "alice", TestQuery(start_date=self.clock.now - timedelta(days=1))
        )
        self.assertEqual([r.location for r in recent.items], ["Nakuru"])

    def test_list_beyond_last_page_is_empty(self) -> None:
        self._create()
        page = self.store.list(ALICE, "alice", page=PageRequest(page=4, limit=10))
        self.assertEqual(page.items, [])
        self.assertEqual(page.total, 1)
        self.assertFalse(page.pagination()["hasNext"])

    def test_user_cannot_list_another_owner_or_system_wide(self) -> None:
        self._create(BOB)
        with self.assertRaises(NotFoundError):
            self.store.list(ALICE, "bob")
        with self.assertRaises(ForbiddenError):
            self.store.list(ALICE, None)

    def test_admin_reads_system_wide_but_cannot_edit(self) -> None:
        record = self._create()
        self._create(BOB)
        self.assertEqual(self.store.list(ADMIN, None).total, 2)
        self.assertEqual(self.store.get(record.id, ADMIN), record)
        with self.assertRaises(ForbiddenError):
            self.store.update(record.id, ADMIN, {"location": "Edited"})
        with self.assertRaises(ForbiddenError):
            self.store.apply_classification(
                record.id, ADMIN, _classification(TestResult.POSITIVE, 0.5)
            )

    def test_report_flag_is_admin_only(self) -> None:
        record = self._create()
        flagged = self.store.set_reported(record.id, ADMIN, True)
        self.assertTrue(flagged.is_reported)
        with self.assertRaises(ForbiddenError):
            self.store.set_reported(record.id, ALICE, False)

    def test_delete_other_users_record_needs_elevated_capability(self) -> None:
        record = self._create()
        with self.assertRaises(ForbiddenError):
            self.store.delete(record.id, ADMIN)
        delegated = Principal("admin-2", Role.ADMIN, frozenset({"tests:delete"}))
        removed = self.store.delete(record.id, delegated)
        self.assertEqual(removed.id, record.id)
        self.assertFalse((self.root / f"{record.id}.json").exists())
        with self.assertRaises(NotFoundError):
            self.store.get(record.id, ALICE)

    def test_owner_deletes_own_record(self) -> None:
        record = self._create()
        self.store.delete(record.id, ALICE)
        self.assertEqual(self.store.count(), 0)

    def test_purge_owner_requires_super_admin(self) -> None:
        self._create()
        self._create()
        self._create(BOB)
        with self.assertRaises(ForbiddenError):
            self.store.purge_owner("alice", ADMIN)
        removed = self.store.purge_owner("alice", SUPER)
        self.assertEqual(len(removed), 2)
        self.assertEqual(self.store.owner_ids(), {"bob"})


if __name__ == "__main__":
    unittest.main()
