from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime

from ..access import Action, Principal, ensure_allowed
from ..ai.types import ClassificationResult, Classifier, TestType, check_contract
from ..datalake.models import LocationInfo, TestRecord
from ..datalake.records import TestRecordStore, validate_location
from ..datalake.storage import FileSystemImageStore, StoredImage
from ..errors import (
    ClassificationFailure,
    ClassificationTimeout,
    NotFoundError,
    ValidationError,
)
from ..intake.quality import IntakeReport, QualityPolicy, validate_submission


logger = logging.getLogger(__name__)


_CLASSIFY_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="classify")


@dataclass
class Submission:
    image_bytes: bytes
    mime_type: str | None
    test_type: TestType | str
    size_bytes: int | None = None
    location: LocationInfo | None = None
    is_anonymous: bool = False
    test_date: datetime | None = None


@dataclass
class SubmissionOutcome:
    record: TestRecord
    classification: ClassificationResult
    image: StoredImage
    intake: IntakeReport
    processing_seconds: float


@dataclass
class TestService:
    """Submission pipeline: intake gate, classifier, image store, record store.

    The intake gate is not optional; nothing reaches the classifier or the
    stores without passing it.
    """

    classifier: Classifier
    store: TestRecordStore
    images: FileSystemImageStore
    quality_policy: QualityPolicy = field(default_factory=QualityPolicy)
    classification_timeout: float | None = 30.0

    async def submit(self, principal: Principal, submission: Submission) -> SubmissionOutcome:
        ensure_allowed(principal, Action.CREATE, principal.id)
        test_type = parse_test_type(submission.test_type)
        location = validate_location(submission.location or LocationInfo())

        logger.info(
            "Received submission owner=%s type=%s mime=%s bytes=%d",
            principal.id,
            test_type.value,
            submission.mime_type,
            len(submission.image_bytes),
        )
        report = validate_submission(
            submission.image_bytes,
            submission.mime_type,
            submission.size_bytes,
            self.quality_policy,
        )
        if not report.accepted:
            logger.info(
                "Rejected submission owner=%s reason=%s",
                principal.id,
                report.rejection.code if report.rejection else [i.code for i in report.issues],
            )
        report.raise_for_rejection()

        started = time.monotonic()
        classification = await self.classify(submission.image_bytes, test_type)
        elapsed = time.monotonic() - started

        stored = self.images.store(submission.image_bytes, owner_id=principal.id)
        try:
            record = self.store.create(
                principal,
                test_type=test_type,
                classification=classification,
                image_ref=stored.ref,
                location_info=location,
                is_anonymous=submission.is_anonymous,
                test_date=submission.test_date,
            )
        except Exception:
            self._release_image(stored.ref)
            raise
        return SubmissionOutcome(
            record=record,
            classification=classification,
            image=stored,
            intake=report,
            processing_seconds=round(elapsed, 3),
        )

    async def reanalyze(
        self, principal: Principal, record_id: str
    ) -> tuple[TestRecord, ClassificationResult]:
        record = self.store.get(record_id, principal)
        ensure_allowed(principal, Action.REANALYZE, record.owner_id)
        try:
            image_bytes = self.images.fetch(record.image_ref)
        except (FileNotFoundError, ValueError) as exc:
            raise NotFoundError("No image found for this test", "NO_IMAGE_FOUND") from exc
        classification = await self.classify(image_bytes, record.test_type)
        updated = self.store.apply_classification(record.id, principal, classification)
        return updated, classification

    def delete(self, principal: Principal, record_id: str) -> TestRecord:
        record = self.store.delete(record_id, principal)
        self._release_image(record.image_ref)
        return record

    def purge_owner(self, principal: Principal, owner_id: str) -> int:
        removed = self.store.purge_owner(owner_id, principal)
        for record in removed:
            self._release_image(record.image_ref)
        return len(removed)

    async def classify(self, image_bytes: bytes, test_type: TestType) -> ClassificationResult:
        name = self.classifier.__class__.__name__
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(
            _CLASSIFY_EXECUTOR, self.classifier.classify, image_bytes, test_type
        )
        try:
            if self.classification_timeout is not None and self.classification_timeout > 0:
                result = await asyncio.wait_for(future, timeout=self.classification_timeout)
            else:
                result = await future
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Classification timed out classifier=%s timeout=%s", name, self.classification_timeout
            )
            raise ClassificationTimeout(
                f"Classification did not finish within {self.classification_timeout}s"
            ) from exc
        except ClassificationFailure:
            raise
        except Exception as exc:
            logger.exception("Classification failed classifier=%s", name)
            raise ClassificationFailure(f"Classifier {name} failed: {exc}") from exc

        try:
            check_contract(result)
        except ValueError as exc:
            logger.error("Classifier %s broke its contract: %s", name, exc)
            raise ClassificationFailure(f"Classifier {name} returned an invalid result: {exc}") from exc

        logger.info(
            "Classification complete classifier=%s type=%s result=%s confidence=%.2f",
            name,
            test_type.value,
            result.result.value,
            result.confidence,
        )
        return result

    def _release_image(self, ref: str) -> None:
        try:
            removed = self.images.delete(ref)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to release image ref=%s: %s", ref, exc)
            return
        if not removed:
            logger.warning("Image already missing when releasing ref=%s", ref)


def parse_test_type(value: TestType | str | None) -> TestType:
    if isinstance(value, TestType):
        return value
    text = str(value or "").strip().upper().replace("-", "_")
    try:
        return TestType(text)
    except ValueError:
        allowed = ", ".join(member.value for member in TestType)
        raise ValidationError(
            f"Test type must be one of: {allowed}", "INVALID_TEST_TYPE", field="testType"
        ) from None


__all__ = ["Submission", "SubmissionOutcome", "TestService", "parse_test_type"]
