from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..access import Principal, can_see_identity
from ..ai.types import (
    ClassificationResult,
    LineSignal,
    SubSignals,
    recommendation_for,
)
from ..datalake.models import Page, TestRecord
from ..intake.quality import QualityIssue


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LineSignalModel(CamelModel):
    detected: bool
    intensity: float


class AnalysisModel(CamelModel):
    confidence: float
    control_line: LineSignalModel
    test_line: LineSignalModel
    recommendation: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_classification(cls, classification: ClassificationResult) -> "AnalysisModel":
        signals = classification.sub_signals
        return cls(
            confidence=classification.confidence,
            control_line=LineSignalModel(
                detected=signals.control_line.detected,
                intensity=signals.control_line.intensity,
            ),
            test_line=LineSignalModel(
                detected=signals.test_line.detected,
                intensity=signals.test_line.intensity,
            ),
            recommendation=recommendation_for(classification),
            metadata=dict(classification.metadata),
        )

    @classmethod
    def from_record(cls, record: TestRecord) -> Optional["AnalysisModel"]:
        """Rebuild the analysis stored alongside a record, if it has one."""
        stored = record.analysis.get("sub_signals") if record.analysis else None
        if not stored:
            return None
        classification = ClassificationResult(
            result=record.result,
            confidence=record.confidence,
            sub_signals=SubSignals(
                control_line=_line(stored.get("control_line")),
                test_line=_line(stored.get("test_line")),
            ),
            metadata=dict(record.analysis.get("metadata") or {}),
        )
        return cls.from_classification(classification)


class TestRecordModel(CamelModel):
    id: str
    owner_id: Optional[str] = None
    test_type: str
    result: str
    confidence: float
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    is_anonymous: bool = False
    is_reported: bool = False
    image_url: str
    test_date: datetime
    created_at: datetime
    updated_at: datetime
    analysis: Optional[AnalysisModel] = None

    @classmethod
    def from_record(
        cls, record: TestRecord, principal: Principal, *, with_analysis: bool = False
    ) -> "TestRecordModel":
        owner = (
            record.owner_id
            if can_see_identity(principal, record.owner_id, record.is_anonymous)
            else None
        )
        return cls(
            id=record.id,
            owner_id=owner,
            test_type=record.test_type.value,
            result=record.result.value,
            confidence=record.confidence,
            location=record.location,
            latitude=record.latitude,
            longitude=record.longitude,
            is_anonymous=record.is_anonymous,
            is_reported=record.is_reported,
            image_url=f"/tests/{record.id}/image",
            test_date=record.test_date,
            created_at=record.created_at,
            updated_at=record.updated_at,
            analysis=AnalysisModel.from_record(record) if with_analysis else None,
        )


class PaginationModel(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class TestPageResponse(CamelModel):
    tests: List[TestRecordModel]
    pagination: PaginationModel

    @classmethod
    def from_page(cls, page: Page[TestRecord], principal: Principal) -> "TestPageResponse":
        return cls(
            tests=[TestRecordModel.from_record(record, principal) for record in page.items],
            pagination=PaginationModel(**page.pagination()),
        )


class QualityIssueModel(CamelModel):
    code: str
    message: str

    @classmethod
    def from_issue(cls, issue: QualityIssue) -> "QualityIssueModel":
        return cls(code=issue.code, message=issue.message)


class ImageDataModel(CamelModel):
    original_size: Optional[int] = None
    processed_size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    format: Optional[str] = None


class SubmissionResponse(CamelModel):
    message: str
    test: TestRecordModel
    analysis: AnalysisModel
    image_data: ImageDataModel
    advisories: List[QualityIssueModel] = Field(default_factory=list)
    processing_time: float


class ReanalysisResponse(CamelModel):
    message: str
    test: TestRecordModel
    analysis: AnalysisModel


class TestUpdateRequest(CamelModel):
    """Owner edit; unknown keys are kept so the store can name them in its rejection."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    location: Optional[str] = None
    is_anonymous: Optional[bool] = None

    def to_patch(self) -> dict[str, Any]:
        patch = {name: getattr(self, name) for name in self.model_fields_set}
        patch.update(self.model_extra or {})
        return patch


class ReportFlagRequest(CamelModel):
    is_reported: bool


class MessageResponse(CamelModel):
    message: str


class PurgeResponse(CamelModel):
    message: str
    deleted_count: int


def _line(value: Any) -> LineSignal:
    data = value if isinstance(value, dict) else {}
    return LineSignal(
        detected=bool(data.get("detected", False)),
        intensity=float(data.get("intensity", 0.0)),
    )


__all__ = [
    "AnalysisModel",
    "ImageDataModel",
    "LineSignalModel",
    "MessageResponse",
    "PaginationModel",
    "PurgeResponse",
    "QualityIssueModel",
    "ReanalysisResponse",
    "ReportFlagRequest",
    "SubmissionResponse",
    "TestPageResponse",
    "TestRecordModel",
    "TestUpdateRequest",
]
