from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse

from .admin_routes import router as admin_router
from .config_loader import AppConfig
from .filters import build_page_request, build_query, parse_date_bound
from .identity import get_principal
from .schemas import (
    AnalysisModel,
    ImageDataModel,
    MessageResponse,
    QualityIssueModel,
    ReanalysisResponse,
    SubmissionResponse,
    TestPageResponse,
    TestRecordModel,
    TestUpdateRequest,
)
from .service import Submission, TestService
from .stats import StatisticsAggregator
from ..access import Principal
from ..ai import Classifier, LineIntensityModel
from ..datalake.models import LocationInfo
from ..datalake.records import TestRecordStore
from ..datalake.storage import FileSystemImageStore
from ..errors import NotFoundError, RDTReaderError, public_payload


logger = logging.getLogger(__name__)

USER_PAGE_LIMIT = 10


def create_app(
    root_dir: Path | None = None,
    classifier: Classifier | None = None,
    config: AppConfig | None = None,
) -> FastAPI:
    """Build the API application.

    ``root_dir`` overrides the configured storage locations with
    ``<root_dir>/records`` and ``<root_dir>/images``; tests use it with a
    temporary directory.
    """
    config = config or AppConfig()
    if root_dir is not None:
        records_root = Path(root_dir) / "records"
        images_root = Path(root_dir) / "images"
    else:
        records_root = Path(config.storage.records_root)
        images_root = Path(config.storage.images_root)

    store = TestRecordStore(records_root)
    images = FileSystemImageStore(images_root)
    selected_classifier = classifier or LineIntensityModel()
    service = TestService(
        classifier=selected_classifier,
        store=store,
        images=images,
        quality_policy=config.intake.to_policy(),
        classification_timeout=config.classifier.timeout_seconds,
    )
    stats = StatisticsAggregator(
        store,
        trend_window_days=config.stats.trend_window_days,
        recent_tests=config.stats.recent_tests,
        admin_recent_tests=config.stats.admin_recent_tests,
    )

    app = FastAPI(title="RDT Reader API")
    app.state.config = config
    app.state.classifier = selected_classifier
    app.state.store = store
    app.state.images = images
    app.state.service = service
    app.state.stats = stats

    logger.info(
        "API ready records=%s images=%s classifier=%s",
        records_root,
        images_root,
        selected_classifier.__class__.__name__,
    )

    @app.exception_handler(RDTReaderError)
    async def _handle_domain_error(request: Request, exc: RDTReaderError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "%s %s failed code=%s: %s",
                request.method,
                request.url.path,
                exc.code,
                exc.message,
                exc_info=exc,
            )
        else:
            logger.warning(
                "%s %s rejected status=%d code=%s",
                request.method,
                request.url.path,
                exc.status_code,
                exc.code,
            )
        return JSONResponse(status_code=exc.status_code, content=public_payload(exc))

    @app.get("/health", response_model=dict[str, str])
    def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/tests", response_model=SubmissionResponse, status_code=201)
    async def submit_test(
        image: UploadFile = File(...),
        test_type: str = Form(..., alias="testType"),
        location: Optional[str] = Form(None),
        latitude: Optional[float] = Form(None),
        longitude: Optional[float] = Form(None),
        is_anonymous: bool = Form(False, alias="isAnonymous"),
        test_date: Optional[str] = Form(None, alias="testDate"),
        principal: Principal = Depends(get_principal),
    ) -> SubmissionResponse:
        image_bytes = await image.read()
        submission = Submission(
            image_bytes=image_bytes,
            mime_type=image.content_type,
            test_type=test_type,
            size_bytes=getattr(image, "size", None),
            location=LocationInfo(location=location, latitude=latitude, longitude=longitude),
            is_anonymous=is_anonymous,
            test_date=parse_date_bound(test_date, "testDate"),
        )
        outcome = await service.submit(principal, submission)
        return SubmissionResponse(
            message="Test submitted and analyzed successfully",
            test=TestRecordModel.from_record(outcome.record, principal),
            analysis=AnalysisModel.from_classification(outcome.classification),
            image_data=ImageDataModel(**outcome.image.metadata),
            advisories=[QualityIssueModel.from_issue(issue) for issue in outcome.intake.advisories],
            processing_time=outcome.processing_seconds,
        )

    @app.get("/tests", response_model=TestPageResponse)
    def list_tests(
        page: int = Query(1, ge=1),
        limit: int = Query(USER_PAGE_LIMIT, ge=1),
        test_type: Optional[str] = Query(None, alias="testType"),
        result: Optional[str] = Query(None),
        start_date: Optional[str] = Query(None, alias="startDate"),
        end_date: Optional[str] = Query(None, alias="endDate"),
        search: Optional[str] = Query(None),
        sort_by: Optional[str] = Query(None, alias="sortBy"),
        sort_order: Optional[str] = Query(None, alias="sortOrder"),
        principal: Principal = Depends(get_principal),
    ) -> TestPageResponse:
        query = build_query(
            test_type=test_type,
            result=result,
            start_date=start_date,
            end_date=end_date,
            search=search,
        )
        page_request = build_page_request(page, limit, sort_by, sort_order)
        results = store.list(principal, principal.id, query, page_request)
        return TestPageResponse.from_page(results, principal)

    # Declared before /tests/{test_id} so "stats" is not taken as an id.
    @app.get("/tests/stats", response_model=dict[str, Any])
    def user_statistics(principal: Principal = Depends(get_principal)) -> dict[str, Any]:
        return stats.user_stats(principal, principal.id)

    @app.get("/tests/{test_id}", response_model=TestRecordModel)
    def get_test(test_id: str, principal: Principal = Depends(get_principal)) -> TestRecordModel:
        record = store.get(test_id, principal)
        return TestRecordModel.from_record(record, principal, with_analysis=True)

    @app.put("/tests/{test_id}", response_model=TestRecordModel)
    def update_test(
        test_id: str,
        payload: TestUpdateRequest,
        principal: Principal = Depends(get_principal),
    ) -> TestRecordModel:
        record = store.update(test_id, principal, payload.to_patch())
        return TestRecordModel.from_record(record, principal)

    @app.delete("/tests/{test_id}", response_model=MessageResponse)
    def delete_test(test_id: str, principal: Principal = Depends(get_principal)) -> MessageResponse:
        service.delete(principal, test_id)
        return MessageResponse(message="Test deleted successfully")

    @app.post("/tests/{test_id}/reanalyze", response_model=ReanalysisResponse)
    async def reanalyze_test(
        test_id: str, principal: Principal = Depends(get_principal)
    ) -> ReanalysisResponse:
        record, classification = await service.reanalyze(principal, test_id)
        return ReanalysisResponse(
            message="Test reanalyzed successfully",
            test=TestRecordModel.from_record(record, principal),
            analysis=AnalysisModel.from_classification(classification),
        )

    @app.get("/tests/{test_id}/image")
    def get_test_image(test_id: str, principal: Principal = Depends(get_principal)) -> FileResponse:
        record = store.get(test_id, principal)
        if not images.exists(record.image_ref):
            raise NotFoundError("No image found for this test", "NO_IMAGE_FOUND")
        return FileResponse(images.path_for(record.image_ref), media_type="image/jpeg")

    app.include_router(admin_router)

    return app


__all__ = ["create_app"]
