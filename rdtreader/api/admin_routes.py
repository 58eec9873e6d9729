from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response

from .export import export_filename, export_tests_csv
from .filters import build_page_request, build_query
from .identity import get_principal, require_admin
from .schemas import (
    MessageResponse,
    PurgeResponse,
    ReportFlagRequest,
    TestPageResponse,
    TestRecordModel,
)
from ..access import Action, Principal, ensure_allowed


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

ADMIN_PAGE_LIMIT = 20


@router.get("/tests", response_model=TestPageResponse)
def list_all_tests(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(ADMIN_PAGE_LIMIT, ge=1),
    test_type: Optional[str] = Query(None, alias="testType"),
    result: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    search: Optional[str] = Query(None),
    location: Optional[str] = Query(None),
    owner_id: Optional[str] = Query(None, alias="ownerId"),
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
        location=location,
        owner_id=owner_id,
    )
    page_request = build_page_request(page, limit, sort_by, sort_order)
    results = request.app.state.store.list(principal, None, query, page_request)
    return TestPageResponse.from_page(results, principal)


@router.get("/tests/stats", response_model=dict[str, Any])
def system_statistics(
    request: Request,
    test_type: Optional[str] = Query(None, alias="testType"),
    location: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    principal: Principal = Depends(get_principal),
) -> dict[str, Any]:
    query = build_query(
        test_type=test_type,
        location=location,
        start_date=start_date,
        end_date=end_date,
    )
    return request.app.state.stats.system_stats(principal, query)


@router.get("/tests/{test_id}", response_model=TestRecordModel)
def get_any_test(
    test_id: str, request: Request, principal: Principal = Depends(get_principal)
) -> TestRecordModel:
    record = request.app.state.store.get(test_id, principal)
    return TestRecordModel.from_record(record, principal, with_analysis=True)


@router.delete("/tests/{test_id}", response_model=MessageResponse)
def delete_any_test(
    test_id: str, request: Request, principal: Principal = Depends(get_principal)
) -> MessageResponse:
    request.app.state.service.delete(principal, test_id)
    return MessageResponse(message="Test deleted successfully")


@router.put("/tests/{test_id}/report", response_model=TestRecordModel)
def set_report_flag(
    test_id: str,
    payload: ReportFlagRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
) -> TestRecordModel:
    record = request.app.state.store.set_reported(test_id, principal, payload.is_reported)
    return TestRecordModel.from_record(record, principal)


@router.delete("/users/{owner_id}/tests", response_model=PurgeResponse)
def purge_user_tests(
    owner_id: str, request: Request, principal: Principal = Depends(get_principal)
) -> PurgeResponse:
    removed = request.app.state.service.purge_owner(principal, owner_id)
    return PurgeResponse(message="User tests deleted successfully", deleted_count=removed)


@router.get("/export")
def export_tests(
    request: Request,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    principal: Principal = Depends(get_principal),
) -> Response:
    query = build_query(start_date=start_date, end_date=end_date)
    body = export_tests_csv(request.app.state.store, principal, query)
    filename = export_filename()
    logger.info("Exported tests to CSV by=%s filename=%s", principal.id, filename)
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/health", response_model=dict[str, Any])
def system_health(request: Request, principal: Principal = Depends(get_principal)) -> dict[str, Any]:
    ensure_allowed(principal, Action.SYSTEM_STATS)
    store = request.app.state.store
    return {
        "status": "ok",
        "tests": store.count(),
        "users": len(store.owner_ids()),
        "images": request.app.state.images.count(),
        "classifier": request.app.state.classifier.__class__.__name__,
    }


__all__ = ["router"]
