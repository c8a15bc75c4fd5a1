"""Report API endpoints."""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Query, Response, status

from medreports.api.deps import CurrentIdentity, DbSession
from medreports.core.exceptions import ConflictError, NotFoundError, ReportingError
from medreports.core.logging import get_logger
from medreports.db.session import get_db_context
from medreports.models.report import ReportStatus, ReportType
from medreports.schemas.common import PageInfo
from medreports.schemas.report import (
    ReportCancelResponse,
    ReportCreate,
    ReportCreateResponse,
    ReportListFilters,
    ReportListResponse,
    ReportResponse,
    ReportStatistics,
)
from medreports.services.report import ReportService, report_view
from medreports.services.report_generation import ReportGenerator
from medreports.services.serializer import get_writer_class

logger = get_logger(__name__)

router = APIRouter()


def get_report_service() -> ReportService:
    """Get report service instance."""
    return ReportService()


async def generate_in_background(report_id: str) -> None:
    """Generate a report in its own session after the response is sent."""
    async with get_db_context() as db:
        try:
            await ReportGenerator().generate(db, report_id)
        except ReportingError as e:
            # The outcome is already recorded on the report
            logger.warning(
                f"Background generation ended with {e.code}",
                extra={"report_id": report_id},
            )


# =============================================================================
# Report CRUD
# =============================================================================


@router.post("", response_model=ReportCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_report(
    data: ReportCreate,
    db: DbSession,
    identity: CurrentIdentity,
    background_tasks: BackgroundTasks,
) -> ReportCreateResponse:
    """
    Create a report in PENDING state.

    With ``autoGenerate`` the report is generated after the response is sent.
    """
    service = get_report_service()
    report, estimate = await service.create_report(db=db, identity=identity, report_data=data)
    if data.auto_generate:
        background_tasks.add_task(generate_in_background, report.id)
    return ReportCreateResponse(**report_view(report), estimated_generation_seconds=estimate)


@router.get("", response_model=ReportListResponse)
async def list_reports(
    db: DbSession,
    identity: CurrentIdentity,
    report_type: Optional[ReportType] = Query(None, alias="type"),
    report_status: Optional[ReportStatus] = Query(None, alias="status"),
    generated_by: Optional[str] = Query(None, alias="generatedBy"),
    date_from: Optional[datetime] = Query(None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(None, alias="dateTo"),
    search: Optional[str] = Query(None, description="Search title and description"),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> ReportListResponse:
    """List reports with statistics. Agents see only their own reports."""
    service = get_report_service()
    filters = ReportListFilters(
        type=report_type,
        status=report_status,
        generated_by_id=generated_by,
        date_from=date_from,
        date_to=date_to,
        search=search,
    )
    reports, total, statistics = await service.list_reports(
        db=db,
        identity=identity,
        filters=filters,
        limit=limit,
        offset=offset,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return ReportListResponse(
        items=[ReportResponse(**report_view(r)) for r in reports],
        pagination=PageInfo.build(total, limit, offset),
        statistics=ReportStatistics(**statistics),
    )


@router.get("/{report_id}", response_model=ReportResponse)
async def get_report(
    report_id: str,
    db: DbSession,
    identity: CurrentIdentity,
) -> ReportResponse:
    """Get a report by ID."""
    report = await get_report_service().get_report_for(db, report_id, identity)
    return ReportResponse(**report_view(report))


@router.delete("/{report_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_report(
    report_id: str,
    db: DbSession,
    identity: CurrentIdentity,
) -> None:
    """Soft-delete a report and stop its schedules."""
    await get_report_service().delete_report(db, report_id, identity)


# =============================================================================
# Generation
# =============================================================================


@router.post("/{report_id}/generate", response_model=ReportResponse)
async def generate_report(
    report_id: str,
    db: DbSession,
    identity: CurrentIdentity,
) -> ReportResponse:
    """Generate a PENDING report now and wait for the result."""
    await get_report_service().get_report_for(db, report_id, identity)
    report = await ReportGenerator().generate(db, report_id)
    return ReportResponse(**report_view(report))


@router.post("/{report_id}/cancel", response_model=ReportCancelResponse)
async def cancel_report(
    report_id: str,
    db: DbSession,
    identity: CurrentIdentity,
) -> ReportCancelResponse:
    """Cancel a pending, scheduled or generating report."""
    report = await get_report_service().cancel_report(db, report_id, identity)
    return ReportCancelResponse(
        id=report.id,
        status=report.status,
        scheduled_at=report.scheduled_at,
        error_message=report.error_message,
    )


@router.get("/{report_id}/download")
async def download_report(
    report_id: str,
    db: DbSession,
    identity: CurrentIdentity,
) -> Response:
    """Download a generated report file."""
    report = await get_report_service().get_report_for(db, report_id, identity)
    if report.status != ReportStatus.COMPLETED.value or not report.file_path:
        raise ConflictError(
            f"Report is {report.status.lower()}, not ready for download",
            code="REPORT_NOT_READY",
            details={"report_id": report.id, "status": report.status},
        )
    path = Path(report.file_path)
    if not path.is_file():
        raise NotFoundError("Report file", report.id)

    content = await asyncio.to_thread(path.read_bytes)
    writer_cls = get_writer_class(report.output_format)
    return Response(
        content=content,
        media_type=writer_cls.content_type,
        headers={"Content-Disposition": f'attachment; filename="{report.id}.{writer_cls.extension}"'},
    )
