"""Report export API endpoints."""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Query, Response

from medreports.api.deps import CurrentIdentity, DbSession
from medreports.models.report import ReportFormat
from medreports.models.report_export import (
    ExportDeliveryMethod,
    ReportExportKind,
    ReportExportStatus,
)
from medreports.schemas.common import PageInfo
from medreports.schemas.report_export import (
    BulkReportExportRequest,
    ReportExportDeleteResponse,
    ReportExportListResponse,
    ReportExportRequest,
    ReportExportResponse,
    ReportExportSummary,
)
from medreports.services.report_export import ReportExportService, report_export_view

router = APIRouter()


def get_report_export_service() -> ReportExportService:
    """Get report export service instance."""
    return ReportExportService()


@router.post("/{report_id}/export", response_model=ReportExportResponse)
async def export_report(
    report_id: str,
    data: ReportExportRequest,
    db: DbSession,
    identity: CurrentIdentity,
) -> ReportExportResponse:
    """Export a completed report in any format, optionally compressed or emailed."""
    export = await get_report_export_service().export_report(db, identity, report_id, data)
    return ReportExportResponse(**report_export_view(export))


@router.post("/exports/bulk", response_model=ReportExportResponse)
async def bulk_export_reports(
    data: BulkReportExportRequest,
    db: DbSession,
    identity: CurrentIdentity,
) -> ReportExportResponse:
    """Export several completed reports into one zip archive."""
    export = await get_report_export_service().bulk_export(db, identity, data)
    return ReportExportResponse(**report_export_view(export))


@router.get("/exports", response_model=ReportExportListResponse)
async def list_report_exports(
    db: DbSession,
    identity: CurrentIdentity,
    format: Optional[ReportFormat] = Query(None),
    delivery_method: Optional[ExportDeliveryMethod] = Query(None, alias="deliveryMethod"),
    export_status: Optional[ReportExportStatus] = Query(None, alias="status"),
    kind: Optional[ReportExportKind] = Query(None),
    date_from: Optional[date] = Query(None, alias="dateFrom"),
    date_to: Optional[date] = Query(None, alias="dateTo"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> ReportExportListResponse:
    """Export history, newest first, with totals over every matching export."""
    exports, total, summary = await get_report_export_service().list_exports(
        db,
        identity,
        format=format,
        delivery_method=delivery_method,
        status=export_status,
        kind=kind,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    return ReportExportListResponse(
        items=[ReportExportResponse(**report_export_view(e)) for e in exports],
        pagination=PageInfo.build(total, limit, offset),
        summary=ReportExportSummary(**summary),
    )


@router.get("/exports/{export_id}", response_model=ReportExportResponse)
async def get_report_export(
    export_id: str,
    db: DbSession,
    identity: CurrentIdentity,
) -> ReportExportResponse:
    """Get a report export by ID."""
    export = await get_report_export_service().get_export(db, identity, export_id)
    return ReportExportResponse(**report_export_view(export))


@router.delete("/exports/{export_id}", response_model=ReportExportDeleteResponse)
async def delete_report_export(
    export_id: str,
    db: DbSession,
    identity: CurrentIdentity,
) -> ReportExportDeleteResponse:
    """Delete an export's file; it stays in the history as DELETED."""
    export = await get_report_export_service().delete_export(db, identity, export_id)
    return ReportExportDeleteResponse(
        id=export.id,
        status=export.status,
        deleted_at=export.deleted_at,
    )


@router.get("/exports/{export_id}/download")
async def download_report_export(
    export_id: str,
    db: DbSession,
    identity: CurrentIdentity,
) -> Response:
    """Download an export file before it expires."""
    export, content = await get_report_export_service().read_export_file(db, identity, export_id)
    return Response(
        content=content,
        media_type=export.content_type or "application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{export.file_name}"'},
    )
