"""Data export API endpoints."""

from typing import Optional, Union

from fastapi import APIRouter, Query, Response, status

from medreports.api.deps import CurrentIdentity, DbSession
from medreports.models.export_job import ExportEntityType, ExportJobStatus
from medreports.models.report import ReportFormat
from medreports.schemas.common import PageInfo
from medreports.schemas.export import (
    ExportJobListResponse,
    ExportJobResponse,
    ExportRequest,
    ExportTemplateCreate,
    ExportTemplateListResponse,
    ExportTemplateResponse,
    InlineExportResponse,
)
from medreports.services.export_job_service import ExportService, export_job_view
from medreports.services.export_templates import ExportTemplateService, export_template_view

router = APIRouter()


def get_export_service() -> ExportService:
    """Get export service instance."""
    return ExportService()


def _attachment(content: bytes, file_name: str, content_type: str) -> Response:
    return Response(
        content=content,
        media_type=content_type,
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


@router.post("", response_model=None)
async def export_data(
    data: ExportRequest,
    db: DbSession,
    identity: CurrentIdentity,
) -> Union[InlineExportResponse, Response]:
    """
    Export an entity collection.

    JSON exports come back inline; every other format is returned as a file
    download named after the export. A ``templateId`` fills in the template's
    columns, filters and format.
    """
    data = await ExportTemplateService().apply_template(db, identity, data)
    service = get_export_service()
    outcome = await service.run_export(db, identity, data)
    job = outcome.job

    if job.format == ReportFormat.JSON.value:
        return InlineExportResponse(
            job_id=job.id,
            file_name=job.file_name,
            record_count=job.total_records or 0,
            size_bytes=job.file_size or 0,
            data=outcome.rows or [],
        )

    _, content, content_type = await service.read_export_file(db, identity, job.id)
    return _attachment(content, job.file_name, content_type)


@router.get("/jobs", response_model=ExportJobListResponse)
async def list_export_jobs(
    db: DbSession,
    identity: CurrentIdentity,
    job_status: Optional[ExportJobStatus] = Query(None, alias="status"),
    entity_type: Optional[ExportEntityType] = Query(None, alias="entityType"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> ExportJobListResponse:
    """List the caller's export jobs, newest first."""
    jobs, total = await get_export_service().list_jobs(
        db, identity, status=job_status, entity_type=entity_type, limit=limit, offset=offset
    )
    return ExportJobListResponse(
        items=[ExportJobResponse(**export_job_view(j)) for j in jobs],
        pagination=PageInfo.build(total, limit, offset),
    )


@router.get("/jobs/{job_id}", response_model=ExportJobResponse)
async def get_export_job(
    job_id: str,
    db: DbSession,
    identity: CurrentIdentity,
) -> ExportJobResponse:
    """Get an export job by ID."""
    job = await get_export_service().get_job(db, identity, job_id)
    return ExportJobResponse(**export_job_view(job))


@router.post("/jobs/{job_id}/cancel", response_model=ExportJobResponse)
async def cancel_export_job(
    job_id: str,
    db: DbSession,
    identity: CurrentIdentity,
) -> ExportJobResponse:
    """Cancel a running export job."""
    job = await get_export_service().cancel_job(db, identity, job_id)
    return ExportJobResponse(**export_job_view(job))


@router.get("/jobs/{job_id}/download")
async def download_export(
    job_id: str,
    db: DbSession,
    identity: CurrentIdentity,
) -> Response:
    """Download a completed export file."""
    job, content, content_type = await get_export_service().read_export_file(db, identity, job_id)
    return _attachment(content, job.file_name, content_type)


# =============================================================================
# Export templates
# =============================================================================


@router.get("/templates", response_model=ExportTemplateListResponse)
async def list_export_templates(
    db: DbSession,
    identity: CurrentIdentity,
    entity_type: Optional[ExportEntityType] = Query(None, alias="entityType"),
) -> ExportTemplateListResponse:
    """List built-in export templates and the caller's saved ones."""
    views = await ExportTemplateService().list_templates(db, identity, entity_type=entity_type)
    return ExportTemplateListResponse(items=[ExportTemplateResponse(**v) for v in views])


@router.post(
    "/templates",
    response_model=ExportTemplateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_export_template(
    data: ExportTemplateCreate,
    db: DbSession,
    identity: CurrentIdentity,
) -> ExportTemplateResponse:
    """Save an export template. Columns default to the entity's standard set."""
    template = await ExportTemplateService().create_template(db, identity, data)
    return ExportTemplateResponse(**export_template_view(template))
