"""Report schedule API endpoints."""

from typing import Optional

from fastapi import APIRouter, Query, status

from medreports.api.deps import CurrentIdentity, DbSession
from medreports.core.exceptions import PermissionDeniedError
from medreports.models.report import ReportType
from medreports.models.schedule import ScheduleFrequency
from medreports.schemas.common import PageInfo
from medreports.schemas.schedule import (
    DispatchResponse,
    DispatchResult,
    ScheduleCreate,
    ScheduleListResponse,
    ScheduleResponse,
    ScheduleSummary,
    ScheduleUpdate,
)
from medreports.services.report import PRIVILEGED_ROLES
from medreports.services.schedule import ScheduleService, schedule_view

router = APIRouter()


def get_schedule_service() -> ScheduleService:
    """Get schedule service instance."""
    return ScheduleService()


@router.post("", response_model=ScheduleResponse, status_code=status.HTTP_201_CREATED)
async def create_schedule(
    data: ScheduleCreate,
    db: DbSession,
    identity: CurrentIdentity,
) -> ScheduleResponse:
    """
    Schedule a report.

    Either schedules an existing PENDING report (``reportId``) or creates
    the report definition from ``title``, ``type`` and ``parameters``.
    """
    schedule, report = await get_schedule_service().schedule_report(db, identity, data)
    return ScheduleResponse(**schedule_view(schedule, report))


@router.get("", response_model=ScheduleListResponse)
async def list_schedules(
    db: DbSession,
    identity: CurrentIdentity,
    is_active: Optional[bool] = Query(None, alias="isActive"),
    frequency: Optional[ScheduleFrequency] = Query(None),
    report_type: Optional[ReportType] = Query(None, alias="reportType"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> ScheduleListResponse:
    """List schedules with a summary by frequency and state."""
    rows, total, summary = await get_schedule_service().list_schedules(
        db,
        identity,
        is_active=is_active,
        frequency=frequency.value if frequency else None,
        report_type=report_type.value if report_type else None,
        limit=limit,
        offset=offset,
    )
    return ScheduleListResponse(
        items=[ScheduleResponse(**schedule_view(s, r)) for s, r in rows],
        pagination=PageInfo.build(total, limit, offset),
        summary=ScheduleSummary(**summary),
    )


@router.post("/dispatch", response_model=DispatchResponse)
async def dispatch_due_schedules(
    db: DbSession,
    identity: CurrentIdentity,
) -> DispatchResponse:
    """
    Run every due schedule.

    Called by an external trigger such as cron; restricted to admins and
    supervisors.
    """
    if identity.role not in PRIVILEGED_ROLES:
        raise PermissionDeniedError(resource="schedule", action="dispatch")
    results = await get_schedule_service().dispatch_due(db)
    return DispatchResponse(
        dispatched=len(results),
        results=[DispatchResult(**r) for r in results],
    )


@router.get("/{schedule_id}", response_model=ScheduleResponse)
async def get_schedule(
    schedule_id: str,
    db: DbSession,
    identity: CurrentIdentity,
) -> ScheduleResponse:
    """Get a schedule by ID."""
    schedule, report = await get_schedule_service().get_schedule_for(db, schedule_id, identity)
    return ScheduleResponse(**schedule_view(schedule, report))


@router.put("/{schedule_id}", response_model=ScheduleResponse)
async def update_schedule(
    schedule_id: str,
    data: ScheduleUpdate,
    db: DbSession,
    identity: CurrentIdentity,
) -> ScheduleResponse:
    """Update recurrence, recipients or end date; the next run is recomputed."""
    schedule, report = await get_schedule_service().update_schedule(
        db, identity, schedule_id, data
    )
    return ScheduleResponse(**schedule_view(schedule, report))


@router.delete("/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_schedule(
    schedule_id: str,
    db: DbSession,
    identity: CurrentIdentity,
) -> None:
    """Deactivate a schedule."""
    await get_schedule_service().delete_schedule(db, identity, schedule_id)
