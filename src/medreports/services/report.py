"""Report service: creation, status transitions, listing and cancellation."""

import math
from datetime import datetime
from typing import Any, Optional

from pydantic import TypeAdapter
from pydantic.alias_generators import to_snake
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from medreports.core.config import settings
from medreports.core.exceptions import (
    CancelledByUserError,
    InvalidSortFieldError,
    InvalidTransitionError,
    PermissionDeniedError,
    ReportNotFoundError,
    TemplateNotFoundError,
    ValidationError,
)
from medreports.core.logging import get_logger
from medreports.db.base import dump_json, ensure_utc, utc_now
from medreports.models.activity_log import ActivityAction
from medreports.models.report import (
    TERMINAL_REPORT_STATUSES,
    Report,
    ReportStatus,
    ReportType,
    transition_sources,
)
from medreports.models.schedule import ReportSchedule
from medreports.models.template import ReportTemplate
from medreports.schemas.common import Identity
from medreports.schemas.report import (
    BaseReportParameters,
    ReportCreate,
    ReportListFilters,
    ReportParameters,
)
from medreports.services.aggregation import (
    resolve_date_range,
    validate_date_range,
    validate_references,
)
from medreports.services.audit_service import AuditService

logger = get_logger(__name__)

_PARAMETERS = TypeAdapter(ReportParameters)

# Seconds, by report type
BASE_GENERATION_SECONDS = {
    ReportType.APPOINTMENT_SUMMARY: 30,
    ReportType.REVENUE_ANALYSIS: 60,
    ReportType.AGENT_PERFORMANCE: 45,
    ReportType.CUSTOMER_SATISFACTION: 90,
    ReportType.OPERATIONAL_METRICS: 120,
}

SORTABLE_FIELDS = {
    "created_at": Report.created_at,
    "completed_at": Report.completed_at,
    "title": Report.title,
    "type": Report.type,
    "status": Report.status,
}

PRIVILEGED_ROLES = ("ADMIN", "SUPERVISOR")


def parse_parameters(report_type: ReportType | str, raw: dict[str, Any]) -> BaseReportParameters:
    """Decode a stored parameter document into its typed model."""
    return _PARAMETERS.validate_python({**raw, "kind": ReportType(report_type).value})


def dump_parameters(params: BaseReportParameters) -> str:
    return dump_json(params.model_dump(mode="json"))


def estimate_generation_seconds(report_type: ReportType | str, params: BaseReportParameters) -> int:
    """Rough generation time from report type, range length and include-flags."""
    estimate = BASE_GENERATION_SECONDS.get(ReportType(report_type), 60)

    date_from, date_to = resolve_date_range(params)
    days = (date_to - date_from).days
    if days > 30:
        estimate += 30
    if days > 90:
        estimate += 60
    if days > 180:
        estimate += 120

    if params.include_details:
        estimate += 30
    if params.include_charts:
        estimate += 15
    return estimate


def can_manage(report: Report, identity: Identity) -> bool:
    return report.generated_by_id == identity.user_id or identity.role.upper() in PRIVILEGED_ROLES


def report_view(report: Report, now: Optional[datetime] = None) -> dict[str, Any]:
    """Report fields plus the derived, never-persisted view fields."""
    now = ensure_utc(now or utc_now())
    created = ensure_utc(report.created_at)

    generation_seconds = None
    if report.completed_at is not None:
        generation_seconds = round((ensure_utc(report.completed_at) - created).total_seconds())

    return {
        **report.to_dict(),
        "parameters": report.get_parameters_dict(),
        "generation_seconds": generation_seconds,
        "is_scheduled": report.scheduled_at is not None,
        "is_overdue": (
            report.scheduled_at is not None
            and report.status == ReportStatus.PENDING.value
            and now > ensure_utc(report.scheduled_at)
        ),
        "can_download": report.status == ReportStatus.COMPLETED.value and bool(report.file_path),
        "age_days": max(math.ceil((now - created).total_seconds() / 86400), 0),
    }


# =============================================================================
# Report Service
# =============================================================================


class ReportService:
    """Service for report record operations."""

    def __init__(self) -> None:
        self.audit = AuditService()

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    async def validate_parameters(
        self,
        db: AsyncSession,
        params: BaseReportParameters,
        max_days: Optional[int] = None,
    ) -> int:
        """
        Check the date range and filter references before anything is written.

        Returns:
            Span of the resolved date range in days

        Raises:
            InvalidDateRangeError: If the range is inverted
            RangeTooLargeError: If the range exceeds the configured maximum
            InvalidReferenceError: If filters name unknown entities
        """
        date_from, date_to = resolve_date_range(params)
        days = validate_date_range(
            date_from, date_to, max_days if max_days is not None else settings.report_max_range_days
        )
        await validate_references(db, params)
        return days

    async def get_usable_template(
        self,
        db: AsyncSession,
        template_id: str,
        report_type: ReportType | str,
    ) -> ReportTemplate:
        template = await db.get(ReportTemplate, template_id)
        if not template or template.is_deleted or not template.is_active:
            raise TemplateNotFoundError(template_id)

        report_type = ReportType(report_type).value
        if template.report_type not in (report_type, "default"):
            raise ValidationError(
                message="Template does not match the report type",
                errors=[
                    {
                        "field": "templateId",
                        "message": (
                            f"Template is for {template.report_type}, report is {report_type}"
                        ),
                        "value": template_id,
                    }
                ],
            )
        return template

    # -------------------------------------------------------------------------
    # CRUD Operations
    # -------------------------------------------------------------------------

    async def create_report(
        self,
        db: AsyncSession,
        identity: Identity,
        report_data: ReportCreate,
    ) -> tuple[Report, int]:
        """Create a report in PENDING state.

        Args:
            db: Database session
            identity: Caller, recorded as the report owner
            report_data: Validated report request

        Returns:
            Tuple of (report, estimated generation seconds)

        Raises:
            InvalidDateRangeError: If dateFrom is after dateTo
            RangeTooLargeError: If the range exceeds the maximum span
            InvalidReferenceError: If filters reference unknown entities
            TemplateNotFoundError: If the template does not exist
        """
        params = report_data.parameters
        await self.validate_parameters(db, params)
        if report_data.template_id:
            await self.get_usable_template(db, report_data.template_id, report_data.type)

        report = Report(
            title=report_data.title,
            description=report_data.description,
            type=report_data.type.value,
            parameters=dump_parameters(params),
            status=ReportStatus.PENDING.value,
            generated_by_id=identity.user_id,
            template_id=report_data.template_id,
        )
        db.add(report)
        await db.flush()

        await self.audit.log_action(
            db,
            action=ActivityAction.REPORT_CREATED,
            entity_type="report",
            entity_id=report.id,
            user_id=identity.user_id,
            details={
                "title": report.title,
                "type": report.type,
                "format": params.format.value,
                "group_by": params.group_by,
            },
        )
        await db.commit()

        logger.info(
            "Report created",
            extra={"report_id": report.id, "report_type": report.type, "user_id": identity.user_id},
        )
        return report, estimate_generation_seconds(report.type, params)

    async def get_report(self, db: AsyncSession, report_id: str) -> Report:
        """Get a report by ID.

        Raises:
            ReportNotFoundError: If the report is missing or soft-deleted
        """
        report = await db.get(Report, report_id, populate_existing=True)
        if not report or report.is_deleted:
            raise ReportNotFoundError(report_id)
        return report

    async def get_report_for(self, db: AsyncSession, report_id: str, identity: Identity) -> Report:
        """Get a report the caller may manage.

        Raises:
            ReportNotFoundError: If the report is missing
            PermissionDeniedError: If the caller is neither owner nor privileged
        """
        report = await self.get_report(db, report_id)
        if not can_manage(report, identity):
            raise PermissionDeniedError(resource="report", action="access")
        return report

    async def list_reports(
        self,
        db: AsyncSession,
        identity: Identity,
        filters: Optional[ReportListFilters] = None,
        limit: int = 50,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> tuple[list[Report], int, dict[str, Any]]:
        """List reports with filters and statistics.

        Agents only see their own reports; admins and supervisors see all.

        Args:
            db: Database session
            identity: Caller
            filters: Optional type/status/owner/createdAt/search filters
            limit: Page size
            offset: Rows to skip
            sort_by: One of created_at, completed_at, title, type, status
            sort_order: asc or desc

        Returns:
            Tuple of (reports, total count, statistics)

        Raises:
            InvalidSortFieldError: If sort_by is not allowed
        """
        sort_column = SORTABLE_FIELDS.get(to_snake(sort_by))
        if sort_column is None:
            raise InvalidSortFieldError(sort_by, sorted(SORTABLE_FIELDS))

        filters = filters or ReportListFilters()
        owner_id = filters.generated_by_id
        if identity.role.upper() not in PRIVILEGED_ROLES:
            owner_id = identity.user_id

        conditions: list[Any] = [Report.deleted_at.is_(None)]
        if owner_id:
            conditions.append(Report.generated_by_id == owner_id)
        if filters.type:
            conditions.append(Report.type == filters.type.value)
        if filters.date_from:
            conditions.append(Report.created_at >= filters.date_from)
        if filters.date_to:
            conditions.append(Report.created_at <= filters.date_to)
        if filters.search:
            pattern = f"%{filters.search}%"
            conditions.append(or_(Report.title.ilike(pattern), Report.description.ilike(pattern)))

        statistics = await self._statistics(db, conditions)

        if filters.status:
            conditions.append(Report.status == filters.status.value)

        count_query = select(func.count()).select_from(Report).where(*conditions)
        total = (await db.execute(count_query)).scalar() or 0

        order = sort_column.asc() if sort_order.lower() == "asc" else sort_column.desc()
        query = (
            select(Report)
            .where(*conditions)
            .order_by(order, Report.id)
            .offset(offset)
            .limit(limit)
        )
        result = await db.execute(query)
        return list(result.scalars().all()), total, statistics

    async def _statistics(self, db: AsyncSession, conditions: list[Any]) -> dict[str, Any]:
        result = await db.execute(
            select(Report.status, func.count()).where(*conditions).group_by(Report.status)
        )
        by_status = {status: count for status, count in result.all()}

        now = utc_now()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        this_month = (
            await db.execute(
                select(func.count())
                .select_from(Report)
                .where(*conditions, Report.created_at >= month_start)
            )
        ).scalar() or 0

        total = sum(by_status.values())
        completed = by_status.get(ReportStatus.COMPLETED.value, 0)
        return {
            "total": total,
            **{status.value.lower(): by_status.get(status.value, 0) for status in ReportStatus},
            "this_month": this_month,
            "success_rate": round(completed * 100 / total, 2) if total else 0.0,
        }

    async def delete_report(self, db: AsyncSession, report_id: str, identity: Identity) -> None:
        """Soft-delete a report and deactivate any schedule attached to it.

        Raises:
            ReportNotFoundError: If report not found
            PermissionDeniedError: If the caller may not manage it
        """
        report = await self.get_report_for(db, report_id, identity)
        report.soft_delete()
        report.scheduled_at = None
        await self._deactivate_schedules(db, report.id)

        await self.audit.log_action(
            db,
            action=ActivityAction.REPORT_DELETED,
            entity_type="report",
            entity_id=report.id,
            user_id=identity.user_id,
        )
        await db.commit()

    # -------------------------------------------------------------------------
    # Status Transitions
    # -------------------------------------------------------------------------

    async def transition(
        self,
        db: AsyncSession,
        report_id: str,
        new_status: ReportStatus | str,
        error_message: Optional[str] = None,
        **values: Any,
    ) -> Report:
        """Move a report to a new status with an atomic compare-and-set.

        GENERATING stamps ``started_at``; terminal statuses stamp ``completed_at``.

        Args:
            db: Database session
            report_id: Report ID
            new_status: Target status
            error_message: Failure reason for FAILED
            **values: Extra columns to set in the same update

        Returns:
            The refreshed report

        Raises:
            ReportNotFoundError: If report not found
            InvalidTransitionError: If the current status does not allow it
        """
        new = ReportStatus(new_status)
        now = utc_now()

        changes: dict[str, Any] = {"status": new.value, "updated_at": now, **values}
        if new == ReportStatus.GENERATING:
            changes["started_at"] = now
        if new in TERMINAL_REPORT_STATUSES:
            changes["completed_at"] = now
        if error_message is not None:
            changes["error_message"] = error_message

        stmt = (
            update(Report)
            .where(
                Report.id == report_id,
                Report.deleted_at.is_(None),
                Report.status.in_(transition_sources(new)),
            )
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            current = await self.get_report(db, report_id)
            raise InvalidTransitionError("Report", report_id, current.status, new.value)

        await db.commit()
        return await self.get_report(db, report_id)

    async def cancel_report(
        self,
        db: AsyncSession,
        report_id: str,
        identity: Identity,
    ) -> Report:
        """Cancel a report.

        - GENERATING: marked FAILED with reason CancelledByUser
        - PENDING with a planned run: the plan is cleared, history untouched
        - PENDING otherwise: marked CANCELLED

        Raises:
            ReportNotFoundError: If report not found
            PermissionDeniedError: If the caller may not manage it
            InvalidTransitionError: If the report already finished
        """
        from medreports.services.report_generation import ReportGenerator

        report = await self.get_report_for(db, report_id, identity)

        if report.status == ReportStatus.GENERATING.value:
            report = await self.transition(
                db, report.id, ReportStatus.FAILED, error_message=CancelledByUserError.reason
            )
            ReportGenerator.cancel_running(report.id)
        elif report.status == ReportStatus.PENDING.value and report.scheduled_at is not None:
            report.scheduled_at = None
            await self._deactivate_schedules(db, report.id)
            await db.commit()
        else:
            report = await self.transition(db, report.id, ReportStatus.CANCELLED)

        await self.audit.log_action(
            db,
            action=ActivityAction.REPORT_CANCELLED,
            entity_type="report",
            entity_id=report.id,
            user_id=identity.user_id,
            details={"status": report.status},
        )
        await db.commit()

        logger.info("Report cancelled", extra={"report_id": report.id, "status": report.status})
        return report

    async def _deactivate_schedules(self, db: AsyncSession, report_id: str) -> None:
        await db.execute(
            update(ReportSchedule)
            .where(ReportSchedule.report_id == report_id, ReportSchedule.is_active.is_(True))
            .values(is_active=False, next_run_at=None, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
