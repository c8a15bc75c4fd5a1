"""Schedule service: registering, updating and dispatching recurring reports."""

import asyncio
from collections import Counter
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from medreports.core.config import settings
from medreports.core.exceptions import (
    ConflictError,
    InvalidReferenceError,
    InvalidScheduleError,
    PermissionDeniedError,
    ReportingError,
    ScheduleNotFoundError,
)
from medreports.core.logging import get_logger
from medreports.db.base import ensure_utc, utc_now
from medreports.metrics import scheduled_dispatch_counter
from medreports.models.activity_log import ActivityAction
from medreports.models.booking import User
from medreports.models.report import Report, ReportStatus
from medreports.models.schedule import DeliveryMethod, ReportSchedule, ScheduleFrequency
from medreports.schemas.common import Identity
from medreports.schemas.schedule import Recipient, ScheduleCreate, ScheduleSpec, ScheduleUpdate
from medreports.services.audit_service import AuditService
from medreports.services.email_service import EmailService
from medreports.services.notification import NotificationService
from medreports.services.recurrence import first_run, is_overdue, next_run, validate_schedule
from medreports.services.report import PRIVILEGED_ROLES, ReportService, dump_parameters
from medreports.services.report_generation import ReportGenerator

logger = get_logger(__name__)

RECURRENCE_FIELDS = ("frequency", "day_of_week", "day_of_month", "hour", "minute", "timezone", "is_active")


def schedule_view(
    schedule: ReportSchedule,
    report: Report,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Schedule fields joined with its report, plus the overdue flag."""
    return {
        **schedule.to_dict(),
        "title": report.title,
        "report_type": report.type,
        "recipients": schedule.get_recipients_list(),
        "next_run_time": schedule.next_run_at,
        "is_overdue": is_overdue(schedule, schedule.last_known_run, now),
    }


# =============================================================================
# Schedule Service
# =============================================================================


class ScheduleService:
    """Service for report schedules."""

    def __init__(self, generator: Optional[ReportGenerator] = None) -> None:
        self.reports = ReportService()
        self.generator = generator or ReportGenerator()
        self.audit = AuditService()
        self.notifications = NotificationService()
        self.email = EmailService()

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def get_schedule(self, db: AsyncSession, schedule_id: str) -> ReportSchedule:
        schedule = await db.get(ReportSchedule, schedule_id)
        if not schedule:
            raise ScheduleNotFoundError(schedule_id)
        return schedule

    async def get_schedule_for(
        self,
        db: AsyncSession,
        schedule_id: str,
        identity: Identity,
    ) -> tuple[ReportSchedule, Report]:
        """Get a schedule and its report, checking the caller may manage it.

        Raises:
            ScheduleNotFoundError: If the schedule or its report is gone
            PermissionDeniedError: If the caller is neither creator nor privileged
        """
        schedule = await self.get_schedule(db, schedule_id)
        report = await db.get(Report, schedule.report_id)
        if report is None or report.is_deleted:
            raise ScheduleNotFoundError(schedule_id)
        if (
            schedule.created_by_id != identity.user_id
            and identity.role.upper() not in PRIVILEGED_ROLES
        ):
            raise PermissionDeniedError(resource="schedule", action="manage")
        return schedule, report

    async def _verify_users(
        self,
        db: AsyncSession,
        generated_by_id: Optional[str],
        recipients: list[Recipient],
    ) -> None:
        """All unknown or inactive user ids are reported together."""
        wanted = set(r.user_id for r in recipients)
        if generated_by_id:
            wanted.add(generated_by_id)
        if not wanted:
            return

        result = await db.execute(
            select(User.id).where(User.id.in_(wanted), User.is_active.is_(True))
        )
        found = set(result.scalars().all())

        missing: dict[str, list[str]] = {}
        if generated_by_id and generated_by_id not in found:
            missing["generated_by_id"] = [generated_by_id]
        absent = [r.user_id for r in recipients if r.user_id not in found]
        if absent:
            missing["recipients"] = list(dict.fromkeys(absent))
        if missing:
            raise InvalidReferenceError(missing)

    # -------------------------------------------------------------------------
    # CRUD Operations
    # -------------------------------------------------------------------------

    async def schedule_report(
        self,
        db: AsyncSession,
        identity: Identity,
        data: ScheduleCreate,
        now: Optional[datetime] = None,
    ) -> tuple[ReportSchedule, Report]:
        """Register a recurring report.

        Args:
            db: Database session
            identity: Caller
            data: New report definition or existing report id, plus recurrence
            now: Reference instant for the first run

        Returns:
            Tuple of (schedule, report definition)

        Raises:
            InvalidScheduleError: If the recurrence is malformed
            InvalidReferenceError: If the generator or recipients are unknown
            ConflictError: If the report already has an active schedule
        """
        now = ensure_utc(now or utc_now())
        validate_schedule(data.schedule)

        owner_id = data.generated_by_id or identity.user_id
        await self._verify_users(db, owner_id, data.recipients)

        if data.report_id:
            report = await self.reports.get_report_for(db, data.report_id, identity)
            if report.status != ReportStatus.PENDING.value:
                raise ConflictError(
                    message="Only PENDING reports can be scheduled; each run creates a new report",
                    code="REPORT_NOT_SCHEDULABLE",
                    details={"report_id": report.id, "status": report.status},
                )
            existing = await db.execute(
                select(func.count())
                .select_from(ReportSchedule)
                .where(ReportSchedule.report_id == report.id, ReportSchedule.is_active.is_(True))
            )
            if existing.scalar():
                raise ConflictError(
                    message="Report already has an active schedule",
                    code="SCHEDULE_EXISTS",
                    details={"report_id": report.id},
                )
        else:
            await self.reports.validate_parameters(db, data.parameters)
            if data.template_id:
                await self.reports.get_usable_template(db, data.template_id, data.type)
            report = Report(
                title=data.title,
                description=data.description,
                type=data.type.value,
                parameters=dump_parameters(data.parameters),
                status=ReportStatus.PENDING.value,
                generated_by_id=owner_id,
                template_id=data.template_id,
            )
            db.add(report)

        start_date = ensure_utc(data.start_date) if data.start_date else now
        next_run_at = first_run(data.schedule, start_date, now)
        if data.end_date and next_run_at > ensure_utc(data.end_date):
            raise InvalidScheduleError(
                [
                    {
                        "field": "endDate",
                        "message": "No run falls between start and end date",
                        "value": data.end_date.isoformat(),
                    }
                ]
            )

        schedule = ReportSchedule(
            created_by_id=identity.user_id,
            frequency=ScheduleFrequency(data.schedule.frequency).value,
            day_of_week=data.schedule.day_of_week,
            day_of_month=data.schedule.day_of_month,
            hour=data.schedule.hour,
            minute=data.schedule.minute,
            timezone=data.schedule.timezone,
            is_active=data.schedule.is_active,
            start_date=start_date,
            end_date=ensure_utc(data.end_date) if data.end_date else None,
            next_run_at=next_run_at if data.schedule.is_active else None,
        )
        schedule.set_recipients([r.model_dump(mode="json") for r in data.recipients])
        await db.flush()
        schedule.report_id = report.id
        db.add(schedule)
        await db.flush()

        report.schedule_id = schedule.id
        report.scheduled_at = schedule.next_run_at

        await self.audit.log_action(
            db,
            action=ActivityAction.SCHEDULE_CREATED,
            entity_type="schedule",
            entity_id=schedule.id,
            user_id=identity.user_id,
            details={
                "report_id": report.id,
                "frequency": schedule.frequency,
                "next_run_at": schedule.next_run_at,
            },
        )
        await self.notifications.notify_many(
            db,
            [r.user_id for r in data.recipients],
            title="Scheduled report",
            message=(
                f'You will receive "{report.title}" {schedule.frequency}, '
                f"starting {next_run_at.strftime('%Y-%m-%d %H:%M UTC')}."
            ),
            type="SCHEDULE",
            data={"schedule_id": schedule.id, "report_id": report.id},
        )
        await db.commit()

        logger.info(
            "Report scheduled",
            extra={
                "schedule_id": schedule.id,
                "report_id": report.id,
                "frequency": schedule.frequency,
                "next_run_at": schedule.next_run_at,
            },
        )
        return schedule, report

    async def update_schedule(
        self,
        db: AsyncSession,
        identity: Identity,
        schedule_id: str,
        data: ScheduleUpdate,
        now: Optional[datetime] = None,
    ) -> tuple[ReportSchedule, Report]:
        """Merge changes into a schedule and recompute its next run.

        Raises:
            ScheduleNotFoundError: If the schedule does not exist
            InvalidScheduleError: If the merged recurrence is malformed
            InvalidReferenceError: If new recipients are unknown
        """
        now = ensure_utc(now or utc_now())
        schedule, report = await self.get_schedule_for(db, schedule_id, identity)

        merged = {name: getattr(schedule, name) for name in RECURRENCE_FIELDS}
        if data.schedule is not None:
            merged.update(data.schedule.model_dump(exclude_unset=True, exclude_none=True))
        if data.is_active is not None:
            merged["is_active"] = data.is_active
        spec = ScheduleSpec(**merged)
        validate_schedule(spec)

        if data.recipients is not None:
            await self._verify_users(db, None, data.recipients)
            schedule.set_recipients([r.model_dump(mode="json") for r in data.recipients])
        if data.end_date is not None:
            schedule.end_date = ensure_utc(data.end_date)

        schedule.frequency = ScheduleFrequency(spec.frequency).value
        schedule.day_of_week = spec.day_of_week
        schedule.day_of_month = spec.day_of_month
        schedule.hour = spec.hour
        schedule.minute = spec.minute
        schedule.timezone = spec.timezone
        schedule.is_active = spec.is_active and not schedule.has_ended(now)

        anchor = max(now, ensure_utc(schedule.start_date))
        schedule.next_run_at = next_run(spec, anchor) if schedule.is_active else None
        if schedule.next_run_at and schedule.has_ended(schedule.next_run_at):
            schedule.is_active = False
            schedule.next_run_at = None
        report.scheduled_at = schedule.next_run_at

        await self.audit.log_action(
            db,
            action=ActivityAction.SCHEDULE_UPDATED,
            entity_type="schedule",
            entity_id=schedule.id,
            user_id=identity.user_id,
            details={"frequency": schedule.frequency, "is_active": schedule.is_active},
        )
        await db.commit()
        return schedule, report

    async def delete_schedule(
        self,
        db: AsyncSession,
        identity: Identity,
        schedule_id: str,
    ) -> ReportSchedule:
        """Deactivate a schedule. Past runs and the definition stay untouched."""
        schedule, report = await self.get_schedule_for(db, schedule_id, identity)
        schedule.is_active = False
        schedule.next_run_at = None
        report.scheduled_at = None

        await self.audit.log_action(
            db,
            action=ActivityAction.SCHEDULE_DELETED,
            entity_type="schedule",
            entity_id=schedule.id,
            user_id=identity.user_id,
        )
        await db.commit()
        return schedule

    async def list_schedules(
        self,
        db: AsyncSession,
        identity: Identity,
        is_active: Optional[bool] = None,
        frequency: Optional[str] = None,
        report_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        now: Optional[datetime] = None,
    ) -> tuple[list[tuple[ReportSchedule, Report]], int, dict[str, Any]]:
        """List schedules with a summary by frequency, activity and overdue state.

        Returns:
            Tuple of (page of (schedule, report) pairs, total, summary)
        """
        now = ensure_utc(now or utc_now())
        conditions: list[Any] = [Report.deleted_at.is_(None)]
        if identity.role.upper() not in PRIVILEGED_ROLES:
            conditions.append(ReportSchedule.created_by_id == identity.user_id)
        if is_active is not None:
            conditions.append(ReportSchedule.is_active.is_(is_active))
        if frequency:
            conditions.append(ReportSchedule.frequency == frequency)
        if report_type:
            conditions.append(Report.type == report_type)

        base = (
            select(ReportSchedule, Report)
            .join(Report, Report.id == ReportSchedule.report_id)
            .where(*conditions)
        )
        result = await db.execute(base.order_by(ReportSchedule.created_at.desc(), ReportSchedule.id))
        rows = [(schedule, report) for schedule, report in result.all()]

        frequencies = Counter(schedule.frequency for schedule, _ in rows)
        active = sum(1 for schedule, _ in rows if schedule.is_active)
        summary = {
            "total": len(rows),
            "active": active,
            "inactive": len(rows) - active,
            "overdue": sum(
                1 for schedule, _ in rows if is_overdue(schedule, schedule.last_known_run, now)
            ),
            "by_frequency": dict(frequencies),
        }
        return rows[offset : offset + limit], len(rows), summary

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def dispatch_due(
        self,
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        """Run every schedule whose next run is due.

        Each due schedule is claimed with a compare-and-set on its
        ``next_run_at`` so concurrent dispatchers never run it twice. Every
        run is a new Report row pointing back at the schedule.

        Returns:
            One result dict per due schedule
        """
        now = ensure_utc(now or utc_now())
        result = await db.execute(
            select(ReportSchedule.id, ReportSchedule.frequency)
            .where(ReportSchedule.is_active.is_(True), ReportSchedule.next_run_at <= now)
            .order_by(ReportSchedule.next_run_at, ReportSchedule.id)
        )
        due = list(result.all())

        results = []
        for schedule_id, frequency in due:
            outcome = await self._dispatch_one(db, schedule_id, now)
            scheduled_dispatch_counter.labels(frequency=frequency, status=outcome["status"]).inc()
            results.append(outcome)

        if results:
            logger.info(
                "Dispatched scheduled reports",
                extra={"count": len(results), "at": now.isoformat()},
            )
        return results

    async def _dispatch_one(
        self,
        db: AsyncSession,
        schedule_id: str,
        now: datetime,
    ) -> dict[str, Any]:
        schedule = await db.get(ReportSchedule, schedule_id, populate_existing=True)
        definition = await db.get(Report, schedule.report_id, populate_existing=True)

        if schedule.has_ended(now) or definition is None or definition.is_deleted:
            await self._deactivate(db, schedule, definition)
            return {
                "schedule_id": schedule_id,
                "report_id": None,
                "status": "ended",
                "next_run_time": None,
                "error": None,
            }

        due_at = schedule.next_run_at
        following = next_run(schedule, now)
        if schedule.has_ended(following):
            following = None

        claim = await db.execute(
            update(ReportSchedule)
            .where(
                ReportSchedule.id == schedule_id,
                ReportSchedule.is_active.is_(True),
                ReportSchedule.next_run_at == due_at,
            )
            .values(
                next_run_at=following,
                last_run_at=now,
                run_count=ReportSchedule.run_count + 1,
                is_active=following is not None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount != 1:
            # Another dispatcher got there first
            return {
                "schedule_id": schedule_id,
                "report_id": None,
                "status": "skipped",
                "next_run_time": None,
                "error": None,
            }

        run = Report(
            title=definition.title,
            description=definition.description,
            type=definition.type,
            parameters=definition.parameters,
            status=ReportStatus.PENDING.value,
            generated_by_id=definition.generated_by_id,
            template_id=definition.template_id,
            schedule_id=schedule_id,
        )
        db.add(run)
        definition.scheduled_at = following
        await db.commit()
        run_id = run.id

        error = None
        try:
            await self.generator.generate(db, run_id)
            status = "completed"
        except ReportingError as e:
            # Outcome is already recorded on the run report
            status = "failed"
            error = e.message
        except Exception as e:
            logger.exception(f"Scheduled run {run_id} failed: {e}")
            status = "failed"
            error = str(e)

        # Generation may have rolled the session back
        await db.refresh(schedule)
        await db.refresh(definition)
        if status == "completed":
            schedule.last_successful_run = now

        await self.audit.log_action(
            db,
            action=ActivityAction.SCHEDULE_DISPATCHED,
            entity_type="schedule",
            entity_id=schedule_id,
            details={"report_id": run_id, "status": status},
        )
        await self._deliver(db, schedule, definition, run_id, status)
        await db.commit()

        return {
            "schedule_id": schedule_id,
            "report_id": run_id,
            "status": status,
            "next_run_time": following,
            "error": error,
        }

    async def _deactivate(
        self,
        db: AsyncSession,
        schedule: ReportSchedule,
        definition: Optional[Report],
    ) -> None:
        schedule.is_active = False
        schedule.next_run_at = None
        if definition is not None:
            definition.scheduled_at = None
        await db.commit()
        logger.info("Schedule ended", extra={"schedule_id": schedule.id})

    async def _deliver(
        self,
        db: AsyncSession,
        schedule: ReportSchedule,
        definition: Report,
        run_id: str,
        status: str,
    ) -> None:
        """Tell recipients about a finished run. Never raises."""
        recipients = schedule.get_recipients_list()
        if not recipients:
            return

        succeeded = status == "completed"
        title = "Scheduled report ready" if succeeded else "Scheduled report failed"
        message = (
            f'"{definition.title}" has been generated.'
            if succeeded
            else f'"{definition.title}" could not be generated this time.'
        )

        in_app = [
            r["user_id"]
            for r in recipients
            if r.get("delivery_method") != DeliveryMethod.EMAIL.value
        ]
        await self.notifications.notify_many(
            db,
            in_app,
            title=title,
            message=message,
            data={"schedule_id": schedule.id, "report_id": run_id, "status": status},
        )

        by_email = [
            r["user_id"]
            for r in recipients
            if r.get("delivery_method") in (DeliveryMethod.EMAIL.value, DeliveryMethod.BOTH.value)
        ]
        if not by_email or not self.email.is_configured():
            return
        result = await db.execute(select(User.email).where(User.id.in_(by_email)))
        addresses = [email for email in result.scalars().all() if email]
        if addresses:
            outcome = await asyncio.to_thread(
                self.email.send_schedule_run_email,
                to=addresses,
                report_title=definition.title,
                succeeded=succeeded,
                download_path=(
                    f"{settings.api_v1_prefix}/reports/{run_id}/download" if succeeded else None
                ),
            )
            if not outcome.success:
                logger.warning(
                    "Scheduled report email not delivered",
                    extra={"schedule_id": schedule.id, "error": outcome.error},
                )
