"""
Export job service.

Serializes raw entity collections (appointments, patients, doctors, ...)
into a downloadable file. Rows are read and written in bounded chunks so
large exports never sit in memory; only inline JSON exports keep their
rows for the response body.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_snake
from sqlalchemy import Select, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from medreports.core.config import settings
from medreports.core.exceptions import (
    ConflictError,
    ExportFailedError,
    ExportJobNotFoundError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from medreports.core.logging import get_logger
from medreports.db.base import utc_now
from medreports.metrics import export_job_counter
from medreports.models.activity_log import ActivityAction, ActivityLog
from medreports.models.booking import Appointment, Doctor, Hospital, Payment, User
from medreports.models.export_job import (
    ExportEntityType,
    ExportJob,
    ExportJobStatus,
    export_transition_sources,
)
from medreports.models.report import Report, ReportFormat
from medreports.schemas.common import Identity
from medreports.schemas.export import ExportRequest
from medreports.services.aggregation import iter_chunks
from medreports.services.audit_service import AuditService
from medreports.services.email_service import EmailService
from medreports.services.serializer import (
    SerializeOptions,
    create_writer,
    flatten,
    get_writer_class,
    output_file_name,
    record_serialization,
)

logger = get_logger(__name__)

_DAY = TypeAdapter(date)


# =============================================================================
# Entity sources
# =============================================================================


def _appointment_count(column: Any) -> Any:
    return (
        select(func.count(Appointment.id))
        .where(column)
        .correlate_except(Appointment)
        .scalar_subquery()
    )


def _appointments() -> Select:
    return (
        select(
            Appointment.id,
            Appointment.appointment_number,
            Appointment.patient_name,
            Appointment.patient_email,
            Appointment.patient_phone,
            Appointment.session_date,
            Appointment.status,
            Appointment.payment_status,
            Appointment.amount,
            Appointment.rating,
            Doctor.name.label("doctor_name"),
            Doctor.specialization,
            Hospital.name.label("hospital_name"),
            User.name.label("booked_by_name"),
            User.email.label("booked_by_email"),
            Appointment.created_at,
        )
        .join(Doctor, Appointment.doctor_id == Doctor.id)
        .join(Hospital, Appointment.hospital_id == Hospital.id)
        .join(User, Appointment.booked_by_id == User.id)
        .order_by(Appointment.created_at.desc(), Appointment.id)
    )


def _patients() -> Select:
    return select(
        Appointment.patient_name,
        Appointment.patient_email,
        Appointment.patient_phone,
        Appointment.created_at,
    ).order_by(Appointment.created_at.desc(), Appointment.id)


def _doctors() -> Select:
    return (
        select(
            Doctor.id,
            Doctor.name,
            Doctor.email,
            Doctor.specialization,
            Hospital.name.label("hospital_name"),
            Doctor.is_active,
            _appointment_count(Appointment.doctor_id == Doctor.id).label("appointment_count"),
            Doctor.created_at,
        )
        .outerjoin(Hospital, Doctor.hospital_id == Hospital.id)
        .order_by(Doctor.name, Doctor.id)
    )


def _hospitals() -> Select:
    doctor_count = (
        select(func.count(Doctor.id))
        .where(Doctor.hospital_id == Hospital.id)
        .correlate_except(Doctor)
        .scalar_subquery()
    )
    return select(
        Hospital.id,
        Hospital.name,
        Hospital.city,
        Hospital.is_active,
        doctor_count.label("doctor_count"),
        _appointment_count(Appointment.hospital_id == Hospital.id).label("appointment_count"),
        Hospital.created_at,
    ).order_by(Hospital.name, Hospital.id)


def _users() -> Select:
    return select(
        User.id,
        User.name,
        User.email,
        User.phone,
        User.role,
        User.is_active,
        _appointment_count(Appointment.booked_by_id == User.id).label("appointment_count"),
        User.created_at,
    ).order_by(User.created_at.desc(), User.id)


def _payments() -> Select:
    return (
        select(
            Payment.id,
            Payment.amount,
            Payment.status,
            Payment.payment_method,
            Appointment.appointment_number,
            Appointment.patient_name,
            Doctor.name.label("doctor_name"),
            Hospital.name.label("hospital_name"),
            Payment.created_at,
        )
        .join(Appointment, Payment.appointment_id == Appointment.id)
        .join(Doctor, Appointment.doctor_id == Doctor.id)
        .join(Hospital, Appointment.hospital_id == Hospital.id)
        .order_by(Payment.created_at.desc(), Payment.id)
    )


def _reports() -> Select:
    return (
        select(
            Report.id,
            Report.title,
            Report.type,
            Report.status,
            Report.record_count,
            Report.file_size,
            Report.error_message,
            User.name.label("generated_by_name"),
            User.email.label("generated_by_email"),
            Report.created_at,
            Report.completed_at,
        )
        .join(User, Report.generated_by_id == User.id)
        .where(Report.deleted_at.is_(None))
        .order_by(Report.created_at.desc(), Report.id)
    )


def _audit_logs() -> Select:
    return (
        select(
            ActivityLog.id,
            ActivityLog.action,
            ActivityLog.entity_type,
            ActivityLog.entity_id,
            ActivityLog.details,
            ActivityLog.user_id,
            User.name.label("user_name"),
            User.email.label("user_email"),
            ActivityLog.created_at,
        )
        .outerjoin(User, ActivityLog.user_id == User.id)
        .order_by(ActivityLog.created_at.desc(), ActivityLog.id)
    )


@dataclass(frozen=True)
class ExportSource:
    """How one entity collection is read for export."""

    # Model whose columns the request filters apply to
    model: type
    build: Callable[[], Select]
    # Rows sharing the first non-empty value of these fields are written once
    dedupe_on: tuple[str, ...] = field(default_factory=tuple)


EXPORT_SOURCES: dict[ExportEntityType, ExportSource] = {
    ExportEntityType.APPOINTMENTS: ExportSource(Appointment, _appointments),
    ExportEntityType.PATIENTS: ExportSource(
        Appointment, _patients, dedupe_on=("patient_email", "patient_phone")
    ),
    ExportEntityType.DOCTORS: ExportSource(Doctor, _doctors),
    ExportEntityType.HOSPITALS: ExportSource(Hospital, _hospitals),
    ExportEntityType.USERS: ExportSource(User, _users),
    ExportEntityType.PAYMENTS: ExportSource(Payment, _payments),
    ExportEntityType.REPORTS: ExportSource(Report, _reports),
    ExportEntityType.AUDIT_LOGS: ExportSource(ActivityLog, _audit_logs),
}


def _day_bound(key: str, value: Any, errors: list[dict[str, Any]]) -> Optional[date]:
    try:
        return _DAY.validate_python(value)
    except PydanticValidationError:
        errors.append({"field": f"filters.{key}", "message": "Expected a date (YYYY-MM-DD)"})
        return None


def build_export_query(
    entity_type: ExportEntityType,
    filters: dict[str, Any],
    columns: list[str],
) -> Select:
    """Build the row query for an export request.

    ``dateFrom``/``dateTo`` bound the creation time by whole days (both
    inclusive). Every other filter key names a column of the exported
    entity: list values become IN filters, scalars equality.

    Raises:
        ValidationError: Listing every unknown filter key, bad date or unknown column
    """
    source = EXPORT_SOURCES[entity_type]
    stmt = source.build()
    table_columns = source.model.__table__.columns
    errors: list[dict[str, Any]] = []

    for key, value in filters.items():
        name = to_snake(key)
        if name == "date_from":
            day = _day_bound(key, value, errors)
            if day is not None:
                start = datetime.combine(day, time.min, tzinfo=timezone.utc)
                stmt = stmt.where(source.model.created_at >= start)
            continue
        if name == "date_to":
            day = _day_bound(key, value, errors)
            if day is not None:
                end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=timezone.utc)
                stmt = stmt.where(source.model.created_at < end)
            continue

        column = table_columns.get(name)
        if column is None:
            errors.append({"field": f"filters.{key}", "message": "Unknown filter field"})
        elif isinstance(value, (list, tuple)):
            stmt = stmt.where(column.in_(list(value)))
        else:
            stmt = stmt.where(column == value)

    available = set(stmt.selected_columns.keys())
    for column_name in columns:
        if column_name not in available:
            errors.append({"field": "columns", "message": f"Unknown column '{column_name}'"})

    if errors:
        raise ValidationError("Invalid export request", errors)
    return stmt


def export_job_view(job: ExportJob) -> dict[str, Any]:
    view = {
        **job.to_dict(),
        "filters": job.get_filters_dict(),
        "columns": job.get_columns_list(),
        "duration_seconds": job.duration_seconds,
        "download_url": None,
    }
    if job.status == ExportJobStatus.COMPLETED.value and job.format != ReportFormat.JSON.value:
        view["download_url"] = f"{settings.api_v1_prefix}/exports/jobs/{job.id}/download"
    return view


@dataclass
class ExportOutcome:
    job: ExportJob
    content_type: str
    # Only kept for inline JSON exports
    rows: Optional[list[dict[str, Any]]] = None


# =============================================================================
# Export Service
# =============================================================================


class ExportService:
    """Service for export jobs."""

    def __init__(
        self,
        output_dir: Optional[str | Path] = None,
        email: Optional[EmailService] = None,
    ) -> None:
        self.output_dir = Path(output_dir or settings.export_output_dir)
        self.audit = AuditService()
        self.email = email or EmailService()

    # -------------------------------------------------------------------------
    # Running exports
    # -------------------------------------------------------------------------

    async def run_export(
        self,
        db: AsyncSession,
        identity: Identity,
        data: ExportRequest,
    ) -> ExportOutcome:
        """Export an entity collection to a file.

        Args:
            db: Database session
            identity: Caller, recorded as exporter
            data: Export request

        Returns:
            The COMPLETED job, plus the rows for JSON exports

        Raises:
            ValidationError: Bad filters or columns, or nothing matched
            InvalidTransitionError: If the job was cancelled while writing
            ExportFailedError: If reading or writing failed; the job is FAILED
        """
        stmt = build_export_query(data.entity_type, data.filters, data.columns)
        matched = await db.scalar(select(func.count()).select_from(stmt.order_by(None).subquery()))
        if not matched:
            raise ValidationError(
                "No data found for the specified criteria",
                [{"field": "filters", "message": "No matching records"}],
            )

        fmt = ReportFormat(data.format)
        writer_cls = get_writer_class(fmt)
        base_name = data.file_name or f"{data.entity_type.value}_export_{utc_now().date().isoformat()}"

        job = ExportJob(
            exported_by_id=identity.user_id,
            entity_type=data.entity_type.value,
            format=fmt.value,
            file_name=output_file_name(fmt, base_name),
            status=ExportJobStatus.PROCESSING.value,
            started_at=utc_now(),
        )
        job.set_request(data.filters, data.columns)
        db.add(job)
        await db.commit()
        job_id = job.id

        logger.info(
            "Export started",
            extra={"job_id": job_id, "entity_type": data.entity_type.value, "format": fmt.value},
        )

        self.output_dir.mkdir(parents=True, exist_ok=True)
        file_path = self.output_dir / f"{job_id}.{writer_cls.extension}"
        try:
            written, kept = await self._write_file(db, stmt, data, fmt, base_name, file_path)
        except Exception as e:
            file_path.unlink(missing_ok=True)
            await self._fail(db, job_id, identity, data.entity_type.value, str(e) or type(e).__name__)
            raise ExportFailedError(job_id, str(e) or type(e).__name__) from e

        size = file_path.stat().st_size
        try:
            job = await self._transition(
                db,
                job_id,
                ExportJobStatus.COMPLETED,
                total_records=written,
                file_path=str(file_path),
                file_size=size,
            )
        except InvalidTransitionError:
            file_path.unlink(missing_ok=True)
            raise

        record_serialization(fmt, written, size)
        export_job_counter.labels(entity_type=job.entity_type, status="completed").inc()
        await self.audit.log_action(
            db,
            action=ActivityAction.EXPORT_COMPLETED,
            entity_type="export",
            entity_id=job.id,
            user_id=identity.user_id,
            details={
                "export_type": job.entity_type,
                "format": job.format,
                "file_name": job.file_name,
                "record_count": written,
                "file_size": size,
                "email_recipients": len(data.email_recipients),
            },
        )
        await db.commit()

        if data.email_recipients:
            recipients = [str(e) for e in data.email_recipients]
            await self._email_export(job, file_path, writer_cls.content_type, recipients)

        logger.info(
            "Export completed",
            extra={"job_id": job.id, "record_count": written, "file_size": size},
        )
        return ExportOutcome(job=job, content_type=writer_cls.content_type, rows=kept)

    async def _write_file(
        self,
        db: AsyncSession,
        stmt: Select,
        data: ExportRequest,
        fmt: ReportFormat,
        base_name: str,
        file_path: Path,
    ) -> tuple[int, Optional[list[dict[str, Any]]]]:
        """Stream rows into ``file_path``. Returns (rows written, kept rows for JSON)."""
        source = EXPORT_SOURCES[data.entity_type]
        limit = settings.export_max_records
        seen: set[Any] = set()
        kept: Optional[list[dict[str, Any]]] = [] if fmt == ReportFormat.JSON else None
        options = SerializeOptions(
            columns=data.columns or None,
            include_headers=data.include_headers,
            file_name=base_name,
            title=f"{data.entity_type.value.replace('_', ' ').title()} Export",
            generated_at=utc_now(),
        )

        with open(file_path, "wb") as sink:
            writer = create_writer(fmt, sink, options)
            async for chunk in iter_chunks(db, stmt, settings.export_chunk_size):
                batch = []
                for row in chunk:
                    record = dict(row)
                    if source.dedupe_on:
                        key = next((record[f] for f in source.dedupe_on if record.get(f)), None)
                        if key in seen:
                            continue
                        seen.add(key)
                    batch.append(flatten(record))
                batch = batch[: limit - writer.record_count]
                await asyncio.to_thread(writer.write_rows, batch)
                if kept is not None and data.columns:
                    kept.extend({c: r.get(c) for c in data.columns} for r in batch)
                elif kept is not None:
                    kept.extend(batch)
                if writer.record_count >= limit:
                    logger.warning(
                        "Export truncated at the record limit",
                        extra={"entity_type": data.entity_type.value, "limit": limit},
                    )
                    break
            await asyncio.to_thread(writer.close)
        return writer.record_count, kept

    async def _transition(
        self,
        db: AsyncSession,
        job_id: str,
        new_status: ExportJobStatus,
        **values: Any,
    ) -> ExportJob:
        """Compare-and-set the job status.

        Raises:
            ExportJobNotFoundError: If job not found
            InvalidTransitionError: If the current status does not allow it
        """
        result = await db.execute(
            update(ExportJob)
            .where(ExportJob.id == job_id, ExportJob.status.in_(export_transition_sources(new_status)))
            .values(status=new_status.value, completed_at=utc_now(), updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = await db.get(ExportJob, job_id, populate_existing=True)
            if current is None:
                raise ExportJobNotFoundError(job_id)
            raise InvalidTransitionError("ExportJob", job_id, current.status, new_status.value)

        await db.commit()
        return await db.get(ExportJob, job_id, populate_existing=True)

    async def _fail(
        self,
        db: AsyncSession,
        job_id: str,
        identity: Identity,
        entity_type: str,
        reason: str,
    ) -> None:
        await db.rollback()
        try:
            await self._transition(db, job_id, ExportJobStatus.FAILED, error_message=reason)
        except InvalidTransitionError as e:
            # Cancelled while writing; the cancellation stands
            logger.info(f"Export failure not recorded: {e.message}", extra={"job_id": job_id})
            return
        export_job_counter.labels(entity_type=entity_type, status="failed").inc()
        await self.audit.log_action(
            db,
            action=ActivityAction.EXPORT_FAILED,
            entity_type="export",
            entity_id=job_id,
            user_id=identity.user_id,
            details={"reason": reason},
        )
        await db.commit()
        logger.error(f"Export failed: {reason}", extra={"job_id": job_id})

    async def _email_export(
        self,
        job: ExportJob,
        file_path: Path,
        content_type: str,
        recipients: list[str],
    ) -> None:
        """Send the export file to recipients. Failures are logged only."""
        if not self.email.is_configured():
            logger.warning("Email not configured; export not emailed", extra={"job_id": job.id})
            return
        content = await asyncio.to_thread(file_path.read_bytes)
        result = await asyncio.to_thread(
            self.email.send_export_email,
            to=recipients,
            file_name=job.file_name,
            content=content,
            content_type=content_type,
            record_count=job.total_records or 0,
            entity_type=job.entity_type,
        )
        if not result.success:
            logger.warning(
                "Export email not delivered",
                extra={"job_id": job.id, "error": result.error},
            )

    # -------------------------------------------------------------------------
    # Job history
    # -------------------------------------------------------------------------

    async def get_job(self, db: AsyncSession, identity: Identity, job_id: str) -> ExportJob:
        """Get an export job owned by the caller (admins see all).

        Raises:
            ExportJobNotFoundError: If job not found
            PermissionDeniedError: If the job belongs to someone else
        """
        job = await db.get(ExportJob, job_id)
        if not job:
            raise ExportJobNotFoundError(job_id)
        if job.exported_by_id != identity.user_id and not identity.is_admin:
            raise PermissionDeniedError(resource="export", action="view")
        return job

    async def list_jobs(
        self,
        db: AsyncSession,
        identity: Identity,
        status: Optional[ExportJobStatus] = None,
        entity_type: Optional[ExportEntityType] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[ExportJob], int]:
        """List the caller's export jobs, newest first."""
        conditions: list[Any] = []
        if not identity.is_admin:
            conditions.append(ExportJob.exported_by_id == identity.user_id)
        if status:
            conditions.append(ExportJob.status == status.value)
        if entity_type:
            conditions.append(ExportJob.entity_type == entity_type.value)

        total = await db.scalar(select(func.count(ExportJob.id)).where(*conditions))
        result = await db.execute(
            select(ExportJob)
            .where(*conditions)
            .order_by(ExportJob.created_at.desc(), ExportJob.id)
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), total or 0

    async def cancel_job(self, db: AsyncSession, identity: Identity, job_id: str) -> ExportJob:
        """Cancel a running export. Only its owner may cancel it.

        Raises:
            ExportJobNotFoundError: If job not found
            PermissionDeniedError: If the caller did not start the job
            InvalidTransitionError: If the job is no longer PROCESSING
        """
        job = await db.get(ExportJob, job_id)
        if not job:
            raise ExportJobNotFoundError(job_id)
        if job.exported_by_id != identity.user_id:
            raise PermissionDeniedError(
                "Only the user who started an export can cancel it",
                resource="export",
                action="cancel",
            )

        job = await self._transition(db, job_id, ExportJobStatus.CANCELLED)

        export_job_counter.labels(entity_type=job.entity_type, status="cancelled").inc()
        await self.audit.log_action(
            db,
            action=ActivityAction.EXPORT_CANCELLED,
            entity_type="export",
            entity_id=job.id,
            user_id=identity.user_id,
        )
        await db.commit()
        logger.info("Export cancelled", extra={"job_id": job.id})
        return job

    async def read_export_file(
        self,
        db: AsyncSession,
        identity: Identity,
        job_id: str,
        now: Optional[datetime] = None,
    ) -> tuple[ExportJob, bytes, str]:
        """Load a finished export for download.

        Returns:
            Tuple of (job, file bytes, content type)

        Raises:
            ConflictError: If the job is not COMPLETED or the download has expired
            NotFoundError: If the file is gone
        """
        job = await self.get_job(db, identity, job_id)
        if job.status != ExportJobStatus.COMPLETED.value or not job.file_path:
            raise ConflictError(
                f"Export is {job.status.lower()}, not ready for download",
                code="EXPORT_NOT_READY",
                details={"job_id": job.id, "status": job.status},
            )

        now = now or utc_now()
        expiry = timedelta(hours=settings.report_download_expiry_hours)
        if job.completed_at and now - job.completed_at > expiry:
            raise ConflictError(
                "Export download has expired",
                code="EXPORT_EXPIRED",
                details={"job_id": job.id, "completed_at": job.completed_at.isoformat()},
            )

        path = Path(job.file_path)
        if not path.is_file():
            raise NotFoundError("Export file", job.id)
        content = await asyncio.to_thread(path.read_bytes)
        return job, content, get_writer_class(job.format).content_type
