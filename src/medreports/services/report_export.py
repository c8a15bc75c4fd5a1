"""
Report export service.

Re-serializes COMPLETED reports into any supported format with output
options, singly or bundled into one zip archive. Each export is rendered
from the report's stored parameters, with relative date presets pinned
to the day the report ran, so the exported figures match the original.
"""

import asyncio
import csv
import gzip
import io
import re
import zipfile
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from medreports.core.config import settings
from medreports.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ReportExportFailedError,
    ReportExportNotFoundError,
    ReportsNotReadyError,
)
from medreports.core.logging import get_logger
from medreports.db.base import ensure_utc, utc_now
from medreports.metrics import report_export_counter
from medreports.models.activity_log import ActivityAction
from medreports.models.report import Report, ReportFormat, ReportStatus
from medreports.models.report_export import (
    ExportCompression,
    ExportDeliveryMethod,
    ReportExport,
    ReportExportKind,
    ReportExportStatus,
    report_export_transition_sources,
)
from medreports.schemas.common import Identity
from medreports.schemas.report_export import (
    BulkReportExportOptions,
    BulkReportExportRequest,
    ReportExportOptions,
    ReportExportRequest,
)
from medreports.services.audit_service import AuditService
from medreports.services.email_service import EmailService
from medreports.services.notification import NotificationService
from medreports.services.report import ReportService, can_manage
from medreports.services.report_generation import (
    ReportContent,
    ReportOutputOptions,
    collect_report_content,
    write_report,
)
from medreports.services.serializer import get_writer_class, output_file_name

logger = get_logger(__name__)

ZIP_CONTENT_TYPE = "application/zip"
GZIP_CONTENT_TYPE = "application/gzip"


def safe_file_stem(title: str) -> str:
    """File-name-safe version of a report title."""
    return re.sub(r"[^A-Za-z0-9]+", "_", title).strip("_")[:80] or "report"


def _run_day(report: Report) -> date:
    """Day the report ran; relative date presets resolve against it."""
    ran_at = report.started_at or report.completed_at or report.created_at
    return ensure_utc(ran_at).date()


def _output_options(options: ReportExportOptions | BulkReportExportOptions) -> ReportOutputOptions:
    return ReportOutputOptions(
        include_charts=options.include_charts,
        include_raw_data=options.include_raw_data,
        include_metadata=options.include_metadata,
        include_headers=options.include_headers,
        page_size=options.page_size.value,
        orientation=options.orientation.value if options.orientation else None,
    )


def report_export_view(export: ReportExport, now: Optional[datetime] = None) -> dict[str, Any]:
    now = now or utc_now()
    is_expired = export.is_expired(now)
    can_download = export.status == ReportExportStatus.COMPLETED.value and not is_expired
    view = {
        **export.to_dict(),
        "report_ids": export.get_report_ids_list(),
        "options": export.get_options_dict(),
        "email_recipients": export.get_email_recipients_list(),
        "is_expired": is_expired,
        "can_download": can_download,
        "download_url": None,
    }
    if can_download:
        view["download_url"] = f"{settings.api_v1_prefix}/reports/exports/{export.id}/download"
    return view


# =============================================================================
# File packaging
# =============================================================================


@dataclass
class RenderedReport:
    """One report rendered to bytes, ready to be packaged."""

    report_id: str
    title: str
    file_name: str
    data: bytes


def pack_single(file_path: Path, rendered: RenderedReport, compression: ExportCompression) -> int:
    """Write one rendered report, compressed as requested. Returns the file size."""
    if compression == ExportCompression.ZIP:
        with zipfile.ZipFile(file_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            archive.writestr(rendered.file_name, rendered.data)
    elif compression == ExportCompression.GZIP:
        with gzip.open(file_path, "wb") as sink:
            sink.write(rendered.data)
    else:
        file_path.write_bytes(rendered.data)
    return file_path.stat().st_size


def pack_bundle(file_path: Path, rendered: list[RenderedReport], include_index: bool) -> int:
    """Write every rendered report into one zip archive. Returns the file size."""
    with zipfile.ZipFile(file_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        used: set[str] = set()
        for item in rendered:
            name = item.file_name
            if name in used:
                stem, _, extension = name.rpartition(".")
                name = f"{stem}_{item.report_id[:8]}.{extension}"
            used.add(name)
            archive.writestr(name, item.data)
            item.file_name = name
        if include_index:
            index = io.StringIO(newline="")
            writer = csv.writer(index, lineterminator="\n")
            writer.writerow(["report_id", "title", "file_name", "size_bytes"])
            for item in rendered:
                writer.writerow([item.report_id, item.title, item.file_name, len(item.data)])
            archive.writestr("index.csv", index.getvalue())
    return file_path.stat().st_size


def _render(
    fmt: ReportFormat,
    report: Report,
    content: ReportContent,
    options: ReportOutputOptions,
) -> bytes:
    buffer = io.BytesIO()
    write_report(buffer, fmt, report, content, options)
    return buffer.getvalue()


# =============================================================================
# Report Export Service
# =============================================================================


class ReportExportService:
    """Service for exporting finished reports."""

    def __init__(
        self,
        output_dir: Optional[str | Path] = None,
        email: Optional[EmailService] = None,
    ) -> None:
        self.output_dir = Path(output_dir or settings.report_export_dir)
        self.reports = ReportService()
        self.audit = AuditService()
        self.notifications = NotificationService()
        self.email = email or EmailService()

    # -------------------------------------------------------------------------
    # Exporting
    # -------------------------------------------------------------------------

    async def export_report(
        self,
        db: AsyncSession,
        identity: Identity,
        report_id: str,
        data: ReportExportRequest,
    ) -> ReportExport:
        """Export one COMPLETED report.

        Args:
            db: Database session
            identity: Caller; must be able to manage the report
            report_id: Report to export
            data: Format, output options and delivery

        Returns:
            The COMPLETED export

        Raises:
            ReportNotFoundError: If the report is missing
            PermissionDeniedError: If the caller may not access the report
            ConflictError: If the report is not COMPLETED
            TemplateNotFoundError: If ``customTemplate`` names no usable template
            ReportExportFailedError: If rendering failed; the export is FAILED
        """
        report = await self.reports.get_report_for(db, report_id, identity)
        if report.status != ReportStatus.COMPLETED.value:
            raise ConflictError(
                "Report is not ready for export",
                code="REPORT_NOT_READY",
                details={"report_id": report.id, "status": report.status},
            )
        options = data.options
        if options.custom_template:
            await self.reports.get_usable_template(db, options.custom_template, report.type)

        fmt = ReportFormat(data.format)
        compression = ExportCompression(options.compression)
        inner_name = output_file_name(fmt, safe_file_stem(report.title))
        if compression == ExportCompression.NONE:
            file_name = inner_name
            content_type = get_writer_class(fmt).content_type
        elif compression == ExportCompression.ZIP:
            file_name = f"{inner_name.rpartition('.')[0]}.zip"
            content_type = ZIP_CONTENT_TYPE
        else:
            file_name = f"{inner_name}.gz"
            content_type = GZIP_CONTENT_TYPE

        export = self._start(identity, ReportExportKind.SINGLE, data, [report.id], file_name)
        export.report_id = report.id
        db.add(export)
        await db.commit()
        export_id = export.id
        logger.info(
            "Report export started",
            extra={"export_id": export_id, "report_id": report.id, "format": fmt.value},
        )

        self.output_dir.mkdir(parents=True, exist_ok=True)
        file_path = self.output_dir / f"{export_id}.{file_name.rpartition('.')[2]}"
        try:
            content = await collect_report_content(
                db,
                report,
                template_id=options.custom_template,
                today=_run_day(report),
                include_details=options.include_raw_data,
            )
            rendered = RenderedReport(
                report_id=report.id,
                title=report.title,
                file_name=inner_name,
                data=await asyncio.to_thread(
                    _render, fmt, report, content, _output_options(options)
                ),
            )
            size = await asyncio.to_thread(pack_single, file_path, rendered, compression)
        except Exception as e:
            file_path.unlink(missing_ok=True)
            reason = str(e) or type(e).__name__
            await self._fail(db, export_id, ReportExportKind.SINGLE, fmt, reason)
            raise ReportExportFailedError(export_id, reason) from e

        finished = utc_now()
        export = await self._transition(
            db,
            export_id,
            ReportExportStatus.COMPLETED,
            file_path=str(file_path),
            file_size=size,
            content_type=content_type,
            completed_at=finished,
            expires_at=finished + timedelta(hours=settings.report_export_expiry_hours),
        )
        return await self._complete(
            db,
            identity,
            export,
            file_path,
            [report.title],
            action=ActivityAction.REPORT_EXPORTED,
            entity_id=report.id,
            title="Report export ready",
            message=f'Your export of "{report.title}" in {fmt.value} format is ready.',
        )

    async def bulk_export(
        self,
        db: AsyncSession,
        identity: Identity,
        data: BulkReportExportRequest,
    ) -> ReportExport:
        """Export several COMPLETED reports into one zip archive.

        Raises:
            ReportsNotReadyError: Listing every report that is missing,
                inaccessible or not COMPLETED
            TemplateNotFoundError: If ``customTemplate`` names no usable template
            ReportExportFailedError: If rendering failed; the export is FAILED
        """
        result = await db.execute(
            select(Report).where(
                Report.id.in_(data.report_ids),
                Report.status == ReportStatus.COMPLETED.value,
                Report.deleted_at.is_(None),
            )
        )
        found = {r.id: r for r in result.scalars().all() if can_manage(r, identity)}
        missing = [rid for rid in data.report_ids if rid not in found]
        if missing:
            raise ReportsNotReadyError(missing)
        reports = [found[rid] for rid in data.report_ids]

        options = data.options
        if options.custom_template:
            for report in reports:
                await self.reports.get_usable_template(db, options.custom_template, report.type)

        fmt = ReportFormat(data.format)
        file_name = f"Bulk_Reports_{utc_now().strftime('%Y%m%d_%H%M%S')}.zip"
        export = self._start(identity, ReportExportKind.BULK, data, data.report_ids, file_name)
        export.report_count = len(reports)
        db.add(export)
        await db.commit()
        export_id = export.id
        logger.info(
            "Bulk report export started",
            extra={"export_id": export_id, "report_count": len(reports), "format": fmt.value},
        )

        self.output_dir.mkdir(parents=True, exist_ok=True)
        file_path = self.output_dir / f"{export_id}.zip"
        output_options = _output_options(options)
        try:
            rendered = []
            for report in reports:
                content = await collect_report_content(
                    db,
                    report,
                    template_id=options.custom_template,
                    today=_run_day(report),
                    include_details=options.include_raw_data,
                )
                rendered.append(
                    RenderedReport(
                        report_id=report.id,
                        title=report.title,
                        file_name=output_file_name(fmt, safe_file_stem(report.title)),
                        data=await asyncio.to_thread(
                            _render, fmt, report, content, output_options
                        ),
                    )
                )
            size = await asyncio.to_thread(
                pack_bundle, file_path, rendered, options.include_index
            )
        except Exception as e:
            file_path.unlink(missing_ok=True)
            reason = str(e) or type(e).__name__
            await self._fail(db, export_id, ReportExportKind.BULK, fmt, reason)
            raise ReportExportFailedError(export_id, reason) from e

        finished = utc_now()
        export = await self._transition(
            db,
            export_id,
            ReportExportStatus.COMPLETED,
            file_path=str(file_path),
            file_size=size,
            content_type=ZIP_CONTENT_TYPE,
            completed_at=finished,
            expires_at=finished + timedelta(hours=settings.bulk_report_export_expiry_hours),
        )
        return await self._complete(
            db,
            identity,
            export,
            file_path,
            [r.title for r in reports],
            action=ActivityAction.BULK_REPORT_EXPORTED,
            entity_id=export.id,
            title="Bulk export ready",
            message=f"Your bulk export of {len(reports)} reports in {fmt.value} format is ready.",
        )

    def _start(
        self,
        identity: Identity,
        kind: ReportExportKind,
        data: ReportExportRequest | BulkReportExportRequest,
        report_ids: list[str],
        file_name: str,
    ) -> ReportExport:
        export = ReportExport(
            requested_by_id=identity.user_id,
            kind=kind.value,
            format=ReportFormat(data.format).value,
            delivery_method=data.delivery_method.value,
            status=ReportExportStatus.PROCESSING.value,
            file_name=file_name,
            report_count=len(report_ids),
        )
        export.set_request(
            report_ids,
            data.options.model_dump(mode="json"),
            [str(e) for e in data.email_recipients],
        )
        return export

    async def _complete(
        self,
        db: AsyncSession,
        identity: Identity,
        export: ReportExport,
        file_path: Path,
        report_titles: list[str],
        *,
        action: str,
        entity_id: str,
        title: str,
        message: str,
    ) -> ReportExport:
        """Record, deliver and announce a finished export."""
        if export.delivery_method == ExportDeliveryMethod.EMAIL.value:
            export.email_sent = await self._email_export(export, file_path, report_titles)

        report_export_counter.labels(
            kind=export.kind, format=export.format, status="completed"
        ).inc()
        await self.audit.log_action(
            db,
            action=action,
            entity_type="report_export",
            entity_id=entity_id,
            user_id=identity.user_id,
            details={
                "export_id": export.id,
                "report_ids": export.get_report_ids_list(),
                "format": export.format,
                "options": export.get_options_dict(),
                "delivery_method": export.delivery_method,
                "file_name": export.file_name,
                "file_size": export.file_size,
                "email_sent": export.email_sent,
            },
        )
        await self.notifications.notify(
            db,
            identity.user_id,
            title=title,
            message=message,
            type="EXPORT",
            data={
                "export_id": export.id,
                "file_name": export.file_name,
                "expires_at": export.expires_at.isoformat() if export.expires_at else None,
            },
        )
        await db.commit()

        logger.info(
            "Report export completed",
            extra={"export_id": export.id, "kind": export.kind, "file_size": export.file_size},
        )
        return export

    async def _transition(
        self,
        db: AsyncSession,
        export_id: str,
        new_status: ReportExportStatus,
        **values: Any,
    ) -> ReportExport:
        """Compare-and-set the export status.

        Raises:
            ReportExportNotFoundError: If the export is missing
            InvalidTransitionError: If the current status does not allow it
        """
        if new_status in (ReportExportStatus.COMPLETED, ReportExportStatus.FAILED):
            values.setdefault("completed_at", utc_now())
        result = await db.execute(
            update(ReportExport)
            .where(
                ReportExport.id == export_id,
                ReportExport.status.in_(report_export_transition_sources(new_status)),
            )
            .values(status=new_status.value, updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = await db.get(ReportExport, export_id, populate_existing=True)
            if current is None:
                raise ReportExportNotFoundError(export_id)
            raise InvalidTransitionError(
                "ReportExport", export_id, current.status, new_status.value
            )

        await db.commit()
        return await db.get(ReportExport, export_id, populate_existing=True)

    async def _fail(
        self,
        db: AsyncSession,
        export_id: str,
        kind: ReportExportKind,
        fmt: ReportFormat,
        reason: str,
    ) -> None:
        await db.rollback()
        export = await self._transition(
            db, export_id, ReportExportStatus.FAILED, error_message=reason
        )
        report_export_counter.labels(kind=kind.value, format=fmt.value, status="failed").inc()
        await self.audit.log_action(
            db,
            action=ActivityAction.REPORT_EXPORT_FAILED,
            entity_type="report_export",
            entity_id=export_id,
            user_id=export.requested_by_id,
            details={"reason": reason},
        )
        await db.commit()
        logger.error(f"Report export failed: {reason}", extra={"export_id": export_id})

    async def _email_export(
        self,
        export: ReportExport,
        file_path: Path,
        report_titles: list[str],
    ) -> bool:
        """Mail the export file to its recipients. Returns whether it was sent."""
        if not self.email.is_configured():
            logger.warning(
                "Email not configured; report export not emailed",
                extra={"export_id": export.id},
            )
            return False
        content = await asyncio.to_thread(file_path.read_bytes)
        result = await asyncio.to_thread(
            self.email.send_report_export_email,
            to=export.get_email_recipients_list(),
            report_titles=report_titles,
            file_name=export.file_name,
            content=content,
            content_type=export.content_type or ZIP_CONTENT_TYPE,
        )
        if not result.success:
            logger.warning(
                "Report export email not delivered",
                extra={"export_id": export.id, "error": result.error},
            )
        return result.success

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    async def get_export(
        self,
        db: AsyncSession,
        identity: Identity,
        export_id: str,
    ) -> ReportExport:
        """Get an export owned by the caller (admins see all).

        Raises:
            ReportExportNotFoundError: If the export is missing
            PermissionDeniedError: If the export belongs to someone else
        """
        export = await db.get(ReportExport, export_id, populate_existing=True)
        if not export:
            raise ReportExportNotFoundError(export_id)
        if export.requested_by_id != identity.user_id and not identity.is_admin:
            raise PermissionDeniedError(resource="report_export", action="view")
        return export

    async def list_exports(
        self,
        db: AsyncSession,
        identity: Identity,
        format: Optional[ReportFormat] = None,
        delivery_method: Optional[ExportDeliveryMethod] = None,
        status: Optional[ReportExportStatus] = None,
        kind: Optional[ReportExportKind] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 50,
        offset: int = 0,
        now: Optional[datetime] = None,
    ) -> tuple[list[ReportExport], int, dict[str, Any]]:
        """List the caller's exports, newest first.

        Returns:
            Tuple of (page of exports, total matching, summary over all matching)
        """
        conditions: list[Any] = []
        if not identity.is_admin:
            conditions.append(ReportExport.requested_by_id == identity.user_id)
        if format:
            conditions.append(ReportExport.format == format.value)
        if delivery_method:
            conditions.append(ReportExport.delivery_method == delivery_method.value)
        if status:
            conditions.append(ReportExport.status == status.value)
        if kind:
            conditions.append(ReportExport.kind == kind.value)
        if date_from:
            start = datetime.combine(date_from, time.min, tzinfo=timezone.utc)
            conditions.append(ReportExport.created_at >= start)
        if date_to:
            end = datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
            conditions.append(ReportExport.created_at < end)

        total = await db.scalar(select(func.count(ReportExport.id)).where(*conditions)) or 0
        result = await db.execute(
            select(ReportExport)
            .where(*conditions)
            .order_by(ReportExport.created_at.desc(), ReportExport.id)
            .offset(offset)
            .limit(limit)
        )
        summary = await self._summary(db, conditions, total, now or utc_now())
        return list(result.scalars().all()), total, summary

    async def _summary(
        self,
        db: AsyncSession,
        conditions: list[Any],
        total: int,
        now: datetime,
    ) -> dict[str, Any]:
        by_format = {f.value: 0 for f in ReportFormat}
        rows = await db.execute(
            select(ReportExport.format, func.count(ReportExport.id))
            .where(*conditions)
            .group_by(ReportExport.format)
        )
        for fmt, count in rows.all():
            by_format[fmt] = count

        by_status = {s.value: 0 for s in ReportExportStatus}
        rows = await db.execute(
            select(ReportExport.status, func.count(ReportExport.id))
            .where(*conditions)
            .group_by(ReportExport.status)
        )
        for status, count in rows.all():
            by_status[status] = count

        expired = await db.scalar(
            select(func.count(ReportExport.id)).where(
                *conditions,
                ReportExport.status == ReportExportStatus.COMPLETED.value,
                ReportExport.expires_at <= now,
            )
        )
        totals = (
            await db.execute(
                select(
                    func.coalesce(func.sum(ReportExport.file_size), 0),
                    func.coalesce(func.sum(ReportExport.download_count), 0),
                ).where(*conditions)
            )
        ).one()
        return {
            "total_exports": total,
            "by_format": by_format,
            "by_status": by_status,
            "expired": expired or 0,
            "total_file_size": int(totals[0]),
            "total_downloads": int(totals[1]),
        }

    async def delete_export(
        self,
        db: AsyncSession,
        identity: Identity,
        export_id: str,
    ) -> ReportExport:
        """Delete an export's file. The record stays in history as DELETED.

        Raises:
            ReportExportNotFoundError: If the export is missing
            PermissionDeniedError: If the caller did not request it
            InvalidTransitionError: If it is still PROCESSING or already DELETED
        """
        export = await self.get_export(db, identity, export_id)
        file_path = export.file_path
        now = utc_now()
        export = await self._transition(
            db,
            export_id,
            ReportExportStatus.DELETED,
            file_path=None,
            deleted_at=now,
        )
        if file_path:
            await asyncio.to_thread(Path(file_path).unlink, missing_ok=True)

        await self.audit.log_action(
            db,
            action=ActivityAction.REPORT_EXPORT_DELETED,
            entity_type="report_export",
            entity_id=export.id,
            user_id=identity.user_id,
            details={"file_name": export.file_name},
        )
        await db.commit()
        logger.info("Report export deleted", extra={"export_id": export.id})
        return export

    async def read_export_file(
        self,
        db: AsyncSession,
        identity: Identity,
        export_id: str,
        now: Optional[datetime] = None,
    ) -> tuple[ReportExport, bytes]:
        """Load a finished export for download and count the download.

        Raises:
            ConflictError: If the export is not COMPLETED or has expired
            NotFoundError: If the file is gone
        """
        export = await self.get_export(db, identity, export_id)
        if export.status != ReportExportStatus.COMPLETED.value or not export.file_path:
            raise ConflictError(
                f"Export is {export.status.lower()}, not ready for download",
                code="EXPORT_NOT_READY",
                details={"export_id": export.id, "status": export.status},
            )
        now = now or utc_now()
        if export.is_expired(now):
            raise ConflictError(
                "Export download has expired",
                code="EXPORT_EXPIRED",
                details={"export_id": export.id, "expires_at": export.expires_at.isoformat()},
            )

        path = Path(export.file_path)
        if not path.is_file():
            raise NotFoundError("Report export file", export.id)
        content = await asyncio.to_thread(path.read_bytes)

        await db.execute(
            update(ReportExport)
            .where(ReportExport.id == export.id)
            .values(download_count=ReportExport.download_count + 1, last_downloaded_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return await db.get(ReportExport, export.id, populate_existing=True), content
