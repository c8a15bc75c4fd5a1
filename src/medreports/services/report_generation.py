"""
Report generation.

Claims a PENDING report, aggregates its data, binds it into the attached
template, serializes the result and records the outcome. Every run is
bounded by a timeout and can be cancelled by its owner while it runs.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, BinaryIO, ClassVar, Optional

import orjson
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from medreports.core.config import settings
from medreports.core.exceptions import (
    CancelledByUserError,
    GenerationTimeoutError,
    InvalidTransitionError,
    ReportingError,
)
from medreports.core.logging import get_logger
from medreports.db.base import utc_now
from medreports.metrics import (
    report_generation_counter,
    report_generation_duration_histogram,
)
from medreports.models.activity_log import ActivityAction
from medreports.models.report import Report, ReportFormat, ReportStatus
from medreports.models.template import ReportTemplate
from medreports.services import template_engine
from medreports.services.aggregation import AggregatedReport, aggregate
from medreports.services.audit_service import AuditService
from medreports.services.notification import NotificationService
from medreports.services.report import ReportService, parse_parameters
from medreports.services.serializer import (
    SerializeOptions,
    create_writer,
    flatten,
    get_writer_class,
    json_default,
    record_serialization,
)

logger = get_logger(__name__)


class ReportGenerator:
    """Runs report generation for one report at a time."""

    # In-process registry of running generations, keyed by report id
    _running: ClassVar[dict[str, asyncio.Task]] = {}
    _user_cancelled: ClassVar[set[str]] = set()

    def __init__(
        self,
        output_dir: Optional[str | Path] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.output_dir = Path(output_dir or settings.report_output_dir)
        self.timeout_seconds = timeout_seconds or settings.report_generation_timeout_seconds
        self.reports = ReportService()
        self.audit = AuditService()
        self.notifications = NotificationService()

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    @classmethod
    def cancel_running(cls, report_id: str) -> bool:
        """Cancel an in-process generation. Returns False when none is running here."""
        task = cls._running.get(report_id)
        if task is None or task.done():
            return False
        cls._user_cancelled.add(report_id)
        task.cancel()
        return True

    @classmethod
    def is_running(cls, report_id: str) -> bool:
        task = cls._running.get(report_id)
        return task is not None and not task.done()

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    async def generate(self, db: AsyncSession, report_id: str) -> Report:
        """Generate a report file.

        Args:
            db: Database session
            report_id: Report to generate; must be PENDING

        Returns:
            The COMPLETED report

        Raises:
            InvalidTransitionError: If the report is not PENDING
            GenerationTimeoutError: If generation runs past the timeout
            CancelledByUserError: If the owner cancelled the run
            ReportingError: Any aggregation failure, after the report is marked FAILED
        """
        report = await self.reports.transition(db, report_id, ReportStatus.GENERATING)
        report_type = report.type
        logger.info(
            "Report generation started",
            extra={"report_id": report_id, "report_type": report_type},
        )

        started = time.monotonic()
        task = asyncio.ensure_future(self._produce(db, report))
        self._running[report_id] = task
        try:
            file_path, file_size, record_count = await asyncio.wait_for(
                task, timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            await self._fail(db, report_id, GenerationTimeoutError.reason, started)
            raise GenerationTimeoutError(report_id, self.timeout_seconds) from None
        except asyncio.CancelledError:
            if report_id in self._user_cancelled:
                # Already marked FAILED by the cancel request
                await db.rollback()
                self._record_outcome(report_type, "cancelled", started)
                raise CancelledByUserError(report_id) from None
            await self._fail(db, report_id, "Generation was interrupted", started)
            raise
        except Exception as e:
            await self._fail(db, report_id, _error_text(e), started)
            raise
        finally:
            self._running.pop(report_id, None)
            self._user_cancelled.discard(report_id)

        try:
            report = await self.reports.transition(
                db,
                report_id,
                ReportStatus.COMPLETED,
                file_path=file_path,
                file_size=file_size,
                record_count=record_count,
            )
        except InvalidTransitionError:
            # Cancelled from another process while the file was being written
            Path(file_path).unlink(missing_ok=True)
            self._record_outcome(report_type, "cancelled", started)
            raise CancelledByUserError(report_id) from None

        self._record_outcome(report_type, "completed", started)
        await self.audit.log_action(
            db,
            action=ActivityAction.REPORT_GENERATED,
            entity_type="report",
            entity_id=report.id,
            user_id=report.generated_by_id,
            details={"record_count": record_count, "file_size": file_size},
        )
        await self.notifications.notify(
            db,
            report.generated_by_id,
            title="Report ready",
            message=f'Your report "{report.title}" is ready for download.',
            data={"report_id": report.id, "status": report.status},
        )
        await db.commit()

        logger.info(
            "Report generation completed",
            extra={"report_id": report.id, "record_count": record_count, "file_size": file_size},
        )
        return report

    async def _fail(
        self,
        db: AsyncSession,
        report_id: str,
        reason: str,
        started: float,
    ) -> None:
        """Record a failed run. The report keeps the reason in ``error_message``."""
        await db.rollback()
        try:
            report = await self.reports.transition(
                db, report_id, ReportStatus.FAILED, error_message=reason
            )
        except InvalidTransitionError:
            logger.warning(
                "Report already left GENERATING before failure was recorded",
                extra={"report_id": report_id, "reason": reason},
            )
            return

        self._record_outcome(report.type, "failed", started)
        await self.audit.log_action(
            db,
            action=ActivityAction.REPORT_FAILED,
            entity_type="report",
            entity_id=report.id,
            user_id=report.generated_by_id,
            details={"reason": reason},
        )
        await self.notifications.notify(
            db,
            report.generated_by_id,
            title="Report failed",
            message=f'Your report "{report.title}" could not be generated: {reason}',
            data={"report_id": report.id, "status": ReportStatus.FAILED.value},
        )
        await db.commit()
        logger.error(
            f"Report generation failed: {reason}",
            extra={"report_id": report.id, "report_type": report.type},
        )

    def _record_outcome(self, report_type: str, status: str, started: float) -> None:
        report_generation_counter.labels(report_type=report_type, status=status).inc()
        report_generation_duration_histogram.labels(report_type=report_type).observe(
            time.monotonic() - started
        )

    # -------------------------------------------------------------------------
    # Output
    # -------------------------------------------------------------------------

    async def _produce(self, db: AsyncSession, report: Report) -> tuple[str, int, int]:
        """Aggregate, render and write the report file. Returns (path, size, rows)."""
        content = await collect_report_content(db, report, mark_template_used=True)

        self.output_dir.mkdir(parents=True, exist_ok=True)
        fmt = report.output_format
        file_path = self.output_dir / f"{report.id}.{get_writer_class(fmt).extension}"
        size = await asyncio.to_thread(write_report_file, file_path, fmt, report, content)

        record_serialization(fmt, content.aggregated.record_count, size)
        return str(file_path), size, content.aggregated.record_count

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def fail_stale_generations(
        self,
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> int:
        """Mark GENERATING reports older than the timeout as FAILED.

        Covers runs whose worker died without recording an outcome.

        Returns:
            Number of reports marked FAILED
        """
        now = now or utc_now()
        cutoff = now - timedelta(seconds=self.timeout_seconds)
        result = await db.execute(
            update(Report)
            .where(
                Report.status == ReportStatus.GENERATING.value,
                Report.started_at < cutoff,
            )
            .values(
                status=ReportStatus.FAILED.value,
                error_message=GenerationTimeoutError.reason,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        swept = result.rowcount or 0
        if swept:
            logger.warning("Marked stale generations as failed", extra={"count": swept})
        return swept


# =============================================================================
# Report content
# =============================================================================


@dataclass
class ReportContent:
    """Aggregated data for one report, bound into its template when it has one."""

    aggregated: AggregatedReport
    rendered: Optional[dict[str, Any]]
    generated_at: datetime


@dataclass
class ReportOutputOptions:
    """Knobs for writing a report file; the defaults reproduce a generated report."""

    include_charts: bool = True
    include_raw_data: bool = True
    include_metadata: bool = True
    include_headers: bool = True
    page_size: str = "A4"
    orientation: Optional[str] = None


async def collect_report_content(
    db: AsyncSession,
    report: Report,
    *,
    template_id: Optional[str] = None,
    today: Optional[date] = None,
    include_details: Optional[bool] = None,
    mark_template_used: bool = False,
) -> ReportContent:
    """Aggregate a report's data and render it through a template.

    Args:
        db: Database session
        report: Report whose type and parameters drive the aggregation
        template_id: Template to render with; defaults to the report's own
        today: Reference day for relative date presets
        include_details: Overrides the report's own row-level detail setting
        mark_template_used: Count this run towards the template's usage
    """
    params = parse_parameters(report.type, report.get_parameters_dict())
    if include_details is not None:
        params = params.model_copy(update={"include_details": include_details})
    aggregated = await aggregate(db, report.type, params, today=today)
    generated_at = utc_now()

    rendered = None
    template_id = template_id or report.template_id
    if template_id:
        template = await db.get(ReportTemplate, template_id)
        if template is not None and not template.is_deleted:
            rendered = template_engine.render(
                template.get_structure_dict(),
                aggregated.to_dict(),
                title=report.title,
                layout=template.get_layout_dict(),
                styling=template.get_styling_dict(),
                generated_at=generated_at,
            )
            if mark_template_used:
                template.mark_used()
    return ReportContent(aggregated=aggregated, rendered=rendered, generated_at=generated_at)


def write_report(
    sink: BinaryIO,
    fmt: ReportFormat | str,
    report: Report,
    content: ReportContent,
    options: Optional[ReportOutputOptions] = None,
) -> None:
    """Write a report document to ``sink``.

    JSON gets the full document (metadata, summary, buckets, charts and the
    rendered template); tabular formats get one table.
    """
    options = options or ReportOutputOptions()
    aggregated = content.aggregated
    if ReportFormat(fmt) == ReportFormat.JSON:
        document: dict[str, Any] = {}
        if options.include_metadata:
            document["report"] = {
                "id": report.id,
                "title": report.title,
                "type": report.type,
                "generated_at": content.generated_at,
                "date_from": aggregated.date_from,
                "date_to": aggregated.date_to,
                "record_count": aggregated.record_count,
            }
        document.update(aggregated.to_dict())
        if not options.include_charts:
            document["charts"] = {}
        if not options.include_raw_data:
            document.pop("details", None)
        document["rendered"] = content.rendered
        sink.write(orjson.dumps(document, default=json_default, option=orjson.OPT_INDENT_2))
        return

    rows, columns = _table_source(aggregated, content.rendered, options.include_raw_data)
    writer = create_writer(
        fmt,
        sink,
        SerializeOptions(
            columns=columns,
            include_headers=options.include_headers,
            title=report.title,
            file_name=report.id,
            generated_at=content.generated_at,
            include_metadata=options.include_metadata,
            page_size=options.page_size,
            orientation=options.orientation,
        ),
    )
    writer.write_rows(flatten(row) for row in rows)
    writer.close()


def write_report_file(
    file_path: Path,
    fmt: ReportFormat | str,
    report: Report,
    content: ReportContent,
    options: Optional[ReportOutputOptions] = None,
) -> int:
    """Write a report document to ``file_path``. Returns the file size."""
    with open(file_path, "wb") as sink:
        write_report(sink, fmt, report, content, options)
    return file_path.stat().st_size


def _table_source(
    aggregated: AggregatedReport,
    rendered: Optional[dict[str, Any]],
    include_raw_data: bool = True,
) -> tuple[list[dict[str, Any]], Optional[list[str]]]:
    """Rows and columns for tabular formats.

    The first table section of a rendered template wins; otherwise row
    details when requested, else the period buckets.
    """
    if rendered:
        for section in rendered["sections"]:
            if section["type"] == "table":
                return section["rows"], section["columns"] or None
    if aggregated.details and include_raw_data:
        return aggregated.details, None
    return aggregated.data, None


def _error_text(error: Exception) -> str:
    if isinstance(error, ReportingError):
        return f"{error.code}: {error.message}"
    return str(error) or error.__class__.__name__
