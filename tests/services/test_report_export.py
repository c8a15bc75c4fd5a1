"""
Tests for ReportExportService.
"""

import csv
import gzip
import io
import zipfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import orjson
import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from medreports.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    PermissionDeniedError,
    ReportExportFailedError,
    ReportsNotReadyError,
    TemplateNotFoundError,
)
from medreports.db.base import utc_now
from medreports.models.activity_log import ActivityAction, ActivityLog
from medreports.models.notification import Notification
from medreports.models.report import Report, ReportFormat, ReportStatus
from medreports.models.report_export import ReportExport, ReportExportStatus
from medreports.schemas.common import Identity
from medreports.schemas.report import ReportCreate
from medreports.schemas.report_export import BulkReportExportRequest, ReportExportRequest
from medreports.services import report_export
from medreports.services.email_service import DeliveryResult
from medreports.services.report import ReportService
from medreports.services.report_export import ReportExportService, report_export_view


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class RecordingEmail:
    """Configured email service that records instead of sending."""

    def __init__(self) -> None:
        self.calls: list[dict] = []

    def is_configured(self) -> bool:
        return True

    def send_report_export_email(self, **kwargs) -> DeliveryResult:
        self.calls.append(kwargs)
        return DeliveryResult(success=True, recipients_count=len(kwargs["to"]))


async def completed_report(
    db: AsyncSession,
    identity: Identity,
    title: str = "January summary",
    parameters: dict | None = None,
) -> Report:
    """A COMPLETED report that ran on 2024-02-10."""
    payload = {
        "title": title,
        "type": "APPOINTMENT_SUMMARY",
        "parameters": parameters or {"dateFrom": "2024-01-01", "dateTo": "2024-01-31"},
    }
    report, _ = await ReportService().create_report(
        db, identity, ReportCreate.model_validate(payload)
    )
    await db.execute(
        update(Report)
        .where(Report.id == report.id)
        .values(
            status=ReportStatus.COMPLETED.value,
            started_at=utc(2024, 2, 10, 9),
            completed_at=utc(2024, 2, 10, 9, 1),
        )
    )
    await db.commit()
    return await db.get(Report, report.id, populate_existing=True)


def single(**overrides) -> ReportExportRequest:
    return ReportExportRequest.model_validate(overrides)


def bulk(report_ids: list[str], **overrides) -> BulkReportExportRequest:
    return BulkReportExportRequest.model_validate({"reportIds": report_ids, **overrides})


@pytest.fixture
def service() -> ReportExportService:
    return ReportExportService()


class TestExportReport:
    """Tests for single report exports."""

    @pytest.mark.asyncio
    async def test_json_export_with_raw_data(
        self, db_session: AsyncSession, booking_data, agent_identity: Identity, output_dirs,
        service: ReportExportService,
    ):
        report = await completed_report(db_session, agent_identity)

        export = await service.export_report(
            db_session,
            agent_identity,
            report.id,
            single(format="json", options={"includeRawData": True}),
        )

        assert export.status == ReportExportStatus.COMPLETED.value
        assert export.kind == "SINGLE"
        assert export.report_id == report.id
        assert export.file_name == "January_summary.json"
        assert export.content_type == "application/json"
        assert export.expires_at - export.completed_at == timedelta(hours=24)
        path = Path(export.file_path)
        assert path.parent == output_dirs["report_exports"]
        assert export.file_size == path.stat().st_size

        document = orjson.loads(path.read_bytes())
        assert document["report"]["title"] == "January summary"
        assert document["summary"]["total_appointments"] == 5
        assert len(document["details"]) == 5

    @pytest.mark.asyncio
    async def test_options_drop_metadata_charts_and_raw_data(
        self, db_session: AsyncSession, booking_data, agent_identity: Identity,
        service: ReportExportService,
    ):
        report = await completed_report(db_session, agent_identity)

        export = await service.export_report(
            db_session,
            agent_identity,
            report.id,
            single(
                format="json",
                options={"includeMetadata": False, "includeCharts": False},
            ),
        )

        document = orjson.loads(Path(export.file_path).read_bytes())
        assert "report" not in document
        assert document["charts"] == {}
        assert "details" not in document
        assert export.get_options_dict()["include_charts"] is False

    @pytest.mark.asyncio
    async def test_presets_resolve_against_the_run_day(
        self, db_session: AsyncSession, booking_data, agent_identity: Identity,
        service: ReportExportService,
    ):
        """A previous-month report run in February 2024 still covers January 2024."""
        report = await completed_report(
            db_session, agent_identity, parameters={"dateRange": "previous_month"}
        )

        export = await service.export_report(
            db_session, agent_identity, report.id, single(format="json")
        )

        document = orjson.loads(Path(export.file_path).read_bytes())
        assert document["report"]["date_from"] == "2024-01-01"
        assert document["report"]["date_to"] == "2024-01-31"
        assert document["summary"]["total_appointments"] == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("fmt", "magic"),
        [("pdf", b"%PDF"), ("excel", b"PK"), ("csv", b'"')],
        ids=["pdf", "excel", "csv"],
    )
    async def test_tabular_formats(
        self, db_session: AsyncSession, booking_data, agent_identity: Identity,
        service: ReportExportService, fmt: str, magic: bytes,
    ):
        report = await completed_report(db_session, agent_identity)

        export = await service.export_report(
            db_session,
            agent_identity,
            report.id,
            single(format=fmt, options={"pageSize": "LETTER", "orientation": "landscape"}),
        )

        assert Path(export.file_path).read_bytes().startswith(magic)

    @pytest.mark.asyncio
    async def test_zip_compression(
        self, db_session: AsyncSession, booking_data, agent_identity: Identity,
        service: ReportExportService,
    ):
        report = await completed_report(db_session, agent_identity)

        export = await service.export_report(
            db_session,
            agent_identity,
            report.id,
            single(format="csv", options={"compression": "zip"}),
        )

        assert export.file_name == "January_summary.zip"
        assert export.content_type == "application/zip"
        with zipfile.ZipFile(export.file_path) as archive:
            assert archive.namelist() == ["January_summary.csv"]
            text = archive.read("January_summary.csv").decode()
        assert text.startswith('"')

    @pytest.mark.asyncio
    async def test_gzip_compression(
        self, db_session: AsyncSession, booking_data, agent_identity: Identity,
        service: ReportExportService,
    ):
        report = await completed_report(db_session, agent_identity)

        export = await service.export_report(
            db_session,
            agent_identity,
            report.id,
            single(format="json", options={"compression": "gzip"}),
        )

        assert export.file_name == "January_summary.json.gz"
        assert export.content_type == "application/gzip"
        with gzip.open(export.file_path, "rb") as archive:
            document = orjson.loads(archive.read())
        assert document["summary"]["total_appointments"] == 5

    @pytest.mark.asyncio
    async def test_report_must_be_completed(
        self, db_session: AsyncSession, agent_identity: Identity,
        service: ReportExportService,
    ):
        report, _ = await ReportService().create_report(
            db_session,
            agent_identity,
            ReportCreate.model_validate(
                {
                    "title": "Pending",
                    "type": "APPOINTMENT_SUMMARY",
                    "parameters": {"dateFrom": "2024-01-01", "dateTo": "2024-01-31"},
                }
            ),
        )

        with pytest.raises(ConflictError) as exc_info:
            await service.export_report(db_session, agent_identity, report.id, single())

        assert exc_info.value.code == "REPORT_NOT_READY"
        assert (await db_session.scalars(select(ReportExport))).all() == []

    @pytest.mark.asyncio
    async def test_other_agent_denied(
        self, db_session: AsyncSession, booking_data, agent_identity: Identity,
        other_identity: Identity, service: ReportExportService,
    ):
        report = await completed_report(db_session, agent_identity)

        with pytest.raises(PermissionDeniedError):
            await service.export_report(db_session, other_identity, report.id, single())

    @pytest.mark.asyncio
    async def test_unknown_custom_template(
        self, db_session: AsyncSession, booking_data, agent_identity: Identity,
        service: ReportExportService,
    ):
        report = await completed_report(db_session, agent_identity)

        with pytest.raises(TemplateNotFoundError):
            await service.export_report(
                db_session,
                agent_identity,
                report.id,
                single(options={"customTemplate": "missing"}),
            )

    @pytest.mark.asyncio
    async def test_render_failure_marks_export_failed(
        self, db_session: AsyncSession, booking_data, agent_identity: Identity,
        service: ReportExportService, output_dirs, monkeypatch,
    ):
        report = await completed_report(db_session, agent_identity)

        def broken(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(report_export, "pack_single", broken)

        with pytest.raises(ReportExportFailedError) as exc_info:
            await service.export_report(db_session, agent_identity, report.id, single())

        export = await db_session.get(
            ReportExport, exc_info.value.details["export_id"], populate_existing=True
        )
        assert export.status == ReportExportStatus.FAILED.value
        assert export.error_message == "disk full"
        assert list(output_dirs["report_exports"].iterdir()) == []

    @pytest.mark.asyncio
    async def test_email_delivery_sends_the_file(
        self, db_session: AsyncSession, booking_data, agent_identity: Identity,
    ):
        report = await completed_report(db_session, agent_identity)
        email = RecordingEmail()

        export = await ReportExportService(email=email).export_report(
            db_session,
            agent_identity,
            report.id,
            single(
                format="csv",
                deliveryMethod="EMAIL",
                emailRecipients=["finance@agency.example"],
            ),
        )

        assert export.email_sent is True
        (call,) = email.calls
        assert call["to"] == ["finance@agency.example"]
        assert call["report_titles"] == ["January summary"]
        assert call["file_name"] == "January_summary.csv"
        assert call["content"] == Path(export.file_path).read_bytes()
        assert call["content_type"] == "text/csv"

    @pytest.mark.asyncio
    async def test_audit_and_notification(
        self, db_session: AsyncSession, booking_data, agent_identity: Identity,
        service: ReportExportService,
    ):
        report = await completed_report(db_session, agent_identity)

        export = await service.export_report(db_session, agent_identity, report.id, single())

        entry = (
            await db_session.scalars(
                select(ActivityLog).where(ActivityLog.action == ActivityAction.REPORT_EXPORTED)
            )
        ).one()
        assert entry.entity_id == report.id
        assert orjson.loads(entry.details)["export_id"] == export.id
        notification = (
            await db_session.scalars(
                select(Notification).where(
                    Notification.user_id == agent_identity.user_id,
                    Notification.title == "Report export ready",
                )
            )
        ).one()
        assert notification.get_data_dict()["export_id"] == export.id


class TestBulkExport:
    """Tests for bulk report exports."""

    @pytest.mark.asyncio
    async def test_bundles_reports_with_index(
        self, db_session: AsyncSession, booking_data, agent_identity: Identity,
        service: ReportExportService,
    ):
        first = await completed_report(db_session, agent_identity, title="Weekly")
        second = await completed_report(db_session, agent_identity, title="Weekly")
        third = await completed_report(db_session, agent_identity, title="Monthly")

        export = await service.bulk_export(
            db_session,
            agent_identity,
            bulk([first.id, second.id, third.id, first.id], format="csv"),
        )

        assert export.kind == "BULK"
        assert export.report_count == 3
        assert export.get_report_ids_list() == [first.id, second.id, third.id]
        assert export.expires_at - export.completed_at == timedelta(hours=48)
        with zipfile.ZipFile(export.file_path) as archive:
            names = archive.namelist()
            index = list(csv.reader(io.StringIO(archive.read("index.csv").decode())))
        assert names == [
            "Weekly.csv",
            f"Weekly_{second.id[:8]}.csv",
            "Monthly.csv",
            "index.csv",
        ]
        assert index[0] == ["report_id", "title", "file_name", "size_bytes"]
        assert [row[0] for row in index[1:]] == [first.id, second.id, third.id]

    @pytest.mark.asyncio
    async def test_index_can_be_left_out(
        self, db_session: AsyncSession, booking_data, agent_identity: Identity,
        service: ReportExportService,
    ):
        report = await completed_report(db_session, agent_identity)

        export = await service.bulk_export(
            db_session,
            agent_identity,
            bulk([report.id], format="json", options={"includeIndex": False}),
        )

        with zipfile.ZipFile(export.file_path) as archive:
            assert archive.namelist() == ["January_summary.json"]

    @pytest.mark.asyncio
    async def test_lists_every_report_not_ready(
        self, db_session: AsyncSession, booking_data, agent_identity: Identity,
        other_identity: Identity, service: ReportExportService,
    ):
        ready = await completed_report(db_session, agent_identity)
        foreign = await completed_report(db_session, other_identity)
        pending, _ = await ReportService().create_report(
            db_session,
            agent_identity,
            ReportCreate.model_validate(
                {
                    "title": "Pending",
                    "type": "APPOINTMENT_SUMMARY",
                    "parameters": {"dateFrom": "2024-01-01", "dateTo": "2024-01-31"},
                }
            ),
        )

        with pytest.raises(ReportsNotReadyError) as exc_info:
            await service.bulk_export(
                db_session,
                agent_identity,
                bulk([ready.id, "missing", pending.id, foreign.id]),
            )

        assert exc_info.value.details["missing_report_ids"] == ["missing", pending.id, foreign.id]

    def test_report_id_limit(self):
        with pytest.raises(ValueError):
            bulk([f"r{i}" for i in range(51)])
        with pytest.raises(ValueError):
            bulk([])
        assert len(bulk([f"r{i}" for i in range(50)]).report_ids) == 50

    def test_email_delivery_needs_recipients(self):
        with pytest.raises(ValueError):
            bulk(["r1"], deliveryMethod="EMAIL")


class TestExportHistory:
    """Tests for listing, downloading and deleting exports."""

    @pytest.mark.asyncio
    async def test_list_with_summary(
        self, db_session: AsyncSession, booking_data, agent_identity: Identity,
        other_identity: Identity, service: ReportExportService,
    ):
        report = await completed_report(db_session, agent_identity)
        pdf = await service.export_report(db_session, agent_identity, report.id, single())
        await service.export_report(db_session, agent_identity, report.id, single(format="csv"))
        await service.read_export_file(db_session, agent_identity, pdf.id)
        other_report = await completed_report(db_session, other_identity)
        await service.export_report(db_session, other_identity, other_report.id, single())

        exports, total, summary = await service.list_exports(db_session, agent_identity)

        assert total == 2
        assert {e.format for e in exports} == {"pdf", "csv"}
        assert summary["by_format"] == {"csv": 1, "excel": 0, "pdf": 1, "json": 0}
        assert summary["by_status"]["COMPLETED"] == 2
        assert summary["total_downloads"] == 1
        assert summary["total_file_size"] == sum(e.file_size for e in exports)
        assert summary["expired"] == 0

        later = utc_now() + timedelta(hours=25)
        _, _, summary = await service.list_exports(db_session, agent_identity, now=later)
        assert summary["expired"] == 2

        exports, total, _ = await service.list_exports(
            db_session, agent_identity, format=ReportFormat.CSV
        )
        assert total == 1

    @pytest.mark.asyncio
    async def test_download_counts_and_expires(
        self, db_session: AsyncSession, booking_data, agent_identity: Identity,
        service: ReportExportService,
    ):
        report = await completed_report(db_session, agent_identity)
        export = await service.export_report(db_session, agent_identity, report.id, single())

        export, content = await service.read_export_file(db_session, agent_identity, export.id)
        assert content.startswith(b"%PDF")
        assert export.download_count == 1
        assert export.last_downloaded_at is not None

        with pytest.raises(ConflictError) as exc_info:
            await service.read_export_file(
                db_session, agent_identity, export.id, now=export.expires_at
            )
        assert exc_info.value.code == "EXPORT_EXPIRED"
        assert report_export_view(export, now=export.expires_at)["can_download"] is False

    @pytest.mark.asyncio
    async def test_delete_removes_file(
        self, db_session: AsyncSession, booking_data, agent_identity: Identity,
        service: ReportExportService,
    ):
        report = await completed_report(db_session, agent_identity)
        export = await service.export_report(db_session, agent_identity, report.id, single())
        path = Path(export.file_path)

        deleted = await service.delete_export(db_session, agent_identity, export.id)

        assert deleted.status == ReportExportStatus.DELETED.value
        assert deleted.deleted_at is not None
        assert deleted.file_path is None
        assert not path.exists()

        with pytest.raises(InvalidTransitionError):
            await service.delete_export(db_session, agent_identity, export.id)
        with pytest.raises(ConflictError) as exc_info:
            await service.read_export_file(db_session, agent_identity, export.id)
        assert exc_info.value.code == "EXPORT_NOT_READY"

        actions = (
            await db_session.scalars(
                select(ActivityLog.action).where(ActivityLog.entity_id == export.id)
            )
        ).all()
        assert actions == [ActivityAction.REPORT_EXPORT_DELETED]

    @pytest.mark.asyncio
    async def test_only_owner_or_admin_sees_export(
        self, db_session: AsyncSession, booking_data, agent_identity: Identity,
        other_identity: Identity, admin_identity: Identity, service: ReportExportService,
    ):
        report = await completed_report(db_session, agent_identity)
        export = await service.export_report(db_session, agent_identity, report.id, single())

        with pytest.raises(PermissionDeniedError):
            await service.get_export(db_session, other_identity, export.id)
        with pytest.raises(PermissionDeniedError):
            await service.delete_export(db_session, other_identity, export.id)
        assert (await service.get_export(db_session, admin_identity, export.id)).id == export.id
