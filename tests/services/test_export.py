"""
Tests for ExportService.
"""

from datetime import timedelta
from pathlib import Path

import orjson
import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from medreports.core.config import settings
from medreports.core.exceptions import (
    ConflictError,
    ExportFailedError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from medreports.models.activity_log import ActivityAction, ActivityLog
from medreports.models.export_job import ExportEntityType, ExportJob, ExportJobStatus
from medreports.schemas.common import Identity
from medreports.schemas.export import ExportRequest
from medreports.services import export_job_service
from medreports.services.email_service import DeliveryResult
from medreports.services.export_job_service import (
    ExportService,
    build_export_query,
    export_job_view,
)


def export_request(**overrides) -> ExportRequest:
    payload = {"entityType": "appointments", "format": "csv"}
    payload.update(overrides)
    return ExportRequest.model_validate(payload)


class RecordingEmail:
    """Configured email service that records instead of sending."""

    def __init__(self) -> None:
        self.calls: list[dict] = []

    def is_configured(self) -> bool:
        return True

    def send_export_email(self, **kwargs) -> DeliveryResult:
        self.calls.append(kwargs)
        return DeliveryResult(success=True, recipients_count=len(kwargs["to"]))


@pytest.fixture
def export_service() -> ExportService:
    """Create an instance of ExportService."""
    return ExportService()


async def processing_job(db: AsyncSession, identity: Identity) -> ExportJob:
    job = ExportJob(
        exported_by_id=identity.user_id,
        entity_type="appointments",
        format="csv",
        file_name="running.csv",
        status=ExportJobStatus.PROCESSING.value,
    )
    db.add(job)
    await db.commit()
    return job


class TestBuildExportQuery:
    """Tests for request validation."""

    def test_collects_every_problem(self):
        with pytest.raises(ValidationError) as exc_info:
            build_export_query(
                ExportEntityType.APPOINTMENTS,
                {"dateFrom": "yesterday", "favouriteColour": "blue"},
                ["appointment_number", "secret"],
            )

        assert exc_info.value.errors == [
            {"field": "filters.dateFrom", "message": "Expected a date (YYYY-MM-DD)"},
            {"field": "filters.favouriteColour", "message": "Unknown filter field"},
            {"field": "columns", "message": "Unknown column 'secret'"},
        ]

    def test_camel_case_filters_map_to_columns(self):
        stmt = build_export_query(
            ExportEntityType.APPOINTMENTS, {"paymentStatus": ["PAID"]}, ["doctor_name"]
        )

        assert "appointments.payment_status IN" in str(stmt)


class TestRunExport:
    """Tests for writing export files."""

    @pytest.mark.asyncio
    async def test_csv_export(
        self,
        db_session: AsyncSession,
        export_service: ExportService,
        booking_data,
        agent_identity: Identity,
        output_dirs,
    ):
        outcome = await export_service.run_export(db_session, agent_identity, export_request())

        job = outcome.job
        assert job.status == ExportJobStatus.COMPLETED.value
        assert job.total_records == 5
        assert job.file_name.startswith("appointments_export_")
        assert job.file_name.endswith(".csv")
        assert outcome.content_type == "text/csv"
        assert outcome.rows is None

        path = Path(job.file_path)
        assert path == output_dirs["exports"] / f"{job.id}.csv"
        assert job.file_size == path.stat().st_size
        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 6
        # Newest first
        assert '"APT-005"' in lines[1]

    @pytest.mark.asyncio
    async def test_columns_and_file_name(
        self,
        db_session: AsyncSession,
        export_service: ExportService,
        booking_data,
        agent_identity: Identity,
    ):
        request = export_request(
            entityType="doctors",
            columns=["name", "specialization", "appointment_count"],
            fileName="doctor_roster",
        )

        outcome = await export_service.run_export(db_session, agent_identity, request)

        assert outcome.job.file_name == "doctor_roster.csv"
        assert Path(outcome.job.file_path).read_text(encoding="utf-8") == (
            '"name","specialization","appointment_count"\n'
            '"Dr. Perera","Cardiology",3\n'
            '"Dr. Silva","Dermatology",2\n'
        )

    @pytest.mark.asyncio
    async def test_email_recipients_receive_the_file(
        self,
        db_session: AsyncSession,
        booking_data,
        agent_identity: Identity,
    ):
        email = RecordingEmail()
        request = export_request(
            entityType="doctors",
            columns=["name"],
            emailRecipients=["ops@agency.example"],
        )

        outcome = await ExportService(email=email).run_export(db_session, agent_identity, request)

        (call,) = email.calls
        assert call["to"] == ["ops@agency.example"]
        assert call["file_name"] == outcome.job.file_name
        assert call["content"] == Path(outcome.job.file_path).read_bytes()
        assert call["content_type"] == "text/csv"
        assert call["record_count"] == 2
        assert call["entity_type"] == "doctors"

    @pytest.mark.asyncio
    async def test_filters_narrow_rows(
        self,
        db_session: AsyncSession,
        export_service: ExportService,
        booking_data,
        agent_identity: Identity,
    ):
        request = export_request(
            format="json",
            filters={"dateFrom": "2024-01-10", "dateTo": "2024-01-17"},
            columns=["appointment_number", "status"],
        )

        outcome = await export_service.run_export(db_session, agent_identity, request)

        assert outcome.rows == [
            {"appointment_number": "APT-003", "status": "CANCELLED"},
            {"appointment_number": "APT-002", "status": "CONFIRMED"},
        ]
        assert orjson.loads(Path(outcome.job.file_path).read_bytes()) == outcome.rows
        assert outcome.job.get_filters_dict() == {"dateFrom": "2024-01-10", "dateTo": "2024-01-17"}

    @pytest.mark.asyncio
    async def test_patients_are_deduplicated(
        self,
        db_session: AsyncSession,
        export_service: ExportService,
        booking_data,
        agent_identity: Identity,
    ):
        request = export_request(entityType="patients", format="json")

        outcome = await export_service.run_export(db_session, agent_identity, request)

        assert outcome.job.total_records == 4
        assert [r["patient_name"] for r in outcome.rows] == ["Dan", "Carol", "Alice", "Bob"]

    @pytest.mark.asyncio
    async def test_record_limit_truncates(
        self,
        db_session: AsyncSession,
        export_service: ExportService,
        booking_data,
        agent_identity: Identity,
        monkeypatch,
    ):
        monkeypatch.setattr(settings, "export_max_records", 2)
        monkeypatch.setattr(settings, "export_chunk_size", 1)

        outcome = await export_service.run_export(db_session, agent_identity, export_request())

        assert outcome.job.total_records == 2

    @pytest.mark.asyncio
    async def test_nothing_matched(
        self,
        db_session: AsyncSession,
        export_service: ExportService,
        booking_data,
        agent_identity: Identity,
    ):
        request = export_request(filters={"status": "RESCHEDULED"})

        with pytest.raises(ValidationError) as exc_info:
            await export_service.run_export(db_session, agent_identity, request)

        assert exc_info.value.message == "No data found for the specified criteria"
        jobs = await db_session.execute(select(ExportJob))
        assert jobs.scalars().all() == []

    @pytest.mark.asyncio
    async def test_writer_failure_marks_job_failed(
        self,
        db_session: AsyncSession,
        export_service: ExportService,
        booking_data,
        agent_identity: Identity,
        output_dirs,
        monkeypatch,
    ):
        def broken_writer(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(export_job_service, "create_writer", broken_writer)

        with pytest.raises(ExportFailedError):
            await export_service.run_export(db_session, agent_identity, export_request())

        job = (await db_session.execute(select(ExportJob))).scalar_one()
        assert job.status == ExportJobStatus.FAILED.value
        assert job.error_message == "disk full"
        assert list(output_dirs["exports"].iterdir()) == []

    @pytest.mark.asyncio
    async def test_cancelled_while_writing(
        self,
        db_session: AsyncSession,
        export_service: ExportService,
        booking_data,
        agent_identity: Identity,
        output_dirs,
        monkeypatch,
    ):
        write_file = ExportService._write_file

        async def cancel_midway(self, db, *args):
            written = await write_file(self, db, *args)
            await db.execute(update(ExportJob).values(status=ExportJobStatus.CANCELLED.value))
            await db.commit()
            return written

        monkeypatch.setattr(ExportService, "_write_file", cancel_midway)

        with pytest.raises(InvalidTransitionError):
            await export_service.run_export(db_session, agent_identity, export_request())

        statuses = await db_session.execute(select(ExportJob.status))
        assert list(statuses.scalars()) == [ExportJobStatus.CANCELLED.value]
        assert list(output_dirs["exports"].iterdir()) == []
        audit = await db_session.execute(select(ActivityLog.action))
        assert ActivityAction.EXPORT_COMPLETED not in list(audit.scalars())


class TestJobHistory:
    """Tests for listing, cancelling and downloading jobs."""

    @pytest.mark.asyncio
    async def test_list_and_get(
        self,
        db_session: AsyncSession,
        export_service: ExportService,
        booking_data,
        agent_identity: Identity,
        other_identity: Identity,
        admin_identity: Identity,
    ):
        mine = await export_service.run_export(db_session, agent_identity, export_request())
        await export_service.run_export(
            db_session, agent_identity, export_request(entityType="hospitals")
        )
        await export_service.run_export(db_session, other_identity, export_request())

        jobs, total = await export_service.list_jobs(db_session, agent_identity)
        assert total == 2
        assert all(j.exported_by_id == agent_identity.user_id for j in jobs)

        jobs, total = await export_service.list_jobs(
            db_session, admin_identity, entity_type=ExportEntityType.APPOINTMENTS
        )
        assert total == 2

        assert (await export_service.get_job(db_session, admin_identity, mine.job.id)).id == mine.job.id
        with pytest.raises(PermissionDeniedError):
            await export_service.get_job(db_session, other_identity, mine.job.id)

    @pytest.mark.asyncio
    async def test_view_download_url(
        self,
        db_session: AsyncSession,
        export_service: ExportService,
        booking_data,
        agent_identity: Identity,
    ):
        csv = await export_service.run_export(db_session, agent_identity, export_request())
        inline = await export_service.run_export(
            db_session, agent_identity, export_request(format="json")
        )

        view = export_job_view(csv.job)
        assert view["download_url"] == f"/api/v1/exports/jobs/{csv.job.id}/download"
        assert view["duration_seconds"] is not None
        assert export_job_view(inline.job)["download_url"] is None

    @pytest.mark.asyncio
    async def test_cancel_running_job(
        self,
        db_session: AsyncSession,
        export_service: ExportService,
        agent_identity: Identity,
        other_identity: Identity,
    ):
        job = await processing_job(db_session, agent_identity)
        job_id = job.id

        with pytest.raises(PermissionDeniedError):
            await export_service.cancel_job(db_session, other_identity, job.id)

        cancelled = await export_service.cancel_job(db_session, agent_identity, job.id)
        assert cancelled.status == ExportJobStatus.CANCELLED.value
        assert cancelled.completed_at is not None

        with pytest.raises(InvalidTransitionError):
            await export_service.cancel_job(db_session, agent_identity, job.id)

        audit = await db_session.execute(
            select(ActivityLog.action).where(ActivityLog.entity_id == job_id)
        )
        assert list(audit.scalars()) == [ActivityAction.EXPORT_CANCELLED]

    @pytest.mark.asyncio
    async def test_read_export_file(
        self,
        db_session: AsyncSession,
        export_service: ExportService,
        booking_data,
        agent_identity: Identity,
    ):
        outcome = await export_service.run_export(db_session, agent_identity, export_request())
        job_id = outcome.job.id

        job, content, content_type = await export_service.read_export_file(
            db_session, agent_identity, job_id
        )
        assert content.startswith(b'"id","appointment_number"')
        assert content_type == "text/csv"

        later = job.completed_at + timedelta(hours=settings.report_download_expiry_hours + 1)
        with pytest.raises(ConflictError) as exc_info:
            await export_service.read_export_file(db_session, agent_identity, job_id, now=later)
        assert exc_info.value.code == "EXPORT_EXPIRED"

        Path(job.file_path).unlink()
        with pytest.raises(NotFoundError):
            await export_service.read_export_file(db_session, agent_identity, job_id)

    @pytest.mark.asyncio
    async def test_running_job_is_not_downloadable(
        self,
        db_session: AsyncSession,
        export_service: ExportService,
        agent_identity: Identity,
    ):
        job = await processing_job(db_session, agent_identity)

        with pytest.raises(ConflictError) as exc_info:
            await export_service.read_export_file(db_session, agent_identity, job.id)

        assert exc_info.value.code == "EXPORT_NOT_READY"
