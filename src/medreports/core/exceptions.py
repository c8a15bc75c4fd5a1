"""
Custom exceptions for medreports.

Provides a hierarchy of exceptions that map to HTTP status codes
and include structured error information.
"""

from typing import Any


class ReportingError(Exception):
    """
    Base exception for all medreports errors.

    All custom exceptions should inherit from this class.
    """

    status_code = 500

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize exception.

        Args:
            message: Human-readable error message
            code: Machine-readable error code
            details: Additional error details
        """
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


# =============================================================================
# HTTP 400 - Bad Request Errors
# =============================================================================


class BadRequestError(ReportingError):
    """Invalid request parameters or payload."""

    status_code = 400


class ValidationError(BadRequestError):
    """Request validation failed. Lists every offending field."""

    def __init__(
        self,
        message: str = "Validation error",
        errors: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details={"errors": errors or []},
        )

    @property
    def errors(self) -> list[dict[str, Any]]:
        return self.details["errors"]


class InvalidDateRangeError(BadRequestError):
    """dateFrom is after dateTo."""

    def __init__(self, date_from: Any, date_to: Any) -> None:
        super().__init__(
            message="dateFrom must be on or before dateTo",
            code="INVALID_DATE_RANGE",
            details={"date_from": str(date_from), "date_to": str(date_to)},
        )


class RangeTooLargeError(BadRequestError):
    """Requested date span exceeds the allowed maximum."""

    def __init__(self, requested_days: int, max_days: int) -> None:
        super().__init__(
            message=(
                f"Date range cannot exceed {max_days} days "
                f"(requested {requested_days} days)"
            ),
            code="RANGE_TOO_LARGE",
            details={"requested_days": requested_days, "max_days": max_days},
        )
        self.requested_days = requested_days


class InvalidScheduleError(BadRequestError):
    """Malformed recurrence description."""

    def __init__(self, errors: list[dict[str, Any]]) -> None:
        fields = ", ".join(e["field"] for e in errors)
        super().__init__(
            message=f"Invalid schedule: {fields}",
            code="INVALID_SCHEDULE",
            details={"errors": errors},
        )

    @property
    def errors(self) -> list[dict[str, Any]]:
        return self.details["errors"]


class InvalidSortFieldError(BadRequestError):
    """Sort field is not in the allowed set."""

    def __init__(self, sort_by: str, allowed: list[str]) -> None:
        super().__init__(
            message=f"Cannot sort by '{sort_by}'",
            code="INVALID_SORT_FIELD",
            details={"sort_by": sort_by, "allowed": allowed},
        )


class TemplateStructureInvalidError(BadRequestError):
    """Template structure failed validation."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__(
            message="Template structure is invalid",
            code="TEMPLATE_STRUCTURE_INVALID",
            details={"errors": errors},
        )

    @property
    def errors(self) -> list[str]:
        return self.details["errors"]


# =============================================================================
# HTTP 401 / 403 - Authentication and Authorization Errors
# =============================================================================


class AuthenticationError(ReportingError):
    """Caller identity is missing."""

    status_code = 401

    def __init__(
        self,
        message: str = "Authentication required",
        code: str = "AUTHENTICATION_REQUIRED",
    ) -> None:
        super().__init__(message=message, code=code)


class PermissionDeniedError(ReportingError):
    """User is not permitted to perform this action."""

    status_code = 403

    def __init__(
        self,
        message: str = "You don't have permission to perform this action",
        resource: str | None = None,
        action: str | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="FORBIDDEN",
            details={"resource": resource, "action": action},
        )


# =============================================================================
# HTTP 404 - Not Found Errors
# =============================================================================


class NotFoundError(ReportingError):
    """Requested resource not found."""

    status_code = 404

    def __init__(
        self,
        resource: str,
        identifier: str | None = None,
    ) -> None:
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with ID '{identifier}' not found"

        super().__init__(
            message=message,
            code="NOT_FOUND",
            details={"resource": resource, "identifier": identifier},
        )


class ReportNotFoundError(NotFoundError):
    def __init__(self, report_id: str | None = None) -> None:
        super().__init__(resource="Report", identifier=report_id)


class ScheduleNotFoundError(NotFoundError):
    def __init__(self, schedule_id: str | None = None) -> None:
        super().__init__(resource="Schedule", identifier=schedule_id)


class TemplateNotFoundError(NotFoundError):
    def __init__(self, template_id: str | None = None) -> None:
        super().__init__(resource="Template", identifier=template_id)


class ExportJobNotFoundError(NotFoundError):
    def __init__(self, job_id: str | None = None) -> None:
        super().__init__(resource="Export job", identifier=job_id)


class ReportExportNotFoundError(NotFoundError):
    def __init__(self, export_id: str | None = None) -> None:
        super().__init__(resource="Report export", identifier=export_id)


class ExportTemplateNotFoundError(NotFoundError):
    def __init__(self, template_id: str | None = None) -> None:
        super().__init__(resource="Export template", identifier=template_id)


# =============================================================================
# HTTP 409 - Conflict Errors
# =============================================================================


class ConflictError(ReportingError):
    """Resource is in a state that does not allow the operation."""

    status_code = 409


class InvalidTransitionError(ConflictError):
    """Requested status change is not a legal transition."""

    def __init__(self, entity: str, entity_id: str, current: str, requested: str) -> None:
        super().__init__(
            message=f"{entity} cannot move from {current} to {requested}",
            code="INVALID_TRANSITION",
            details={
                "entity": entity,
                "id": entity_id,
                "current_status": current,
                "requested_status": requested,
            },
        )


class CancelledByUserError(ConflictError):
    """Generation was cancelled by its owner."""

    reason = "CancelledByUser"

    def __init__(self, report_id: str) -> None:
        super().__init__(
            message="Report generation was cancelled by the user",
            code="CANCELLED_BY_USER",
            details={"report_id": report_id},
        )


class ReportsNotReadyError(ConflictError):
    """Some reports of a bulk export are missing, inaccessible or not COMPLETED."""

    def __init__(self, missing_report_ids: list[str]) -> None:
        super().__init__(
            message=f"{len(missing_report_ids)} report(s) not found or not ready for export",
            code="REPORTS_NOT_READY",
            details={"missing_report_ids": missing_report_ids},
        )


# =============================================================================
# HTTP 422 - Unprocessable Entity
# =============================================================================


class InvalidReferenceError(ReportingError):
    """Filters reference entities that do not exist."""

    status_code = 422

    def __init__(self, missing: dict[str, list[str]]) -> None:
        parts = [f"{kind}: {', '.join(ids)}" for kind, ids in missing.items()]
        super().__init__(
            message=f"Unknown references ({'; '.join(parts)})",
            code="INVALID_REFERENCE",
            details={"missing": missing},
        )

    @property
    def missing(self) -> dict[str, list[str]]:
        return self.details["missing"]


# =============================================================================
# HTTP 5xx - Server Errors
# =============================================================================


class GenerationTimeoutError(ReportingError):
    """Report generation ran past its deadline."""

    status_code = 504
    reason = "GenerationTimeout"

    def __init__(self, report_id: str, timeout_seconds: float) -> None:
        super().__init__(
            message=f"Report generation exceeded {timeout_seconds:g} seconds",
            code="GENERATION_TIMEOUT",
            details={"report_id": report_id, "timeout_seconds": timeout_seconds},
        )


class ExportFailedError(ReportingError):
    """An export job failed while reading or writing rows."""

    status_code = 500

    def __init__(self, job_id: str, reason: str) -> None:
        super().__init__(
            message=f"Export failed: {reason}",
            code="EXPORT_FAILED",
            details={"job_id": job_id},
        )


class ReportExportFailedError(ReportingError):
    """A report export failed while rendering or packaging files."""

    status_code = 500

    def __init__(self, export_id: str, reason: str) -> None:
        super().__init__(
            message=f"Report export failed: {reason}",
            code="REPORT_EXPORT_FAILED",
            details={"export_id": export_id},
        )
