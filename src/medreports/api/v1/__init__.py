"""API v1 routes."""

from fastapi import APIRouter

from medreports.api.v1 import exports, health, report_exports, reports, schedules, templates

router = APIRouter()

# Include all v1 routes
router.include_router(health.router, tags=["health"])
# Schedules go first so /reports/schedules is not taken for a report id
router.include_router(schedules.router, prefix="/reports/schedules", tags=["schedules"])
# Likewise /reports/exports
router.include_router(report_exports.router, prefix="/reports", tags=["report-exports"])
router.include_router(reports.router, prefix="/reports", tags=["reports"])
router.include_router(templates.router, prefix="/report-templates", tags=["templates"])
router.include_router(exports.router, prefix="/exports", tags=["exports"])
