"""
Tests for report aggregation against the booking data store.
"""

from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from medreports.core.exceptions import InvalidReferenceError, RangeTooLargeError
from medreports.models.report import ReportType
from medreports.schemas.report import (
    AgentPerformanceParameters,
    AppointmentSummaryParameters,
    CustomerSatisfactionParameters,
    OperationalMetricsParameters,
    RevenueAnalysisParameters,
)
from medreports.services.aggregation import aggregate

JANUARY = {"date_from": "2024-01-01", "date_to": "2024-01-31"}


@pytest.mark.asyncio
async def test_revenue_analysis_weekly(db_session: AsyncSession, booking_data):
    """Payments in January 2024 fold into Sunday-aligned weeks."""
    params = RevenueAnalysisParameters(**JANUARY, group_by="week")

    result = await aggregate(db_session, ReportType.REVENUE_ANALYSIS, params)

    assert result.record_count == 5
    assert len(result.data) <= 5
    assert [b["period"] for b in result.data] == [
        "2023-12-31",
        "2024-01-07",
        "2024-01-14",
        "2024-01-21",
        "2024-01-28",
    ]
    summary = result.summary
    assert summary["total_transactions"] == 5
    assert summary["total_amount"] == Decimal("540.00")
    assert summary["paid_amount"] == Decimal("370.00")
    assert summary["refunded_amount"] == Decimal("80.00")
    assert summary["pending_amount"] == Decimal("90.00")
    assert summary["net_revenue"] == Decimal("290.00")
    assert summary["success_rate"] == Decimal("60.00")
    assert summary["by_payment_method"] == {"CARD": 4, "CASH": 1}
    assert [h["name"] for h in summary["top_hospitals"]] == ["City General", "Lakeside Clinic"]
    assert summary["top_hospitals"][0]["revenue"] == Decimal("250.00")
    assert summary["date_from"] == "2024-01-01"
    assert summary["date_to"] == "2024-01-31"
    assert summary["group_by"] == "week"

    refund_week = result.data[2]
    assert refund_week["refunded_amount"] == Decimal("80.00")
    assert refund_week["net_amount"] == Decimal("-80.00")


@pytest.mark.asyncio
async def test_appointment_summary_totals(db_session: AsyncSession, booking_data):
    """Cancelled appointments do not count toward revenue."""
    params = AppointmentSummaryParameters(**JANUARY, group_by="month")

    result = await aggregate(db_session, ReportType.APPOINTMENT_SUMMARY, params)

    summary = result.summary
    assert summary["total_appointments"] == 5
    assert summary["confirmed"] == 1
    assert summary["completed"] == 2
    assert summary["cancelled"] == 1
    assert summary["no_show"] == 1
    assert summary["total_revenue"] == Decimal("460.00")
    assert summary["average_amount"] == Decimal("115.00")
    assert summary["by_specialization"] == {"Cardiology": 3, "Dermatology": 2}
    assert summary["by_hospital"] == {"City General": 3, "Lakeside Clinic": 2}
    assert summary["top_doctors"][0]["name"] == "Dr. Perera"
    assert summary["top_doctors"][0]["appointments"] == 3

    assert result.data == [
        {
            "period": "2024-01",
            "appointments": 5,
            "completed": 2,
            "cancelled": 1,
            "revenue": Decimal("460.00"),
        }
    ]
    assert result.charts["appointments_over_time"] == [{"x": "2024-01", "y": 5}]


@pytest.mark.asyncio
async def test_filters_narrow_rows(db_session: AsyncSession, booking_data):
    """Doctor filters and status filters combine."""
    dermatologist = booking_data.doctors[1]
    params = AppointmentSummaryParameters(
        **JANUARY,
        doctor_ids=[dermatologist.id],
        statuses=["COMPLETED"],
    )

    result = await aggregate(db_session, ReportType.APPOINTMENT_SUMMARY, params)

    assert result.record_count == 1
    assert result.summary["total_revenue"] == Decimal("120.00")


@pytest.mark.asyncio
async def test_agent_performance_ranking(db_session: AsyncSession, booking_data, agent, other_agent):
    """Agents rank by bookings; min_bookings drops quieter agents."""
    params = AgentPerformanceParameters(**JANUARY)

    result = await aggregate(db_session, ReportType.AGENT_PERFORMANCE, params)

    agents = result.summary["agents"]
    assert [a["id"] for a in agents] == [agent.id, other_agent.id]
    assert agents[0]["rank"] == 1
    assert agents[0]["bookings"] == 3
    assert agents[0]["completion_rate"] == Decimal("66.67")
    assert agents[0]["revenue"] == Decimal("370.00")
    assert agents[1]["cancellation_rate"] == Decimal("50.00")

    params = AgentPerformanceParameters(**JANUARY, min_bookings=3)
    result = await aggregate(db_session, ReportType.AGENT_PERFORMANCE, params)

    assert [a["id"] for a in result.summary["agents"]] == [agent.id]


@pytest.mark.asyncio
async def test_customer_satisfaction(db_session: AsyncSession, booking_data):
    """Only rated appointments feed the averages."""
    params = CustomerSatisfactionParameters(**JANUARY)

    result = await aggregate(db_session, ReportType.CUSTOMER_SATISFACTION, params)

    summary = result.summary
    assert summary["rated_appointments"] == 2
    assert summary["response_rate"] == Decimal("40.00")
    assert summary["average_rating"] == Decimal("4.50")
    assert summary["rating_distribution"] == {"1": 0, "2": 0, "3": 0, "4": 1, "5": 1}
    assert [d["name"] for d in summary["top_doctors"]] == ["Dr. Perera", "Dr. Silva"]


@pytest.mark.asyncio
async def test_operational_metrics(db_session: AsyncSession, booking_data):
    """Rates and booking lead time over the whole window."""
    params = OperationalMetricsParameters(**JANUARY, include_charts=False)

    result = await aggregate(db_session, ReportType.OPERATIONAL_METRICS, params)

    summary = result.summary
    assert summary["completion_rate"] == Decimal("40.00")
    assert summary["cancellation_rate"] == Decimal("20.00")
    assert summary["no_show_rate"] == Decimal("20.00")
    assert summary["average_lead_time_hours"] == Decimal("2.00")
    assert summary["by_weekday"] == {"Wednesday": 5}
    assert result.charts == {}


@pytest.mark.asyncio
async def test_details_are_included_on_request(db_session: AsyncSession, booking_data):
    params = AppointmentSummaryParameters(**JANUARY, include_details=True)

    result = await aggregate(db_session, ReportType.APPOINTMENT_SUMMARY, params)

    assert len(result.details) == 5
    assert result.details[0]["appointment_number"] == "APT-001"
    assert "details" in result.to_dict()


@pytest.mark.asyncio
async def test_empty_window(db_session: AsyncSession, booking_data):
    params = AppointmentSummaryParameters(date_from="2023-06-01", date_to="2023-06-30")

    result = await aggregate(db_session, ReportType.APPOINTMENT_SUMMARY, params)

    assert result.record_count == 0
    assert result.data == []
    assert result.summary["total_revenue"] == Decimal("0.00")
    assert result.summary["average_amount"] == Decimal("0.00")


@pytest.mark.asyncio
async def test_unknown_references(db_session: AsyncSession, booking_data):
    """Every unknown id is reported, grouped by kind."""
    params = AppointmentSummaryParameters(
        **JANUARY,
        doctor_ids=[booking_data.doctors[0].id, "missing-doctor"],
        hospital_ids=["missing-hospital"],
    )

    with pytest.raises(InvalidReferenceError) as exc_info:
        await aggregate(db_session, ReportType.APPOINTMENT_SUMMARY, params)

    assert exc_info.value.missing == {
        "doctor_ids": ["missing-doctor"],
        "hospital_ids": ["missing-hospital"],
    }


@pytest.mark.asyncio
async def test_range_limit(db_session: AsyncSession, booking_data):
    params = AppointmentSummaryParameters(**JANUARY)

    with pytest.raises(RangeTooLargeError):
        await aggregate(db_session, ReportType.APPOINTMENT_SUMMARY, params, max_days=7)
