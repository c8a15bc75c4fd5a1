"""
Aggregation query builder.

Turns typed report parameters into queries against the booking data store
and folds the rows into ``{summary, data, charts}``:

- summary: scalar totals, rates and categorical breakdowns
- data: one row per time bucket (day, Sunday-aligned week, or month)
- charts: chart-ready series derived from the above

Money and averages use ``Decimal`` throughout. Rankings are deterministic:
metric descending, entity id ascending.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, AsyncIterator, Iterable, Mapping

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from medreports.core.config import settings
from medreports.core.exceptions import (
    InvalidDateRangeError,
    InvalidReferenceError,
    RangeTooLargeError,
    ValidationError,
)
from medreports.core.logging import get_logger
from medreports.db.base import ensure_utc, utc_now
from medreports.models.booking import (
    AGENT_ROLES,
    Appointment,
    AppointmentStatus,
    Doctor,
    Hospital,
    Payment,
    PaymentStatus,
    User,
)
from medreports.models.report import GroupBy, ReportType
from medreports.schemas.report import BaseReportParameters, DateRangePreset

logger = get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")


# =============================================================================
# Result
# =============================================================================


@dataclass
class AggregatedReport:
    """Output of one aggregation run."""

    summary: dict[str, Any]
    data: list[dict[str, Any]]
    charts: dict[str, list[dict[str, Any]]]
    record_count: int
    date_from: date
    date_to: date
    details: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "summary": self.summary,
            "data": self.data,
            "charts": self.charts,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Date handling
# =============================================================================


def validate_date_range(date_from: date, date_to: date, max_days: int | None = None) -> int:
    """
    Check a date range and return its span in days.

    Raises:
        InvalidDateRangeError: If date_from is after date_to
        RangeTooLargeError: If the span exceeds max_days
    """
    if date_from > date_to:
        raise InvalidDateRangeError(date_from, date_to)
    days = (date_to - date_from).days
    if max_days is not None and days > max_days:
        raise RangeTooLargeError(requested_days=days, max_days=max_days)
    return days


def _quarter_start(day: date) -> date:
    return date(day.year, 3 * ((day.month - 1) // 3) + 1, 1)


def resolve_date_range(params: BaseReportParameters, today: date | None = None) -> tuple[date, date]:
    """Concrete ``(date_from, date_to)`` for explicit dates or a relative preset."""
    preset = params.date_range
    if preset is None or preset == DateRangePreset.CUSTOM:
        if params.date_from is None or params.date_to is None:
            raise ValidationError(
                message="Date range is incomplete",
                errors=[
                    {"field": name, "message": "Field required"}
                    for name, value in (("dateFrom", params.date_from), ("dateTo", params.date_to))
                    if value is None
                ],
            )
        return params.date_from, params.date_to

    today = today or utc_now().date()
    yesterday = today - timedelta(days=1)

    if preset == DateRangePreset.LAST_7_DAYS:
        return today - timedelta(days=7), yesterday
    if preset == DateRangePreset.LAST_30_DAYS:
        return today - timedelta(days=30), yesterday
    if preset == DateRangePreset.LAST_90_DAYS:
        return today - timedelta(days=90), yesterday
    if preset == DateRangePreset.CURRENT_MONTH:
        return today.replace(day=1), today
    if preset == DateRangePreset.PREVIOUS_MONTH:
        last = today.replace(day=1) - timedelta(days=1)
        return last.replace(day=1), last
    if preset == DateRangePreset.CURRENT_QUARTER:
        return _quarter_start(today), today
    # previous quarter
    last = _quarter_start(today) - timedelta(days=1)
    return _quarter_start(last), last


def window_bounds(date_from: date, date_to: date) -> tuple[datetime, datetime]:
    """UTC ``[start, end)`` covering both days in full."""
    start = datetime.combine(date_from, time.min, tzinfo=timezone.utc)
    end = datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return start, end


def bucket_key(moment: datetime | date, group_by: str) -> str:
    """
    Period key for a timestamp.

    day -> ISO date, week -> ISO date of the Sunday starting the week,
    month -> YYYY-MM. Anything else groups by day.
    """
    day = ensure_utc(moment).date() if isinstance(moment, datetime) else moment
    if group_by == GroupBy.WEEK.value:
        return (day - timedelta(days=(day.weekday() + 1) % 7)).isoformat()
    if group_by == GroupBy.MONTH.value:
        return f"{day.year:04d}-{day.month:02d}"
    return day.isoformat()


# =============================================================================
# Numeric helpers
# =============================================================================


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def rate(part: int | Decimal, whole: int | Decimal) -> Decimal:
    """Percentage with two decimals; zero when ``whole`` is zero."""
    if not whole:
        return money(ZERO)
    return money(Decimal(part) * 100 / Decimal(whole))


def average(total: Decimal, count: int) -> Decimal:
    if not count:
        return money(ZERO)
    return money(total / count)


def top_n(
    items: Iterable[Mapping[str, Any]],
    metric: str,
    n: int,
    key: str = "id",
) -> list[dict[str, Any]]:
    """Rank by ``metric`` descending, ties broken by ``key`` ascending."""
    ranked = sorted(items, key=lambda item: (-item[metric], str(item[key])))
    return [dict(item) for item in ranked[:n]]


def _counter_series(counts: Mapping[str, Any]) -> list[dict[str, Any]]:
    return [{"label": k, "value": v} for k, v in counts.items()]


def _ordered_buckets(buckets: Mapping[str, dict[str, Any]]) -> list[dict[str, Any]]:
    return [{"period": period, **values} for period, values in sorted(buckets.items())]


# =============================================================================
# Reference validation
# =============================================================================


def _dedupe(ids: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(ids))


async def validate_references(db: AsyncSession, params: BaseReportParameters) -> None:
    """
    Verify every referenced agent, doctor and hospital exists.

    Agents must be users with an agent-like role; doctors and hospitals
    must be active.

    Raises:
        InvalidReferenceError: naming all missing IDs per kind
    """
    checks = (
        ("agent_ids", params.agent_ids, User, (User.role.in_(AGENT_ROLES),)),
        ("doctor_ids", params.doctor_ids, Doctor, (Doctor.is_active.is_(True),)),
        ("hospital_ids", params.hospital_ids, Hospital, (Hospital.is_active.is_(True),)),
    )
    missing: dict[str, list[str]] = {}
    for name, ids, model, conditions in checks:
        wanted = _dedupe(ids)
        if not wanted:
            continue
        result = await db.execute(select(model.id).where(model.id.in_(wanted), *conditions))
        found = set(result.scalars().all())
        absent = [i for i in wanted if i not in found]
        if absent:
            missing[name] = absent

    if missing:
        raise InvalidReferenceError(missing)


# =============================================================================
# Row access
# =============================================================================


async def iter_chunks(
    db: AsyncSession,
    stmt: Select,
    chunk_size: int | None = None,
) -> AsyncIterator[list[Mapping[str, Any]]]:
    """Yield result rows in bounded chunks. ``stmt`` must have a total ordering."""
    chunk_size = chunk_size or settings.aggregation_chunk_size
    offset = 0
    while True:
        result = await db.execute(stmt.offset(offset).limit(chunk_size))
        rows = result.mappings().all()
        if not rows:
            return
        yield rows
        if len(rows) < chunk_size:
            return
        offset += chunk_size


def _appointment_query(params: BaseReportParameters, start: datetime, end: datetime) -> Select:
    stmt = (
        select(
            Appointment.id,
            Appointment.appointment_number,
            Appointment.session_date,
            Appointment.created_at,
            Appointment.status,
            Appointment.amount,
            Appointment.rating,
            Appointment.doctor_id,
            Doctor.name.label("doctor_name"),
            Doctor.specialization,
            Appointment.hospital_id,
            Hospital.name.label("hospital_name"),
            Appointment.booked_by_id,
            User.name.label("agent_name"),
        )
        .join(Doctor, Doctor.id == Appointment.doctor_id)
        .join(Hospital, Hospital.id == Appointment.hospital_id)
        .join(User, User.id == Appointment.booked_by_id)
        .where(Appointment.session_date >= start, Appointment.session_date < end)
        .order_by(Appointment.session_date, Appointment.id)
    )
    if params.agent_ids:
        stmt = stmt.where(Appointment.booked_by_id.in_(params.agent_ids))
    if params.doctor_ids:
        stmt = stmt.where(Appointment.doctor_id.in_(params.doctor_ids))
    if params.hospital_ids:
        stmt = stmt.where(Appointment.hospital_id.in_(params.hospital_ids))

    statuses = getattr(params, "statuses", None)
    if statuses:
        stmt = stmt.where(Appointment.status.in_([s.value for s in statuses]))
    specializations = getattr(params, "specializations", None)
    if specializations:
        stmt = stmt.where(Doctor.specialization.in_(specializations))
    return stmt


def _payment_query(params: Any, start: datetime, end: datetime) -> Select:
    stmt = (
        select(
            Payment.id,
            Payment.created_at,
            Payment.amount,
            Payment.status,
            Payment.payment_method,
            Appointment.appointment_number,
            Appointment.hospital_id,
            Hospital.name.label("hospital_name"),
            Appointment.doctor_id,
            Appointment.booked_by_id,
        )
        .join(Appointment, Appointment.id == Payment.appointment_id)
        .join(Hospital, Hospital.id == Appointment.hospital_id)
        .where(Payment.created_at >= start, Payment.created_at < end)
        .order_by(Payment.created_at, Payment.id)
    )
    if params.agent_ids:
        stmt = stmt.where(Appointment.booked_by_id.in_(params.agent_ids))
    if params.doctor_ids:
        stmt = stmt.where(Appointment.doctor_id.in_(params.doctor_ids))
    if params.hospital_ids:
        stmt = stmt.where(Appointment.hospital_id.in_(params.hospital_ids))
    if params.payment_statuses:
        stmt = stmt.where(Payment.status.in_([s.value for s in params.payment_statuses]))
    if params.payment_methods:
        stmt = stmt.where(Payment.payment_method.in_(params.payment_methods))
    return stmt


def _detail_row(row: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in row.items()}


# =============================================================================
# Per-type folds
# =============================================================================


async def _appointment_summary(
    db: AsyncSession, params: Any, start: datetime, end: datetime
) -> tuple[dict, list, dict, int, list]:
    by_status: dict[str, int] = defaultdict(int)
    by_specialization: dict[str, int] = defaultdict(int)
    by_hospital: dict[str, int] = defaultdict(int)
    doctors: dict[str, dict[str, Any]] = {}
    hospitals: dict[str, dict[str, Any]] = {}
    buckets: dict[str, dict[str, Any]] = defaultdict(
        lambda: {"appointments": 0, "completed": 0, "cancelled": 0, "revenue": ZERO}
    )
    details: list[dict[str, Any]] = []
    total = 0
    revenue = ZERO

    async for chunk in iter_chunks(db, _appointment_query(params, start, end)):
        for row in chunk:
            total += 1
            status = row["status"]
            amount = to_decimal(row["amount"])
            billable = status != AppointmentStatus.CANCELLED.value

            by_status[status] += 1
            by_specialization[row["specialization"]] += 1
            by_hospital[row["hospital_name"]] += 1
            if billable:
                revenue += amount

            doctor = doctors.setdefault(
                row["doctor_id"],
                {"id": row["doctor_id"], "name": row["doctor_name"], "appointments": 0, "revenue": ZERO},
            )
            doctor["appointments"] += 1
            hospital = hospitals.setdefault(
                row["hospital_id"],
                {"id": row["hospital_id"], "name": row["hospital_name"], "appointments": 0, "revenue": ZERO},
            )
            hospital["appointments"] += 1

            bucket = buckets[bucket_key(row["session_date"], params.group_by)]
            bucket["appointments"] += 1
            if status == AppointmentStatus.COMPLETED.value:
                bucket["completed"] += 1
            elif status == AppointmentStatus.CANCELLED.value:
                bucket["cancelled"] += 1
            if billable:
                doctor["revenue"] += amount
                hospital["revenue"] += amount
                bucket["revenue"] += amount

            if params.include_details:
                details.append(_detail_row(row))

    for entity in (*doctors.values(), *hospitals.values()):
        entity["revenue"] = money(entity["revenue"])
    data = _ordered_buckets(buckets)
    for bucket in data:
        bucket["revenue"] = money(bucket["revenue"])

    summary = {
        "total_appointments": total,
        "confirmed": by_status.get(AppointmentStatus.CONFIRMED.value, 0),
        "completed": by_status.get(AppointmentStatus.COMPLETED.value, 0),
        "cancelled": by_status.get(AppointmentStatus.CANCELLED.value, 0),
        "no_show": by_status.get(AppointmentStatus.NO_SHOW.value, 0),
        "total_revenue": money(revenue),
        "average_amount": average(revenue, total - by_status.get(AppointmentStatus.CANCELLED.value, 0)),
        "by_status": dict(by_status),
        "by_specialization": dict(by_specialization),
        "by_hospital": dict(by_hospital),
        "top_doctors": top_n(doctors.values(), "appointments", params.top_n),
        "top_hospitals": top_n(hospitals.values(), "appointments", params.top_n),
    }
    charts = {
        "appointments_over_time": [{"x": b["period"], "y": b["appointments"]} for b in data],
        "status_breakdown": _counter_series(by_status),
        "by_specialization": _counter_series(by_specialization),
    }
    return summary, data, charts, total, details


async def _revenue_analysis(
    db: AsyncSession, params: Any, start: datetime, end: datetime
) -> tuple[dict, list, dict, int, list]:
    by_status: dict[str, int] = defaultdict(int)
    method_counts: dict[str, int] = defaultdict(int)
    method_amounts: dict[str, Decimal] = defaultdict(lambda: ZERO)
    hospitals: dict[str, dict[str, Any]] = {}
    buckets: dict[str, dict[str, Any]] = defaultdict(
        lambda: {"transactions": 0, "paid_amount": ZERO, "refunded_amount": ZERO}
    )
    details: list[dict[str, Any]] = []
    total = 0
    gross = paid = refunded = pending = ZERO

    async for chunk in iter_chunks(db, _payment_query(params, start, end)):
        for row in chunk:
            total += 1
            status = row["status"]
            amount = to_decimal(row["amount"])
            gross += amount
            by_status[status] += 1
            method_counts[row["payment_method"]] += 1
            method_amounts[row["payment_method"]] += amount

            bucket = buckets[bucket_key(row["created_at"], params.group_by)]
            bucket["transactions"] += 1

            if status == PaymentStatus.PAID.value:
                paid += amount
                bucket["paid_amount"] += amount
                hospital = hospitals.setdefault(
                    row["hospital_id"],
                    {"id": row["hospital_id"], "name": row["hospital_name"], "revenue": ZERO, "payments": 0},
                )
                hospital["revenue"] += amount
                hospital["payments"] += 1
            elif status == PaymentStatus.REFUNDED.value:
                refunded += amount
                bucket["refunded_amount"] += amount
            elif status == PaymentStatus.PENDING.value:
                pending += amount

            if params.include_details:
                details.append(_detail_row(row))

    for hospital in hospitals.values():
        hospital["revenue"] = money(hospital["revenue"])
    data = _ordered_buckets(buckets)
    for bucket in data:
        bucket["paid_amount"] = money(bucket["paid_amount"])
        bucket["refunded_amount"] = money(bucket["refunded_amount"])
        bucket["net_amount"] = money(bucket["paid_amount"] - bucket["refunded_amount"])

    successful = by_status.get(PaymentStatus.PAID.value, 0)
    summary = {
        "total_transactions": total,
        "total_amount": money(gross),
        "paid_amount": money(paid),
        "refunded_amount": money(refunded),
        "pending_amount": money(pending),
        "net_revenue": money(paid - refunded),
        "successful_payments": successful,
        "failed_payments": by_status.get(PaymentStatus.FAILED.value, 0),
        "success_rate": rate(successful, total),
        "average_transaction": average(gross, total),
        "by_status": dict(by_status),
        "by_payment_method": dict(method_counts),
        "amount_by_payment_method": {k: money(v) for k, v in method_amounts.items()},
        "top_hospitals": top_n(hospitals.values(), "revenue", params.top_n),
    }
    charts = {
        "revenue_over_time": [{"x": b["period"], "y": b["paid_amount"]} for b in data],
        "by_payment_method": _counter_series(method_counts),
    }
    return summary, data, charts, total, details


async def _agent_performance(
    db: AsyncSession, params: Any, start: datetime, end: datetime
) -> tuple[dict, list, dict, int, list]:
    agents: dict[str, dict[str, Any]] = {}
    buckets: dict[str, dict[str, Any]] = defaultdict(lambda: {"bookings": 0, "agents": set()})
    details: list[dict[str, Any]] = []
    total = 0

    async for chunk in iter_chunks(db, _appointment_query(params, start, end)):
        for row in chunk:
            total += 1
            status = row["status"]
            agent = agents.setdefault(
                row["booked_by_id"],
                {
                    "id": row["booked_by_id"],
                    "name": row["agent_name"],
                    "bookings": 0,
                    "completed": 0,
                    "cancelled": 0,
                    "revenue": ZERO,
                },
            )
            agent["bookings"] += 1
            if status == AppointmentStatus.COMPLETED.value:
                agent["completed"] += 1
            if status == AppointmentStatus.CANCELLED.value:
                agent["cancelled"] += 1
            else:
                agent["revenue"] += to_decimal(row["amount"])

            bucket = buckets[bucket_key(row["session_date"], params.group_by)]
            bucket["bookings"] += 1
            bucket["agents"].add(row["booked_by_id"])

            if params.include_details:
                details.append(_detail_row(row))

    qualified = [a for a in agents.values() if a["bookings"] >= params.min_bookings]
    for agent in qualified:
        agent["revenue"] = money(agent["revenue"])
        agent["completion_rate"] = rate(agent["completed"], agent["bookings"])
        agent["cancellation_rate"] = rate(agent["cancelled"], agent["bookings"])
    ranked = top_n(qualified, "bookings", len(qualified))
    for position, agent in enumerate(ranked, start=1):
        agent["rank"] = position

    data = [
        {"period": period, "bookings": b["bookings"], "active_agents": len(b["agents"])}
        for period, b in sorted(buckets.items())
    ]
    summary = {
        "total_agents": len(qualified),
        "total_bookings": total,
        "average_bookings_per_agent": average(Decimal(total), len(agents)),
        "top_agents": ranked[: params.top_n],
        "top_agents_by_revenue": top_n(qualified, "revenue", params.top_n),
        "agents": ranked,
    }
    charts = {
        "bookings_by_agent": [{"label": a["name"], "value": a["bookings"]} for a in ranked[: params.top_n]],
        "bookings_over_time": [{"x": b["period"], "y": b["bookings"]} for b in data],
    }
    return summary, data, charts, total, details


async def _customer_satisfaction(
    db: AsyncSession, params: Any, start: datetime, end: datetime
) -> tuple[dict, list, dict, int, list]:
    distribution = {str(score): 0 for score in range(1, 6)}
    doctors: dict[str, dict[str, Any]] = {}
    buckets: dict[str, dict[str, Any]] = defaultdict(lambda: {"rated": 0, "rating_total": 0})
    details: list[dict[str, Any]] = []
    total = rated = rating_total = 0

    async for chunk in iter_chunks(db, _appointment_query(params, start, end)):
        for row in chunk:
            total += 1
            rating = row["rating"]
            if params.include_details:
                details.append(_detail_row(row))
            if rating is None:
                continue
            rated += 1
            rating_total += rating
            distribution[str(rating)] = distribution.get(str(rating), 0) + 1

            doctor = doctors.setdefault(
                row["doctor_id"],
                {"id": row["doctor_id"], "name": row["doctor_name"], "ratings": 0, "rating_total": 0},
            )
            doctor["ratings"] += 1
            doctor["rating_total"] += rating

            bucket = buckets[bucket_key(row["session_date"], params.group_by)]
            bucket["rated"] += 1
            bucket["rating_total"] += rating

    ranked_doctors = []
    for doctor in doctors.values():
        avg = average(Decimal(doctor.pop("rating_total")), doctor["ratings"])
        if params.min_rating is None or avg >= params.min_rating:
            ranked_doctors.append({**doctor, "average_rating": avg})

    data = [
        {
            "period": period,
            "rated": b["rated"],
            "average_rating": average(Decimal(b["rating_total"]), b["rated"]),
        }
        for period, b in sorted(buckets.items())
    ]
    summary = {
        "total_appointments": total,
        "rated_appointments": rated,
        "response_rate": rate(rated, total),
        "average_rating": average(Decimal(rating_total), rated),
        "rating_distribution": distribution,
        "top_doctors": top_n(ranked_doctors, "average_rating", params.top_n),
    }
    charts = {
        "rating_distribution": _counter_series(distribution),
        "average_rating_over_time": [{"x": b["period"], "y": b["average_rating"]} for b in data],
    }
    return summary, data, charts, total, details


async def _operational_metrics(
    db: AsyncSession, params: Any, start: datetime, end: datetime
) -> tuple[dict, list, dict, int, list]:
    by_status: dict[str, int] = defaultdict(int)
    by_weekday: dict[str, int] = defaultdict(int)
    buckets: dict[str, dict[str, Any]] = defaultdict(
        lambda: {"appointments": 0, "completed": 0, "cancelled": 0, "no_show": 0}
    )
    details: list[dict[str, Any]] = []
    total = 0
    lead_seconds = Decimal(0)

    async for chunk in iter_chunks(db, _appointment_query(params, start, end)):
        for row in chunk:
            total += 1
            status = row["status"]
            session = ensure_utc(row["session_date"])
            by_status[status] += 1
            by_weekday[session.strftime("%A")] += 1
            lead_seconds += Decimal(
                max((session - ensure_utc(row["created_at"])).total_seconds(), 0)
            )

            bucket = buckets[bucket_key(session, params.group_by)]
            bucket["appointments"] += 1
            if status == AppointmentStatus.COMPLETED.value:
                bucket["completed"] += 1
            elif status == AppointmentStatus.CANCELLED.value:
                bucket["cancelled"] += 1
            elif status == AppointmentStatus.NO_SHOW.value:
                bucket["no_show"] += 1

            if params.include_details:
                details.append(_detail_row(row))

    data = _ordered_buckets(buckets)
    for bucket in data:
        bucket["completion_rate"] = rate(bucket["completed"], bucket["appointments"])

    summary = {
        "total_appointments": total,
        "completion_rate": rate(by_status.get(AppointmentStatus.COMPLETED.value, 0), total),
        "cancellation_rate": rate(by_status.get(AppointmentStatus.CANCELLED.value, 0), total),
        "no_show_rate": rate(by_status.get(AppointmentStatus.NO_SHOW.value, 0), total),
        "average_lead_time_hours": average(lead_seconds / 3600, total),
        "by_status": dict(by_status),
        "by_weekday": dict(by_weekday),
    }
    charts = {
        "completion_rate_over_time": [{"x": b["period"], "y": b["completion_rate"]} for b in data],
        "by_weekday": _counter_series(by_weekday),
    }
    return summary, data, charts, total, details


_FOLDS = {
    ReportType.APPOINTMENT_SUMMARY: _appointment_summary,
    ReportType.REVENUE_ANALYSIS: _revenue_analysis,
    ReportType.AGENT_PERFORMANCE: _agent_performance,
    ReportType.CUSTOMER_SATISFACTION: _customer_satisfaction,
    ReportType.OPERATIONAL_METRICS: _operational_metrics,
}


# =============================================================================
# Entry point
# =============================================================================


async def aggregate(
    db: AsyncSession,
    report_type: ReportType | str,
    params: BaseReportParameters,
    *,
    today: date | None = None,
    max_days: int | None = None,
) -> AggregatedReport:
    """
    Run the aggregation for one report.

    Args:
        db: Database session
        report_type: Report kind
        params: Typed parameters for that kind
        today: Reference day for relative presets (defaults to UTC today)
        max_days: Optional cap on the date span

    Returns:
        Aggregated summary, bucketed data and chart series

    Raises:
        InvalidDateRangeError: If the range is inverted
        RangeTooLargeError: If the range exceeds max_days
        InvalidReferenceError: If filters name unknown entities
    """
    report_type = ReportType(report_type)
    date_from, date_to = resolve_date_range(params, today)
    validate_date_range(date_from, date_to, max_days)
    await validate_references(db, params)

    start, end = window_bounds(date_from, date_to)
    summary, data, charts, record_count, details = await _FOLDS[report_type](
        db, params, start, end
    )

    summary["date_from"] = date_from.isoformat()
    summary["date_to"] = date_to.isoformat()
    summary["group_by"] = params.group_by if params.group_by in {g.value for g in GroupBy} else "day"

    logger.info(
        "Aggregated report data",
        extra={
            "report_type": report_type.value,
            "record_count": record_count,
            "buckets": len(data),
        },
    )
    return AggregatedReport(
        summary=summary,
        data=data,
        charts=charts if params.include_charts else {},
        record_count=record_count,
        date_from=date_from,
        date_to=date_to,
        details=details,
    )
