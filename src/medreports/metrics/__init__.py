"""Prometheus metrics for medreports."""

from prometheus_client import Counter, Histogram

# Report generation runs
# Labels: report_type, status (completed/failed)
report_generation_counter = Counter(
    "report_generations_total",
    "Total number of report generation runs",
    ["report_type", "status"],
)

report_generation_duration_histogram = Histogram(
    "report_generation_duration_seconds",
    "Report generation duration in seconds",
    ["report_type"],
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

# Serializer output
# Labels: format (csv/excel/pdf/json)
serialize_counter = Counter(
    "serialize_calls_total",
    "Total number of serialize calls",
    ["format"],
)

serialize_records_counter = Counter(
    "serialize_records_total",
    "Rows written by the serializer",
    ["format"],
)

serialize_bytes_counter = Counter(
    "serialize_bytes_total",
    "Bytes produced by the serializer",
    ["format"],
)

# Export jobs
# Labels: entity_type, status (completed/failed/cancelled)
export_job_counter = Counter(
    "export_jobs_total",
    "Total number of export jobs",
    ["entity_type", "status"],
)

# Report re-exports
# Labels: kind (single/bulk), format, status (completed/failed)
report_export_counter = Counter(
    "report_exports_total",
    "Total number of report exports",
    ["kind", "format", "status"],
)

# Scheduled dispatch
scheduled_dispatch_counter = Counter(
    "scheduled_dispatch_total",
    "Scheduled report runs dispatched",
    ["frequency", "status"],
)

__all__ = [
    "report_generation_counter",
    "report_generation_duration_histogram",
    "serialize_counter",
    "serialize_records_counter",
    "serialize_bytes_counter",
    "export_job_counter",
    "report_export_counter",
    "scheduled_dispatch_counter",
]
