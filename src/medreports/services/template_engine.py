"""
Template engine: structure validation, gallery previews and rendering.

Rendering produces a structured description of the finished report
(ordered sections with their data bound, page breaks, page numbers).
Turning that description into pixels is the writer's job.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from medreports.models.report import ReportType
from medreports.schemas.template import (
    SectionPreview,
    TemplatePreview,
    TemplateSection,
    TemplateStructure,
    ValidationResult,
    VisibilityCondition,
)

BASE_SECTION_TYPES = frozenset({"header", "summary", "text", "spacer"})
DATA_SECTION_TYPES = frozenset({"chart", "table"})
KNOWN_REPORT_TYPES = frozenset(t.value for t in ReportType)

DEFAULT_CHART_TYPE = "bar"
PLACEHOLDER_COLUMNS = ["Column 1", "Column 2"]
SNIPPET_LENGTH = 120


def allowed_section_types(report_type: str) -> frozenset[str]:
    """Section vocabulary for a report type ("default" and unknown types also allow images)."""
    if report_type in KNOWN_REPORT_TYPES:
        return BASE_SECTION_TYPES | DATA_SECTION_TYPES
    return BASE_SECTION_TYPES | DATA_SECTION_TYPES | {"image"}


def _as_structure(structure: TemplateStructure | Mapping[str, Any]) -> TemplateStructure:
    if isinstance(structure, TemplateStructure):
        return structure
    return TemplateStructure.model_validate(structure)


# =============================================================================
# Validation
# =============================================================================


def validate_structure(
    structure: TemplateStructure | Mapping[str, Any],
    report_type: str,
) -> ValidationResult:
    """
    Validate a template structure against a report type.

    All violations are collected; the result depends only on the inputs.
    """
    structure = _as_structure(structure)
    errors: list[str] = []

    if not structure.sections:
        errors.append("Template must have at least one section")

    seen: set[str] = set()
    duplicates: list[str] = []
    for section in structure.sections:
        if section.id in seen and section.id not in duplicates:
            duplicates.append(section.id)
        seen.add(section.id)
    if duplicates:
        errors.append(f"Section IDs must be unique (duplicated: {', '.join(duplicates)})")

    allowed = allowed_section_types(report_type)
    for section in structure.sections:
        if section.type not in allowed:
            errors.append(
                f'Section type "{section.type}" is not allowed for report type "{report_type}"'
            )

    unknown_breaks = [sid for sid in structure.page_breaks if sid not in seen]
    if unknown_breaks:
        errors.append(f"Page breaks reference unknown sections: {', '.join(unknown_breaks)}")

    return ValidationResult(is_valid=not errors, errors=errors)


def increment_version(current: str) -> str:
    """Bump the minor part of a ``major.minor`` version string."""
    major, _, minor = (current or "1.0").partition(".")
    try:
        minor_number = int(minor or 0)
    except ValueError:
        minor_number = 0
    return f"{major or '1'}.{minor_number + 1}"


# =============================================================================
# Preview
# =============================================================================


def preview_section(section: TemplateSection) -> SectionPreview:
    """Placeholder descriptor for one section; touches no real data."""
    content = section.content
    if section.type == "header":
        title = section.title or "Header Section"
        placeholder: dict[str, Any] = {"heading": title}
    elif section.type == "summary":
        title = section.title or "Summary"
        placeholder = {"content": "Summary statistics and key metrics"}
    elif section.type == "chart":
        title = section.title or "Chart"
        placeholder = {"chart_type": content.chart_type or DEFAULT_CHART_TYPE}
    elif section.type == "table":
        title = section.title or "Data Table"
        placeholder = {"columns": content.table_columns or PLACEHOLDER_COLUMNS}
    elif section.type == "text":
        title = section.title or "Text"
        text = content.text_content or "Text content..."
        placeholder = {"snippet": text[:SNIPPET_LENGTH]}
    elif section.type == "image":
        title = section.title or "Image"
        placeholder = {"image_url": content.image_url}
    else:
        title = section.title or section.type.title()
        placeholder = {"height": content.height}
    return SectionPreview(id=section.id, type=section.type, title=title, placeholder=placeholder)


def preview(
    name: str,
    report_type: str,
    structure: TemplateStructure | Mapping[str, Any],
    layout: Mapping[str, Any] | None = None,
    template_id: str | None = None,
) -> TemplatePreview:
    """Gallery preview of a template."""
    structure = _as_structure(structure)
    return TemplatePreview(
        template_id=template_id,
        name=name,
        report_type=report_type,
        layout=dict(layout or {}),
        sections=[preview_section(s) for s in structure.sections],
        show_page_numbers=structure.show_page_numbers,
        show_timestamp=structure.show_timestamp,
    )


# =============================================================================
# Rendering
# =============================================================================


def lookup(source: Any, path: str) -> Any:
    """Resolve a dotted path in nested mappings; missing keys give None."""
    current = source
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return None
    return current


def _to_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def condition_holds(condition: VisibilityCondition, summary: Mapping[str, Any]) -> bool:
    """Evaluate a visibility condition against summary fields."""
    actual = lookup(summary, condition.field)
    expected = condition.value
    op = condition.operator

    if op in ("equals", "not_equals"):
        left, right = _to_decimal(actual), _to_decimal(expected)
        if left is not None and right is not None:
            equal = left == right
        else:
            equal = actual == expected
        return equal if op == "equals" else not equal

    if op in ("greater_than", "less_than"):
        left, right = _to_decimal(actual), _to_decimal(expected)
        if left is None or right is None:
            return False
        return left > right if op == "greater_than" else left < right

    # contains
    if isinstance(actual, str):
        return str(expected) in actual
    if isinstance(actual, (list, tuple, set)):
        return expected in actual
    if isinstance(actual, Mapping):
        return expected in actual
    return False


def _scalar_metrics(summary: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in summary.items() if not isinstance(v, (Mapping, list, tuple))}


def _table_rows(section: TemplateSection, aggregated: Mapping[str, Any]) -> list[dict[str, Any]]:
    source = section.content.data_source
    if not source or source == "data":
        rows = aggregated.get("data") or []
    else:
        rows = lookup(aggregated.get("summary", {}), source)
        if rows is None:
            rows = lookup(aggregated, source)
    if isinstance(rows, Mapping):
        # {key: value} breakdowns become two-column tables
        rows = [{"key": k, "value": v} for k, v in rows.items()]
    return [dict(r) for r in rows or [] if isinstance(r, Mapping)]


def _render_section(
    section: TemplateSection,
    aggregated: Mapping[str, Any],
    title: str,
) -> dict[str, Any]:
    content = section.content
    summary = aggregated.get("summary", {}) or {}
    rendered: dict[str, Any] = {
        "id": section.id,
        "type": section.type,
        "title": section.title if section.visibility.show_title else None,
        "formatting": section.formatting.model_dump(exclude_none=True),
    }

    if section.type == "header":
        rendered["title"] = section.title or title
    elif section.type == "summary":
        metrics = lookup(summary, content.data_source) if content.data_source else summary
        rendered["metrics"] = _scalar_metrics(metrics) if isinstance(metrics, Mapping) else {}
    elif section.type == "chart":
        charts = aggregated.get("charts", {}) or {}
        key = content.data_source or next(iter(charts), None)
        rendered["chart_type"] = content.chart_type or DEFAULT_CHART_TYPE
        rendered["data_source"] = key
        rendered["series"] = charts.get(key, []) if key else []
    elif section.type == "table":
        rows = _table_rows(section, aggregated)
        columns = content.table_columns or (list(rows[0].keys()) if rows else [])
        rendered["columns"] = columns
        rendered["rows"] = [{c: row.get(c) for c in columns} for row in rows]
    elif section.type == "text":
        rendered["text"] = content.text_content or ""
    elif section.type == "image":
        rendered["image_url"] = content.image_url
    elif section.type == "spacer":
        rendered["height"] = content.height or 20

    if content.show_border or content.background_color:
        rendered["box"] = {
            "show_border": content.show_border,
            "background_color": content.background_color,
        }
    return rendered


def render(
    structure: TemplateStructure | Mapping[str, Any],
    aggregated: Mapping[str, Any],
    *,
    title: str,
    layout: Mapping[str, Any] | None = None,
    styling: Mapping[str, Any] | None = None,
    generated_at: datetime | None = None,
) -> dict[str, Any]:
    """
    Bind aggregated report data into a template.

    Args:
        structure: Template structure
        aggregated: ``{"summary", "data", "charts"}`` from the aggregation step
        title: Report title used by headers without their own title
        layout: Template layout document
        styling: Template styling document
        generated_at: Timestamp shown when the template asks for one

    Returns:
        Render description with ordered sections, page-break markers and
        page numbers
    """
    structure = _as_structure(structure)
    summary = aggregated.get("summary", {}) or {}
    breaks = set(structure.page_breaks)

    sections: list[dict[str, Any]] = []
    hidden: list[str] = []
    page = 1
    for section in structure.sections:
        conditional = section.visibility.conditional
        if conditional is not None and not condition_holds(conditional, summary):
            hidden.append(section.id)
            continue

        rendered = _render_section(section, aggregated, title)
        if structure.show_page_numbers:
            rendered["page"] = page
        sections.append(rendered)

        if section.id in breaks:
            sections.append({"type": "page_break", "after": section.id})
            page += 1

    # A trailing break would only produce an empty page
    if sections and sections[-1]["type"] == "page_break":
        sections.pop()
        page -= 1

    return {
        "title": title,
        "layout": dict(layout or {}),
        "styling": dict(styling or {}),
        "generated_at": generated_at.isoformat()
        if structure.show_timestamp and generated_at
        else None,
        "show_page_numbers": structure.show_page_numbers,
        "page_count": page,
        "sections": sections,
        "hidden_sections": hidden,
    }
