"""
Export/format serializer.

Rows are flattened to single-level dicts with dotted keys and handed to a
format writer. Writers are incremental: they accept rows in batches and
write to any binary sink, so large exports can go straight to disk.

Supported formats:
- csv: RFC 4180 style, strings quoted, numbers bare
- excel: real .xlsx via openpyxl (write-only workbook)
- pdf: styled table document via reportlab
- json: pretty-printed array of flattened rows
"""

import csv
import io
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, BinaryIO, Iterable, Mapping
from xml.sax.saxutils import escape as xml_escape

import orjson
from openpyxl import Workbook
from openpyxl.cell import WriteOnlyCell
from openpyxl.styles import Font
from reportlab.lib import colors
from reportlab.lib.pagesizes import A3, A4, LEGAL, LETTER, landscape, portrait
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from medreports.core.exceptions import ValidationError
from medreports.core.logging import get_logger
from medreports.metrics import (
    serialize_bytes_counter,
    serialize_counter,
    serialize_records_counter,
)
from medreports.models.report import ReportFormat

logger = get_logger(__name__)


# =============================================================================
# Flattening
# =============================================================================


def json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Type is not JSON serializable: {type(value).__name__}")


def flatten(record: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    """
    Flatten a nested record into dotted keys.

    Nested mappings are merged recursively, lists become their compact JSON
    text (empty string when empty) and dates are kept as scalar values.
    """
    flattened: dict[str, Any] = {}
    for key, value in record.items():
        new_key = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            flattened.update(flatten(value, new_key))
        elif isinstance(value, (list, tuple)):
            flattened[new_key] = (
                orjson.dumps(list(value), default=json_default).decode("utf-8") if value else ""
            )
        else:
            flattened[new_key] = value
    return flattened


def resolve_columns(first_row: Mapping[str, Any] | None, columns: list[str] | None) -> list[str]:
    """Explicit columns win; otherwise the first flattened row's key order."""
    if columns:
        return list(columns)
    return list(first_row.keys()) if first_row else []


# =============================================================================
# Writers
# =============================================================================


@dataclass
class SerializeOptions:
    """Options shared by every writer."""

    columns: list[str] | None = None
    include_headers: bool = True
    file_name: str = "export"
    title: str = "Export"
    generated_at: datetime | None = None
    # Generation line under the PDF title
    include_metadata: bool = True
    # PDF page setup; orientation None picks landscape for wide tables
    page_size: str = "A4"
    orientation: str | None = None


class FormatWriter(ABC):
    """
    Incremental writer for one output format.

    Call ``write_rows`` any number of times with flattened rows, then
    ``close`` exactly once.
    """

    format: ReportFormat
    extension: str
    content_type: str

    def __init__(self, sink: BinaryIO, options: SerializeOptions) -> None:
        self.sink = sink
        self.options = options
        self.columns: list[str] | None = list(options.columns) if options.columns else None
        self.record_count = 0
        self._started = False
        self._closed = False

    def write_rows(self, rows: Iterable[Mapping[str, Any]]) -> int:
        """Write a batch of flattened rows. Returns the number written."""
        written = 0
        for row in rows:
            if not self._started:
                if self.columns is None:
                    self.columns = resolve_columns(row, None)
                self._begin()
            self.write_row(row)
            self.record_count += 1
            written += 1
        return written

    def close(self) -> None:
        if self._closed:
            return
        if not self._started:
            if self.columns is None:
                self.columns = []
            self._begin()
        self.finish()
        self._closed = True

    def _begin(self) -> None:
        self.start()
        self._started = True

    def project(self, row: Mapping[str, Any]) -> list[Any]:
        return [row.get(col) for col in self.columns or []]

    @abstractmethod
    def start(self) -> None:
        """Emit anything that precedes the first row (columns are known)."""

    @abstractmethod
    def write_row(self, row: Mapping[str, Any]) -> None: ...

    @abstractmethod
    def finish(self) -> None: ...


def _csv_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class CsvWriter(FormatWriter):
    format = ReportFormat.CSV
    extension = "csv"
    content_type = "text/csv"

    def __init__(self, sink: BinaryIO, options: SerializeOptions) -> None:
        super().__init__(sink, options)
        self._text = io.TextIOWrapper(sink, encoding="utf-8", newline="", write_through=True)
        # Strings are quoted with "" escaping, numbers stay bare
        self._writer = csv.writer(self._text, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")

    def start(self) -> None:
        if self.options.include_headers and self.columns:
            self._writer.writerow(self.columns)

    def write_row(self, row: Mapping[str, Any]) -> None:
        self._writer.writerow([_csv_value(v) for v in self.project(row)])

    def finish(self) -> None:
        self._text.flush()
        # Leave the caller's sink open
        self._text.detach()


def _excel_value(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is not None:
        # Excel has no timezone support
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _sheet_title(title: str) -> str:
    cleaned = "".join(c for c in title if c not in '[]:*?/\\')
    return (cleaned or "Export")[:31]


class ExcelWriter(FormatWriter):
    format = ReportFormat.EXCEL
    extension = "xlsx"
    content_type = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

    def __init__(self, sink: BinaryIO, options: SerializeOptions) -> None:
        super().__init__(sink, options)
        self._workbook = Workbook(write_only=True)
        self._sheet = self._workbook.create_sheet(_sheet_title(options.title))

    def start(self) -> None:
        if self.options.include_headers and self.columns:
            header = []
            for name in self.columns:
                cell = WriteOnlyCell(self._sheet, value=name)
                cell.font = Font(bold=True)
                header.append(cell)
            self._sheet.append(header)

    def write_row(self, row: Mapping[str, Any]) -> None:
        self._sheet.append([_excel_value(v) for v in self.project(row)])

    def finish(self) -> None:
        self._workbook.save(self.sink)


PDF_WIDE_TABLE_COLUMNS = 6

PDF_PAGE_SIZES = {"A4": A4, "A3": A3, "LETTER": LETTER, "LEGAL": LEGAL}


def _pdf_page_size(options: SerializeOptions, column_count: int) -> tuple[float, float]:
    base = PDF_PAGE_SIZES.get(options.page_size.upper(), A4)
    orientation = options.orientation
    if orientation is None:
        orientation = "landscape" if column_count > PDF_WIDE_TABLE_COLUMNS else "portrait"
    return landscape(base) if orientation == "landscape" else portrait(base)


def _pdf_table_style(has_header: bool) -> TableStyle:
    commands = [
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#dddddd")),
        (
            "ROWBACKGROUNDS",
            (0, 1 if has_header else 0),
            (-1, -1),
            [colors.white, colors.HexColor("#f9f9f9")],
        ),
    ]
    if has_header:
        commands += [
            ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#0066cc")),
            ("BOTTOMPADDING", (0, 0), (-1, 0), 8),
        ]
    return TableStyle(commands)


class PdfWriter(FormatWriter):
    """
    Styled table document rendered with reportlab.

    Rows are collected as paragraphs and the document is laid out in
    ``finish``; wide exports switch to landscape pages.
    """

    format = ReportFormat.PDF
    extension = "pdf"
    content_type = "application/pdf"

    def __init__(self, sink: BinaryIO, options: SerializeOptions) -> None:
        super().__init__(sink, options)
        self.styles = getSampleStyleSheet()
        self._cell_style = ParagraphStyle(
            name="ExportCell", parent=self.styles["Normal"], fontSize=8, leading=10
        )
        self._header_style = ParagraphStyle(
            name="ExportHeader",
            parent=self._cell_style,
            fontName="Helvetica-Bold",
            textColor=colors.white,
        )
        self._rows: list[list[Paragraph]] = []
        self._has_header = False

    def _cell(self, value: Any, style: ParagraphStyle) -> Paragraph:
        return Paragraph(xml_escape(str(_csv_value(value))), style)

    def start(self) -> None:
        if self.options.include_headers and self.columns:
            self._rows.append([self._cell(c, self._header_style) for c in self.columns])
            self._has_header = True

    def write_row(self, row: Mapping[str, Any]) -> None:
        self._rows.append([self._cell(v, self._cell_style) for v in self.project(row)])

    def finish(self) -> None:
        columns = self.columns or []
        doc = SimpleDocTemplate(
            self.sink,
            pagesize=_pdf_page_size(self.options, len(columns)),
            title=self.options.title,
            leftMargin=15 * mm,
            rightMargin=15 * mm,
            topMargin=20 * mm,
            bottomMargin=20 * mm,
        )
        generated = self.options.generated_at or datetime.now(timezone.utc)
        story: list[Any] = [Paragraph(xml_escape(self.options.title), self.styles["Title"])]
        if self.options.include_metadata:
            story.append(
                Paragraph(
                    f"Generated on: {generated.strftime('%Y-%m-%d %H:%M UTC')} | "
                    f"Total Records: {self.record_count}",
                    self.styles["Normal"],
                )
            )
        story.append(Spacer(1, 6 * mm))
        if columns and self._rows:
            table = Table(
                self._rows,
                colWidths=[doc.width / len(columns)] * len(columns),
                repeatRows=1 if self._has_header else 0,
            )
            table.setStyle(_pdf_table_style(self._has_header))
            story.append(table)
        else:
            story.append(Paragraph("No records", self.styles["Normal"]))
        doc.build(story)


class JsonWriter(FormatWriter):
    format = ReportFormat.JSON
    extension = "json"
    content_type = "application/json"

    def start(self) -> None:
        self.sink.write(b"[")

    def write_row(self, row: Mapping[str, Any]) -> None:
        if self.options.columns:
            data = dict(zip(self.columns, self.project(row)))
        else:
            data = dict(row)
        body = orjson.dumps(data, default=json_default, option=orjson.OPT_INDENT_2)
        indented = b"\n".join(b"  " + line for line in body.split(b"\n"))
        self.sink.write((b",\n" if self.record_count else b"\n") + indented)

    def finish(self) -> None:
        self.sink.write(b"\n]\n" if self.record_count else b"]\n")


_WRITERS: dict[str, type[FormatWriter]] = {
    ReportFormat.CSV.value: CsvWriter,
    ReportFormat.EXCEL.value: ExcelWriter,
    ReportFormat.PDF.value: PdfWriter,
    ReportFormat.JSON.value: JsonWriter,
}


def register_writer(format: ReportFormat | str, writer_cls: type[FormatWriter]) -> None:
    """Install or replace the writer for a format."""
    _WRITERS[ReportFormat(format).value] = writer_cls


def get_writer_class(format: ReportFormat | str) -> type[FormatWriter]:
    try:
        return _WRITERS[ReportFormat(format).value]
    except (KeyError, ValueError):
        raise ValidationError(
            message=f"Unsupported format: {format}",
            errors=[
                {
                    "field": "format",
                    "message": "Supported formats: " + ", ".join(sorted(_WRITERS)),
                    "value": str(format),
                }
            ],
        ) from None


def create_writer(
    format: ReportFormat | str, sink: BinaryIO, options: SerializeOptions
) -> FormatWriter:
    return get_writer_class(format)(sink, options)


def output_file_name(format: ReportFormat | str, base_name: str) -> str:
    return f"{base_name}.{get_writer_class(format).extension}"


def record_serialization(format: ReportFormat | str, record_count: int, size_bytes: int) -> None:
    """Count and log one serializer run."""
    fmt = ReportFormat(format).value
    serialize_counter.labels(format=fmt).inc()
    serialize_records_counter.labels(format=fmt).inc(record_count)
    serialize_bytes_counter.labels(format=fmt).inc(size_bytes)
    logger.info(
        "Serialized export",
        extra={"format": fmt, "record_count": record_count, "size_bytes": size_bytes},
    )


# =============================================================================
# One-shot serialization
# =============================================================================


@dataclass
class SerializedExport:
    content: bytes
    file_name: str
    size_bytes: int
    content_type: str
    record_count: int
    format: ReportFormat
    rows: list[dict[str, Any]] = field(default_factory=list, repr=False)


def serialize(
    rows: Iterable[Mapping[str, Any]],
    format: ReportFormat | str,
    options: SerializeOptions | None = None,
) -> SerializedExport:
    """
    Serialize rows in memory.

    Args:
        rows: Records, nested or flat
        format: Output format
        options: Column selection, headers, naming

    Returns:
        Bytes plus file name, size, content type and row count
    """
    options = options or SerializeOptions()
    flat_rows = [flatten(r) for r in rows]

    buffer = io.BytesIO()
    writer = create_writer(format, buffer, options)
    writer.write_rows(flat_rows)
    writer.close()
    content = buffer.getvalue()

    record_serialization(writer.format, writer.record_count, len(content))
    return SerializedExport(
        content=content,
        file_name=f"{options.file_name}.{writer.extension}",
        size_bytes=len(content),
        content_type=writer.content_type,
        record_count=writer.record_count,
        format=writer.format,
        rows=flat_rows,
    )
