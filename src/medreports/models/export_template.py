"""
ExportTemplate model - a saved column set and filters for one entity export.

Built-in templates are defined in code; this table only holds the ones
users create.
"""

from typing import Any

from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from medreports.db.base import BaseModel, dump_json, load_json


class ExportTemplate(BaseModel):
    """User-defined export template."""

    __tablename__ = "export_templates"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    format: Mapped[str] = mapped_column(String(10), nullable=False)
    columns: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    filters: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_by_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<ExportTemplate {self.name} ({self.entity_type})>"

    def get_columns_list(self) -> list[str]:
        return load_json(self.columns, [])

    def get_filters_dict(self) -> dict[str, Any]:
        return load_json(self.filters, {})

    def set_definition(self, columns: list[str], filters: dict[str, Any]) -> None:
        self.columns = dump_json(columns)
        self.filters = dump_json(filters)
