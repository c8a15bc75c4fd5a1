"""
ReportTemplate model - reusable declarative layout for a report type.

Templates store their layout, section structure and styling as JSON
documents. They are never hard-deleted so reports generated from them
keep a valid reference.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from medreports.db.base import SoftDeleteModel, UTCDateTime, dump_json, load_json, utc_now


class TemplateCategory(str, Enum):
    STANDARD = "STANDARD"
    EXECUTIVE = "EXECUTIVE"
    DETAILED = "DETAILED"
    SUMMARY = "SUMMARY"
    CUSTOM = "CUSTOM"


class SectionType(str, Enum):
    HEADER = "header"
    SUMMARY = "summary"
    CHART = "chart"
    TABLE = "table"
    TEXT = "text"
    IMAGE = "image"
    SPACER = "spacer"


class ReportTemplate(SoftDeleteModel):
    """Report template."""

    __tablename__ = "report_templates"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # One of the report types, or "default" for a type-agnostic template
    report_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    category: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TemplateCategory.CUSTOM.value
    )

    # JSON documents (stored as text)
    layout: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    structure: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    styling: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    # Permissions
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    allowed_roles: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    allowed_users: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    # Metadata
    version: Mapped[str] = mapped_column(String(20), nullable=False, default="1.0")
    author: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tags: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    original_template_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    created_by_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False, index=True
    )

    __table_args__ = (Index("ix_report_templates_active_type", "is_active", "report_type"),)

    def __repr__(self) -> str:
        return f"<ReportTemplate {self.name} v{self.version}>"

    def get_layout_dict(self) -> dict[str, Any]:
        return load_json(self.layout, {})

    def get_structure_dict(self) -> dict[str, Any]:
        return load_json(self.structure, {})

    def get_styling_dict(self) -> dict[str, Any]:
        return load_json(self.styling, {})

    def get_permissions_dict(self) -> dict[str, Any]:
        return {
            "is_public": self.is_public,
            "allowed_roles": load_json(self.allowed_roles, []),
            "allowed_users": load_json(self.allowed_users, []),
        }

    def get_tags_list(self) -> list[str]:
        return load_json(self.tags, [])

    def set_documents(
        self,
        layout: dict[str, Any] | None = None,
        structure: dict[str, Any] | None = None,
        styling: dict[str, Any] | None = None,
    ) -> None:
        """Replace any of the JSON documents that were given."""
        if layout is not None:
            self.layout = dump_json(layout)
        if structure is not None:
            self.structure = dump_json(structure)
        if styling is not None:
            self.styling = dump_json(styling)

    def set_permissions(self, permissions: dict[str, Any]) -> None:
        self.is_public = bool(permissions.get("is_public", False))
        self.allowed_roles = dump_json(permissions.get("allowed_roles", []))
        self.allowed_users = dump_json(permissions.get("allowed_users", []))

    def set_tags(self, tags: list[str]) -> None:
        self.tags = dump_json(tags)

    def mark_used(self) -> None:
        self.usage_count += 1
        self.last_used_at = utc_now()

    def deactivate(self) -> None:
        """Soft-delete: hide from listings but keep the row."""
        self.is_active = False
        self.soft_delete()
