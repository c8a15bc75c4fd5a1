"""Pydantic schemas for report templates."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from medreports.models.template import TemplateCategory
from medreports.schemas.common import PageInfo, RequestModel


# =============================================================================
# Layout & Styling
# =============================================================================


class Margins(RequestModel):
    top: int = 20
    right: int = 20
    bottom: int = 20
    left: int = 20


class ColorScheme(RequestModel):
    primary: str = "#1f4e79"
    secondary: str = "#2e75b6"
    accent: str = "#ffc000"
    background: str = "#ffffff"
    text: str = "#000000"


class TemplateLayout(RequestModel):
    format: Literal["pdf", "excel", "html"] = "pdf"
    orientation: Literal["portrait", "landscape"] = "portrait"
    page_size: Literal["A4", "A3", "LETTER", "LEGAL"] = "A4"
    margins: Margins = Field(default_factory=Margins)
    header_height: int = 60
    footer_height: int = 40
    font_size: int = Field(default=12, ge=6, le=72)
    color_scheme: ColorScheme = Field(default_factory=ColorScheme)


class TemplateStyling(RequestModel):
    header_template: Optional[str] = None
    footer_template: Optional[str] = None
    logo_url: Optional[str] = None
    watermark: Optional[str] = None
    custom_css: Optional[str] = None


# =============================================================================
# Structure
# =============================================================================


class SectionContent(RequestModel):
    data_source: Optional[str] = Field(None, description="Key in the aggregated data")
    chart_type: Optional[Literal["bar", "line", "pie", "area", "scatter"]] = None
    table_columns: Optional[list[str]] = None
    text_content: Optional[str] = None
    image_url: Optional[str] = None
    height: Optional[int] = None
    show_border: bool = False
    background_color: Optional[str] = None


class SectionFormatting(RequestModel):
    alignment: Literal["left", "center", "right"] = "left"
    font_size: Optional[int] = None
    font_weight: Literal["normal", "bold"] = "normal"
    color: Optional[str] = None
    padding: Optional[int] = None
    margin: Optional[int] = None


class VisibilityCondition(RequestModel):
    field: str
    operator: Literal["equals", "not_equals", "greater_than", "less_than", "contains"]
    value: Any = None


class SectionVisibility(RequestModel):
    show_title: bool = True
    conditional: Optional[VisibilityCondition] = None


class TemplateSection(RequestModel):
    """
    One section of a template.

    ``type`` is a free string so the structure validator can report every
    disallowed section in one pass.
    """

    id: str = Field(..., min_length=1)
    type: str
    title: Optional[str] = None
    content: SectionContent = Field(default_factory=SectionContent)
    formatting: SectionFormatting = Field(default_factory=SectionFormatting)
    visibility: SectionVisibility = Field(default_factory=SectionVisibility)


class TemplateStructure(RequestModel):
    sections: list[TemplateSection] = Field(default_factory=list)
    # Section ids after which a page break is inserted
    page_breaks: list[str] = Field(default_factory=list)
    show_page_numbers: bool = True
    show_timestamp: bool = True


class TemplatePermissions(RequestModel):
    is_public: bool = False
    allowed_roles: list[str] = Field(default_factory=list)
    allowed_users: list[str] = Field(default_factory=list)


# =============================================================================
# Requests
# =============================================================================


class TemplateCreate(RequestModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    report_type: str = Field(..., description="Report type, or 'default'")
    category: TemplateCategory = TemplateCategory.CUSTOM
    layout: TemplateLayout = Field(default_factory=TemplateLayout)
    structure: TemplateStructure
    styling: TemplateStyling = Field(default_factory=TemplateStyling)
    permissions: TemplatePermissions = Field(default_factory=TemplatePermissions)
    tags: list[str] = Field(default_factory=list)


class TemplateUpdate(RequestModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    category: Optional[TemplateCategory] = None
    layout: Optional[TemplateLayout] = None
    structure: Optional[TemplateStructure] = None
    styling: Optional[TemplateStyling] = None
    permissions: Optional[TemplatePermissions] = None
    tags: Optional[list[str]] = None


class TemplateDuplicate(RequestModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)


class TemplateValidateRequest(RequestModel):
    report_type: str
    structure: TemplateStructure


class TemplateListFilters(BaseModel):
    report_type: Optional[str] = None
    category: Optional[TemplateCategory] = None
    created_by_id: Optional[str] = None
    is_public: Optional[bool] = None
    search: Optional[str] = None
    tags: list[str] = Field(default_factory=list)


# =============================================================================
# Responses
# =============================================================================


class ValidationResult(BaseModel):
    is_valid: bool
    errors: list[str]


class SectionPreview(BaseModel):
    id: str
    type: str
    title: str
    placeholder: dict[str, Any]


class TemplatePreview(BaseModel):
    template_id: Optional[str]
    name: str
    report_type: str
    layout: dict[str, Any]
    sections: list[SectionPreview]
    show_page_numbers: bool
    show_timestamp: bool


class TemplateResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    report_type: str
    category: TemplateCategory
    layout: dict[str, Any]
    structure: dict[str, Any]
    styling: dict[str, Any]
    permissions: dict[str, Any]
    version: str
    author: Optional[str]
    tags: list[str]
    usage_count: int
    last_used_at: Optional[datetime]
    is_active: bool
    original_template_id: Optional[str]
    created_by_id: str
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime]

    can_edit: bool = False
    can_delete: bool = False
    can_duplicate: bool = False


class TemplateSummary(BaseModel):
    total: int = 0
    public: int = 0
    by_category: dict[str, int] = Field(default_factory=dict)
    by_report_type: dict[str, int] = Field(default_factory=dict)


class TemplateListResponse(BaseModel):
    items: list[TemplateResponse]
    pagination: PageInfo
    summary: TemplateSummary
