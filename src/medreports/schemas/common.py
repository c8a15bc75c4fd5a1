"""Shared schema building blocks."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class RequestModel(BaseModel):
    """
    Base for request payloads.

    The portal front end sends camelCase keys; snake_case is accepted too
    so service code and tests can build payloads directly.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Identity(BaseModel):
    """Caller identity supplied by the upstream auth layer."""

    user_id: str
    role: str = "AGENT"

    @property
    def is_admin(self) -> bool:
        return self.role.upper() == "ADMIN"


class PageInfo(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool

    @classmethod
    def build(cls, total: int, limit: int, offset: int) -> "PageInfo":
        return cls(total=total, limit=limit, offset=offset, has_more=offset + limit < total)

