"""
Common schemas shared between the gateway and the backend workflows.

Covers: the platform role catalog, pagination, response envelopes.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class OrgRoles(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    ISSUER = "issuer"
    VERIFIER = "verifier"
    MEMBER = "member"
    HOLDER = "holder"
    PLATFORM_ADMIN = "platform_admin"


# Client roles created in the identity provider for every organization
STANDARD_CLIENT_ROLES: list[OrgRoles] = [
    OrgRoles.OWNER,
    OrgRoles.ADMIN,
    OrgRoles.ISSUER,
    OrgRoles.VERIFIER,
    OrgRoles.MEMBER,
]

# Roles held outside any organization
PLATFORM_LEVEL_ROLES: list[OrgRoles] = [OrgRoles.HOLDER, OrgRoles.PLATFORM_ADMIN]


class PageQuery(BaseModel):
    page_number: int = Field(default=1, ge=1)
    page_size: int = Field(default=10, ge=1, le=100)
    search: str = ""


class Pagination(BaseModel):
    page_number: int
    page_size: int
    total: int
    total_pages: int

    @classmethod
    def build(cls, page_number: int, page_size: int, total: int) -> "Pagination":
        return cls(
            page_number=page_number,
            page_size=page_size,
            total=total,
            total_pages=math.ceil(total / page_size) if page_size else 0,
        )


class Page(BaseModel, Generic[T]):
    items: list[T]
    pagination: Pagination


class RoleRef(BaseModel):
    id: str
    name: str
    description: Optional[str] = None


class APIResponse(BaseModel):
    """Success envelope returned by the HTTP gateway."""

    statusCode: int
    message: str
    data: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Failure envelope returned by the HTTP gateway."""

    statusCode: int
    message: str
    error: str
