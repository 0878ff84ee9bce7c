"""Request and response models for API endpoints.

Branch endpoints speak camelCase on the wire (``sourceBranchId``,
``expectedVersion``); the models accept snake_case field names as well.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

LocalizedInput = str | dict[str, str]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status: 'healthy' or 'unhealthy'")
    version: str = Field(description="API version")
    storage_available: bool = Field(description="Whether the shared store answers queries")
    details: dict[str, bool] | None = Field(
        default=None, description="Detailed status of each storage path"
    )


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(description="Error type")
    message: str = Field(description="Error message")
    details: dict | None = Field(default=None, description="Additional error details")


# ============================================
# User models
# ============================================


class UserCreate(BaseModel):
    """Request to register a user."""

    email: str | None = Field(default=None, max_length=320, description="Contact email")
    nickname: str | None = Field(default=None, max_length=100, description="Display name")


class UserCreateResponse(BaseModel):
    """Registered user - includes API key (shown only once)."""

    id: str = Field(description="User identifier")
    email: str | None = None
    nickname: str | None = None
    api_key: str = Field(description="API key (save this - shown only once!)")
    created_at: str | None = Field(default=None, description="Creation timestamp (ISO)")


# ============================================
# Metahub models
# ============================================


class MetahubCreate(CamelModel):
    """Request to create a metahub together with its initial branch."""

    name: LocalizedInput = Field(description="Name as text or {locale: text}")
    description: LocalizedInput | None = Field(default=None, description="Description")
    name_primary_locale: str | None = None
    description_primary_locale: str | None = None


class MetahubResponse(CamelModel):
    """Metahub information response."""

    id: str
    name: dict[str, Any] | None = None
    description: dict[str, Any] | None = None
    default_branch_id: str | None = None
    last_branch_number: int = 0
    version: int = 1
    created_at: str | None = None
    created_by: str | None = None
    updated_at: str | None = None


class MemberCreate(CamelModel):
    """Request to grant a user access to a metahub."""

    user_id: str = Field(description="User to add")
    role: Literal["owner", "admin", "editor", "member"] = Field(default="member")


class MemberResponse(CamelModel):
    id: str
    metahub_id: str
    user_id: str
    role: str
    active_branch_id: str | None = None
    created_at: str | None = None


# ============================================
# Branch models
# ============================================


class BranchCreate(CamelModel):
    """Request to create a branch (optionally cloned from a source branch)."""

    codename: str = Field(min_length=1, max_length=100, description="Machine-friendly identifier")
    name: LocalizedInput | None = Field(default=None, description="Name as text or {locale: text}")
    description: LocalizedInput | None = Field(default=None, description="Description")
    name_primary_locale: str | None = None
    description_primary_locale: str | None = None
    source_branch_id: str | None = Field(default=None, description="Branch to clone from")

    @field_validator("source_branch_id", mode="before")
    @classmethod
    def empty_source_is_none(cls, value: Any) -> Any:
        return None if value == "" else value


class BranchUpdate(CamelModel):
    """Request to update branch metadata (all fields optional)."""

    codename: str | None = Field(default=None, min_length=1, max_length=100)
    name: LocalizedInput | None = None
    description: LocalizedInput | None = None
    name_primary_locale: str | None = None
    description_primary_locale: str | None = None
    expected_version: int | None = Field(default=None, gt=0, description="Optimistic lock version")


class BranchResponse(CamelModel):
    """Branch projection."""

    id: str
    metahub_id: str
    codename: str
    name: dict[str, Any] | None = None
    description: dict[str, Any] | None = None
    source_branch_id: str | None = None
    branch_number: int
    version: int = 1
    created_at: str | None = None
    updated_at: str | None = None


class BranchListItem(BranchResponse):
    is_default: bool = False
    is_active: bool = False


class LineageEntry(CamelModel):
    id: str
    codename: str | None = None
    name: dict[str, Any] | None = None
    is_missing: bool | None = None


class BranchDetailResponse(BranchListItem):
    source_chain: list[LineageEntry] = Field(default_factory=list)


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int


class BranchListMeta(CamelModel):
    default_branch_id: str | None = None
    active_branch_id: str | None = None


class BranchListResponse(BaseModel):
    items: list[BranchListItem]
    pagination: Pagination
    meta: BranchListMeta


class BranchOptionsResponse(BaseModel):
    items: list[BranchListItem]
    total: int
    meta: BranchListMeta


class BranchPointerResponse(CamelModel):
    """Result of activate / set-default."""

    metahub_id: str
    branch_id: str


class BlockingUser(CamelModel):
    id: str
    user_id: str
    email: str | None = None
    nickname: str | None = None
    role: str


class BlockingUsersResponse(CamelModel):
    branch_id: str
    blocking_users: list[BlockingUser]
    can_delete: bool
    is_default: bool
