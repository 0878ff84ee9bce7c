"""Metahub branch endpoints.

Each branch of a metahub owns its own namespace in the shared store:
- Create: new empty namespace, or a clone of a source branch's system tables
- Activate: per-user choice of the branch to work against
- Default: the branch users without an explicit choice resolve to
- Delete: refused for the default branch and while others have it active

Endpoints are sync: store calls and lock acquisition block, so FastAPI runs
them on its worker thread pool.
"""

from typing import Annotated, Any, Literal

import structlog
from fastapi import APIRouter, Depends, Query, Response, status

from metahub_service.branch_service import UNSET, BranchService
from metahub_service.branch_utils import resolve_active_branch
from metahub_service.config import settings
from metahub_service.dependencies import (
    MetahubAccess,
    get_branch_service,
    require_metahub_access,
)
from metahub_service.errors import (
    BranchCodenameExistsError,
    BranchNotFoundError,
    ValidationError,
)
from metahub_service.localized import (
    build_localized_content,
    is_valid_codename,
    normalize_codename,
    sanitize_localized_input,
)
from metahub_service.models.responses import (
    BlockingUsersResponse,
    BranchCreate,
    BranchDetailResponse,
    BranchListResponse,
    BranchOptionsResponse,
    BranchPointerResponse,
    BranchResponse,
    BranchUpdate,
    ErrorResponse,
)

logger = structlog.get_logger()
router = APIRouter(prefix="", tags=["branches"])

SortBy = Literal["name", "codename", "created", "updated"]
SortOrder = Literal["asc", "desc"]

ServiceDep = Annotated[BranchService, Depends(get_branch_service)]
MemberDep = Annotated[MetahubAccess, Depends(require_metahub_access())]
ManagerDep = Annotated[MetahubAccess, Depends(require_metahub_access("manageMetahub"))]


def _clean_codename(raw: str) -> str:
    codename = normalize_codename(raw)
    if not is_valid_codename(codename):
        raise ValidationError(
            "Codename must contain only lowercase letters, numbers, and hyphens",
            codename=raw,
        )
    return codename


def _localized_name(raw: Any, primary_locale: str | None) -> dict:
    name = build_localized_content(
        sanitize_localized_input(raw), primary_locale, settings.default_locale
    )
    if name is None:
        raise ValidationError("Name is required", field="name")
    return name


def _localized_description(
    raw: Any, primary_locale: str | None, name_primary_locale: str | None
) -> dict | None:
    return build_localized_content(
        sanitize_localized_input(raw),
        primary_locale,
        name_primary_locale or settings.default_locale,
    )


def _with_flags(
    branch: dict, default_branch_id: str | None, active_branch_id: str | None
) -> dict:
    return {
        **branch,
        "is_default": branch["id"] == default_branch_id,
        "is_active": branch["id"] == active_branch_id,
    }


def _resolve_flags(service: BranchService, access: MetahubAccess) -> tuple[str | None, str | None]:
    active_id, _ = resolve_active_branch(
        access.metahub_id, access.user_id, service.cache, service.db
    )
    return service.get_default_branch_id(access.metahub_id), active_id


@router.get(
    "/metahub/{metahub_id}/branches/options",
    response_model=BranchOptionsResponse,
    summary="List all branches (unpaginated)",
    description="Same filters as the paginated list, for branch selectors.",
)
def list_branch_options(
    metahub_id: str,
    access: MemberDep,
    service: ServiceDep,
    sort_by: Annotated[SortBy, Query(alias="sortBy")] = "updated",
    sort_order: Annotated[SortOrder, Query(alias="sortOrder")] = "desc",
    search: Annotated[str | None, Query(max_length=200)] = None,
) -> BranchOptionsResponse:
    branches = service.list_all_branches(metahub_id, sort_by, sort_order, search)
    default_id, active_id = _resolve_flags(service, access)

    return BranchOptionsResponse(
        items=[_with_flags(b, default_id, active_id) for b in branches],
        total=len(branches),
        meta={"default_branch_id": default_id, "active_branch_id": active_id},
    )


@router.get(
    "/metahub/{metahub_id}/branches",
    response_model=BranchListResponse,
    summary="List branches",
)
def list_branches(
    metahub_id: str,
    access: MemberDep,
    service: ServiceDep,
    limit: Annotated[int, Query(ge=1)] = settings.list_default_limit,
    offset: Annotated[int, Query(ge=0)] = 0,
    sort_by: Annotated[SortBy, Query(alias="sortBy")] = "updated",
    sort_order: Annotated[SortOrder, Query(alias="sortOrder")] = "desc",
    search: Annotated[str | None, Query(max_length=200)] = None,
) -> BranchListResponse:
    """Paginated list; meta carries the default and the caller's effective active branch."""
    if limit > settings.list_max_limit:
        raise ValidationError(
            f"limit must not exceed {settings.list_max_limit}", limit=limit
        )

    branches, total = service.list_branches(
        metahub_id, limit, offset, sort_by, sort_order, search
    )
    default_id, active_id = _resolve_flags(service, access)

    return BranchListResponse(
        items=[_with_flags(b, default_id, active_id) for b in branches],
        pagination={"total": total, "limit": limit, "offset": offset},
        meta={"default_branch_id": default_id, "active_branch_id": active_id},
    )


@router.get(
    "/metahub/{metahub_id}/branch/{branch_id}",
    response_model=BranchDetailResponse,
    responses={404: {"model": ErrorResponse, "description": "Branch not found"}},
    summary="Get branch detail with lineage",
)
def get_branch(
    metahub_id: str,
    branch_id: str,
    access: MemberDep,
    service: ServiceDep,
) -> BranchDetailResponse:
    branch = service.get_branch(metahub_id, branch_id)
    if branch is None:
        raise BranchNotFoundError(
            f"Branch {branch_id} not found in metahub {metahub_id}",
            metahub_id=metahub_id,
            branch_id=branch_id,
        )

    default_id, active_id = _resolve_flags(service, access)
    lineage = service.get_branch_lineage(metahub_id, branch_id)

    return BranchDetailResponse(
        **_with_flags(branch, default_id, active_id),
        source_chain=lineage["sourceChain"],
    )


@router.post(
    "/metahub/{metahub_id}/branches",
    response_model=BranchResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        201: {"description": "Branch created successfully"},
        400: {"model": ErrorResponse, "description": "Invalid codename or name"},
        404: {"model": ErrorResponse, "description": "Metahub or source branch not found"},
        409: {"model": ErrorResponse, "description": "Codename taken, numbering race or creation in progress"},
    },
    summary="Create a branch",
    description="""
    Create a new branch with its own namespace.

    - Without sourceBranchId the namespace starts with empty system tables
    - With sourceBranchId the source's system tables are cloned (ids kept)
    - Concurrent creation in the same metahub fails fast with
      BRANCH_CREATION_IN_PROGRESS (retryable)
    """,
)
def create_branch(
    metahub_id: str,
    request: BranchCreate,
    access: ManagerDep,
    service: ServiceDep,
) -> BranchResponse:
    codename = _clean_codename(request.codename)

    if service.find_by_codename(metahub_id, codename):
        raise BranchCodenameExistsError(metahub_id=metahub_id, codename=codename)

    name = _localized_name(request.name, request.name_primary_locale)
    description = None
    if request.description is not None:
        description = _localized_description(
            request.description,
            request.description_primary_locale,
            request.name_primary_locale,
        )

    branch = service.create_branch(
        metahub_id=metahub_id,
        codename=codename,
        name=name,
        description=description,
        source_branch_id=request.source_branch_id,
        created_by=access.user_id,
    )
    return BranchResponse(**branch)


@router.patch(
    "/metahub/{metahub_id}/branch/{branch_id}",
    response_model=BranchResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Branch not found"},
        409: {"model": ErrorResponse, "description": "Codename taken or stale expectedVersion"},
    },
    summary="Update branch metadata",
)
def update_branch(
    metahub_id: str,
    branch_id: str,
    request: BranchUpdate,
    access: ManagerDep,
    service: ServiceDep,
) -> BranchResponse:
    """Edit codename/name/description; expectedVersion guards against lost updates."""
    provided = request.model_fields_set

    codename = None
    if request.codename is not None:
        codename = _clean_codename(request.codename)

    name = None
    if request.name is not None:
        name = _localized_name(request.name, request.name_primary_locale)

    description: Any = UNSET
    if "description" in provided:
        description = None
        if request.description is not None:
            description = _localized_description(
                request.description,
                request.description_primary_locale,
                request.name_primary_locale,
            )

    branch = service.update_branch(
        metahub_id,
        branch_id,
        codename=codename,
        name=name,
        description=description,
        expected_version=request.expected_version,
        updated_by=access.user_id,
    )
    return BranchResponse(**branch)


@router.post(
    "/metahub/{metahub_id}/branch/{branch_id}/activate",
    response_model=BranchPointerResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Membership not found"},
        404: {"model": ErrorResponse, "description": "Branch not found"},
    },
    summary="Activate branch for the current user",
)
def activate_branch(
    metahub_id: str,
    branch_id: str,
    access: MemberDep,
    service: ServiceDep,
) -> BranchPointerResponse:
    branch = service.activate_branch(metahub_id, branch_id, access.user_id)
    return BranchPointerResponse(metahub_id=metahub_id, branch_id=branch["id"])


@router.post(
    "/metahub/{metahub_id}/branch/{branch_id}/default",
    response_model=BranchPointerResponse,
    responses={404: {"model": ErrorResponse, "description": "Branch not found"}},
    summary="Set the metahub default branch",
)
def set_default_branch(
    metahub_id: str,
    branch_id: str,
    access: ManagerDep,
    service: ServiceDep,
) -> BranchPointerResponse:
    branch = service.set_default_branch(metahub_id, branch_id, actor_id=access.user_id)
    return BranchPointerResponse(metahub_id=metahub_id, branch_id=branch["id"])


@router.get(
    "/metahub/{metahub_id}/branch/{branch_id}/blocking-users",
    response_model=BlockingUsersResponse,
    responses={404: {"model": ErrorResponse, "description": "Branch not found"}},
    summary="Users who have this branch active",
)
def get_blocking_users(
    metahub_id: str,
    branch_id: str,
    access: ManagerDep,
    service: ServiceDep,
) -> BlockingUsersResponse:
    """Members other than the caller whose active branch is this one."""
    if service.get_branch(metahub_id, branch_id) is None:
        raise BranchNotFoundError(
            f"Branch {branch_id} not found in metahub {metahub_id}",
            metahub_id=metahub_id,
            branch_id=branch_id,
        )

    default_id = service.get_default_branch_id(metahub_id)
    blocking = service.get_blocking_users(metahub_id, branch_id, exclude_user_id=access.user_id)
    is_default = branch_id == default_id

    return BlockingUsersResponse(
        branch_id=branch_id,
        blocking_users=blocking,
        can_delete=not blocking and not is_default,
        is_default=is_default,
    )


@router.delete(
    "/metahub/{metahub_id}/branch/{branch_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={
        404: {"model": ErrorResponse, "description": "Branch not found"},
        409: {"model": ErrorResponse, "description": "Default branch, active for others, or deletion in progress"},
    },
    summary="Delete a branch",
)
def delete_branch(
    metahub_id: str,
    branch_id: str,
    access: ManagerDep,
    service: ServiceDep,
) -> Response:
    service.delete_branch(metahub_id, branch_id, requester_id=access.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
