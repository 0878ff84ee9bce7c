"""Metahub administration endpoints and health check."""

from typing import Annotated, Any

import duckdb
import structlog
from fastapi import APIRouter, Depends, status

from metahub_service.branch_service import BranchService
from metahub_service.config import settings
from metahub_service.database import metadata_db
from metahub_service.dependencies import (
    MetahubAccess,
    get_branch_service,
    require_metahub_access,
    require_user,
)
from metahub_service.errors import (
    ConflictError,
    MetahubNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from metahub_service.localized import build_localized_content, sanitize_localized_input
from metahub_service.metrics import METAHUBS_TOTAL
from metahub_service.models.responses import (
    ErrorResponse,
    HealthResponse,
    MemberCreate,
    MemberResponse,
    MetahubCreate,
    MetahubResponse,
)

logger = structlog.get_logger()
router = APIRouter(tags=["metahubs"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
def health_check() -> HealthResponse:
    """Report whether the data directory exists and the store answers."""
    details = {
        "data_dir": settings.data_dir.exists(),
        "store": metadata_db.ping(),
    }
    healthy = all(details.values())
    return HealthResponse(
        status="healthy" if healthy else "unhealthy",
        version=settings.api_version,
        storage_available=details["store"],
        details=details,
    )


@router.post(
    "/metahubs",
    response_model=MetahubResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse, "description": "Name missing"}},
    summary="Create a metahub with its initial branch",
    description="""
    Create a metahub, make the caller its owner and provision the initial
    branch (number 1, the default). If the initial branch cannot be created
    the metahub is removed again.
    """,
)
def create_metahub(
    request: MetahubCreate,
    user: Annotated[dict[str, Any], Depends(require_user)],
    service: Annotated[BranchService, Depends(get_branch_service)],
) -> MetahubResponse:
    name = build_localized_content(
        sanitize_localized_input(request.name),
        request.name_primary_locale,
        settings.default_locale,
    )
    if name is None:
        raise ValidationError("Name is required", field="name")
    description = build_localized_content(
        sanitize_localized_input(request.description),
        request.description_primary_locale,
        request.name_primary_locale or settings.default_locale,
    )

    db = service.db
    metahub = db.create_metahub(name=name, description=description, created_by=user["id"])
    metahub_id = metahub["id"]

    try:
        db.add_member(metahub_id, user["id"], role="owner")
        service.create_initial_branch(
            metahub_id,
            name=name,
            description=description,
            codename=settings.default_branch_codename,
            created_by=user["id"],
        )
    except Exception as e:
        logger.error(
            "metahub_create_rolled_back",
            metahub_id=metahub_id,
            error=str(e),
        )
        db.delete_metahub(metahub_id)
        raise

    db.log_operation(
        operation="create_metahub",
        status="success",
        metahub_id=metahub_id,
        resource_type="metahub",
        resource_id=metahub_id,
        actor_id=user["id"],
    )
    METAHUBS_TOTAL.set(db.count_metahubs())
    logger.info("metahub_created", metahub_id=metahub_id, owner_id=user["id"])

    return MetahubResponse(**db.get_metahub(metahub_id))


@router.get(
    "/metahub/{metahub_id}",
    response_model=MetahubResponse,
    responses={404: {"model": ErrorResponse, "description": "Metahub not found"}},
    summary="Get metahub",
)
def get_metahub(
    metahub_id: str,
    access: Annotated[MetahubAccess, Depends(require_metahub_access())],
) -> MetahubResponse:
    metahub = metadata_db.get_metahub(metahub_id)
    if metahub is None:
        raise MetahubNotFoundError(f"Metahub {metahub_id} not found", metahub_id=metahub_id)
    return MetahubResponse(**metahub)


@router.post(
    "/metahub/{metahub_id}/members",
    response_model=MemberResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        404: {"model": ErrorResponse, "description": "User not found"},
        409: {"model": ErrorResponse, "description": "Already a member"},
    },
    summary="Grant a user access to the metahub",
)
def add_member(
    metahub_id: str,
    request: MemberCreate,
    access: Annotated[MetahubAccess, Depends(require_metahub_access("manageMembers"))],
) -> MemberResponse:
    if metadata_db.get_user(request.user_id) is None:
        raise UserNotFoundError(f"User {request.user_id} not found", user_id=request.user_id)

    try:
        member = metadata_db.add_member(metahub_id, request.user_id, role=request.role)
    except duckdb.ConstraintException as e:
        raise ConflictError(
            f"User {request.user_id} is already a member of metahub {metahub_id}",
            metahub_id=metahub_id,
            user_id=request.user_id,
        ) from e

    metadata_db.log_operation(
        operation="add_member",
        status="success",
        metahub_id=metahub_id,
        resource_type="membership",
        resource_id=member["id"],
        actor_id=access.user_id,
        details={"user_id": request.user_id, "role": request.role},
    )
    return MemberResponse(**member)
