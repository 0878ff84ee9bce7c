"""User registration endpoint (admin only)."""

import uuid

import structlog
from fastapi import APIRouter, Depends, status

from metahub_service.auth import generate_user_key, get_key_prefix, hash_key
from metahub_service.database import metadata_db
from metahub_service.dependencies import require_admin
from metahub_service.models.responses import ErrorResponse, UserCreate, UserCreateResponse

logger = structlog.get_logger()
router = APIRouter(tags=["users"])


@router.post(
    "/users",
    response_model=UserCreateResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
    responses={401: {"model": ErrorResponse, "description": "Admin key required"}},
    summary="Register a user",
    description="Registers a user and returns their API key. The key is shown only once.",
)
def register_user(request: UserCreate) -> UserCreateResponse:
    user_id = str(uuid.uuid4())
    api_key = generate_user_key(user_id)

    user = metadata_db.create_user(
        user_id=user_id,
        key_hash=hash_key(api_key),
        key_prefix=get_key_prefix(api_key),
        email=request.email,
        nickname=request.nickname,
    )

    metadata_db.log_operation(
        operation="register_user",
        status="success",
        resource_type="user",
        resource_id=user_id,
    )
    logger.info("user_registered_via_api", user_id=user_id)

    return UserCreateResponse(
        id=user_id,
        email=user["email"],
        nickname=user["nickname"],
        api_key=api_key,
        created_at=user["created_at"],
    )
