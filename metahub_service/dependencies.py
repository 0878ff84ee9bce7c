"""FastAPI dependencies for authentication, authorization and services.

Access model:

1. ADMIN_API_KEY (from ENV) - can register users
2. User API key (hash stored in DB) - identifies the calling user
3. Metahub membership role - decides what the user may do in a metahub:
   owner, admin -> manageMembers, manageMetahub, content permissions
   editor       -> content permissions
   member       -> read access only

Usage in routers:
    @router.post("/users", dependencies=[Depends(require_admin)])
    async def register_user(...):
        ...

    @router.delete("/metahub/{metahub_id}/branch/{branch_id}")
    async def delete_branch(
        access: Annotated[MetahubAccess, Depends(require_metahub_access("manageMetahub"))],
        ...
    ):
        ...
"""

from dataclasses import dataclass
from typing import Annotated, Any, Callable

import structlog
from fastapi import Depends, HTTPException, Path, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from metahub_service.auth import get_key_prefix, parse_key_info, verify_key_hash
from metahub_service.branch_service import BranchService
from metahub_service.cloner import DataCloner
from metahub_service.config import settings
from metahub_service.database import MetadataDB
from metahub_service.locks import advisory_locks
from metahub_service.namespaces import SchemaProvisioner
from metahub_service.resolution_cache import BranchResolutionCache

logger = structlog.get_logger(__name__)

# Security scheme for Swagger UI
security = HTTPBearer(
    scheme_name="Bearer Auth",
    description="Enter your API key (ADMIN_API_KEY or a user key)",
)

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "owner": frozenset(
        {"manageMembers", "manageMetahub", "createContent", "editContent", "deleteContent"}
    ),
    "admin": frozenset(
        {"manageMembers", "manageMetahub", "createContent", "editContent", "deleteContent"}
    ),
    "editor": frozenset({"createContent", "editContent", "deleteContent"}),
    "member": frozenset(),
}


class AuthenticationError(HTTPException):
    """Raised when authentication fails."""

    def __init__(self, detail: str = "Invalid or missing API key"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "unauthorized", "message": detail},
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationError(HTTPException):
    """Raised when authorization fails (valid key but no access)."""

    def __init__(self, detail: str = "Access denied to this resource"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "forbidden", "message": detail},
        )


@dataclass
class MetahubAccess:
    """Resolved caller identity within one metahub."""

    user_id: str
    metahub_id: str
    role: str
    membership: dict[str, Any]


def get_api_key_from_header(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> str:
    """Extract API key from the Authorization: Bearer header."""
    if not credentials or not credentials.credentials:
        logger.warning("auth_missing_credentials")
        raise AuthenticationError("Missing or invalid credentials")

    return credentials.credentials


def verify_admin_key(api_key: str) -> bool:
    """Whether the API key is the bootstrap admin key."""
    if not settings.admin_api_key:
        logger.warning("auth_admin_key_not_configured")
        return False

    # Simple string comparison for admin key (it's not hashed)
    return api_key == settings.admin_api_key


def verify_user_key(api_key: str) -> dict[str, Any] | None:
    """
    Resolve a user API key to its user record.

    Returns:
        The user dict if the key is valid, None otherwise.
    """
    if not parse_key_info(api_key)["is_valid_format"]:
        return None

    key_prefix = get_key_prefix(api_key)
    user = MetadataDB().get_user_by_key_prefix(key_prefix)
    if not user:
        logger.debug("auth_key_not_found", key_prefix=key_prefix)
        return None

    if not verify_key_hash(api_key, user["key_hash"]):
        logger.warning("auth_key_hash_mismatch", key_prefix=key_prefix)
        return None

    return user


async def require_admin(
    api_key: Annotated[str, Depends(get_api_key_from_header)],
) -> str:
    """
    Dependency that requires admin-level access (POST /users).

    Raises:
        AuthenticationError: If the key is not the admin key
    """
    if verify_admin_key(api_key):
        logger.info("auth_admin_access_granted")
        return api_key

    if not settings.admin_api_key:
        logger.error("auth_admin_key_not_configured")
        raise AuthenticationError("Admin API key not configured on server")

    logger.warning("auth_admin_access_denied", key_prefix=get_key_prefix(api_key))
    raise AuthenticationError("Invalid admin API key")


async def require_user(
    api_key: Annotated[str, Depends(get_api_key_from_header)],
) -> dict[str, Any]:
    """
    Dependency that resolves the calling user from their API key.

    Raises:
        AuthenticationError: If the key does not belong to a registered user
    """
    user = verify_user_key(api_key)
    if user is None:
        logger.warning("auth_user_access_denied", key_prefix=get_key_prefix(api_key))
        raise AuthenticationError("Invalid user API key")
    return user


def require_metahub_access(permission: str | None = None) -> Callable:
    """
    Build a dependency that checks the caller's membership in the path's
    metahub and, optionally, one permission of their role.

    Raises (from the built dependency):
        AuthorizationError: no membership, or the role lacks the permission
    """

    async def dependency(
        user: Annotated[dict[str, Any], Depends(require_user)],
        metahub_id: Annotated[str, Path(description="Metahub ID")],
    ) -> MetahubAccess:
        membership = MetadataDB().get_membership(metahub_id, user["id"])
        if membership is None:
            logger.warning(
                "auth_metahub_access_denied",
                metahub_id=metahub_id,
                user_id=user["id"],
                reason="no_membership",
            )
            raise AuthorizationError(f"Access denied to metahub {metahub_id}")

        role = membership["role"]
        if permission and permission not in ROLE_PERMISSIONS.get(role, frozenset()):
            logger.warning(
                "auth_metahub_access_denied",
                metahub_id=metahub_id,
                user_id=user["id"],
                role=role,
                permission=permission,
            )
            raise AuthorizationError(
                f"Role '{role}' lacks permission '{permission}' in metahub {metahub_id}"
            )

        return MetahubAccess(
            user_id=user["id"],
            metahub_id=metahub_id,
            role=role,
            membership=membership,
        )

    return dependency


# ============================================
# Services
# ============================================

resolution_cache = BranchResolutionCache(ttl_seconds=settings.resolution_cache_ttl_seconds)


def get_branch_service() -> BranchService:
    """Branch service wired to the shared store and process-wide cache."""
    db = MetadataDB()
    return BranchService(
        db=db,
        provisioner=SchemaProvisioner(db),
        cloner=DataCloner(),
        locks=advisory_locks,
        cache=resolution_cache,
    )
