"""Branch resolution shared by per-branch request handlers.

Branch Resolution:
- branch_ref = "active"  -> the caller's active branch, else the metahub default
- branch_ref = "default" -> the metahub default branch
- branch_ref = {uuid}    -> that branch, which must belong to the metahub
"""

from typing import Literal

import structlog

from metahub_service.branch_repository import BranchRepository
from metahub_service.database import MetadataDB
from metahub_service.errors import BranchNotFoundError, MetahubNotFoundError
from metahub_service.resolution_cache import BranchResolutionCache, NullResolutionCache

logger = structlog.get_logger()

BranchSource = Literal["active", "default"]


def resolve_default_branch(
    metahub_id: str,
    cache: BranchResolutionCache | NullResolutionCache,
    db: MetadataDB | None = None,
) -> str | None:
    """Default branch id of a metahub, cached."""
    cached = cache.get_default_branch(metahub_id)
    if cached:
        return cached

    metahub = (db or MetadataDB()).get_metahub(metahub_id)
    if metahub is None:
        raise MetahubNotFoundError(
            f"Metahub {metahub_id} not found", metahub_id=metahub_id
        )
    default_id = metahub["default_branch_id"]
    if default_id:
        cache.set_default_branch(metahub_id, default_id)
    return default_id


def resolve_active_branch(
    metahub_id: str,
    user_id: str | None,
    cache: BranchResolutionCache | NullResolutionCache,
    db: MetadataDB | None = None,
) -> tuple[str | None, BranchSource]:
    """
    Resolve the branch a user works against.

    Returns:
        Tuple of (branch_id, source)
        - the user's explicit active branch: (branch_id, "active")
        - no explicit choice: (default_branch_id, "default")

    An active pointer to a branch that no longer exists falls back to the
    default branch.
    """
    db = db or MetadataDB()

    if user_id:
        active_id = cache.get_user_branch(metahub_id, user_id)
        if active_id is None:
            membership = db.get_membership(metahub_id, user_id)
            active_id = membership["active_branch_id"] if membership else None

        if active_id:
            with db.connection() as conn:
                exists = BranchRepository(conn).get(metahub_id, active_id) is not None
            if exists:
                cache.set_user_branch(metahub_id, user_id, active_id)
                return active_id, "active"
            logger.warning(
                "active_branch_dangling",
                metahub_id=metahub_id,
                user_id=user_id,
                branch_id=active_id,
            )
            cache.invalidate_user_branch(metahub_id, user_id)

    return resolve_default_branch(metahub_id, cache, db), "default"


def resolve_branch_namespace(
    metahub_id: str,
    user_id: str | None,
    cache: BranchResolutionCache | NullResolutionCache,
    branch_ref: str = "active",
    db: MetadataDB | None = None,
) -> str:
    """
    Resolve a branch reference to the namespace to operate on.

    Raises:
        MetahubNotFoundError if the metahub does not exist
        BranchNotFoundError if no branch matches the reference
    """
    db = db or MetadataDB()

    if branch_ref == "active":
        branch_id, _ = resolve_active_branch(metahub_id, user_id, cache, db)
    elif branch_ref == "default":
        branch_id = resolve_default_branch(metahub_id, cache, db)
    else:
        branch_id = branch_ref

    branch = None
    if branch_id:
        with db.connection() as conn:
            branch = BranchRepository(conn).get(metahub_id, branch_id)
    if branch is None:
        raise BranchNotFoundError(
            f"Branch {branch_ref} not found in metahub {metahub_id}",
            metahub_id=metahub_id,
            branch_id=branch_id,
        )
    return branch["namespace_name"]
