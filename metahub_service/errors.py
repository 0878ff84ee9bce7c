"""Typed failures raised by the branch lifecycle core.

Each error carries the HTTP status and machine-readable code the API layer
renders, plus a ``details`` dict with the entity ids involved. Conflicts that
a client may simply retry (lock contention, numbering races) are flagged
``retryable``.
"""

from datetime import datetime
from typing import Any

import duckdb


class BranchServiceError(Exception):
    """Base class for all branch lifecycle failures."""

    status_code: int = 500
    error: str = "internal_server_error"
    default_message: str = "Unexpected branch service failure"

    def __init__(self, message: str | None = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Render the error envelope used in HTTP responses."""
        return {
            "error": self.error,
            "message": self.message,
            "details": self.details or None,
        }


# ============================================
# 400 / 403 / 404
# ============================================


class ValidationError(BranchServiceError):
    status_code = 400
    error = "validation_failed"
    default_message = "Validation failed"


class PermissionDeniedError(BranchServiceError):
    status_code = 403
    error = "forbidden"
    default_message = "Access denied to this resource"


class MembershipNotFoundError(PermissionDeniedError):
    error = "membership_not_found"
    default_message = "Membership not found"


class NotFoundError(BranchServiceError):
    status_code = 404
    error = "not_found"
    default_message = "Resource not found"


class MetahubNotFoundError(NotFoundError):
    error = "metahub_not_found"
    default_message = "Metahub not found"


class BranchNotFoundError(NotFoundError):
    error = "branch_not_found"
    default_message = "Branch not found"


class SourceBranchNotFoundError(NotFoundError):
    error = "source_branch_not_found"
    default_message = "Source branch not found"


class UserNotFoundError(NotFoundError):
    error = "user_not_found"
    default_message = "User not found"


# ============================================
# 409 conflicts
# ============================================


class ConflictError(BranchServiceError):
    status_code = 409
    error = "conflict"
    default_message = "Conflict"
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["details"] = {**(self.details or {}), "retryable": self.retryable}
        return body


class DefaultBranchAlreadyConfiguredError(ConflictError):
    error = "DEFAULT_BRANCH_ALREADY_CONFIGURED"
    default_message = "Default branch is already configured"


class BranchCodenameExistsError(ConflictError):
    error = "BRANCH_CODENAME_EXISTS"
    default_message = "Branch with this codename already exists"


class BranchNumberConflictError(ConflictError):
    error = "BRANCH_NUMBER_CONFLICT"
    default_message = "Branch numbering conflict. Please retry."
    retryable = True


class BranchUniqueConflictError(ConflictError):
    error = "BRANCH_UNIQUE_CONFLICT"
    default_message = "Branch creation failed due to unique constraint conflict"


class BranchCreationInProgressError(ConflictError):
    error = "BRANCH_CREATION_IN_PROGRESS"
    default_message = "Branch creation in progress"
    retryable = True


class BranchDeletionInProgressError(ConflictError):
    error = "BRANCH_DELETION_IN_PROGRESS"
    default_message = "Branch deletion in progress"
    retryable = True


class BranchActiveForOtherUsersError(ConflictError):
    error = "BRANCH_ACTIVE_FOR_OTHER_USERS"
    default_message = "Branch is active for other users"

    def __init__(self, blocking_users: list[dict[str, Any]], **details: Any):
        self.blocking_users = blocking_users
        super().__init__(blocking_users=blocking_users, **details)


class ConcurrentModificationError(ConflictError):
    error = "CONCURRENT_MODIFICATION"
    default_message = "Metahub was modified concurrently. Please retry."
    retryable = True


class DefaultBranchDeletionError(ConflictError):
    error = "DEFAULT_BRANCH_CANNOT_BE_DELETED"
    default_message = "Default branch cannot be deleted"


class OptimisticLockError(ConflictError):
    """Raised when a caller edits a branch based on a stale version.

    The payload lets the caller show the current state and choose between
    overwriting and cancelling.
    """

    error = "OPTIMISTIC_LOCK_CONFLICT"
    default_message = "Entity was modified by another user"

    def __init__(
        self,
        entity_id: str,
        entity_type: str,
        expected_version: int,
        actual_version: int,
        updated_at: datetime | str | None = None,
        updated_by: str | None = None,
    ):
        if isinstance(updated_at, datetime):
            updated_at = updated_at.isoformat()
        self.entity_id = entity_id
        self.entity_type = entity_type
        self.expected_version = expected_version
        self.actual_version = actual_version
        self.updated_at = updated_at
        self.updated_by = updated_by
        super().__init__(
            f"{entity_type} {entity_id} is at version {actual_version}, "
            f"expected {expected_version}",
            entity_id=entity_id,
            entity_type=entity_type,
            expected_version=expected_version,
            actual_version=actual_version,
            updated_at=updated_at,
            updated_by=updated_by,
        )


# ============================================
# Store error translation
# ============================================

# Column lists of the unique indexes on the branches table, as DuckDB names
# them in "Duplicate key" messages.
_CODENAME_KEY_MARKERS = ("codename:",)
_NUMBER_KEY_MARKERS = ("branch_number:", "namespace_name:")


def translate_unique_violation(
    exc: Exception, metahub_id: str | None = None
) -> ConflictError:
    """
    Map a unique-constraint violation raised by the store to a conflict.

    DuckDB reports the violated key as ``Duplicate key "col: value, ..."``,
    which tells us which unique index fired.
    """
    message = str(exc)
    if any(marker in message for marker in _CODENAME_KEY_MARKERS):
        return BranchCodenameExistsError(metahub_id=metahub_id)
    if any(marker in message for marker in _NUMBER_KEY_MARKERS):
        return BranchNumberConflictError(metahub_id=metahub_id)
    return BranchUniqueConflictError(metahub_id=metahub_id)


def translate_store_error(
    exc: Exception, metahub_id: str | None = None
) -> BranchServiceError | None:
    """
    Translate a raw DuckDB exception into a typed conflict, if it is one.

    Returns None for errors that are not uniqueness or write-write conflicts;
    the caller re-raises the original exception in that case.
    """
    if isinstance(exc, BranchServiceError):
        return exc
    if isinstance(exc, duckdb.ConstraintException):
        if "Duplicate key" in str(exc) or "unique" in str(exc).lower():
            return translate_unique_violation(exc, metahub_id)
        return None
    if isinstance(exc, duckdb.TransactionException):
        # Concurrent writer touched the metahub row first
        return BranchNumberConflictError(metahub_id=metahub_id)
    if isinstance(exc, duckdb.CatalogException) and "already exists" in str(exc):
        # Namespace for this branch number already provisioned
        return BranchNumberConflictError(metahub_id=metahub_id)
    return None
