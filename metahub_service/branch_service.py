"""Branch lifecycle orchestration.

Branch creation sequence
========================
1. Take the advisory lock "<metahubId>:branch-create" (fail fast if held)
2. One store transaction:
   - write-lock the metahub row (serializes numbering across processes)
   - validate the source branch belongs to the metahub
   - next number = max(last_branch_number, max(branch_number)) + 1
   - provision namespace mhb_<metahubId>_b<n>
   - clone the source namespace's system tables (if any)
   - insert the branch row, bump last_branch_number (not the metahub version)
3. Commit; on any failure drop the namespace as compensation
4. Release the lock
"""

import time
from contextlib import contextmanager
from typing import Any, Callable, Generator

import duckdb
import structlog

from metahub_service import metrics
from metahub_service.branch_repository import BranchRepository
from metahub_service.cloner import DataCloner
from metahub_service.config import settings
from metahub_service.database import MetadataDB
from metahub_service.errors import (
    BranchActiveForOtherUsersError,
    BranchCodenameExistsError,
    BranchCreationInProgressError,
    BranchDeletionInProgressError,
    BranchNotFoundError,
    ConcurrentModificationError,
    DefaultBranchAlreadyConfiguredError,
    DefaultBranchDeletionError,
    MembershipNotFoundError,
    MetahubNotFoundError,
    OptimisticLockError,
    SourceBranchNotFoundError,
    translate_store_error,
)
from metahub_service.locks import AdvisoryLockManager, lock_key
from metahub_service.namespaces import SchemaProvisioner, build_namespace_name
from metahub_service.resolution_cache import BranchResolutionCache, NullResolutionCache

logger = structlog.get_logger()

# Marks "description not given" in update_branch (None clears it)
UNSET: Any = object()


def _request_id() -> str | None:
    return structlog.contextvars.get_contextvars().get("request_id")


class BranchService:
    """
    Create, clone, activate, default and delete metahub branches.

    Collaborators are injected so tests can substitute a failing
    provisioner, a pre-held lock manager or a no-op cache.
    """

    def __init__(
        self,
        db: MetadataDB,
        provisioner: SchemaProvisioner,
        cloner: DataCloner,
        locks: AdvisoryLockManager,
        cache: BranchResolutionCache | NullResolutionCache,
    ):
        self.db = db
        self.provisioner = provisioner
        self.cloner = cloner
        self.locks = locks
        self.cache = cache

    # ========================================
    # Reads
    # ========================================

    def _require_metahub(
        self, metahub_id: str, conn: duckdb.DuckDBPyConnection | None = None
    ) -> dict[str, Any]:
        metahub = self.db.get_metahub(metahub_id, conn)
        if metahub is None:
            raise MetahubNotFoundError(
                f"Metahub {metahub_id} not found", metahub_id=metahub_id
            )
        return metahub

    def _require_branch(
        self, repo: BranchRepository, metahub_id: str, branch_id: str
    ) -> dict[str, Any]:
        branch = repo.get(metahub_id, branch_id)
        if branch is None:
            raise BranchNotFoundError(
                f"Branch {branch_id} not found in metahub {metahub_id}",
                metahub_id=metahub_id,
                branch_id=branch_id,
            )
        return branch

    def list_branches(
        self,
        metahub_id: str,
        limit: int = 100,
        offset: int = 0,
        sort_by: str = "updated",
        sort_order: str = "desc",
        search: str | None = None,
    ) -> tuple[list[dict[str, Any]], int]:
        with self.db.connection() as conn:
            return BranchRepository(conn).list_page(
                metahub_id, limit, offset, sort_by, sort_order, search
            )

    def list_all_branches(
        self,
        metahub_id: str,
        sort_by: str = "updated",
        sort_order: str = "desc",
        search: str | None = None,
    ) -> list[dict[str, Any]]:
        with self.db.connection() as conn:
            return BranchRepository(conn).list_all(metahub_id, sort_by, sort_order, search)

    def get_branch(self, metahub_id: str, branch_id: str) -> dict[str, Any] | None:
        with self.db.connection() as conn:
            return BranchRepository(conn).get(metahub_id, branch_id)

    def find_by_codename(
        self, metahub_id: str, codename: str, exclude_id: str | None = None
    ) -> dict[str, Any] | None:
        with self.db.connection() as conn:
            return BranchRepository(conn).find_by_codename(metahub_id, codename, exclude_id)

    def get_default_branch_id(self, metahub_id: str) -> str | None:
        metahub = self.db.get_metahub(metahub_id)
        return metahub["default_branch_id"] if metahub else None

    def get_user_active_branch_id(self, metahub_id: str, user_id: str) -> str | None:
        membership = self.db.get_membership(metahub_id, user_id)
        return membership["active_branch_id"] if membership else None

    def count_branches(self) -> int:
        with self.db.connection() as conn:
            return BranchRepository(conn).count()

    # ========================================
    # Compensation
    # ========================================

    def _compensate_namespace(self, metahub_id: str, namespace: str, reason: str) -> None:
        """
        Drop a namespace left behind by a failed creation.

        Skipped when a committed branch row references the namespace. A failed
        drop is logged and recorded as an orphan, never raised.
        """
        try:
            with self.db.connection() as conn:
                if BranchRepository(conn).namespace_in_use(namespace):
                    logger.info(
                        "namespace_compensation_skipped",
                        metahub_id=metahub_id,
                        namespace=namespace,
                    )
                    return
                self.provisioner.drop(namespace, conn)
            metrics.NAMESPACE_COMPENSATIONS.labels(outcome="dropped").inc()
            logger.info(
                "namespace_compensated",
                metahub_id=metahub_id,
                namespace=namespace,
                reason=reason,
            )
        except Exception as e:
            metrics.NAMESPACE_COMPENSATIONS.labels(outcome="failed").inc()
            logger.error(
                "namespace_drop_failed",
                metahub_id=metahub_id,
                namespace=namespace,
                reason=reason,
                error=str(e),
                exc_info=True,
            )
            self._record_orphan(metahub_id, namespace, reason, str(e))

    def _record_orphan(
        self, metahub_id: str, namespace: str, reason: str, error: str
    ) -> None:
        try:
            self.db.log_operation(
                operation="namespace_orphaned",
                status="pending_cleanup",
                metahub_id=metahub_id,
                request_id=_request_id(),
                resource_type="namespace",
                resource_id=namespace,
                details={"reason": reason},
                error_message=error,
            )
        except duckdb.Error as e:
            logger.error(
                "namespace_orphan_record_failed",
                metahub_id=metahub_id,
                namespace=namespace,
                error=str(e),
            )

    def _record_failure(
        self,
        operation: str,
        metahub_id: str,
        error: Exception,
        resource_id: str | None = None,
        actor_id: str | None = None,
    ) -> None:
        metrics.BRANCH_OPERATIONS.labels(operation=operation, status="error").inc()
        logger.warning(
            f"branch_{operation}_failed",
            metahub_id=metahub_id,
            branch_id=resource_id,
            actor_id=actor_id,
            error_type=type(error).__name__,
            error=str(error),
        )

    def _record_success(
        self,
        operation: str,
        metahub_id: str,
        branch_id: str,
        actor_id: str | None = None,
        details: dict | None = None,
    ) -> None:
        metrics.BRANCH_OPERATIONS.labels(operation=operation, status="success").inc()
        self.db.log_operation(
            operation=f"branch_{operation}",
            status="success",
            metahub_id=metahub_id,
            request_id=_request_id(),
            resource_type="branch",
            resource_id=branch_id,
            actor_id=actor_id,
            details=details,
        )

    @contextmanager
    def _exclusive(
        self, scope_key: str, scope: str, error_factory: Callable[[], Exception]
    ) -> Generator[None, None, None]:
        """Hold the advisory lock for ``scope_key``; busy raises ``error_factory()``."""
        key = lock_key(scope_key)

        def busy() -> Exception:
            metrics.BRANCH_LOCK_CONTENTION.labels(scope=scope).inc()
            logger.info("branch_lock_busy", scope=scope, lock_key=key)
            return error_factory()

        with self.locks.hold(key, busy):
            yield

    # ========================================
    # Creation
    # ========================================

    def create_initial_branch(
        self,
        metahub_id: str,
        name: dict,
        description: dict | None = None,
        codename: str | None = None,
        created_by: str | None = None,
    ) -> dict[str, Any]:
        """
        Create branch number 1 and make it the metahub default.

        Allowed exactly once per metahub.
        """
        codename = codename or settings.default_branch_codename
        metahub = self._require_metahub(metahub_id)
        if metahub["default_branch_id"]:
            raise DefaultBranchAlreadyConfiguredError(
                metahub_id=metahub_id, default_branch_id=metahub["default_branch_id"]
            )

        branch_number = 1
        namespace = build_namespace_name(metahub_id, branch_number)
        start_time = time.perf_counter()
        with self._exclusive(
            f"{metahub_id}:initial-branch",
            "initial-branch",
            lambda: BranchCreationInProgressError(
                "Initial branch creation in progress", metahub_id=metahub_id
            ),
        ):
            try:
                with self.db.transaction() as conn:
                    self.provisioner.provision(conn, namespace)

                with self.db.transaction() as conn:
                    locked = self.db.lock_metahub_row(conn, metahub_id)
                    if locked is None:
                        raise MetahubNotFoundError(
                            f"Metahub {metahub_id} not found", metahub_id=metahub_id
                        )
                    if locked["default_branch_id"]:
                        raise DefaultBranchAlreadyConfiguredError(
                            metahub_id=metahub_id,
                            default_branch_id=locked["default_branch_id"],
                        )

                    branch = BranchRepository(conn).insert(
                        metahub_id=metahub_id,
                        codename=codename,
                        name=name,
                        description=description,
                        branch_number=branch_number,
                        namespace_name=namespace,
                        source_branch_id=None,
                        created_by=created_by,
                    )
                    self.db.set_branch_counters(
                        conn,
                        metahub_id,
                        last_branch_number=branch_number,
                        default_branch_id=branch["id"],
                    )
            except Exception as exc:
                self._compensate_namespace(metahub_id, namespace, "initial_branch_failed")
                self._record_failure("create_initial", metahub_id, exc, actor_id=created_by)
                translated = translate_store_error(exc, metahub_id)
                if translated is not None and translated is not exc:
                    raise translated from exc
                raise

        metrics.BRANCH_CREATE_DURATION.labels(cloned="false").observe(
            time.perf_counter() - start_time
        )
        self.cache.set_default_branch(metahub_id, branch["id"])
        self._record_success(
            "create_initial",
            metahub_id,
            branch["id"],
            actor_id=created_by,
            details={"codename": codename, "namespace": namespace},
        )
        logger.info(
            "initial_branch_created",
            metahub_id=metahub_id,
            branch_id=branch["id"],
            namespace=namespace,
        )
        return branch

    def create_branch(
        self,
        metahub_id: str,
        codename: str,
        name: dict,
        description: dict | None = None,
        source_branch_id: str | None = None,
        created_by: str | None = None,
    ) -> dict[str, Any]:
        """
        Create a branch, optionally cloned from another branch of the metahub.

        Raises:
            BranchCreationInProgressError: another creation holds the lock
            MetahubNotFoundError / SourceBranchNotFoundError
            BranchCodenameExistsError / BranchNumberConflictError /
            BranchUniqueConflictError: a unique index fired
        """
        namespace: str | None = None
        start_time = time.perf_counter()
        with self._exclusive(
            f"{metahub_id}:branch-create",
            "branch-create",
            lambda: BranchCreationInProgressError(metahub_id=metahub_id),
        ):
            try:
                with self.db.transaction() as conn:
                    metahub = self.db.lock_metahub_row(conn, metahub_id)
                    if metahub is None:
                        raise MetahubNotFoundError(
                            f"Metahub {metahub_id} not found", metahub_id=metahub_id
                        )

                    repo = BranchRepository(conn)
                    source = None
                    if source_branch_id:
                        source = repo.get(metahub_id, source_branch_id)
                        if source is None:
                            raise SourceBranchNotFoundError(
                                f"Source branch {source_branch_id} not found",
                                metahub_id=metahub_id,
                                source_branch_id=source_branch_id,
                            )

                    next_number = max(
                        metahub["last_branch_number"], repo.max_branch_number(metahub_id)
                    ) + 1
                    namespace = build_namespace_name(metahub_id, next_number)

                    self.provisioner.provision(conn, namespace)
                    if source is not None:
                        self.cloner.clone(conn, source["namespace_name"], namespace, created_by)

                    branch = repo.insert(
                        metahub_id=metahub_id,
                        codename=codename,
                        name=name,
                        description=description,
                        branch_number=next_number,
                        namespace_name=namespace,
                        source_branch_id=source["id"] if source else None,
                        created_by=created_by,
                    )
                    self.db.set_branch_counters(conn, metahub_id, last_branch_number=next_number)
            except Exception as exc:
                if namespace:
                    self._compensate_namespace(metahub_id, namespace, "branch_create_failed")
                self._record_failure("create", metahub_id, exc, actor_id=created_by)
                translated = translate_store_error(exc, metahub_id)
                if translated is not None and translated is not exc:
                    raise translated from exc
                raise

        cloned = source_branch_id is not None
        metrics.BRANCH_CREATE_DURATION.labels(cloned=str(cloned).lower()).observe(
            time.perf_counter() - start_time
        )
        self._record_success(
            "create",
            metahub_id,
            branch["id"],
            actor_id=created_by,
            details={
                "codename": codename,
                "branch_number": branch["branch_number"],
                "source_branch_id": branch["source_branch_id"],
            },
        )
        logger.info(
            "branch_created",
            metahub_id=metahub_id,
            branch_id=branch["id"],
            branch_number=branch["branch_number"],
            namespace=namespace,
            source_branch_id=branch["source_branch_id"],
        )
        return branch

    # ========================================
    # Metadata edits
    # ========================================

    @staticmethod
    def _update_conflict(
        current: dict[str, Any] | None,
        metahub_id: str,
        branch_id: str,
        expected_version: int | None,
    ) -> Exception:
        """Lost a write race: version-gated edits get the optimistic lock payload."""
        if current is None:
            return BranchNotFoundError(
                f"Branch {branch_id} not found in metahub {metahub_id}",
                metahub_id=metahub_id,
                branch_id=branch_id,
            )
        if expected_version is None:
            return ConcurrentModificationError(
                "Branch was modified concurrently. Please retry.",
                metahub_id=metahub_id,
                branch_id=branch_id,
            )
        return OptimisticLockError(
            entity_id=branch_id,
            entity_type="branch",
            expected_version=expected_version,
            actual_version=current["version"],
            updated_at=current["updated_at"],
            updated_by=current["updated_by"],
        )

    def update_branch(
        self,
        metahub_id: str,
        branch_id: str,
        codename: str | None = None,
        name: dict | None = None,
        description: dict | None = UNSET,
        expected_version: int | None = None,
        updated_by: str | None = None,
    ) -> dict[str, Any]:
        """
        Edit codename, name or description.

        With ``expected_version`` the edit is refused (OptimisticLockError)
        unless the branch is still at that version.
        """
        try:
            with self.db.transaction() as conn:
                repo = BranchRepository(conn)
                branch = self._require_branch(repo, metahub_id, branch_id)

                if expected_version is not None and branch["version"] != expected_version:
                    raise OptimisticLockError(
                        entity_id=branch_id,
                        entity_type="branch",
                        expected_version=expected_version,
                        actual_version=branch["version"],
                        updated_at=branch["updated_at"],
                        updated_by=branch["updated_by"],
                    )

                fields: dict[str, Any] = {}
                if codename is not None and codename != branch["codename"]:
                    if repo.find_by_codename(metahub_id, codename, exclude_id=branch_id):
                        raise BranchCodenameExistsError(
                            metahub_id=metahub_id, codename=codename
                        )
                    fields["codename"] = codename
                if name is not None:
                    fields["name"] = name
                if description is not UNSET:
                    fields["description"] = description

                updated = repo.update(
                    metahub_id,
                    branch_id,
                    fields,
                    updated_by=updated_by,
                    expected_version=branch["version"],
                )
                if updated is None:
                    raise self._update_conflict(
                        repo.get(metahub_id, branch_id), metahub_id, branch_id, expected_version
                    )
        except duckdb.TransactionException as exc:
            # A concurrent edit committed first
            self._record_failure("update", metahub_id, exc, resource_id=branch_id)
            raise self._update_conflict(
                self.get_branch(metahub_id, branch_id), metahub_id, branch_id, expected_version
            ) from exc
        except Exception as exc:
            self._record_failure("update", metahub_id, exc, resource_id=branch_id)
            translated = translate_store_error(exc, metahub_id)
            if translated is not None and translated is not exc:
                raise translated from exc
            raise

        self._record_success(
            "update",
            metahub_id,
            branch_id,
            actor_id=updated_by,
            details={"fields": sorted(fields), "version": updated["version"]},
        )
        logger.info(
            "branch_updated",
            metahub_id=metahub_id,
            branch_id=branch_id,
            fields=sorted(fields),
            version=updated["version"],
        )
        return updated

    def activate_branch(self, metahub_id: str, branch_id: str, user_id: str) -> dict[str, Any]:
        """Make the branch the user's active branch in this metahub."""
        with self.db.connection() as conn:
            branch = self._require_branch(BranchRepository(conn), metahub_id, branch_id)
            membership = self.db.get_membership(metahub_id, user_id, conn)
            if membership is None:
                raise MembershipNotFoundError(metahub_id=metahub_id, user_id=user_id)
            self.db.set_active_branch(metahub_id, user_id, branch_id, conn)

        self.cache.set_user_branch(metahub_id, user_id, branch_id)
        self._record_success("activate", metahub_id, branch_id, actor_id=user_id)
        logger.info(
            "branch_activated",
            metahub_id=metahub_id,
            branch_id=branch_id,
            user_id=user_id,
        )
        return branch

    def set_default_branch(
        self, metahub_id: str, branch_id: str, actor_id: str | None = None
    ) -> dict[str, Any]:
        """
        Make the branch the metahub default.

        Repeating this for the current default still writes and still drops
        the cached resolutions. The metahub row is write-locked before the
        branch is checked.
        """
        try:
            with self.db.transaction() as conn:
                if self.db.lock_metahub_row(conn, metahub_id) is None:
                    raise MetahubNotFoundError(
                        f"Metahub {metahub_id} not found", metahub_id=metahub_id
                    )
                branch = self._require_branch(BranchRepository(conn), metahub_id, branch_id)
                self.db.set_default_branch_id(metahub_id, branch_id, conn)
        except duckdb.TransactionException as exc:
            self._record_failure("set_default", metahub_id, exc, resource_id=branch_id)
            raise ConcurrentModificationError(
                metahub_id=metahub_id, branch_id=branch_id
            ) from exc

        self.cache.invalidate_default_branch(metahub_id)
        # Users without an explicit choice resolve through the new default
        self.cache.invalidate_user_branch(metahub_id)
        self._record_success("set_default", metahub_id, branch_id, actor_id=actor_id)
        logger.info("branch_set_default", metahub_id=metahub_id, branch_id=branch_id)
        return branch

    def get_branch_lineage(self, metahub_id: str, branch_id: str) -> dict[str, Any]:
        """Immediate source plus the ordered ancestor chain."""
        with self.db.connection() as conn:
            repo = BranchRepository(conn)
            self._require_branch(repo, metahub_id, branch_id)
            return repo.lineage(metahub_id, branch_id)

    # ========================================
    # Deletion
    # ========================================

    def _blocking_users(
        self,
        conn: duckdb.DuckDBPyConnection,
        metahub_id: str,
        branch_id: str,
        exclude_user_id: str | None,
    ) -> list[dict[str, Any]]:
        members = self.db.list_members_on_branch(
            metahub_id, branch_id, exclude_user_id=exclude_user_id, conn=conn
        )
        if not members:
            return []
        users = self.db.get_users([m["user_id"] for m in members], conn=conn)
        return [
            {
                "id": m["id"],
                "userId": m["user_id"],
                "email": (users.get(m["user_id"]) or {}).get("email"),
                "nickname": (users.get(m["user_id"]) or {}).get("nickname"),
                "role": m["role"],
            }
            for m in members
        ]

    def get_blocking_users(
        self, metahub_id: str, branch_id: str, exclude_user_id: str | None = None
    ) -> list[dict[str, Any]]:
        """Members (other than ``exclude_user_id``) who have the branch active."""
        with self.db.connection() as conn:
            return self._blocking_users(conn, metahub_id, branch_id, exclude_user_id)

    def delete_branch(self, metahub_id: str, branch_id: str, requester_id: str) -> None:
        """
        Delete a branch and drop its namespace.

        Refused for the metahub default (checked first) and while any member
        other than the requester has the branch active.
        """
        with self._exclusive(
            f"{metahub_id}:{branch_id}:branch-delete",
            "branch-delete",
            lambda: BranchDeletionInProgressError(metahub_id=metahub_id, branch_id=branch_id),
        ):
            try:
                with self.db.transaction() as conn:
                    metahub = self.db.lock_metahub_row(conn, metahub_id)
                    if metahub is None:
                        raise MetahubNotFoundError(
                            f"Metahub {metahub_id} not found", metahub_id=metahub_id
                        )
                    if metahub["default_branch_id"] == branch_id:
                        raise DefaultBranchDeletionError(
                            metahub_id=metahub_id, branch_id=branch_id
                        )

                    repo = BranchRepository(conn)
                    branch = self._require_branch(repo, metahub_id, branch_id)

                    blockers = self._blocking_users(conn, metahub_id, branch_id, requester_id)
                    if blockers:
                        raise BranchActiveForOtherUsersError(
                            blockers, metahub_id=metahub_id, branch_id=branch_id
                        )

                    cleared = self.db.clear_active_branch_pointers(conn, metahub_id, branch_id)

                    # Namespace drop and row delete commit together
                    self.provisioner.drop(branch["namespace_name"], conn)
                    repo.delete(metahub_id, branch_id)
            except duckdb.TransactionException as exc:
                self._record_failure("delete", metahub_id, exc, resource_id=branch_id)
                raise ConcurrentModificationError(
                    metahub_id=metahub_id, branch_id=branch_id
                ) from exc
            except Exception as exc:
                self._record_failure("delete", metahub_id, exc, resource_id=branch_id)
                raise

        self.cache.invalidate_metahub(metahub_id)
        self._record_success(
            "delete",
            metahub_id,
            branch_id,
            actor_id=requester_id,
            details={
                "codename": branch["codename"],
                "namespace": branch["namespace_name"],
                "cleared_pointers": cleared,
            },
        )
        logger.info(
            "branch_deleted",
            metahub_id=metahub_id,
            branch_id=branch_id,
            namespace=branch["namespace_name"],
            cleared_pointers=cleared,
        )
