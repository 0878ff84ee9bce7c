"""DuckDB store management - metadata tables and connection handling.

Shared relational store layout
==============================
- One DuckDB database file (settings.store_path)
- Metadata tables (metahubs, branches, memberships, users, locks, audit log)
  live in the default `main` schema
- Each branch owns one schema ("namespace") named
  `mhb_<metahubId-without-dashes>_b<branchNumber>`, see namespaces.py
"""

import json
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

import duckdb
import structlog

from metahub_service.config import settings
from metahub_service import metrics

logger = structlog.get_logger()


def utcnow() -> datetime:
    """Naive UTC timestamp (columns are TIMESTAMP, always UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso(value: datetime | None) -> str | None:
    """Render a stored UTC timestamp as ISO 8601 with offset."""
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


def load_json(value: str | None) -> Any:
    if value is None:
        return None
    return json.loads(value)


def dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


# ============================================
# Schema definitions
# ============================================

METADATA_SCHEMA = """
-- Metahubs (workspaces owning branches)
CREATE TABLE IF NOT EXISTS metahubs (
    id VARCHAR PRIMARY KEY,
    name VARCHAR NOT NULL,                -- versioned localized content (JSON)
    description VARCHAR,                  -- versioned localized content (JSON)
    default_branch_id VARCHAR,            -- NULL until the initial branch exists
    last_branch_number INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL DEFAULT 1,   -- optimistic lock counter
    created_at TIMESTAMP DEFAULT current_timestamp,
    created_by VARCHAR,
    updated_at TIMESTAMP DEFAULT current_timestamp,
    updated_by VARCHAR
);

-- Branches (one namespace per branch)
-- Note: DuckDB doesn't support CASCADE on FK, references are maintained by
-- the branch service
CREATE TABLE IF NOT EXISTS branches (
    id VARCHAR PRIMARY KEY,
    metahub_id VARCHAR NOT NULL,
    codename VARCHAR NOT NULL,
    name VARCHAR NOT NULL,                -- versioned localized content (JSON)
    name_sort VARCHAR,                    -- primary locale content, sort key
    description VARCHAR,                  -- versioned localized content (JSON)
    branch_number INTEGER NOT NULL,
    namespace_name VARCHAR NOT NULL,
    source_branch_id VARCHAR,             -- NULL for the root branch
    version INTEGER NOT NULL DEFAULT 1,
    created_at TIMESTAMP DEFAULT current_timestamp,
    created_by VARCHAR,
    updated_at TIMESTAMP DEFAULT current_timestamp,
    updated_by VARCHAR
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_branches_metahub_codename ON branches(metahub_id, codename);
CREATE UNIQUE INDEX IF NOT EXISTS idx_branches_metahub_number ON branches(metahub_id, branch_number);
CREATE UNIQUE INDEX IF NOT EXISTS idx_branches_namespace ON branches(namespace_name);
CREATE INDEX IF NOT EXISTS idx_branches_metahub ON branches(metahub_id);

-- Users directory (identity is resolved by API key)
CREATE TABLE IF NOT EXISTS users (
    id VARCHAR PRIMARY KEY,
    email VARCHAR,
    nickname VARCHAR,
    key_hash VARCHAR(64) NOT NULL,
    key_prefix VARCHAR(50) NOT NULL,
    created_at TIMESTAMP DEFAULT current_timestamp
);

CREATE INDEX IF NOT EXISTS idx_users_key_prefix ON users(key_prefix);

-- Metahub memberships with per-user active branch
CREATE TABLE IF NOT EXISTS metahub_users (
    id VARCHAR PRIMARY KEY,
    metahub_id VARCHAR NOT NULL,
    user_id VARCHAR NOT NULL,
    role VARCHAR NOT NULL DEFAULT 'member',  -- owner, admin, editor, member
    active_branch_id VARCHAR,                -- NULL = use the metahub default
    created_at TIMESTAMP DEFAULT current_timestamp
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_mu_metahub_user ON metahub_users(metahub_id, user_id);
CREATE INDEX IF NOT EXISTS idx_mu_metahub ON metahub_users(metahub_id);

-- Store-backed advisory locks (cross-process mutual exclusion)
CREATE TABLE IF NOT EXISTS advisory_locks (
    lock_key BIGINT PRIMARY KEY,
    owner VARCHAR,
    acquired_at TIMESTAMP NOT NULL
);

-- Operations audit log
CREATE SEQUENCE IF NOT EXISTS operations_log_seq;

CREATE TABLE IF NOT EXISTS operations_log (
    id BIGINT DEFAULT nextval('operations_log_seq') PRIMARY KEY,
    timestamp TIMESTAMP DEFAULT current_timestamp,
    request_id VARCHAR,
    metahub_id VARCHAR,
    operation VARCHAR NOT NULL,
    resource_type VARCHAR,
    resource_id VARCHAR,
    actor_id VARCHAR,
    details VARCHAR,
    status VARCHAR NOT NULL,
    error_message VARCHAR
);

CREATE INDEX IF NOT EXISTS idx_ops_metahub ON operations_log(metahub_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_ops_operation ON operations_log(operation);
"""


class MetadataDB:
    """
    Singleton class for managing the shared store.

    Thread-safe connection management for the store file.
    Note: db_path is read from settings on each access to support testing.

    Methods that take an optional ``conn`` run on that connection (and so
    inside the caller's transaction); without one they open their own
    autocommit connection.
    """

    _instance: "MetadataDB | None" = None
    _lock = threading.Lock()

    def __new__(cls) -> "MetadataDB":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return

        self._init_lock = threading.Lock()
        self._initialized = True

    @property
    def _db_path(self) -> Path:
        """Get db path from settings (allows runtime override in tests)."""
        return settings.store_path

    def initialize(self) -> None:
        """Initialize the store and create the metadata schema."""
        db_path = self._db_path
        with self._init_lock:
            db_path.parent.mkdir(parents=True, exist_ok=True)

            with self.connection() as conn:
                conn.execute(METADATA_SCHEMA)
            logger.info("metadata_schema_created", path=str(db_path))

    def _connect(self) -> duckdb.DuckDBPyConnection:
        return duckdb.connect(
            str(self._db_path),
            config={
                "threads": settings.duckdb_threads,
                "memory_limit": settings.duckdb_memory_limit,
            },
        )

    @contextmanager
    def connection(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """
        Get an autocommit connection to the store.

        Usage:
            with metadata_db.connection() as conn:
                conn.execute("SELECT * FROM metahubs")
        """
        conn = self._connect()
        metrics.STORE_CONNECTIONS_ACTIVE.inc()
        try:
            yield conn
        finally:
            conn.close()
            metrics.STORE_CONNECTIONS_ACTIVE.dec()

    @contextmanager
    def transaction(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """
        Run a block inside one store transaction.

        Commits when the block exits normally, rolls back and re-raises on
        any exception. DDL issued on the connection is part of the
        transaction as well.
        """
        with self.connection() as conn:
            conn.begin()
            try:
                yield conn
            except BaseException:
                try:
                    conn.rollback()
                except duckdb.Error as e:
                    # Transaction already aborted by the store
                    logger.debug("transaction_rollback_skipped", error=str(e))
                raise
            conn.commit()

    @contextmanager
    def _use(
        self, conn: duckdb.DuckDBPyConnection | None
    ) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        if conn is not None:
            yield conn
            return
        with self.connection() as own:
            yield own

    def execute(self, query: str, params: list | None = None) -> list[tuple]:
        """Execute a read query and return results."""
        start_time = time.time()
        try:
            with self.connection() as conn:
                if params:
                    result = conn.execute(query, params).fetchall()
                else:
                    result = conn.execute(query).fetchall()
                return result
        finally:
            duration = time.time() - start_time
            metrics.STORE_QUERIES_TOTAL.labels(operation="read").inc()
            metrics.STORE_QUERY_DURATION.labels(operation="read").observe(duration)

    def execute_one(self, query: str, params: list | None = None) -> tuple | None:
        """Execute a query and return single result."""
        results = self.execute(query, params)
        return results[0] if results else None

    def execute_write(self, query: str, params: list | None = None) -> None:
        """Execute a write query (INSERT, UPDATE, DELETE)."""
        start_time = time.time()
        try:
            with self.connection() as conn:
                if params:
                    conn.execute(query, params)
                else:
                    conn.execute(query)
        finally:
            duration = time.time() - start_time
            metrics.STORE_QUERIES_TOTAL.labels(operation="write").inc()
            metrics.STORE_QUERY_DURATION.labels(operation="write").observe(duration)

    def ping(self) -> bool:
        """Check that the store answers queries."""
        try:
            return self.execute_one("SELECT 1") == (1,)
        except duckdb.Error as e:
            logger.warning("store_ping_failed", error=str(e))
            return False

    # ========================================
    # Metahub operations
    # ========================================

    def create_metahub(
        self,
        name: dict,
        description: dict | None = None,
        created_by: str | None = None,
        metahub_id: str | None = None,
    ) -> dict[str, Any]:
        """Register a new metahub without branches."""
        metahub_id = metahub_id or str(uuid.uuid4())
        now = utcnow()

        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO metahubs (id, name, description, default_branch_id,
                                      last_branch_number, version,
                                      created_at, created_by, updated_at, updated_by)
                VALUES (?, ?, ?, NULL, 0, 1, ?, ?, ?, ?)
                """,
                [metahub_id, dump_json(name), dump_json(description),
                 now, created_by, now, created_by],
            )
            result = conn.execute(
                "SELECT * FROM metahubs WHERE id = ?", [metahub_id]
            ).fetchone()

        logger.info("metahub_registered", metahub_id=metahub_id)
        return self._row_to_metahub_dict(result)

    def get_metahub(
        self, metahub_id: str, conn: duckdb.DuckDBPyConnection | None = None
    ) -> dict[str, Any] | None:
        """Get metahub by ID."""
        with self._use(conn) as c:
            result = c.execute(
                "SELECT * FROM metahubs WHERE id = ?", [metahub_id]
            ).fetchone()
        return self._row_to_metahub_dict(result) if result else None

    def lock_metahub_row(
        self, conn: duckdb.DuckDBPyConnection, metahub_id: str
    ) -> dict[str, Any] | None:
        """
        Read the metahub row and take a write lock on it for the current
        transaction.

        DuckDB has no SELECT ... FOR UPDATE; a no-op UPDATE registers the
        transaction as the row's writer, so any concurrent transaction that
        writes the same row fails with a write-write conflict.
        """
        conn.execute(
            "UPDATE metahubs SET last_branch_number = last_branch_number WHERE id = ?",
            [metahub_id],
        )
        result = conn.execute(
            "SELECT * FROM metahubs WHERE id = ?", [metahub_id]
        ).fetchone()
        return self._row_to_metahub_dict(result) if result else None

    def set_branch_counters(
        self,
        conn: duckdb.DuckDBPyConnection,
        metahub_id: str,
        last_branch_number: int,
        default_branch_id: str | None = None,
    ) -> None:
        """
        Bookkeeping update of the numbering counter (and default branch).

        Does not touch ``version``: this is not a semantic edit of the
        metahub.
        """
        if default_branch_id is not None:
            conn.execute(
                """
                UPDATE metahubs
                SET last_branch_number = ?, default_branch_id = ?
                WHERE id = ?
                """,
                [last_branch_number, default_branch_id, metahub_id],
            )
        else:
            conn.execute(
                "UPDATE metahubs SET last_branch_number = ? WHERE id = ?",
                [last_branch_number, metahub_id],
            )

    def set_default_branch_id(
        self,
        metahub_id: str,
        branch_id: str,
        conn: duckdb.DuckDBPyConnection | None = None,
    ) -> None:
        """Point the metahub at a new default branch."""
        with self._use(conn) as c:
            c.execute(
                "UPDATE metahubs SET default_branch_id = ?, updated_at = ? WHERE id = ?",
                [branch_id, utcnow(), metahub_id],
            )
        logger.info("metahub_default_branch_set", metahub_id=metahub_id, branch_id=branch_id)

    def delete_metahub(self, metahub_id: str) -> None:
        """Remove a metahub and its memberships (branches must be gone)."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM metahub_users WHERE metahub_id = ?", [metahub_id])
            conn.execute("DELETE FROM metahubs WHERE id = ?", [metahub_id])
        logger.info("metahub_deleted", metahub_id=metahub_id)

    def count_metahubs(self) -> int:
        result = self.execute_one("SELECT COUNT(*) FROM metahubs")
        return result[0] if result else 0

    def _row_to_metahub_dict(self, row: tuple | None) -> dict[str, Any] | None:
        """Convert database row to metahub dictionary."""
        if row is None:
            return None

        return {
            "id": row[0],
            "name": load_json(row[1]),
            "description": load_json(row[2]),
            "default_branch_id": row[3],
            "last_branch_number": row[4] or 0,
            "version": row[5] or 1,
            "created_at": to_iso(row[6]),
            "created_by": row[7],
            "updated_at": to_iso(row[8]),
            "updated_by": row[9],
        }

    # ========================================
    # User directory
    # ========================================

    def create_user(
        self,
        user_id: str,
        key_hash: str,
        key_prefix: str,
        email: str | None = None,
        nickname: str | None = None,
    ) -> dict[str, Any]:
        """Register a user together with the hash of their API key."""
        self.execute_write(
            """
            INSERT INTO users (id, email, nickname, key_hash, key_prefix, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [user_id, email, nickname, key_hash, key_prefix, utcnow()],
        )
        logger.info("user_registered", user_id=user_id, key_prefix=key_prefix)
        return self.get_user(user_id)

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        result = self.execute_one(
            "SELECT id, email, nickname, key_hash, key_prefix, created_at FROM users WHERE id = ?",
            [user_id],
        )
        return self._row_to_user_dict(result)

    def get_user_by_key_prefix(self, key_prefix: str) -> dict[str, Any] | None:
        result = self.execute_one(
            "SELECT id, email, nickname, key_hash, key_prefix, created_at FROM users WHERE key_prefix = ?",
            [key_prefix],
        )
        return self._row_to_user_dict(result)

    def get_users(
        self, user_ids: list[str], conn: duckdb.DuckDBPyConnection | None = None
    ) -> dict[str, dict[str, Any]]:
        """Fetch several users at once, keyed by id."""
        if not user_ids:
            return {}
        placeholders = ", ".join("?" for _ in user_ids)
        with self._use(conn) as c:
            rows = c.execute(
                f"SELECT id, email, nickname, key_hash, key_prefix, created_at "
                f"FROM users WHERE id IN ({placeholders})",
                list(user_ids),
            ).fetchall()
        return {row[0]: self._row_to_user_dict(row) for row in rows}

    def _row_to_user_dict(self, row: tuple | None) -> dict[str, Any] | None:
        if row is None:
            return None
        return {
            "id": row[0],
            "email": row[1],
            "nickname": row[2],
            "key_hash": row[3],
            "key_prefix": row[4],
            "created_at": to_iso(row[5]),
        }

    # ========================================
    # Memberships
    # ========================================

    def add_member(
        self,
        metahub_id: str,
        user_id: str,
        role: str = "member",
    ) -> dict[str, Any]:
        """Grant a user access to a metahub."""
        member_id = str(uuid.uuid4())
        self.execute_write(
            """
            INSERT INTO metahub_users (id, metahub_id, user_id, role, active_branch_id, created_at)
            VALUES (?, ?, ?, ?, NULL, ?)
            """,
            [member_id, metahub_id, user_id, role, utcnow()],
        )
        logger.info("metahub_member_added", metahub_id=metahub_id, user_id=user_id, role=role)
        return self.get_membership(metahub_id, user_id)

    def get_membership(
        self,
        metahub_id: str,
        user_id: str,
        conn: duckdb.DuckDBPyConnection | None = None,
    ) -> dict[str, Any] | None:
        with self._use(conn) as c:
            result = c.execute(
                "SELECT * FROM metahub_users WHERE metahub_id = ? AND user_id = ?",
                [metahub_id, user_id],
            ).fetchone()
        return self._row_to_member_dict(result)

    def set_active_branch(
        self,
        metahub_id: str,
        user_id: str,
        branch_id: str | None,
        conn: duckdb.DuckDBPyConnection | None = None,
    ) -> None:
        with self._use(conn) as c:
            c.execute(
                """
                UPDATE metahub_users SET active_branch_id = ?
                WHERE metahub_id = ? AND user_id = ?
                """,
                [branch_id, metahub_id, user_id],
            )

    def list_members_on_branch(
        self,
        metahub_id: str,
        branch_id: str,
        exclude_user_id: str | None = None,
        conn: duckdb.DuckDBPyConnection | None = None,
    ) -> list[dict[str, Any]]:
        """Memberships whose active branch is the given branch."""
        query = """
            SELECT * FROM metahub_users
            WHERE metahub_id = ? AND active_branch_id = ?
        """
        params: list[Any] = [metahub_id, branch_id]
        if exclude_user_id:
            query += " AND user_id <> ?"
            params.append(exclude_user_id)
        query += " ORDER BY created_at"

        with self._use(conn) as c:
            rows = c.execute(query, params).fetchall()
        return [self._row_to_member_dict(row) for row in rows]

    def clear_active_branch_pointers(
        self,
        conn: duckdb.DuckDBPyConnection,
        metahub_id: str,
        branch_id: str,
    ) -> int:
        """Reset every membership pointing at a branch back to the default."""
        rows = conn.execute(
            """
            UPDATE metahub_users SET active_branch_id = NULL
            WHERE metahub_id = ? AND active_branch_id = ?
            RETURNING user_id
            """,
            [metahub_id, branch_id],
        ).fetchall()
        return len(rows)

    def _row_to_member_dict(self, row: tuple | None) -> dict[str, Any] | None:
        if row is None:
            return None
        return {
            "id": row[0],
            "metahub_id": row[1],
            "user_id": row[2],
            "role": row[3],
            "active_branch_id": row[4],
            "created_at": to_iso(row[5]),
        }

    # ========================================
    # Operations logging
    # ========================================

    def log_operation(
        self,
        operation: str,
        status: str,
        metahub_id: str | None = None,
        request_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        actor_id: str | None = None,
        details: dict | None = None,
        error_message: str | None = None,
    ) -> None:
        """Log an operation to the audit trail."""
        self.execute_write(
            """
            INSERT INTO operations_log
            (timestamp, request_id, metahub_id, operation, resource_type, resource_id,
             actor_id, details, status, error_message)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                utcnow(),
                request_id,
                metahub_id,
                operation,
                resource_type,
                resource_id,
                actor_id,
                dump_json(details),
                status,
                error_message,
            ],
        )

    def list_operations(
        self,
        metahub_id: str | None = None,
        operation: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Read back audit entries, newest first."""
        clauses = []
        params: list[Any] = []
        if metahub_id:
            clauses.append("metahub_id = ?")
            params.append(metahub_id)
        if operation:
            clauses.append("operation = ?")
            params.append(operation)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        rows = self.execute(
            f"""
            SELECT id, timestamp, metahub_id, operation, resource_type, resource_id,
                   actor_id, details, status, error_message
            FROM operations_log {where}
            ORDER BY id DESC
            LIMIT ?
            """,
            params,
        )
        return [
            {
                "id": row[0],
                "timestamp": to_iso(row[1]),
                "metahub_id": row[2],
                "operation": row[3],
                "resource_type": row[4],
                "resource_id": row[5],
                "actor_id": row[6],
                "details": load_json(row[7]),
                "status": row[8],
                "error_message": row[9],
            }
            for row in rows
        ]


metadata_db = MetadataDB()
