"""Branch namespaces - one schema per branch in the shared store.

Namespace naming
================
    mhb_<metahubId-without-dashes>_b<branchNumber>

Every namespace holds the three system tables the branch clones carry:
    _mhb_objects      object definitions
    _mhb_attributes   attribute definitions (belong to an object)
    _mhb_elements     data elements (belong to an object)

Each system table has the business columns plus the `_upl_*` audit columns.
"""

import re

import duckdb
import structlog

from metahub_service.database import MetadataDB

logger = structlog.get_logger()

NAMESPACE_PREFIX = "mhb_"

_SAFE_NAMESPACE = re.compile(r"^[a-z_][a-z0-9_]*$")

# Audit columns shared by every system table; the cloner rewrites these
AUDIT_COLUMNS = (
    "_upl_created_at",
    "_upl_created_by",
    "_upl_updated_at",
    "_upl_updated_by",
    "_upl_version",
)

_AUDIT_DDL = """
    _upl_created_at TIMESTAMP NOT NULL DEFAULT current_timestamp,
    _upl_created_by VARCHAR,
    _upl_updated_at TIMESTAMP NOT NULL DEFAULT current_timestamp,
    _upl_updated_by VARCHAR,
    _upl_version INTEGER NOT NULL DEFAULT 1
"""

# Order matters: attributes and elements reference objects
SYSTEM_TABLES: dict[str, str] = {
    "_mhb_objects": f"""
        id VARCHAR PRIMARY KEY,
        kind VARCHAR NOT NULL,
        codename VARCHAR NOT NULL,
        presentation VARCHAR,
        config VARCHAR,
        {_AUDIT_DDL}
    """,
    "_mhb_attributes": f"""
        id VARCHAR PRIMARY KEY,
        object_id VARCHAR NOT NULL,
        codename VARCHAR NOT NULL,
        data_type VARCHAR NOT NULL,
        presentation VARCHAR,
        validation_rules VARCHAR,
        sort_order INTEGER NOT NULL DEFAULT 0,
        {_AUDIT_DDL}
    """,
    "_mhb_elements": f"""
        id VARCHAR PRIMARY KEY,
        object_id VARCHAR NOT NULL,
        data VARCHAR,
        sort_order INTEGER NOT NULL DEFAULT 0,
        {_AUDIT_DDL}
    """,
}


def build_namespace_name(metahub_id: str, branch_number: int) -> str:
    """Derive the namespace of a branch from its metahub and number."""
    compact = metahub_id.replace("-", "").lower()
    return f"{NAMESPACE_PREFIX}{compact}_b{branch_number}"


def assert_safe_namespace_name(namespace: str) -> str:
    """Reject names that could not have come from build_namespace_name."""
    if not _SAFE_NAMESPACE.match(namespace or ""):
        raise ValueError(f"Unsafe namespace name: {namespace!r}")
    return namespace


def quote_ident(name: str) -> str:
    """Double-quote an SQL identifier."""
    return '"' + name.replace('"', '""') + '"'


def qualified(namespace: str, table: str) -> str:
    return f"{quote_ident(namespace)}.{quote_ident(table)}"


class SchemaProvisioner:
    """
    Creates and drops branch namespaces.

    provision() runs on the caller's connection so it can take part in the
    caller's transaction; drop() is idempotent and may run on its own
    connection after a failed transaction was rolled back.
    """

    def __init__(self, db: MetadataDB | None = None):
        self._db = db

    @property
    def db(self) -> MetadataDB:
        return self._db or MetadataDB()

    def provision(self, conn: duckdb.DuckDBPyConnection, namespace: str) -> None:
        """
        Create a brand-new namespace with empty system tables.

        Fails if the namespace already exists.
        """
        assert_safe_namespace_name(namespace)
        conn.execute(f"CREATE SCHEMA {quote_ident(namespace)}")
        for table, columns in SYSTEM_TABLES.items():
            conn.execute(f"CREATE TABLE {qualified(namespace, table)} ({columns})")
        logger.info("namespace_provisioned", namespace=namespace, tables=list(SYSTEM_TABLES))

    def drop(
        self, namespace: str, conn: duckdb.DuckDBPyConnection | None = None
    ) -> None:
        """Drop a namespace and everything in it. No-op when it is absent."""
        assert_safe_namespace_name(namespace)
        sql = f"DROP SCHEMA IF EXISTS {quote_ident(namespace)} CASCADE"
        if conn is not None:
            conn.execute(sql)
        else:
            with self.db.connection() as own:
                own.execute(sql)
        logger.info("namespace_dropped", namespace=namespace)

    def exists(
        self, namespace: str, conn: duckdb.DuckDBPyConnection | None = None
    ) -> bool:
        query = "SELECT 1 FROM information_schema.schemata WHERE schema_name = ?"
        if conn is not None:
            return conn.execute(query, [namespace]).fetchone() is not None
        return self.db.execute_one(query, [namespace]) is not None

    def list_namespaces(self, metahub_id: str | None = None) -> list[str]:
        """List existing branch namespaces, optionally of one metahub."""
        prefix = NAMESPACE_PREFIX
        if metahub_id:
            prefix += metahub_id.replace("-", "").lower() + "_b"
        rows = self.db.execute(
            """
            SELECT DISTINCT schema_name FROM information_schema.schemata
            WHERE starts_with(schema_name, ?)
            ORDER BY schema_name
            """,
            [prefix],
        )
        return [row[0] for row in rows]
