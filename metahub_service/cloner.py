"""Copy system-table rows from one branch namespace into another."""

import duckdb
import structlog

from metahub_service.database import utcnow
from metahub_service.namespaces import (
    AUDIT_COLUMNS,
    SYSTEM_TABLES,
    assert_safe_namespace_name,
    qualified,
    quote_ident,
)

logger = structlog.get_logger()


class DataCloner:
    """
    Clones the system tables of a source namespace into a fresh target.

    Primary keys and business columns are copied as-is, so record identity
    survives the clone. The audit columns are reset: both timestamps become
    one shared "now", both actor columns the acting user, and the row
    version restarts at 1.

    The copy runs on the caller's connection; the caller owns the
    transaction, so a failing table aborts the whole clone.
    """

    def clone(
        self,
        conn: duckdb.DuckDBPyConnection,
        source_namespace: str,
        target_namespace: str,
        actor_id: str | None,
    ) -> dict[str, int]:
        assert_safe_namespace_name(source_namespace)
        assert_safe_namespace_name(target_namespace)

        now = utcnow()
        counts: dict[str, int] = {}

        for table in SYSTEM_TABLES:
            columns = self._business_columns(conn, target_namespace, table)
            column_list = ", ".join(quote_ident(c) for c in columns)
            audit_list = ", ".join(quote_ident(c) for c in AUDIT_COLUMNS)

            conn.execute(
                f"""
                INSERT INTO {qualified(target_namespace, table)} ({column_list}, {audit_list})
                SELECT {column_list}, ?, ?, ?, ?, 1
                FROM {qualified(source_namespace, table)}
                """,
                [now, actor_id, now, actor_id],
            )
            row = conn.execute(
                f"SELECT COUNT(*) FROM {qualified(target_namespace, table)}"
            ).fetchone()
            counts[table] = row[0] if row else 0

        logger.info(
            "namespace_cloned",
            source=source_namespace,
            target=target_namespace,
            actor_id=actor_id,
            **counts,
        )
        return counts

    def _business_columns(
        self, conn: duckdb.DuckDBPyConnection, namespace: str, table: str
    ) -> list[str]:
        rows = conn.execute(
            """
            SELECT column_name FROM information_schema.columns
            WHERE table_schema = ? AND table_name = ?
            ORDER BY ordinal_position
            """,
            [namespace, table],
        ).fetchall()
        return [row[0] for row in rows if row[0] not in AUDIT_COLUMNS]
