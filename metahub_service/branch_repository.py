"""Branch metadata rows in the shared store.

A repository instance is bound to one connection, so the same code serves
autocommit reads and the branch service's transactions.
"""

import uuid
from typing import Any

import duckdb

from metahub_service.database import dump_json, load_json, to_iso, utcnow
from metahub_service.localized import primary_content

BRANCH_COLUMNS = (
    "id, metahub_id, codename, name, description, branch_number, namespace_name, "
    "source_branch_id, version, created_at, created_by, updated_at, updated_by"
)

SORT_COLUMNS = {
    "name": "COALESCE(name_sort, '')",
    "codename": "codename",
    "created": "created_at",
    "updated": "updated_at",
}

UPDATABLE_FIELDS = ("codename", "name", "description")


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so user search text matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def row_to_branch_dict(row: tuple | None) -> dict[str, Any] | None:
    """Convert database row to branch dictionary."""
    if row is None:
        return None
    return {
        "id": row[0],
        "metahub_id": row[1],
        "codename": row[2],
        "name": load_json(row[3]),
        "description": load_json(row[4]),
        "branch_number": row[5],
        "namespace_name": row[6],
        "source_branch_id": row[7],
        "version": row[8] or 1,
        "created_at": to_iso(row[9]),
        "created_by": row[10],
        "updated_at": to_iso(row[11]),
        "updated_by": row[12],
    }


class BranchRepository:
    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def _fetch_one(self, query: str, params: list) -> dict[str, Any] | None:
        return row_to_branch_dict(self.conn.execute(query, params).fetchone())

    # ========================================
    # Lookups
    # ========================================

    def get(self, metahub_id: str, branch_id: str) -> dict[str, Any] | None:
        """Branch by id, scoped to its metahub."""
        return self._fetch_one(
            f"SELECT {BRANCH_COLUMNS} FROM branches WHERE metahub_id = ? AND id = ?",
            [metahub_id, branch_id],
        )

    def find_by_codename(
        self, metahub_id: str, codename: str, exclude_id: str | None = None
    ) -> dict[str, Any] | None:
        query = f"SELECT {BRANCH_COLUMNS} FROM branches WHERE metahub_id = ? AND codename = ?"
        params: list[Any] = [metahub_id, codename]
        if exclude_id:
            query += " AND id <> ?"
            params.append(exclude_id)
        return self._fetch_one(query, params)

    def namespace_in_use(self, namespace: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM branches WHERE namespace_name = ?", [namespace]
        ).fetchone()
        return row is not None

    # ========================================
    # Listing
    # ========================================

    def _filters(self, metahub_id: str, search: str | None) -> tuple[str, list[Any]]:
        where = "WHERE metahub_id = ?"
        params: list[Any] = [metahub_id]
        if search:
            pattern = f"%{escape_like(search.lower())}%"
            where += """
                AND (
                    COALESCE(name, '') ILIKE ? ESCAPE '\\'
                    OR COALESCE(description, '') ILIKE ? ESCAPE '\\'
                    OR COALESCE(codename, '') ILIKE ? ESCAPE '\\'
                )
            """
            params.extend([pattern, pattern, pattern])
        return where, params

    def _order_by(self, sort_by: str, sort_order: str) -> str:
        column = SORT_COLUMNS.get(sort_by, SORT_COLUMNS["updated"])
        direction = "ASC" if (sort_order or "").lower() == "asc" else "DESC"
        # id keeps pages stable when sort keys tie
        return f"ORDER BY {column} {direction}, id {direction}"

    def list_page(
        self,
        metahub_id: str,
        limit: int = 100,
        offset: int = 0,
        sort_by: str = "updated",
        sort_order: str = "desc",
        search: str | None = None,
    ) -> tuple[list[dict[str, Any]], int]:
        """One page of branches plus the total matching the filter."""
        where, params = self._filters(metahub_id, search)
        total_row = self.conn.execute(
            f"SELECT COUNT(*) FROM branches {where}", params
        ).fetchone()
        rows = self.conn.execute(
            f"SELECT {BRANCH_COLUMNS} FROM branches {where} "
            f"{self._order_by(sort_by, sort_order)} LIMIT ? OFFSET ?",
            params + [limit, offset],
        ).fetchall()
        return [row_to_branch_dict(r) for r in rows], (total_row[0] if total_row else 0)

    def list_all(
        self,
        metahub_id: str,
        sort_by: str = "updated",
        sort_order: str = "desc",
        search: str | None = None,
    ) -> list[dict[str, Any]]:
        where, params = self._filters(metahub_id, search)
        rows = self.conn.execute(
            f"SELECT {BRANCH_COLUMNS} FROM branches {where} {self._order_by(sort_by, sort_order)}",
            params,
        ).fetchall()
        return [row_to_branch_dict(r) for r in rows]

    def max_branch_number(self, metahub_id: str) -> int:
        row = self.conn.execute(
            "SELECT COALESCE(MAX(branch_number), 0) FROM branches WHERE metahub_id = ?",
            [metahub_id],
        ).fetchone()
        return row[0] if row else 0

    def count(self, metahub_id: str | None = None) -> int:
        if metahub_id:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM branches WHERE metahub_id = ?", [metahub_id]
            ).fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(*) FROM branches").fetchone()
        return row[0] if row else 0

    # ========================================
    # Mutations
    # ========================================

    def insert(
        self,
        metahub_id: str,
        codename: str,
        name: dict,
        branch_number: int,
        namespace_name: str,
        description: dict | None = None,
        source_branch_id: str | None = None,
        created_by: str | None = None,
        branch_id: str | None = None,
    ) -> dict[str, Any]:
        """Insert a branch row at version 1."""
        branch_id = branch_id or str(uuid.uuid4())
        now = utcnow()
        self.conn.execute(
            """
            INSERT INTO branches (id, metahub_id, codename, name, name_sort, description,
                                  branch_number, namespace_name, source_branch_id, version,
                                  created_at, created_by, updated_at, updated_by)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?)
            """,
            [
                branch_id,
                metahub_id,
                codename,
                dump_json(name),
                primary_content(name),
                dump_json(description),
                branch_number,
                namespace_name,
                source_branch_id,
                now,
                created_by,
                now,
                created_by,
            ],
        )
        return self.get(metahub_id, branch_id)

    def update(
        self,
        metahub_id: str,
        branch_id: str,
        fields: dict[str, Any],
        updated_by: str | None = None,
        expected_version: int | None = None,
    ) -> dict[str, Any] | None:
        """
        Save changed fields, bump ``version`` and refresh ``updated_at``.

        With ``expected_version`` the write only happens while the row is
        still at that version; None is returned when it was not.
        """
        assignments = []
        params: list[Any] = []
        for field in UPDATABLE_FIELDS:
            if field not in fields:
                continue
            value = fields[field]
            if field in ("name", "description"):
                assignments.append(f"{field} = ?")
                params.append(dump_json(value))
                if field == "name":
                    assignments.append("name_sort = ?")
                    params.append(primary_content(value))
            else:
                assignments.append(f"{field} = ?")
                params.append(value)

        assignments.extend(["version = version + 1", "updated_at = ?", "updated_by = ?"])
        params.extend([utcnow(), updated_by])

        query = f"UPDATE branches SET {', '.join(assignments)} WHERE metahub_id = ? AND id = ?"
        params.extend([metahub_id, branch_id])
        if expected_version is not None:
            query += " AND version = ?"
            params.append(expected_version)

        updated = self.conn.execute(query + " RETURNING id", params).fetchall()
        if not updated:
            return None
        return self.get(metahub_id, branch_id)

    def delete(self, metahub_id: str, branch_id: str) -> bool:
        rows = self.conn.execute(
            "DELETE FROM branches WHERE metahub_id = ? AND id = ? RETURNING id",
            [metahub_id, branch_id],
        ).fetchall()
        return bool(rows)

    # ========================================
    # Lineage
    # ========================================

    def lineage(self, metahub_id: str, branch_id: str) -> dict[str, Any]:
        """
        Walk ``source_branch_id`` back from a branch.

        A missing ancestor is reported with ``isMissing`` and ends the chain;
        a repeated id ends it silently. A cycle back to the starting branch
        lists that branch once before stopping.
        """
        branch = self.get(metahub_id, branch_id)
        source_id = branch["source_branch_id"] if branch else None

        chain: list[dict[str, Any]] = []
        visited: set[str] = set()
        current_id = source_id
        while current_id and current_id not in visited:
            visited.add(current_id)
            ancestor = self.get(metahub_id, current_id)
            if ancestor is None:
                chain.append({"id": current_id, "isMissing": True})
                break
            chain.append({
                "id": ancestor["id"],
                "codename": ancestor["codename"],
                "name": ancestor["name"],
            })
            current_id = ancestor["source_branch_id"]

        return {"sourceBranchId": source_id, "sourceChain": chain}
