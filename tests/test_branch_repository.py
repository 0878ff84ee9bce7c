"""Tests for BranchRepository: listing, search, versioned updates, lineage."""

import pytest

from metahub_service.branch_repository import BranchRepository, escape_like
from metahub_service.namespaces import build_namespace_name
from tests.conftest import localized

METAHUB_ID = "11111111-2222-3333-4444-555555555555"


@pytest.fixture
def repo_conn(metadata_db):
    with metadata_db.connection() as conn:
        yield conn


def _insert(repo, number, codename, name, description=None, source=None):
    return repo.insert(
        metahub_id=METAHUB_ID,
        codename=codename,
        name=localized(name),
        description=localized(description) if description else None,
        branch_number=number,
        namespace_name=build_namespace_name(METAHUB_ID, number),
        source_branch_id=source,
        created_by="user-1",
    )


class TestEscapeLike:
    def test_wildcards_escaped(self):
        assert escape_like("50%_off") == "50\\%\\_off"

    def test_backslash_escaped(self):
        assert escape_like("a\\b") == "a\\\\b"


class TestInsertAndLookup:
    """Tests for insert/get/find."""

    def test_insert_starts_at_version_1(self, repo_conn):
        repo = BranchRepository(repo_conn)
        branch = _insert(repo, 1, "main", "Main")

        assert branch["version"] == 1
        assert branch["codename"] == "main"
        assert branch["name"]["locales"]["en"]["content"] == "Main"
        assert branch["created_by"] == "user-1"
        assert branch["namespace_name"] == build_namespace_name(METAHUB_ID, 1)

    def test_get_scoped_to_metahub(self, repo_conn):
        repo = BranchRepository(repo_conn)
        branch = _insert(repo, 1, "main", "Main")

        assert repo.get(METAHUB_ID, branch["id"]) is not None
        assert repo.get("another-metahub", branch["id"]) is None

    def test_find_by_codename_excluding_self(self, repo_conn):
        repo = BranchRepository(repo_conn)
        branch = _insert(repo, 1, "main", "Main")

        assert repo.find_by_codename(METAHUB_ID, "main")["id"] == branch["id"]
        assert repo.find_by_codename(METAHUB_ID, "main", exclude_id=branch["id"]) is None

    def test_duplicate_codename_rejected(self, repo_conn):
        import duckdb

        repo = BranchRepository(repo_conn)
        _insert(repo, 1, "main", "Main")

        with pytest.raises(duckdb.ConstraintException) as exc_info:
            _insert(repo, 2, "main", "Other")
        assert "codename" in str(exc_info.value)

    def test_duplicate_number_rejected(self, repo_conn):
        import duckdb

        repo = BranchRepository(repo_conn)
        _insert(repo, 1, "main", "Main")

        with pytest.raises(duckdb.ConstraintException):
            _insert(repo, 1, "other", "Other")

    def test_namespace_in_use(self, repo_conn):
        repo = BranchRepository(repo_conn)
        _insert(repo, 1, "main", "Main")

        assert repo.namespace_in_use(build_namespace_name(METAHUB_ID, 1)) is True
        assert repo.namespace_in_use(build_namespace_name(METAHUB_ID, 2)) is False

    def test_max_branch_number_and_count(self, repo_conn):
        repo = BranchRepository(repo_conn)
        assert repo.max_branch_number(METAHUB_ID) == 0

        _insert(repo, 1, "main", "Main")
        _insert(repo, 4, "feature", "Feature")

        assert repo.max_branch_number(METAHUB_ID) == 4
        assert repo.count(METAHUB_ID) == 2
        assert repo.count() == 2


class TestListing:
    """Tests for list/list_all filtering, sorting and pagination."""

    @pytest.fixture
    def repo(self, repo_conn):
        repo = BranchRepository(repo_conn)
        _insert(repo, 1, "main", "Main", "Production data")
        _insert(repo, 2, "feature-x", "Feature X", "Try 100% new layout")
        _insert(repo, 3, "sandbox", "Sandbox")
        return repo

    def test_pagination_with_total(self, repo):
        items, total = repo.list_page(METAHUB_ID, limit=2, offset=0, sort_by="codename", sort_order="asc")
        assert total == 3
        assert [b["codename"] for b in items] == ["feature-x", "main"]

        items, total = repo.list_page(METAHUB_ID, limit=2, offset=2, sort_by="codename", sort_order="asc")
        assert total == 3
        assert [b["codename"] for b in items] == ["sandbox"]

    def test_sort_by_name_desc(self, repo):
        items = repo.list_all(METAHUB_ID, sort_by="name", sort_order="desc")
        assert [b["codename"] for b in items] == ["sandbox", "main", "feature-x"]

    def test_search_is_case_insensitive(self, repo):
        items, total = repo.list_page(METAHUB_ID, search="SANDBOX")
        assert total == 1
        assert items[0]["codename"] == "sandbox"

    def test_search_matches_description(self, repo):
        items, _ = repo.list_page(METAHUB_ID, search="production")
        assert [b["codename"] for b in items] == ["main"]

    def test_search_wildcards_are_literal(self, repo):
        items, _ = repo.list_page(METAHUB_ID, search="100%")
        assert [b["codename"] for b in items] == ["feature-x"]

        items, _ = repo.list_page(METAHUB_ID, search="%")
        assert [b["codename"] for b in items] == ["feature-x"]

    def test_other_metahub_not_listed(self, repo):
        items, total = repo.list_page("another-metahub")
        assert items == []
        assert total == 0


class TestUpdate:
    """Tests for versioned updates."""

    def test_update_bumps_version(self, repo_conn):
        repo = BranchRepository(repo_conn)
        branch = _insert(repo, 1, "main", "Main")

        updated = repo.update(
            METAHUB_ID, branch["id"], {"name": localized("Renamed")}, updated_by="user-2"
        )

        assert updated["version"] == 2
        assert updated["name"]["locales"]["en"]["content"] == "Renamed"
        assert updated["updated_by"] == "user-2"
        assert updated["codename"] == "main"

    def test_update_with_stale_version_returns_none(self, repo_conn):
        repo = BranchRepository(repo_conn)
        branch = _insert(repo, 1, "main", "Main")
        repo.update(METAHUB_ID, branch["id"], {"codename": "trunk"})

        result = repo.update(
            METAHUB_ID, branch["id"], {"codename": "other"}, expected_version=1
        )

        assert result is None
        assert repo.get(METAHUB_ID, branch["id"])["codename"] == "trunk"

    def test_update_clears_description(self, repo_conn):
        repo = BranchRepository(repo_conn)
        branch = _insert(repo, 1, "main", "Main", "Some text")

        updated = repo.update(METAHUB_ID, branch["id"], {"description": None})
        assert updated["description"] is None

    def test_delete(self, repo_conn):
        repo = BranchRepository(repo_conn)
        branch = _insert(repo, 1, "main", "Main")

        assert repo.delete(METAHUB_ID, branch["id"]) is True
        assert repo.delete(METAHUB_ID, branch["id"]) is False


class TestLineage:
    """Tests for source chain walking."""

    def test_root_branch_has_empty_chain(self, repo_conn):
        repo = BranchRepository(repo_conn)
        main = _insert(repo, 1, "main", "Main")

        assert repo.lineage(METAHUB_ID, main["id"]) == {
            "sourceBranchId": None,
            "sourceChain": [],
        }

    def test_chain_ordered_nearest_first(self, repo_conn):
        repo = BranchRepository(repo_conn)
        main = _insert(repo, 1, "main", "Main")
        child = _insert(repo, 2, "child", "Child", source=main["id"])
        grandchild = _insert(repo, 3, "grandchild", "Grandchild", source=child["id"])

        lineage = repo.lineage(METAHUB_ID, grandchild["id"])

        assert lineage["sourceBranchId"] == child["id"]
        assert [e["codename"] for e in lineage["sourceChain"]] == ["child", "main"]

    def test_missing_ancestor_marked(self, repo_conn):
        repo = BranchRepository(repo_conn)
        main = _insert(repo, 1, "main", "Main")
        child = _insert(repo, 2, "child", "Child", source=main["id"])
        repo.delete(METAHUB_ID, main["id"])

        lineage = repo.lineage(METAHUB_ID, child["id"])

        assert lineage["sourceChain"] == [{"id": main["id"], "isMissing": True}]

    def test_cycle_terminates_without_missing_entry(self, repo_conn):
        repo = BranchRepository(repo_conn)
        main = _insert(repo, 1, "main", "Main")
        a = _insert(repo, 2, "a", "A", source=main["id"])
        b = _insert(repo, 3, "b", "B", source=a["id"])
        # Corrupt the graph: main now claims b as its source
        repo_conn.execute(
            "UPDATE branches SET source_branch_id = ? WHERE id = ?", [b["id"], main["id"]]
        )

        lineage = repo.lineage(METAHUB_ID, b["id"])

        assert lineage["sourceBranchId"] == a["id"]
        assert [e["id"] for e in lineage["sourceChain"]] == [a["id"], main["id"], b["id"]]
        assert not any(e.get("isMissing") for e in lineage["sourceChain"])

    def test_self_reference_reports_branch_once(self, repo_conn):
        repo = BranchRepository(repo_conn)
        main = _insert(repo, 1, "main", "Main")
        repo_conn.execute(
            "UPDATE branches SET source_branch_id = id WHERE id = ?", [main["id"]]
        )

        lineage = repo.lineage(METAHUB_ID, main["id"])

        assert [e["codename"] for e in lineage["sourceChain"]] == ["main"]
