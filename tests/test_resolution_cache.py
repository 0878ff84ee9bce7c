"""Tests for the branch resolution cache and branch resolution helpers."""

import pytest

from metahub_service.branch_utils import (
    resolve_active_branch,
    resolve_branch_namespace,
    resolve_default_branch,
)
from metahub_service.errors import BranchNotFoundError, MetahubNotFoundError
from metahub_service.resolution_cache import BranchResolutionCache, NullResolutionCache


class TestBranchResolutionCache:
    """Tests for BranchResolutionCache."""

    def test_user_branch_roundtrip(self):
        cache = BranchResolutionCache()
        assert cache.get_user_branch("m1", "u1") is None

        cache.set_user_branch("m1", "u1", "b1")
        assert cache.get_user_branch("m1", "u1") == "b1"
        assert cache.get_user_branch("m1", "u2") is None

    def test_invalidate_single_user(self):
        cache = BranchResolutionCache()
        cache.set_user_branch("m1", "u1", "b1")
        cache.set_user_branch("m1", "u2", "b2")

        cache.invalidate_user_branch("m1", "u1")

        assert cache.get_user_branch("m1", "u1") is None
        assert cache.get_user_branch("m1", "u2") == "b2"

    def test_invalidate_all_users_of_metahub(self):
        cache = BranchResolutionCache()
        cache.set_user_branch("m1", "u1", "b1")
        cache.set_user_branch("m1", "u2", "b2")
        cache.set_user_branch("m2", "u1", "b3")

        cache.invalidate_user_branch("m1")

        assert cache.get_user_branch("m1", "u1") is None
        assert cache.get_user_branch("m1", "u2") is None
        assert cache.get_user_branch("m2", "u1") == "b3"

    def test_invalidate_metahub_drops_default_too(self):
        cache = BranchResolutionCache()
        cache.set_default_branch("m1", "b1")
        cache.set_user_branch("m1", "u1", "b2")

        cache.invalidate_metahub("m1")

        assert len(cache) == 0

    def test_ttl_expiry(self, monkeypatch):
        import metahub_service.resolution_cache as module

        now = [1000.0]
        monkeypatch.setattr(module.time, "monotonic", lambda: now[0])
        cache = BranchResolutionCache(ttl_seconds=10)
        cache.set_default_branch("m1", "b1")

        now[0] += 5
        assert cache.get_default_branch("m1") == "b1"
        now[0] += 6
        assert cache.get_default_branch("m1") is None

    def test_zero_ttl_never_expires(self, monkeypatch):
        import metahub_service.resolution_cache as module

        now = [0.0]
        monkeypatch.setattr(module.time, "monotonic", lambda: now[0])
        cache = BranchResolutionCache(ttl_seconds=0)
        cache.set_default_branch("m1", "b1")

        now[0] += 10**6
        assert cache.get_default_branch("m1") == "b1"

    def test_clear(self):
        cache = BranchResolutionCache()
        cache.set_default_branch("m1", "b1")
        cache.clear()
        assert len(cache) == 0


class TestNullResolutionCache:
    def test_never_remembers(self):
        cache = NullResolutionCache()
        cache.set_user_branch("m1", "u1", "b1")
        cache.set_default_branch("m1", "b1")

        assert cache.get_user_branch("m1", "u1") is None
        assert cache.get_default_branch("m1") is None
        assert len(cache) == 0


class TestBranchResolution:
    """Tests for active/default resolution against the store."""

    def test_default_branch_resolved_and_cached(self, metadata_db, metahub, resolution_cache):
        resolution_cache.clear()

        default_id = resolve_default_branch(metahub["id"], resolution_cache, metadata_db)

        assert default_id == metahub["main"]["id"]
        assert resolution_cache.get_default_branch(metahub["id"]) == default_id

    def test_default_branch_unknown_metahub(self, metadata_db, resolution_cache):
        with pytest.raises(MetahubNotFoundError):
            resolve_default_branch("missing", resolution_cache, metadata_db)

    def test_user_without_choice_gets_default(self, metadata_db, metahub, resolution_cache):
        branch_id, source = resolve_active_branch(
            metahub["id"], metahub["owner"]["id"], resolution_cache, metadata_db
        )
        assert branch_id == metahub["main"]["id"]
        assert source == "default"

    def test_user_with_active_branch(self, metadata_db, metahub, branch_service, resolution_cache):
        from tests.conftest import localized

        feature = branch_service.create_branch(
            metahub["id"], "feature", localized("Feature"), created_by=metahub["owner"]["id"]
        )
        metadata_db.set_active_branch(metahub["id"], metahub["owner"]["id"], feature["id"])

        branch_id, source = resolve_active_branch(
            metahub["id"], metahub["owner"]["id"], NullResolutionCache(), metadata_db
        )
        assert branch_id == feature["id"]
        assert source == "active"

    def test_dangling_pointer_falls_back_to_default(self, metadata_db, metahub, resolution_cache):
        metadata_db.set_active_branch(metahub["id"], metahub["owner"]["id"], "vanished-branch")
        resolution_cache.set_user_branch(metahub["id"], metahub["owner"]["id"], "vanished-branch")

        branch_id, source = resolve_active_branch(
            metahub["id"], metahub["owner"]["id"], resolution_cache, metadata_db
        )

        assert branch_id == metahub["main"]["id"]
        assert source == "default"

    def test_namespace_for_explicit_branch(self, metadata_db, metahub, resolution_cache):
        namespace = resolve_branch_namespace(
            metahub["id"], None, resolution_cache, branch_ref=metahub["main"]["id"], db=metadata_db
        )
        assert namespace == metahub["main"]["namespace_name"]

    def test_namespace_for_unknown_branch(self, metadata_db, metahub, resolution_cache):
        with pytest.raises(BranchNotFoundError):
            resolve_branch_namespace(
                metahub["id"], None, resolution_cache, branch_ref="nope", db=metadata_db
            )
