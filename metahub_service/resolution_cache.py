"""Process-wide cache of active/default branch lookups.

Per-branch request handlers resolve "which branch is this user on" on every
request. The store stays authoritative; this cache only saves round-trips and
is always re-derivable from it.
"""

import threading
import time
from typing import Any

import structlog

from metahub_service.metrics import RESOLUTION_CACHE_LOOKUPS

logger = structlog.get_logger()

_MISSING = object()


class BranchResolutionCache:
    """
    Thread-safe map of (metahub, user) -> active branch and
    metahub -> default branch, with an optional TTL.

    ``ttl_seconds`` of 0 (or None) keeps entries until invalidated.
    """

    def __init__(self, ttl_seconds: float | None = None):
        self.ttl_seconds = ttl_seconds or None
        self._user_branches: dict[tuple[str, str], tuple[str, float]] = {}
        self._default_branches: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _expired(self, stored_at: float) -> bool:
        return self.ttl_seconds is not None and time.monotonic() - stored_at > self.ttl_seconds

    def _get(self, store: dict, key: Any, kind: str) -> Any:
        with self._lock:
            entry = store.get(key, _MISSING)
            if entry is not _MISSING and self._expired(entry[1]):
                del store[key]
                entry = _MISSING
        RESOLUTION_CACHE_LOOKUPS.labels(
            kind=kind, result="miss" if entry is _MISSING else "hit"
        ).inc()
        return None if entry is _MISSING else entry[0]

    # ========================================
    # Per-user active branch
    # ========================================

    def get_user_branch(self, metahub_id: str, user_id: str) -> str | None:
        return self._get(self._user_branches, (metahub_id, user_id), "user")

    def set_user_branch(self, metahub_id: str, user_id: str, branch_id: str) -> None:
        with self._lock:
            self._user_branches[(metahub_id, user_id)] = (branch_id, time.monotonic())

    def invalidate_user_branch(self, metahub_id: str, user_id: str | None = None) -> None:
        """Forget one user's entry, or every user's entry of the metahub."""
        with self._lock:
            if user_id is not None:
                self._user_branches.pop((metahub_id, user_id), None)
                return
            for key in [k for k in self._user_branches if k[0] == metahub_id]:
                del self._user_branches[key]

    # ========================================
    # Metahub default branch
    # ========================================

    def get_default_branch(self, metahub_id: str) -> str | None:
        return self._get(self._default_branches, metahub_id, "default")

    def set_default_branch(self, metahub_id: str, branch_id: str) -> None:
        with self._lock:
            self._default_branches[metahub_id] = (branch_id, time.monotonic())

    def invalidate_default_branch(self, metahub_id: str) -> None:
        with self._lock:
            self._default_branches.pop(metahub_id, None)

    # ========================================
    # Bulk
    # ========================================

    def invalidate_metahub(self, metahub_id: str) -> None:
        """Drop everything cached for a metahub."""
        self.invalidate_user_branch(metahub_id)
        self.invalidate_default_branch(metahub_id)
        logger.debug("resolution_cache_invalidated", metahub_id=metahub_id)

    def clear(self) -> None:
        with self._lock:
            self._user_branches.clear()
            self._default_branches.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._user_branches) + len(self._default_branches)


class NullResolutionCache:
    """Cache that never remembers anything; every lookup hits the store."""

    def get_user_branch(self, metahub_id: str, user_id: str) -> str | None:
        return None

    def set_user_branch(self, metahub_id: str, user_id: str, branch_id: str) -> None:
        pass

    def invalidate_user_branch(self, metahub_id: str, user_id: str | None = None) -> None:
        pass

    def get_default_branch(self, metahub_id: str) -> str | None:
        return None

    def set_default_branch(self, metahub_id: str, branch_id: str) -> None:
        pass

    def invalidate_default_branch(self, metahub_id: str) -> None:
        pass

    def invalidate_metahub(self, metahub_id: str) -> None:
        pass

    def clear(self) -> None:
        pass

    def __len__(self) -> int:
        return 0
