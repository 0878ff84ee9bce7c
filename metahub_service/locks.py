"""Advisory locks for serializing branch lifecycle operations.

Two layers, both non-blocking:
- an in-process ``threading.Lock`` per key (cheap, covers worker threads)
- a row in the shared store's ``advisory_locks`` table (covers other
  processes attached to the same store)

A key is a deterministic 32-bit integer derived from a scope string such as
``"<metahubId>:branch-create"``.
"""

import os
import socket
import threading
from contextlib import contextmanager
from datetime import timedelta
from typing import Callable, Generator

import duckdb
import structlog

from metahub_service.config import settings
from metahub_service.database import MetadataDB, utcnow

logger = structlog.get_logger()


def lock_key(value: str) -> int:
    """
    Derive a lock key from a scope string.

    Dashes are stripped first so UUIDs hash the same with or without
    separators. The hash is the classic ``h * 31 + c`` string hash wrapped to
    a signed 32-bit integer, returned as its absolute value.
    """
    h = 0
    for ch in value.replace("-", ""):
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def _default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{threading.get_ident()}"


class AdvisoryLockManager:
    """
    Non-blocking mutual exclusion keyed by integer lock keys.

    ``try_acquire`` never waits: it either takes the lock and returns True,
    or returns False immediately when someone else holds it.
    """

    def __init__(self, db: MetadataDB | None = None):
        self._db = db
        # Only keys currently held in this process have an entry
        self._locks: dict[int, threading.Lock] = {}
        self._manager_lock = threading.Lock()  # Protects _locks dict

    @property
    def db(self) -> MetadataDB:
        return self._db or MetadataDB()

    def _take_local(self, key: int) -> bool:
        with self._manager_lock:
            local = self._locks.setdefault(key, threading.Lock())
            return local.acquire(blocking=False)

    def _drop_local(self, key: int) -> None:
        with self._manager_lock:
            local = self._locks.pop(key, None)
            if local is not None and local.locked():
                local.release()

    def try_acquire(self, key: int, owner: str | None = None) -> bool:
        """Take the lock if free; return False at once if it is held."""
        if not self._take_local(key):
            logger.debug("advisory_lock_busy", lock_key=key, layer="process")
            return False

        owner = owner or _default_owner()
        stale_before = utcnow() - timedelta(seconds=settings.lock_stale_after_seconds)
        try:
            with self.db.connection() as conn:
                reclaimed = conn.execute(
                    "DELETE FROM advisory_locks WHERE lock_key = ? AND acquired_at < ? RETURNING owner",
                    [key, stale_before],
                ).fetchall()
                if reclaimed:
                    logger.warning(
                        "advisory_lock_reclaimed",
                        lock_key=key,
                        previous_owner=reclaimed[0][0],
                    )
                conn.execute(
                    "INSERT INTO advisory_locks (lock_key, owner, acquired_at) VALUES (?, ?, ?)",
                    [key, owner, utcnow()],
                )
        except (duckdb.ConstraintException, duckdb.TransactionException):
            self._drop_local(key)
            logger.debug("advisory_lock_busy", lock_key=key, layer="store")
            return False
        except Exception:
            self._drop_local(key)
            raise

        logger.debug("advisory_lock_acquired", lock_key=key, owner=owner)
        return True

    def release(self, key: int) -> None:
        """Release a held lock. Failures are logged, never raised."""
        try:
            with self.db.connection() as conn:
                conn.execute("DELETE FROM advisory_locks WHERE lock_key = ?", [key])
        except duckdb.Error as e:
            logger.error("advisory_lock_release_failed", lock_key=key, error=str(e))
        finally:
            self._drop_local(key)
        logger.debug("advisory_lock_released", lock_key=key)

    def is_locked(self, key: int) -> bool:
        """Whether the key is currently held by anyone."""
        with self._manager_lock:
            if key in self._locks:
                return True
        row = self.db.execute_one(
            "SELECT 1 FROM advisory_locks WHERE lock_key = ?", [key]
        )
        return row is not None

    @contextmanager
    def hold(
        self,
        key: int,
        error_factory: Callable[[], Exception],
        owner: str | None = None,
    ) -> Generator[None, None, None]:
        """
        Hold the lock for the duration of the block.

        Usage:
            with advisory_locks.hold(key, lambda: BranchCreationInProgressError()):
                ...  # exclusive section
        """
        if not self.try_acquire(key, owner):
            raise error_factory()
        try:
            yield
        finally:
            self.release(key)


advisory_locks = AdvisoryLockManager()
