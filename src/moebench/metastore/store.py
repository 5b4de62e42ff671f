# src/moebench/metastore/store.py
from __future__ import annotations

import logging
import pickle
from contextlib import contextmanager
from dataclasses import dataclass
from random import random
from time import sleep
from typing import Any, Callable, Iterator, Optional, Protocol, cast

from kazoo.client import KazooClient
from kazoo.exceptions import (
    BadVersionError,
    KazooException,
    NoNodeError,
    NodeExistsError,
    RolledBackError,
)
from kazoo.handlers.threading import KazooTimeoutError

from moebench.exceptions import ConcurrentModification, MoebenchError, StorageError

logger = logging.getLogger(__name__)


class MetastoreError(MoebenchError):
    """Base exception for Metastore-related errors."""
    pass


class MetastoreStoppedError(MetastoreError, StorageError):
    """Raised when operations are attempted on a stopped Metastore."""
    pass


class MetastoreConflictError(MetastoreError, ConcurrentModification):
    """Raised when an atomic update fails due to repeated concurrent modifications."""
    pass


@dataclass(frozen=True, slots=True)
class VersionToken:
    """
    Concurrency token for a key. In ZooKeeper this maps to `stat.version`.
    """
    value: int


@dataclass(frozen=True, slots=True)
class Precondition:
    """
    Guard for a write to another key.

    `check` receives the current value at `path` (None if absent) and raises to
    abort the write. The write only commits if `path` still has the version
    that was checked.
    """
    path: str
    check: Callable[[Any], None]


class _ConnectionProto(Protocol):
    @property
    def client(self) -> KazooClient: ...

    @property
    def stopped(self) -> bool: ...


# Signals the callers act on; everything else from kazoo is a transport failure.
_PASSTHROUGH = (NoNodeError, NodeExistsError, BadVersionError)

# Per-operation transaction results that mean "lost a race": retry.
_TX_CONFLICTS = (NoNodeError, NodeExistsError, BadVersionError, RolledBackError)


@contextmanager
def _storage_errors(op: str, path: str) -> Iterator[None]:
    try:
        yield
    except _PASSTHROUGH:
        raise
    except (KazooException, KazooTimeoutError) as exc:
        raise StorageError(f"{op}({path}) failed: {exc!r}") from exc


class Metastore:
    """
    Document store on top of ZooKeeper.

    - One znode per document; every write is atomic per znode.
    - Conditional writes use the znode version (compare-and-set).
    - No referential integrity: callers compose it from single-document
      operations, optionally guarded by a version check on a second key.
    - Optionally namespaces paths under '/<group>' inside ZooKeeper's chroot.
    - Supports pluggable serialization (default = pickle).
    """

    def __init__(
            self,
            connection: _ConnectionProto,
            group: Optional[str] = None,
            packb: Callable[[Any], bytes] = pickle.dumps,
            unpackb: Callable[[bytes], Any] = pickle.loads,
            base_structure: Optional[list[str]] = None,
            *,
            max_retries: int = 20,
            backoff_base_s: float = 0.005,
            backoff_max_s: float = 0.200,
    ) -> None:
        self._connection = connection
        self._group = group

        self._packb = packb
        self._unpackb = unpackb

        self._max_retries = max_retries
        self._backoff_base_s = backoff_base_s
        self._backoff_max_s = backoff_max_s

        self.ensure_structure(base_structure or [])

    @property
    def group(self) -> Optional[str]:
        return self._group

    # ----------------------------------------------------------------------
    # Internal helpers
    # ----------------------------------------------------------------------

    def _ensure_running(self) -> None:
        if self.stopped:
            raise MetastoreStoppedError("Metastore connection manager has been stopped.")

    def ensure_structure(self, base_structure: list[str]) -> None:
        """
        Ensure `base_structure` paths exist under the chroot + optional /<group>.
        """
        if not base_structure:
            return

        self._ensure_running()
        for path in base_structure:
            full = self._full_path(path)
            with _storage_errors("ensure_path", full):
                self.client.ensure_path(full)

    @property
    def client(self) -> KazooClient:
        self._ensure_running()
        return self._connection.client

    @property
    def stopped(self) -> bool:
        return self._connection.stopped

    def _full_path(self, path: str) -> str:
        """
        Build the ZooKeeper path inside the chroot configured on the client.
        Only adds '/<group>' if group is configured.
        """
        rel = (path or "").lstrip("/")

        if self._group:
            return f"/{self._group}/{rel}" if rel else f"/{self._group}"
        else:
            return f"/{rel}" if rel else "/"

    # ----------------------------------------------------------------------
    # Key-value operations
    # ----------------------------------------------------------------------

    def get_key_with_version(self, path: str) -> tuple[Any, Optional[VersionToken]]:
        """
        Read a key and return (value, version-token). If the node does not exist,
        returns (None, None).
        """
        self._ensure_running()
        full_path = self._full_path(path)

        try:
            with _storage_errors("get", full_path):
                data, stat = self.client.get(full_path)
        except NoNodeError:
            return None, None

        if not data:
            return None, VersionToken(int(stat.version))

        return self._unpackb(data), VersionToken(int(stat.version))

    def get_key(self, path: str) -> Any:
        value, _ver = self.get_key_with_version(path)
        return value

    def update_key(
            self,
            path: str,
            value: Any,
            *,
            expected: Optional[VersionToken] = None,
    ) -> None:
        """
        Write a key. If expected is provided, perform a CAS write (set with version).
        If the node doesn't exist and expected is provided, this raises NoNodeError.
        """
        self._ensure_running()
        full_path = self._full_path(path)
        data = self._packb(value)

        with _storage_errors("set", full_path):
            if expected is not None:
                self.client.set(full_path, data, version=int(expected.value))
                return

            try:
                self.client.set(full_path, data)
            except NoNodeError:
                self.client.create(full_path, data, makepath=True)

    def create_key(self, path: str, value: Any) -> bool:
        """
        Create-only write: returns False (and writes nothing) if the key exists.
        """
        self._ensure_running()
        full_path = self._full_path(path)
        data = self._packb(value)

        try:
            with _storage_errors("create", full_path):
                self.client.create(full_path, data, makepath=True)
        except NodeExistsError:
            return False
        return True

    def compare_and_set_key(self, path: str, value: Any, *, expected: VersionToken) -> bool:
        """
        CAS write: returns True if written, False if version mismatch (or missing node).
        """
        self._ensure_running()
        full_path = self._full_path(path)
        data = self._packb(value)

        try:
            with _storage_errors("set", full_path):
                self.client.set(full_path, data, version=int(expected.value))
            return True
        except BadVersionError:
            return False
        except NoNodeError:
            return False

    def atomic_update_key(
            self,
            path: str,
            updater: Callable[[Any], Any],
            *,
            max_retries: Optional[int] = None,
            create_if_missing: bool = False,
            precondition: Optional[Precondition] = None,
    ) -> Any:
        """
        Atomically update a single key using optimistic concurrency control.

        - Reads (value, version)
        - Computes new_value = updater(value)
        - Writes using CAS (set(..., version=...))
        - Retries on concurrent modification

        If the updater returns the object it was given (identity), nothing is
        written and the current value is returned. Exceptions raised by the
        updater abort the update and propagate unchanged.

        If create_if_missing is True and the node doesn't exist, the updater is
        called with None and the result is created atomically.

        With a precondition, its key is read and checked on every attempt and
        the write is committed in one transaction with a version check on that
        key, so a concurrent change to it forces a retry (and a fresh check).
        """
        self._ensure_running()
        full_path = self._full_path(path)
        retries = self._max_retries if max_retries is None else max_retries

        for attempt in range(retries):
            guard: Optional[tuple[str, VersionToken]] = None
            if precondition is not None:
                guard = self._check_precondition(precondition)

            current, ver = self.get_key_with_version(path)

            if ver is None:
                if not create_if_missing:
                    raise NoNodeError(full_path)

                new_value = updater(None)
                if guard is None:
                    if self.create_key(path, new_value):
                        return new_value
                elif self._guarded_write(path, new_value, None, guard):
                    return new_value
                # Lost the create race; retry read+CAS
            else:
                new_value = updater(current)
                if new_value is current:
                    return current
                if guard is None:
                    if self.compare_and_set_key(path, new_value, expected=ver):
                        return new_value
                elif self._guarded_write(path, new_value, ver, guard):
                    return new_value

            logger.debug("CAS conflict on %s (attempt %d/%d)", full_path, attempt + 1, retries)

            # Backoff with jitter
            delay = min(self._backoff_max_s, self._backoff_base_s * (2 ** attempt))
            delay = delay * (0.5 + random())  # jitter in [0.5, 1.5)
            sleep(delay)

        raise MetastoreConflictError(
            f"atomic_update_key({full_path}) failed after {retries} retries due to concurrent updates"
        )

    def _check_precondition(self, precondition: Precondition) -> tuple[str, VersionToken]:
        value, ver = self.get_key_with_version(precondition.path)
        precondition.check(value)
        if ver is None:
            raise NoNodeError(self._full_path(precondition.path))
        return precondition.path, ver

    def _guarded_write(
            self,
            path: str,
            value: Any,
            expected: Optional[VersionToken],
            guard: tuple[str, VersionToken],
    ) -> bool:
        """
        Write `value` (create if `expected` is None, else CAS) in one transaction
        with a version check on the guard key. Returns False if either version
        no longer matches.
        """
        guard_path, guard_version = guard
        full_path = self._full_path(path)
        data = self._packb(value)

        with _storage_errors("transaction", full_path):
            if expected is None:
                # transaction creates cannot make parents
                parent = full_path.rsplit("/", 1)[0]
                if parent:
                    self.client.ensure_path(parent)

            tx = self.client.transaction()
            tx.check(self._full_path(guard_path), int(guard_version.value))
            if expected is None:
                tx.create(full_path, data)
            else:
                tx.set_data(full_path, data, version=int(expected.value))
            results = tx.commit()

        failures = [r for r in results if isinstance(r, Exception)]
        if not failures:
            return True
        if all(isinstance(r, _TX_CONFLICTS) for r in failures):
            return False
        raise StorageError(f"transaction({full_path}) failed: {failures[0]!r}")

    def drop_key(self, path: str) -> bool:
        """
        Delete a key and everything below it. Returns False if nothing was there.
        """
        self._ensure_running()
        full_path = self._full_path(path)
        try:
            with _storage_errors("delete", full_path):
                if not self.client.exists(full_path):
                    return False
                self.client.delete(full_path, recursive=True)
        except NoNodeError:
            # removed concurrently between exists() and delete()
            return False
        return True

    def __contains__(self, item: str) -> bool:
        self._ensure_running()
        full_path = self._full_path(item)
        with _storage_errors("exists", full_path):
            return bool(self.client.exists(full_path))

    def list_members(self, path: str) -> list[str]:
        """
        Child names under `path`; empty if `path` does not exist.
        """
        self._ensure_running()
        full_path = self._full_path(path)
        try:
            with _storage_errors("get_children", full_path):
                return cast(list[str], self.client.get_children(full_path))
        except NoNodeError:
            return []
