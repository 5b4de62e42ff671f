"""
In-memory fakes for the kazoo client / connection manager, and fixtures that
wire the moebench stores on top of them.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

import pytest
from kazoo.exceptions import BadVersionError, NoNodeError, NodeExistsError, RolledBackError

from moebench.coordinator import ConsistencyCoordinator
from moebench.experiments import ExperimentStore
from moebench.ids import IdentifierAllocator
from moebench.metastore import Metastore
from moebench.query import QueryFacade
from moebench.results import ResultStore


@dataclass(slots=True)
class FakeStat:
    """
    Minimal ZnodeStat stand-in; we only need `version`.
    """

    version: int


class FakeKazooClient:
    """
    In-memory fake ZooKeeper client.

    Stores:
      - node payload bytes
      - per-node `version` that increments on every successful `set()`

    Every call holds one lock, so version checks are atomic like on a real
    ensemble even when tests hammer it from several threads.
    """

    def __init__(self) -> None:
        self.data: Dict[str, bytes] = {}
        self.versions: Dict[str, int] = {}
        self.ensure_calls: List[str] = []
        self.set_calls = 0
        self._lock = threading.RLock()

    def ensure_path(self, path: str) -> None:
        self.ensure_calls.append(path)

    def exists(self, path: str) -> FakeStat | None:
        """
        Returns a stat if there is a node at `path`, or children under `path/…`
        (container node semantics); None otherwise.
        """
        with self._lock:
            prefix = path.rstrip("/") or "/"
            if prefix in self.data:
                return FakeStat(self.versions.get(prefix, 0))
            child_prefix = prefix + "/"
            if any(p.startswith(child_prefix) for p in self.data):
                return FakeStat(0)
            return None

    def get(self, path: str) -> Tuple[bytes, FakeStat]:
        with self._lock:
            if path not in self.data:
                raise NoNodeError()
            return self.data[path], FakeStat(self.versions.get(path, 0))

    def set(self, path: str, value: bytes, version: int = -1) -> None:
        """
        version == -1 means unconditional set; otherwise it must match the
        current stat.version. On success the node version increments.
        """
        with self._lock:
            if path not in self.data:
                raise NoNodeError()
            current = self.versions.get(path, 0)
            if version != -1 and version != current:
                raise BadVersionError()
            self.data[path] = value
            self.versions[path] = current + 1
            self.set_calls += 1

    # noinspection PyUnusedLocal
    def create(self, path: str, value: bytes, makepath: bool = False, ephemeral: bool = False, **_kw: Any) -> None:
        with self._lock:
            if path in self.data:
                raise NodeExistsError()
            self.data[path] = value
            self.versions[path] = 0

    # noinspection PyUnusedLocal
    def delete(self, path: str, recursive: bool = False) -> None:
        with self._lock:
            prefix = path.rstrip("/") or "/"
            to_delete = [p for p in self.data if p == prefix or p.startswith(prefix + "/")]
            if not to_delete:
                raise NoNodeError()
            for p in to_delete:
                self.data.pop(p, None)
                self.versions.pop(p, None)

    def get_children(self, path: str) -> list[str]:
        with self._lock:
            if self.exists(path) is None:
                raise NoNodeError()
            prefix = path.rstrip("/") or "/"
            children = set()
            for p in self.data:
                if not p.startswith(prefix + "/"):
                    continue
                head = p[len(prefix):].strip("/").split("/", 1)[0]
                if head:
                    children.add(head)
            return sorted(children)

    def paths_under(self, prefix: str) -> list[str]:
        with self._lock:
            return sorted(p for p in self.data if p.startswith(prefix))

    def transaction(self) -> "FakeTransaction":
        return FakeTransaction(self)


class FakeTransaction:
    """
    kazoo TransactionRequest stand-in: all-or-nothing commit. Like kazoo,
    `commit()` returns one entry per op; on failure the failing op holds its
    exception and every other op a RolledBackError.
    """

    def __init__(self, client: FakeKazooClient) -> None:
        self._client = client
        self._ops: List[Tuple[str, str, Any, int]] = []

    def check(self, path: str, version: int) -> None:
        self._ops.append(("check", path, None, version))

    def create(self, path: str, value: bytes = b"", **_kw: Any) -> None:
        self._ops.append(("create", path, value, -1))

    def set_data(self, path: str, value: bytes, version: int = -1) -> None:
        self._ops.append(("set", path, value, version))

    def _failure(self, op: str, path: str, version: int) -> Exception | None:
        data, versions = self._client.data, self._client.versions
        if op == "create":
            return NodeExistsError() if path in data else None
        if path not in data:
            return NoNodeError()
        if version != -1 and versions.get(path, 0) != version:
            return BadVersionError()
        return None

    def commit(self) -> list[Any]:
        client = self._client
        with client._lock:
            for i, (op, path, _value, version) in enumerate(self._ops):
                exc = self._failure(op, path, version)
                if exc is not None:
                    return [exc if j == i else RolledBackError() for j in range(len(self._ops))]

            results: list[Any] = []
            for op, path, value, _version in self._ops:
                if op == "check":
                    results.append(True)
                elif op == "create":
                    client.data[path] = value
                    client.versions[path] = 0
                    results.append(path)
                else:
                    current = client.versions.get(path, 0)
                    client.data[path] = value
                    client.versions[path] = current + 1
                    client.set_calls += 1
                    results.append(FakeStat(current + 1))
            return results


class FakeConnectionManager:
    def __init__(self, client: FakeKazooClient) -> None:
        self._client = client
        self._stopped = False

    @property
    def client(self) -> FakeKazooClient:
        return self._client

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        self._stopped = True


@pytest.fixture
def fake_client() -> FakeKazooClient:
    return FakeKazooClient()


@pytest.fixture
def connection(fake_client: FakeKazooClient) -> FakeConnectionManager:
    return FakeConnectionManager(fake_client)


@pytest.fixture
def no_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("moebench.metastore.store.sleep", lambda *_a, **_kw: None)


# noinspection PyTypeChecker
@pytest.fixture
def metastore(connection: FakeConnectionManager, no_backoff: None) -> Metastore:
    return Metastore(connection=connection, group="test")


@pytest.fixture
def ids() -> IdentifierAllocator:
    return IdentifierAllocator()


@pytest.fixture
def experiments(metastore: Metastore, ids: IdentifierAllocator) -> ExperimentStore:
    return ExperimentStore(metastore, ids)


@pytest.fixture
def results(metastore: Metastore, ids: IdentifierAllocator) -> ResultStore:
    return ResultStore(metastore, ids)


@pytest.fixture
def coordinator(experiments: ExperimentStore, results: ResultStore) -> ConsistencyCoordinator:
    return ConsistencyCoordinator(experiments, results)


@pytest.fixture
def query(experiments: ExperimentStore, results: ResultStore) -> QueryFacade:
    return QueryFacade(experiments, results)
