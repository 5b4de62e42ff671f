# src/moebench/client.py
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from moebench.config import AppSettings, get_settings
from moebench.coordinator import ConsistencyCoordinator
from moebench.experiments import ExperimentStore
from moebench.ids import IdentifierAllocator
from moebench.metastore import Metastore, ZkConnectionManager, make_serializers
from moebench.query import QueryFacade
from moebench.results import ResultStore

logger = logging.getLogger(__name__)


class Client:
    """
    Wires the stores, the coordinator and the query facade over one Metastore.

    Writers (workers, API handlers) use `coordinator`; readers use `query`.
    The stores are exposed for tests and tooling but writes should not
    bypass the coordinator.
    """

    def __init__(self, *, meta: Metastore, ids: Optional[IdentifierAllocator] = None) -> None:
        """
        Create a Client bound to an existing Metastore.

        Args:
            meta: Metastore (typically created via Client.make()).
            ids: Optional identifier allocator shared by both stores.
        """
        ids = ids or IdentifierAllocator()
        self.meta = meta
        self.experiments = ExperimentStore(meta, ids)
        self.results = ResultStore(meta, ids)
        self.coordinator = ConsistencyCoordinator(self.experiments, self.results)
        self.query = QueryFacade(self.experiments, self.results)

    # ------------------------------------------------------------------ #
    # Factory
    # ------------------------------------------------------------------ #

    @classmethod
    def from_settings(cls, settings: AppSettings, connection: ZkConnectionManager, group: str | None = None) -> "Client":
        if group is None:
            group = settings.zookeeper.default_group
        packb, unpackb = make_serializers(settings.serialization)
        meta = Metastore(
            connection=connection,
            group=group,
            packb=packb,
            unpackb=unpackb,
            max_retries=settings.store.max_retries,
            backoff_base_s=settings.store.backoff_base_s,
            backoff_max_s=settings.store.backoff_max_s,
        )
        return cls(meta=meta)

    @classmethod
    @contextmanager
    def make(
        cls,
        *,
        settings: AppSettings | None = None,
        group: str | None = None,
    ) -> Iterator["Client"]:
        """
        Create a Client using ZooKeeper settings and yield it as a context manager.

        Args:
            settings:
                Optional AppSettings. If None, uses moebench.config.get_settings().
            group:
                Optional ZooKeeper group namespace. If None, uses
                settings.zookeeper.default_group.

        Notes:
            This context manager owns the ZooKeeper connection manager lifecycle.
        """
        if settings is None:
            settings = get_settings()

        zk_manager = ZkConnectionManager(settings.zookeeper)
        zk_manager.start()
        logger.debug("Connected to ZooKeeper at %s", settings.zookeeper.hosts)

        try:
            yield cls.from_settings(settings, zk_manager, group=group)
        finally:
            zk_manager.stop()
