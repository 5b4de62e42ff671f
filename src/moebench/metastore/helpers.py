# src/moebench/metastore/helpers.py
import json
import logging
import pickle
import threading
from typing import Any, Callable, Optional

from kazoo.client import KazooClient, KazooState, KazooRetry

from moebench.config import SerializationSettings, ZookeeperSettings

logger = logging.getLogger(__name__)


def _zk_hosts_from_settings(settings: ZookeeperSettings) -> str:
    """
    Build the full Zookeeper connection string with optional chroot.
    Example: "host1:2181,host2:2181/moebench"
    """
    if settings.chroot:
        return f"{settings.hosts}{settings.chroot}"
    return settings.hosts


def create_zk_client(settings: ZookeeperSettings) -> KazooClient:
    """
    Create a KazooClient configured from ZookeeperSettings.

    - hosts + chroot
    - session/connection timeouts
    - retry policy
    - optional auth
    - optional TLS
    """
    hosts = _zk_hosts_from_settings(settings)

    conn_retry = KazooRetry(
        max_tries=settings.max_retries,
        delay=settings.retry_delay_s,
    )
    cmd_retry = KazooRetry(
        max_tries=settings.max_retries,
        delay=settings.retry_delay_s,
    )

    client_kwargs: dict[str, Any] = dict(
        hosts=hosts,
        timeout=settings.session_timeout_s,
        connection_retry=conn_retry,
        command_retry=cmd_retry,
        connection_timeout=settings.connection_timeout_s,
    )

    if settings.use_tls:
        client_kwargs["use_ssl"] = True
        if settings.ca_cert:
            client_kwargs["ca"] = settings.ca_cert
        if settings.client_cert:
            client_kwargs["certfile"] = settings.client_cert
        if settings.client_key:
            client_kwargs["keyfile"] = settings.client_key

    zk = KazooClient(**client_kwargs)

    if settings.auth_scheme and settings.auth_credentials:
        zk.add_auth(settings.auth_scheme, settings.auth_credentials)

    return zk


def make_serializers(
        settings: SerializationSettings,
) -> tuple[Callable[[Any], bytes], Callable[[bytes], Any]]:
    """
    Return (packb, unpackb) for the configured document encoding.
    """
    if settings.format == "json":
        def packb(value: Any) -> bytes:
            return json.dumps(value, separators=(",", ":"), sort_keys=True).encode("utf-8")

        def unpackb(data: bytes) -> Any:
            return json.loads(data.decode("utf-8"))

        return packb, unpackb

    protocol = settings.protocol

    def packb_pickle(value: Any) -> bytes:
        return pickle.dumps(value, protocol=protocol)

    return packb_pickle, pickle.loads


class ZkConnectionManager:
    """
    Owns a single KazooClient instance and manages its lifecycle.

    Typical usage:
        mgr = ZkConnectionManager(settings)
        mgr.start()
        metastore = Metastore(connection=mgr, group="foo")
    """

    def __init__(self, settings: ZookeeperSettings) -> None:
        self._settings = settings
        self._client: Optional[KazooClient] = None

        self._lock = threading.RLock()
        self._session_lost = False
        self._stopped = False

    @property
    def client(self) -> KazooClient:
        if self._client is None:
            raise RuntimeError("ZkConnectionManager not started.")
        return self._client

    @property
    def settings(self) -> ZookeeperSettings:
        return self._settings

    # --- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        if self._client is not None:
            return  # idempotent

        client = create_zk_client(self._settings)
        client.add_listener(self._on_state_change)
        client.start()

        with self._lock:
            self._client = client
            self._session_lost = False
            self._stopped = False

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            client = self._client

        if client is not None:
            client.stop()
            client.close()

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def session_lost(self) -> bool:
        return self._session_lost

    # --- connection state handling ----------------------------------------

    def _on_state_change(self, state: KazooState) -> None:
        if state == KazooState.LOST:
            with self._lock:
                self._session_lost = True
            logger.warning("ZooKeeper session LOST; store operations will fail until reconnected.")

        elif state == KazooState.SUSPENDED:
            logger.info("ZooKeeper connection SUSPENDED.")

        elif state == KazooState.CONNECTED:
            with self._lock:
                if self._session_lost and not self._stopped:
                    logger.info("ZooKeeper reconnected after LOST.")
                    self._session_lost = False
