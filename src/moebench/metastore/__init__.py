# src/moebench/metastore/__init__.py
from .helpers import ZkConnectionManager, create_zk_client, make_serializers
from .store import (
    Metastore,
    MetastoreConflictError,
    MetastoreError,
    MetastoreStoppedError,
    Precondition,
    VersionToken,
)

__all__ = [
    "ZkConnectionManager",
    "create_zk_client",
    "make_serializers",
    "Metastore",
    "MetastoreError",
    "MetastoreStoppedError",
    "MetastoreConflictError",
    "Precondition",
    "VersionToken",
]
