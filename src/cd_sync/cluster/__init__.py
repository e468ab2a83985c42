# ABOUTME: Cluster access package for the sync engine
# ABOUTME: ClusterStore contract, cluster errors and the kubernetes_asyncio adapter

"""
Cluster access.

    - store.py: ClusterStore protocol, ObjectRef and ClusterError hierarchy
    - kube.py: KubernetesClusterStore backed by the kubernetes_asyncio dynamic client
"""

from cd_sync.cluster.store import (
    ClusterError,
    ClusterStore,
    ConflictError,
    InvalidObjectError,
    NotFoundError,
    ObjectRef,
)

__all__ = [
    "ClusterError",
    "ClusterStore",
    "ConflictError",
    "InvalidObjectError",
    "NotFoundError",
    "ObjectRef",
]
