"""The cluster module.

This module defines the interface to a target cluster that Applications are
reconciled into, with an in-memory implementation used for tests and dry
runs and a Kubernetes implementation.
"""

from .client import ClusterClient, ClusterEvent, ResourceType
from .in_memory import InMemoryCluster

__all__ = [
    "ClusterClient",
    "ClusterEvent",
    "InMemoryCluster",
    "ResourceType",
]
