"""Metadata cache for kubemeta.

Keeps pods and their related objects in memory, fed by Kubernetes watch
streams, and resolves telemetry identifiers to pod records.

Submodules:
    watch_client -- WatchClient: object stores, watch handlers, startup ordering.
    identity     -- identifiers a pod is reachable through.
    pod_table    -- identifier -> pod map with start-time ordering.
    eviction     -- grace-period delete queue.
    extraction   -- attribute extraction and payload trimming.
    images       -- container image reference parsing.
    rwlock       -- reader/writer lock shared by every store.
"""

from kubemeta.cache.watch_client import WatchClient

__all__ = ["WatchClient"]
