"""Collector package for kubemeta.

Kubernetes list-then-watch streams that feed the metadata cache.

Submodules
----------
informer   -- Informer / NoOpInformer: relist recovery, back-off, sync tracking.
factories  -- per-kind informer constructors and the injectable InformerFactory.
selectors  -- label/field selector compilation from pod filters.
"""

from kubemeta.collector.factories import InformerFactory
from kubemeta.collector.informer import (
    DeletedFinalStateUnknown,
    Informer,
    NoOpInformer,
    WatchSource,
    wait_for_cache_sync,
)
from kubemeta.collector.selectors import selectors_from_filters

__all__ = [
    "DeletedFinalStateUnknown",
    "Informer",
    "InformerFactory",
    "NoOpInformer",
    "WatchSource",
    "selectors_from_filters",
    "wait_for_cache_sync",
]
