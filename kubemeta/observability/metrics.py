"""Prometheus metrics emitted by the metadata cache."""

from __future__ import annotations

from prometheus_client import Counter, Gauge

objects_added_total = Counter(
    "kubemeta_objects_added_total",
    "Add notifications received from a watch stream",
    ["kind"],
)

objects_updated_total = Counter(
    "kubemeta_objects_updated_total",
    "Update notifications received from a watch stream",
    ["kind"],
)

objects_deleted_total = Counter(
    "kubemeta_objects_deleted_total",
    "Delete notifications received from a watch stream",
    ["kind"],
)

pod_table_size = Gauge(
    "kubemeta_pod_table_size",
    "Number of identifiers currently mapped in the pod table",
)

ip_lookup_miss_total = Counter(
    "kubemeta_ip_lookup_miss_total",
    "Pod lookups that found no record for the identifier",
)

watch_reconnects_total = Counter(
    "kubemeta_watch_reconnects_total",
    "Watch stream reconnects after an error or expiry",
    ["kind", "reason"],
)
