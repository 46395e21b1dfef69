"""Identifier -> pod record map.

Several identifiers usually alias one :class:`Pod`.  The table does no
locking of its own; :class:`~kubemeta.cache.watch_client.WatchClient` holds
the shared lock around every call.
"""

from __future__ import annotations

from collections.abc import Iterable

from kubemeta.models.resources import Pod, PodIdentifier


class PodTable:
    def __init__(self) -> None:
        self._pods: dict[PodIdentifier, Pod] = {}

    def __len__(self) -> int:
        return len(self._pods)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._pods

    def put(self, identifiers: Iterable[PodIdentifier], pod: Pod) -> None:
        """Store *pod* under every identifier.

        An entry is kept when its start time is strictly later than *pod*'s,
        so a late update for a torn-down pod cannot shadow the pod that was
        scheduled after it with the same address.  Equal start times replace.
        """
        for identifier in identifiers:
            current = self._pods.get(identifier)
            if current is not None and _started_before(pod, current):
                continue
            self._pods[identifier] = pod

    def get(self, identifier: PodIdentifier) -> Pod | None:
        """Return the pod for *identifier*; ignored pods are reported as absent."""
        pod = self._pods.get(identifier)
        if pod is None or pod.ignore:
            return None
        return pod

    def get_raw(self, identifier: PodIdentifier) -> Pod | None:
        """Return the stored pod including ignored ones (delete bookkeeping)."""
        return self._pods.get(identifier)

    def remove_if_named(self, identifier: PodIdentifier, pod_name: str) -> bool:
        """Remove the entry only if it still belongs to *pod_name*."""
        current = self._pods.get(identifier)
        if current is None or current.name != pod_name:
            return False
        del self._pods[identifier]
        return True


def _started_before(pod: Pod, current: Pod) -> bool:
    # unscheduled pods have no start time yet; never treat them as stale
    if pod.start_time is None or current.start_time is None:
        return False
    return pod.start_time < current.start_time
