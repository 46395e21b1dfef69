"""Shared fixtures for kubemeta integration tests.

Provides in-memory watch sources wired into a :class:`WatchClient` through an
:class:`InformerFactory`, so tests can drive full add/update/delete flows
without touching a real Kubernetes cluster.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import pytest

from kubemeta.cache.watch_client import WatchClient
from kubemeta.collector.factories import InformerFactory
from kubemeta.models.config import KubeMetaConfig

# ---------------------------------------------------------------------------
# In-memory watch sources
# ---------------------------------------------------------------------------


class FakeWatchSource:
    """Watch source whose events are pushed by the test."""

    def __init__(self, kind: str, started: list[str], sync_on_start: bool = True) -> None:
        self.kind = kind
        self.synced = False
        self._started = started
        self._sync_on_start = sync_on_start
        self._transform: Callable[[Any], Any] | None = None
        self._handlers: list[tuple[Any, Any, Any]] = []

    def set_transform(self, transform: Callable[[Any], Any]) -> None:
        self._transform = transform

    def add_event_handler(self, on_add: Any, on_update: Any, on_delete: Any) -> Callable[[], bool]:
        self._handlers.append((on_add, on_update, on_delete))
        return lambda: self.synced

    async def run(self, stop: asyncio.Event) -> None:
        self._started.append(self.kind)
        if self._sync_on_start:
            self.synced = True
        await stop.wait()

    def _apply(self, obj: Any) -> Any:
        return self._transform(obj) if self._transform is not None else obj

    def emit_add(self, obj: Any) -> None:
        for on_add, _, _ in self._handlers:
            on_add(self._apply(obj))

    def emit_update(self, old: Any, new: Any) -> None:
        for _, on_update, _ in self._handlers:
            on_update(self._apply(old), self._apply(new))

    def emit_delete(self, obj: Any) -> None:
        for _, _, on_delete in self._handlers:
            on_delete(self._apply(obj))


class FakeCluster:
    """Builds fake watch sources on demand and remembers what was built.

    ``sources`` maps kind to the source the cache requested; ``started``
    lists kinds in the order their ``run`` began.
    """

    def __init__(self) -> None:
        self.sources: dict[str, FakeWatchSource] = {}
        self.started: list[str] = []
        self.pod_args: tuple[str, str, str] | None = None
        self.node_filter: str | None = None
        self.unsynced: set[str] = set()

    def source(self, kind: str) -> FakeWatchSource:
        src = FakeWatchSource(kind, self.started, sync_on_start=kind not in self.unsynced)
        self.sources[kind] = src
        return src

    def _pod(self, api_client: Any, namespace: str, label_selector: str, field_selector: str) -> FakeWatchSource:
        self.pod_args = (namespace, label_selector, field_selector)
        return self.source("Pod")

    def _node(self, api_client: Any, node: str) -> FakeWatchSource:
        self.node_filter = node
        return self.source("Node")

    def factory(self) -> InformerFactory:
        return InformerFactory(
            new_pod_informer=self._pod,
            new_namespace_informer=lambda api_client: self.source("Namespace"),
            new_node_informer=self._node,
            new_replicaset_informer=lambda api_client, namespace: self.source("ReplicaSet"),
            new_deployment_informer=lambda api_client, namespace: self.source("Deployment"),
            new_statefulset_informer=lambda api_client, namespace: self.source("StatefulSet"),
        )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* until it holds; fail the test after *timeout*."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
async def start_client(cluster: FakeCluster) -> AsyncIterator[Callable[[KubeMetaConfig], Awaitable[WatchClient]]]:
    """Start a WatchClient against the fake cluster; stopped on teardown."""
    clients: list[WatchClient] = []

    async def _start(config: KubeMetaConfig) -> WatchClient:
        client = WatchClient(config, informer_factory=cluster.factory())
        clients.append(client)
        await client.start()
        await wait_until(lambda: client.synced or bool(cluster.unsynced))
        return client

    yield _start

    for client in clients:
        await client.stop()
