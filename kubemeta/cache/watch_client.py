"""Watch-driven metadata cache.

:class:`WatchClient` owns one watch source per resource kind, turns their
notifications into trimmed records and keeps them in lookup tables:

- pods, keyed by every :data:`PodIdentifier` the association rules derive;
- namespaces and nodes, keyed by name;
- deployments, statefulsets and replicasets, keyed by UID.

All tables share one reader/writer lock.  Pod deletions go through an
eviction queue and only take effect after a grace period, because the
address of a torn-down pod is often handed to a new pod before the delete
notification for the old one arrives.

Startup is ordered: the replicaset stream first (pods resolve their
deployment through it), then namespaces, nodes, deployments and
statefulsets, then pods once the others have synced or 5 s have passed.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Coroutine
from typing import Any

from kubernetes_asyncio.client import (
    ApiClient,
    V1Deployment,
    V1Namespace,
    V1Node,
    V1Pod,
    V1ReplicaSet,
    V1StatefulSet,
)

from kubemeta.cache.attributes import CONTAINER_ID
from kubemeta.cache.eviction import EvictionQueue
from kubemeta.cache.extraction import (
    AttributeExtractor,
    owner_uid,
    replicaset_from_api,
    should_ignore_pod,
    trim_pod,
    trim_replicaset,
)
from kubemeta.cache.identity import identifiers_for, validate_associations
from kubemeta.cache.pod_table import PodTable
from kubemeta.cache.rwlock import ReadWriteLock
from kubemeta.collector.factories import (
    InformerFactory,
    kube_system_informer,
    namespace_informer,
    noop_namespace_informer,
)
from kubemeta.collector.informer import (
    HasSynced,
    WatchSource,
    ignore_deleted_final_state_unknown,
    wait_for_cache_sync,
)
from kubemeta.collector.selectors import selectors_from_filters
from kubemeta.errors import CacheSyncTimeoutError
from kubemeta.models.config import Association, AssociationSourceKind, KubeMetaConfig, MetadataFrom
from kubemeta.models.resources import (
    Deployment,
    Namespace,
    Node,
    Pod,
    PodContainers,
    PodIdentifier,
    ReplicaSet,
    StatefulSet,
)
from kubemeta.observability.logging import get_logger
from kubemeta.observability.metrics import (
    ip_lookup_miss_total,
    objects_added_total,
    objects_deleted_total,
    objects_updated_total,
    pod_table_size,
)

_log = get_logger("cache.watch_client")

# Upper bound on how long the pod stream waits for the streams it depends on.
_DEPENDENCY_SYNC_TIMEOUT_S: float = 5.0


class WatchClient:
    """Metadata cache fed by Kubernetes watch streams.

    Args:
        config: Extraction rules, filters, association rules, excludes and
            timing settings.
        api_client: ``kubernetes_asyncio`` API client handed to the informer
            factory.  May be ``None`` when the factory does not need one.
        informer_factory: Overrides for the watch source constructors.

    Raises:
        ValueError: the filters cannot be expressed as selectors or an
            association rule is malformed.
    """

    def __init__(
        self,
        config: KubeMetaConfig,
        api_client: ApiClient | None = None,
        informer_factory: InformerFactory | None = None,
    ) -> None:
        validate_associations(config.associations)
        label_selector, field_selector = selectors_from_filters(config.filters)
        _log.info("k8s_filtering", label_selector=label_selector, field_selector=field_selector)

        self.rules = config.extract
        self.associations = list(config.associations)
        self._excludes = config.exclude
        self._wait_for_metadata = config.wait_for_metadata
        self._wait_for_metadata_timeout = config.wait_for_metadata_timeout
        self._delete_interval = config.delete_interval
        self._delete_grace_period = config.delete_grace_period

        self._lock = ReadWriteLock()
        self._pods = PodTable()
        self._namespaces: dict[str, Namespace] = {}
        self._nodes: dict[str, Node] = {}
        self._deployments: dict[str, Deployment] = {}
        self._statefulsets: dict[str, StatefulSet] = {}
        self._replicasets: dict[str, ReplicaSet] = {}
        self._delete_queue = EvictionQueue()
        self._needs_container_ids = _keys_on_container_id(self.associations)
        self._extractor = AttributeExtractor(
            self.rules, self.get_replicaset, self.get_namespace, needs_container_ids=self._needs_container_ids
        )

        factory = informer_factory or InformerFactory()
        namespace = config.filters.namespace

        self._pod_informer = factory.new_pod_informer(api_client, namespace, label_selector, field_selector)
        self._pod_informer.set_transform(lambda obj: trim_pod(obj, self.rules, self._needs_container_ids))

        new_namespace_informer = factory.new_namespace_informer or self._choose_namespace_informer()
        self._namespace_informer = new_namespace_informer(api_client)

        self._replicaset_informer: WatchSource | None = None
        if self.rules.deployment_name or self.rules.deployment_uid:
            self._replicaset_informer = factory.new_replicaset_informer(api_client, namespace)
            self._replicaset_informer.set_transform(trim_replicaset)

        self._node_informer: WatchSource | None = None
        if self.rules.extracts_metadata_from(MetadataFrom.NODE) or self.rules.node_uid:
            self._node_informer = factory.new_node_informer(api_client, config.filters.node)

        self._deployment_informer: WatchSource | None = None
        if self.rules.extracts_metadata_from(MetadataFrom.DEPLOYMENT):
            self._deployment_informer = factory.new_deployment_informer(api_client, namespace)

        self._statefulset_informer: WatchSource | None = None
        if self.rules.extracts_metadata_from(MetadataFrom.STATEFULSET):
            self._statefulset_informer = factory.new_statefulset_informer(api_client, namespace)

        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._synced: list[HasSynced] = []
        self._pod_synced: HasSynced | None = None

    def _choose_namespace_informer(self) -> Callable[[ApiClient | None], WatchSource]:
        if self.rules.extracts_metadata_from(MetadataFrom.NAMESPACE):
            return namespace_informer
        if self.rules.cluster_uid:
            return kube_system_informer
        return noop_namespace_informer

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Register handlers and start every watch stream in dependency order.

        Returns once the streams are running.  With ``wait_for_metadata`` it
        additionally waits for the pod stream's initial sync.

        Raises:
            CacheSyncTimeoutError: the pod stream did not sync within
                ``wait_for_metadata_timeout``.  The streams keep running.
        """
        if self._tasks:
            raise RuntimeError("watch client already started")

        if self._replicaset_informer is not None:
            self._synced.append(
                self._replicaset_informer.add_event_handler(
                    self.handle_replicaset_add, self.handle_replicaset_update, self.handle_replicaset_delete
                )
            )
            self._spawn(self._replicaset_informer.run(self._stop), "replicaset")

        self._synced.append(
            self._namespace_informer.add_event_handler(
                self.handle_namespace_add, self.handle_namespace_update, self.handle_namespace_delete
            )
        )
        self._spawn(self._namespace_informer.run(self._stop), "namespace")

        if self._node_informer is not None:
            self._synced.append(
                self._node_informer.add_event_handler(
                    self.handle_node_add, self.handle_node_update, self.handle_node_delete
                )
            )
            self._spawn(self._node_informer.run(self._stop), "node")

        if self._deployment_informer is not None:
            self._synced.append(
                self._deployment_informer.add_event_handler(
                    self.handle_deployment_add, self.handle_deployment_update, self.handle_deployment_delete
                )
            )
            self._spawn(self._deployment_informer.run(self._stop), "deployment")

        if self._statefulset_informer is not None:
            self._synced.append(
                self._statefulset_informer.add_event_handler(
                    self.handle_statefulset_add, self.handle_statefulset_update, self.handle_statefulset_delete
                )
            )
            self._spawn(self._statefulset_informer.run(self._stop), "statefulset")

        self._pod_synced = self._pod_informer.add_event_handler(
            self.handle_pod_add, self.handle_pod_update, self.handle_pod_delete
        )
        self._spawn(self._run_pod_informer(list(self._synced)), "pod")
        self._spawn(self._delete_loop(), "delete-loop")

        if self._wait_for_metadata:
            if not await wait_for_cache_sync([self._pod_synced], self._wait_for_metadata_timeout, self._stop):
                raise CacheSyncTimeoutError(self._wait_for_metadata_timeout)
            _log.info("metadata_synced", pods=self.pod_table_size)

    async def stop(self) -> None:
        """Signal every stream and the eviction loop to stop and wait for them."""
        self._stop.set()
        if not self._tasks:
            return
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for task, result in zip(self._tasks, results, strict=True):
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                _log.warning("watch_task_failed", task=task.get_name(), error=str(result))
        self._tasks.clear()

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        self._tasks.append(asyncio.create_task(coro, name=f"kubemeta-{name}"))

    async def _run_pod_informer(self, dependencies: list[HasSynced]) -> None:
        if dependencies:
            synced = await wait_for_cache_sync(dependencies, _DEPENDENCY_SYNC_TIMEOUT_S, self._stop)
            if not synced:
                _log.warning("pod_informer_dependencies_not_synced", timeout=_DEPENDENCY_SYNC_TIMEOUT_S)
        await self._pod_informer.run(self._stop)

    async def _delete_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._delete_interval)
            except TimeoutError:
                self.drain_delete_queue()

    @property
    def synced(self) -> bool:
        """True once the pod stream and every stream it depends on have synced."""
        if self._pod_synced is None:
            return False
        return self._pod_synced() and all(fn() for fn in self._synced)

    @property
    def pod_table_size(self) -> int:
        with self._lock.read():
            return len(self._pods)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_pod(self, identifier: PodIdentifier) -> Pod | None:
        """Return the pod stored under *identifier*; ignored pods are hidden."""
        with self._lock.read():
            pod = self._pods.get(identifier)
            missing = pod is None and identifier not in self._pods
        if missing:
            ip_lookup_miss_total.inc()
        return pod

    def get_namespace(self, name: str) -> Namespace | None:
        with self._lock.read():
            return self._namespaces.get(name)

    def get_node(self, name: str) -> Node | None:
        with self._lock.read():
            return self._nodes.get(name)

    def get_deployment(self, uid: str) -> Deployment | None:
        with self._lock.read():
            return self._deployments.get(uid)

    def get_statefulset(self, uid: str) -> StatefulSet | None:
        with self._lock.read():
            return self._statefulsets.get(uid)

    def get_replicaset(self, uid: str) -> ReplicaSet | None:
        with self._lock.read():
            return self._replicasets.get(uid)

    # ------------------------------------------------------------------
    # Pods
    # ------------------------------------------------------------------

    def handle_pod_add(self, obj: Any) -> None:
        objects_added_total.labels(kind="pod").inc()
        if isinstance(obj, V1Pod):
            self.add_or_update_pod(obj)
        else:
            _unexpected_type("pod", obj)
        self._record_pod_table_size()

    def handle_pod_update(self, old: Any, new: Any) -> None:
        objects_updated_total.labels(kind="pod").inc()
        if isinstance(new, V1Pod):
            self.add_or_update_pod(new)
        else:
            _unexpected_type("pod", new)
        self._record_pod_table_size()

    def handle_pod_delete(self, obj: Any) -> None:
        objects_deleted_total.labels(kind="pod").inc()
        pod = ignore_deleted_final_state_unknown(obj)
        if isinstance(pod, V1Pod):
            self.forget_pod(pod)
        else:
            _unexpected_type("pod", obj)
        self._record_pod_table_size()

    def pod_from_api(self, pod: V1Pod) -> Pod:
        """Build the cached record for *pod*.

        Takes the read lock for the replicaset and statefulset lookups, so it
        must not be called with the write lock held.
        """
        metadata = pod.metadata
        spec = pod.spec
        status = pod.status

        deployment_uid = ""
        replicaset = self.get_replicaset(owner_uid(pod, "ReplicaSet"))
        if replicaset is not None and replicaset.deployment.uid:
            deployment_uid = replicaset.deployment.uid

        statefulset_uid = ""
        statefulset = self.get_statefulset(owner_uid(pod, "StatefulSet"))
        if statefulset is not None:
            statefulset_uid = statefulset.uid

        ignore = should_ignore_pod(pod, self._excludes)
        attributes: dict[str, str] = {}
        containers = PodContainers()
        if not ignore:
            attributes = self._extractor.pod_attributes(pod)
            containers = self._extractor.pod_containers(pod)

        return Pod(
            name=metadata.name or "",
            namespace=metadata.namespace or "",
            uid=str(metadata.uid or ""),
            node_name=(spec.node_name if spec else None) or "",
            address=(status.pod_ip if status else None) or "",
            host_network=bool(spec.host_network) if spec else False,
            start_time=status.start_time if status else None,
            deployment_uid=deployment_uid,
            statefulset_uid=statefulset_uid,
            ignore=ignore,
            attributes=attributes,
            containers=containers,
        )

    def add_or_update_pod(self, pod: V1Pod) -> None:
        record = self.pod_from_api(pod)
        identifiers = identifiers_for(record, self.associations)
        with self._lock.write():
            self._pods.put(identifiers, record)

    def forget_pod(self, pod: V1Pod) -> None:
        """Queue removal of every identifier that still maps to *pod*."""
        record = self.pod_from_api(pod)
        identifiers = identifiers_for(record, self.associations)
        with self._lock.read():
            owned = [
                identifier
                for identifier in identifiers
                if (current := self._pods.get_raw(identifier)) is not None and current.name == record.name
            ]
        now = time.monotonic()
        for identifier in owned:
            self._delete_queue.append(identifier, record.name, now)

    def drain_delete_queue(self, now: float | None = None) -> int:
        """Apply every queued removal older than the grace period.

        *now* is a ``time.monotonic()`` reading; defaults to the current one.

        Returns:
            Number of identifiers removed from the pod table.
        """
        expired = self._delete_queue.pop_expired(self._delete_grace_period, now)
        if not expired:
            return 0
        removed = 0
        with self._lock.write():
            for request in expired:
                if self._pods.remove_if_named(request.identifier, request.pod_name):
                    removed += 1
            size = len(self._pods)
        pod_table_size.set(size)
        _log.debug("pod_delete_queue_drained", expired=len(expired), removed=removed, pod_table_size=size)
        return removed

    def _record_pod_table_size(self) -> None:
        pod_table_size.set(self.pod_table_size)

    # ------------------------------------------------------------------
    # Namespaces
    # ------------------------------------------------------------------

    def handle_namespace_add(self, obj: Any) -> None:
        objects_added_total.labels(kind="namespace").inc()
        if isinstance(obj, V1Namespace):
            self._add_or_update_namespace(obj)
        else:
            _unexpected_type("namespace", obj)

    def handle_namespace_update(self, old: Any, new: Any) -> None:
        objects_updated_total.labels(kind="namespace").inc()
        if isinstance(new, V1Namespace):
            self._add_or_update_namespace(new)
        else:
            _unexpected_type("namespace", new)

    def handle_namespace_delete(self, obj: Any) -> None:
        # pods in a namespace are gone before the namespace itself, so no grace period
        objects_deleted_total.labels(kind="namespace").inc()
        namespace = ignore_deleted_final_state_unknown(obj)
        if isinstance(namespace, V1Namespace):
            with self._lock.write():
                self._namespaces.pop(namespace.metadata.name or "", None)
        else:
            _unexpected_type("namespace", obj)

    def _add_or_update_namespace(self, namespace: V1Namespace) -> None:
        metadata = namespace.metadata
        record = Namespace(
            name=metadata.name or "",
            uid=str(metadata.uid or ""),
            start_time=metadata.creation_timestamp,
            attributes=self._extractor.namespace_attributes(metadata),
        )
        if not record.name:
            return
        with self._lock.write():
            self._namespaces[record.name] = record

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def handle_node_add(self, obj: Any) -> None:
        objects_added_total.labels(kind="node").inc()
        if isinstance(obj, V1Node):
            self._add_or_update_node(obj)
        else:
            _unexpected_type("node", obj)

    def handle_node_update(self, old: Any, new: Any) -> None:
        objects_updated_total.labels(kind="node").inc()
        if isinstance(new, V1Node):
            self._add_or_update_node(new)
        else:
            _unexpected_type("node", new)

    def handle_node_delete(self, obj: Any) -> None:
        objects_deleted_total.labels(kind="node").inc()
        node = ignore_deleted_final_state_unknown(obj)
        if isinstance(node, V1Node):
            with self._lock.write():
                self._nodes.pop(node.metadata.name or "", None)
        else:
            _unexpected_type("node", obj)

    def _add_or_update_node(self, node: V1Node) -> None:
        metadata = node.metadata
        record = Node(
            name=metadata.name or "",
            uid=str(metadata.uid or ""),
            attributes=self._extractor.node_attributes(metadata),
        )
        if not record.name:
            return
        with self._lock.write():
            self._nodes[record.name] = record

    # ------------------------------------------------------------------
    # Deployments and statefulsets
    # ------------------------------------------------------------------

    def handle_deployment_add(self, obj: Any) -> None:
        objects_added_total.labels(kind="deployment").inc()
        if isinstance(obj, V1Deployment):
            self._add_or_update_deployment(obj)
        else:
            _unexpected_type("deployment", obj)

    def handle_deployment_update(self, old: Any, new: Any) -> None:
        objects_updated_total.labels(kind="deployment").inc()
        if isinstance(new, V1Deployment):
            self._add_or_update_deployment(new)
        else:
            _unexpected_type("deployment", new)

    def handle_deployment_delete(self, obj: Any) -> None:
        objects_deleted_total.labels(kind="deployment").inc()
        deployment = ignore_deleted_final_state_unknown(obj)
        if isinstance(deployment, V1Deployment):
            with self._lock.write():
                self._deployments.pop(str(deployment.metadata.uid or ""), None)
        else:
            _unexpected_type("deployment", obj)

    def _add_or_update_deployment(self, deployment: V1Deployment) -> None:
        metadata = deployment.metadata
        record = Deployment(
            name=metadata.name or "",
            uid=str(metadata.uid or ""),
            attributes=self._extractor.deployment_attributes(metadata),
        )
        if not record.uid:
            return
        with self._lock.write():
            self._deployments[record.uid] = record

    def handle_statefulset_add(self, obj: Any) -> None:
        objects_added_total.labels(kind="statefulset").inc()
        if isinstance(obj, V1StatefulSet):
            self._add_or_update_statefulset(obj)
        else:
            _unexpected_type("statefulset", obj)

    def handle_statefulset_update(self, old: Any, new: Any) -> None:
        objects_updated_total.labels(kind="statefulset").inc()
        if isinstance(new, V1StatefulSet):
            self._add_or_update_statefulset(new)
        else:
            _unexpected_type("statefulset", new)

    def handle_statefulset_delete(self, obj: Any) -> None:
        objects_deleted_total.labels(kind="statefulset").inc()
        statefulset = ignore_deleted_final_state_unknown(obj)
        if isinstance(statefulset, V1StatefulSet):
            with self._lock.write():
                self._statefulsets.pop(str(statefulset.metadata.uid or ""), None)
        else:
            _unexpected_type("statefulset", obj)

    def _add_or_update_statefulset(self, statefulset: V1StatefulSet) -> None:
        metadata = statefulset.metadata
        record = StatefulSet(
            name=metadata.name or "",
            uid=str(metadata.uid or ""),
            attributes=self._extractor.statefulset_attributes(metadata),
        )
        if not record.uid:
            return
        with self._lock.write():
            self._statefulsets[record.uid] = record

    # ------------------------------------------------------------------
    # Replicasets
    # ------------------------------------------------------------------

    def handle_replicaset_add(self, obj: Any) -> None:
        objects_added_total.labels(kind="replicaset").inc()
        if isinstance(obj, V1ReplicaSet):
            self._add_or_update_replicaset(obj)
        else:
            _unexpected_type("replicaset", obj)

    def handle_replicaset_update(self, old: Any, new: Any) -> None:
        objects_updated_total.labels(kind="replicaset").inc()
        if isinstance(new, V1ReplicaSet):
            self._add_or_update_replicaset(new)
        else:
            _unexpected_type("replicaset", new)

    def handle_replicaset_delete(self, obj: Any) -> None:
        objects_deleted_total.labels(kind="replicaset").inc()
        replicaset = ignore_deleted_final_state_unknown(obj)
        if isinstance(replicaset, V1ReplicaSet):
            with self._lock.write():
                self._replicasets.pop(str(replicaset.metadata.uid or ""), None)
        else:
            _unexpected_type("replicaset", obj)

    def _add_or_update_replicaset(self, replicaset: V1ReplicaSet) -> None:
        record = replicaset_from_api(replicaset)
        if not record.uid:
            return
        with self._lock.write():
            self._replicasets[record.uid] = record


def _keys_on_container_id(associations: list[Association]) -> bool:
    return any(
        source.from_ == AssociationSourceKind.RESOURCE_ATTRIBUTE and source.name == CONTAINER_ID
        for assoc in associations
        for source in assoc.sources
    )


def _unexpected_type(kind: str, obj: Any) -> None:
    _log.error(f"{kind}_handler_unexpected_type", received=type(obj).__name__)
