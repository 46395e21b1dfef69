"""Integration tests for the WatchClient metadata cache.

Drives the cache through fake watch sources: pod lifecycle with delayed
eviction, cross-kind lookups (replicaset, statefulset, kube-system), startup
ordering and the initial-sync wait.
"""

from __future__ import annotations

import re
import time

import pytest
from prometheus_client import REGISTRY

from kubemeta.cache.attributes import (
    CONTAINER_ID,
    IGNORE_ANNOTATION,
    K8S_CLUSTER_UID,
    K8S_DEPLOYMENT_NAME,
    K8S_POD_IP,
    K8S_POD_NAME,
    K8S_POD_UID,
)
from kubemeta.cache.watch_client import WatchClient
from kubemeta.collector.factories import kube_system_informer, namespace_informer, noop_namespace_informer
from kubemeta.collector.informer import DeletedFinalStateUnknown
from kubemeta.errors import CacheSyncTimeoutError
from kubemeta.models.config import (
    Association,
    AssociationSource,
    AssociationSourceKind,
    ExcludePodConfig,
    Excludes,
    ExtractionRules,
    FieldExtractionRule,
    FieldFilter,
    Filters,
    FilterOperator,
    KubeMetaConfig,
    MetadataFrom,
)
from kubemeta.models.resources import connection_attribute, make_identifier, resource_attribute
from tests.conftest import (
    at,
    make_container_status,
    make_namespace,
    make_node,
    make_pod,
    make_replicaset,
    make_statefulset,
    owner,
)
from tests.integration.conftest import FakeCluster

_UID_RULE = Association(sources=(AssociationSource(from_=AssociationSourceKind.RESOURCE_ATTRIBUTE, name=K8S_POD_UID),))


def _config(rules: ExtractionRules | None = None, **kwargs) -> KubeMetaConfig:
    kwargs.setdefault("associations", [_UID_RULE])
    return KubeMetaConfig(extract=rules or ExtractionRules(pod_name=True), **kwargs)


def _by_ip(ip: str):
    return make_identifier(connection_attribute(ip))


def _by_uid(uid: str):
    return make_identifier(resource_attribute(K8S_POD_UID, uid))


def _after_grace(client: WatchClient) -> float:
    return time.monotonic() + client._delete_grace_period + 1


# ---------------------------------------------------------------------------
# Pod lifecycle
# ---------------------------------------------------------------------------


class TestPodLifecycle:
    async def test_every_identifier_resolves_to_the_same_record(self, cluster: FakeCluster, start_client) -> None:
        client = await start_client(_config())
        cluster.sources["Pod"].emit_add(make_pod(name="web-1", uid="u1", ip="10.0.0.5"))

        by_rule = client.get_pod(_by_uid("u1"))
        assert by_rule is not None
        assert by_rule.name == "web-1"
        assert by_rule.attributes[K8S_POD_NAME] == "web-1"
        assert client.get_pod(_by_ip("10.0.0.5")) is by_rule
        assert client.get_pod(make_identifier(resource_attribute(K8S_POD_IP, "10.0.0.5"))) is by_rule

    async def test_update_replaces_the_record(self, cluster: FakeCluster, start_client) -> None:
        client = await start_client(_config())
        pods = cluster.sources["Pod"]
        old = make_pod(labels={"v": "1"})
        pods.emit_add(old)
        pods.emit_update(old, make_pod(ip="10.0.0.9"))
        pod = client.get_pod(_by_uid("u1"))
        assert pod is not None
        assert pod.address == "10.0.0.9"
        assert client.get_pod(_by_ip("10.0.0.9")) is pod

    async def test_deleted_pod_stays_queryable_until_grace_expires(self, cluster: FakeCluster, start_client) -> None:
        client = await start_client(_config())
        pods = cluster.sources["Pod"]
        pod = make_pod()
        pods.emit_add(pod)
        pods.emit_delete(pod)

        assert client.get_pod(_by_ip("10.0.0.5")) is not None
        assert client.drain_delete_queue(now=time.monotonic()) == 0

        assert client.drain_delete_queue(now=_after_grace(client)) == 3
        assert client.get_pod(_by_ip("10.0.0.5")) is None
        assert client.get_pod(_by_uid("u1")) is None
        assert client.pod_table_size == 0

    async def test_reassigned_address_survives_old_pod_deletion(self, cluster: FakeCluster, start_client) -> None:
        client = await start_client(_config())
        pods = cluster.sources["Pod"]
        old = make_pod(name="web-1", uid="u1", ip="10.0.0.5", start_time=at(0))
        pods.emit_add(old)
        pods.emit_add(make_pod(name="web-2", uid="u2", ip="10.0.0.5", start_time=at(60)))
        pods.emit_delete(old)

        client.drain_delete_queue(now=_after_grace(client))

        current = client.get_pod(_by_ip("10.0.0.5"))
        assert current is not None
        assert current.name == "web-2"
        assert client.get_pod(_by_uid("u1")) is None
        assert client.get_pod(_by_uid("u2")) is current

    async def test_tombstone_delete_is_unwrapped(self, cluster: FakeCluster, start_client) -> None:
        client = await start_client(_config())
        pods = cluster.sources["Pod"]
        pod = make_pod()
        pods.emit_add(pod)
        pods.emit_delete(DeletedFinalStateUnknown("default/web-1", pod))
        assert client.drain_delete_queue(now=_after_grace(client)) == 3

    async def test_ignored_pod_is_cached_but_hidden(self, cluster: FakeCluster, start_client) -> None:
        client = await start_client(_config())
        pods = cluster.sources["Pod"]
        pod = make_pod(annotations={IGNORE_ANNOTATION: "true"})
        pods.emit_add(pod)
        assert client.get_pod(_by_uid("u1")) is None
        assert client.pod_table_size == 3

        pods.emit_delete(pod)
        assert client.drain_delete_queue(now=_after_grace(client)) == 3

    async def test_excluded_pod_name_is_hidden(self, cluster: FakeCluster, start_client) -> None:
        excludes = Excludes(pods=[ExcludePodConfig(name=re.compile("^jaeger-agent$"))])
        client = await start_client(_config(exclude=excludes))
        cluster.sources["Pod"].emit_add(make_pod(name="jaeger-agent"))
        assert client.get_pod(_by_uid("u1")) is None

    async def test_unexpected_payload_is_dropped(self, cluster: FakeCluster, start_client) -> None:
        client = await start_client(_config())
        client.handle_pod_add("not-a-pod")
        client.handle_pod_update(None, 42)
        client.handle_pod_delete(object())
        client.handle_namespace_add("not-a-namespace")
        assert client.pod_table_size == 0


# ---------------------------------------------------------------------------
# Related objects
# ---------------------------------------------------------------------------


class TestRelatedObjects:
    async def test_deployment_resolved_through_replicaset(self, cluster: FakeCluster, start_client) -> None:
        client = await start_client(_config(ExtractionRules(deployment_name=True, deployment_uid=True)))
        cluster.sources["ReplicaSet"].emit_add(make_replicaset("web-7f9c", "rs-u1", deployment=("web", "dep-u1")))
        cluster.sources["Pod"].emit_add(make_pod(owner_references=[owner("ReplicaSet", "web-7f9c", "rs-u1")]))

        pod = client.get_pod(_by_uid("u1"))
        assert pod is not None
        assert pod.deployment_uid == "dep-u1"
        assert pod.attributes[K8S_DEPLOYMENT_NAME] == "web"

    async def test_no_deployment_rule_means_no_replicaset_stream(self, cluster: FakeCluster, start_client) -> None:
        client = await start_client(_config())
        assert "ReplicaSet" not in cluster.sources
        cluster.sources["Pod"].emit_add(make_pod(owner_references=[owner("ReplicaSet", "web-7f9c", "rs-u1")]))
        pod = client.get_pod(_by_uid("u1"))
        assert pod is not None
        assert pod.deployment_uid == ""

    async def test_statefulset_uid_resolved(self, cluster: FakeCluster, start_client) -> None:
        rules = ExtractionRules(labels=[FieldExtractionRule(key="tier", from_=MetadataFrom.STATEFULSET)])
        client = await start_client(_config(rules))
        cluster.sources["StatefulSet"].emit_add(make_statefulset("db", "sts-u1", labels={"tier": "data"}))
        cluster.sources["Pod"].emit_add(make_pod(name="db-0", owner_references=[owner("StatefulSet", "db", "sts-u1")]))

        pod = client.get_pod(_by_uid("u1"))
        assert pod is not None
        assert pod.statefulset_uid == "sts-u1"
        statefulset = client.get_statefulset("sts-u1")
        assert statefulset is not None
        assert statefulset.attributes == {"k8s.statefulset.label.tier": "data"}

    async def test_kube_system_delete_is_immediate(self, cluster: FakeCluster, start_client) -> None:
        client = await start_client(_config(ExtractionRules(cluster_uid=True)))
        namespaces = cluster.sources["Namespace"]
        pods = cluster.sources["Pod"]
        kube_system = make_namespace("kube-system", uid="cluster-1")

        namespaces.emit_add(kube_system)
        pods.emit_add(make_pod(name="web-1", uid="u1", ip="10.0.0.5"))
        first = client.get_pod(_by_uid("u1"))
        assert first is not None
        assert first.attributes[K8S_CLUSTER_UID] == "cluster-1"

        namespaces.emit_delete(kube_system)
        assert client.get_namespace("kube-system") is None
        pods.emit_add(make_pod(name="web-2", uid="u2", ip="10.0.0.6"))
        second = client.get_pod(_by_uid("u2"))
        assert second is not None
        assert K8S_CLUSTER_UID not in second.attributes

    async def test_namespace_and_node_keyed_by_name(self, cluster: FakeCluster, start_client) -> None:
        rules = ExtractionRules(
            node_uid=True,
            labels=[FieldExtractionRule(key="team", from_=MetadataFrom.NAMESPACE)],
        )
        client = await start_client(_config(rules))
        cluster.sources["Namespace"].emit_add(make_namespace("shop", labels={"team": "payments"}))

        cluster.sources["Node"].emit_add(make_node("node-1", uid="n-u1"))

        namespace = client.get_namespace("shop")
        assert namespace is not None
        assert namespace.attributes == {"k8s.namespace.labels.team": "payments"}
        node = client.get_node("node-1")
        assert node is not None
        assert node.uid == "n-u1"


# ---------------------------------------------------------------------------
# Construction and startup
# ---------------------------------------------------------------------------


class TestStartup:
    async def test_replicaset_first_pod_last(self, cluster: FakeCluster, start_client) -> None:
        rules = ExtractionRules(
            deployment_name=True,
            labels=[FieldExtractionRule(key="zone", from_=MetadataFrom.NODE)],
        )
        await start_client(_config(rules))
        assert cluster.started[0] == "ReplicaSet"
        assert cluster.started[-1] == "Pod"
        assert set(cluster.started) == {"ReplicaSet", "Namespace", "Node", "Pod"}

    async def test_filters_become_pod_selectors(self, cluster: FakeCluster, start_client) -> None:
        filters = Filters(
            namespace="shop",
            node="node-1",
            labels=[FieldFilter(key="app", value="web")],
        )
        await start_client(_config(filters=filters))
        assert cluster.pod_args == ("shop", "app=web", "spec.nodeName=node-1")

    async def test_wait_for_metadata_timeout_raises(self, cluster: FakeCluster, start_client) -> None:
        cluster.unsynced.add("Pod")
        with pytest.raises(CacheSyncTimeoutError):
            await start_client(_config(wait_for_metadata=True, wait_for_metadata_timeout=0.2))

    async def test_wait_for_metadata_returns_once_synced(self, cluster: FakeCluster, start_client) -> None:
        client = await start_client(_config(wait_for_metadata=True, wait_for_metadata_timeout=2.0))
        assert client.synced is True

    async def test_start_twice_rejected(self, start_client) -> None:
        client = await start_client(_config())
        with pytest.raises(RuntimeError):
            await client.start()

    def test_invalid_filter_rejected(self, cluster: FakeCluster) -> None:
        filters = Filters(labels=[FieldFilter(key="app", value="a,b", op=FilterOperator.IN)])
        with pytest.raises(ValueError, match="label filters don't support operator"):
            WatchClient(_config(filters=filters), informer_factory=cluster.factory())

    def test_empty_association_rejected(self, cluster: FakeCluster) -> None:
        with pytest.raises(ValueError):
            WatchClient(_config(associations=[Association(sources=())]), informer_factory=cluster.factory())


class TestNamespaceSourceChoice:
    def _choice(self, cluster: FakeCluster, rules: ExtractionRules):
        return WatchClient(_config(rules), informer_factory=cluster.factory())._choose_namespace_informer()

    def test_namespace_rules_watch_all_namespaces(self, cluster: FakeCluster) -> None:
        rules = ExtractionRules(labels=[FieldExtractionRule(key="team", from_=MetadataFrom.NAMESPACE)])
        assert self._choice(cluster, rules) is namespace_informer

    def test_cluster_uid_watches_kube_system_only(self, cluster: FakeCluster) -> None:
        assert self._choice(cluster, ExtractionRules(cluster_uid=True)) is kube_system_informer

    def test_otherwise_no_namespace_stream(self, cluster: FakeCluster) -> None:
        assert self._choice(cluster, ExtractionRules(pod_name=True)) is noop_namespace_informer


# ---------------------------------------------------------------------------
# Container-keyed association
# ---------------------------------------------------------------------------


_CONTAINER_RULE = Association(
    sources=(AssociationSource(from_=AssociationSourceKind.RESOURCE_ATTRIBUTE, name=CONTAINER_ID),)
)


class TestContainerIdentifiers:
    async def test_each_container_id_resolves_without_container_rules(
        self, cluster: FakeCluster, start_client
    ) -> None:
        client = await start_client(_config(ExtractionRules(pod_name=True), associations=[_CONTAINER_RULE]))
        cluster.sources["Pod"].emit_add(
            make_pod(
                containers=[("app", "nginx"), ("sidecar", "envoy")],
                container_statuses=[
                    make_container_status("app", container_id="containerd://c1"),
                    make_container_status("sidecar", container_id="containerd://c2"),
                ],
            )
        )

        by_uid = client.get_pod(_by_uid("u1"))
        assert by_uid is not None
        for container_id in ("c1", "c2"):
            assert client.get_pod(make_identifier(resource_attribute(CONTAINER_ID, container_id))) is by_uid
        # two container identifiers plus uid, connection and pod ip
        assert client.pod_table_size == 5

    async def test_container_without_id_yet_is_skipped(self, cluster: FakeCluster, start_client) -> None:
        client = await start_client(_config(associations=[_CONTAINER_RULE]))
        cluster.sources["Pod"].emit_add(make_pod(container_statuses=[make_container_status("app")]))
        assert client.get_pod(make_identifier(resource_attribute(CONTAINER_ID, ""))) is None
        assert client.pod_table_size == 3


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------


def _sample(name: str, **labels: str) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestTelemetry:
    async def test_notification_counters_per_kind(self, cluster: FakeCluster, start_client) -> None:
        client = await start_client(_config(ExtractionRules(cluster_uid=True)))
        before = {
            event: _sample(f"kubemeta_objects_{event}_total", kind="pod") for event in ("added", "updated", "deleted")
        }
        namespaces_before = _sample("kubemeta_objects_added_total", kind="namespace")

        pods = cluster.sources["Pod"]
        pod = make_pod()
        pods.emit_add(pod)
        pods.emit_add(make_pod(name="web-2", uid="u2", ip="10.0.0.6"))
        pods.emit_update(pod, pod)
        pods.emit_delete(pod)
        cluster.sources["Namespace"].emit_add(make_namespace("kube-system"))

        assert _sample("kubemeta_objects_added_total", kind="pod") - before["added"] == 2.0
        assert _sample("kubemeta_objects_updated_total", kind="pod") - before["updated"] == 1.0
        assert _sample("kubemeta_objects_deleted_total", kind="pod") - before["deleted"] == 1.0
        assert _sample("kubemeta_objects_added_total", kind="namespace") - namespaces_before == 1.0
        assert client.pod_table_size == 6

    async def test_lookup_miss_counts_only_absent_identifiers(self, cluster: FakeCluster, start_client) -> None:
        client = await start_client(_config())
        cluster.sources["Pod"].emit_add(make_pod(annotations={IGNORE_ANNOTATION: "true"}))
        before = _sample("kubemeta_ip_lookup_miss_total")

        assert client.get_pod(_by_uid("u1")) is None
        assert _sample("kubemeta_ip_lookup_miss_total") == before

        assert client.get_pod(_by_ip("10.9.9.9")) is None
        assert _sample("kubemeta_ip_lookup_miss_total") - before == 1.0

    async def test_table_size_gauge_follows_drain(self, cluster: FakeCluster, start_client) -> None:
        client = await start_client(_config())
        pods = cluster.sources["Pod"]
        pod = make_pod()
        pods.emit_add(pod)
        pods.emit_delete(pod)
        assert _sample("kubemeta_pod_table_size") == 3.0

        client.drain_delete_queue(now=_after_grace(client))
        assert _sample("kubemeta_pod_table_size") == 0.0
