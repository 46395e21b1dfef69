"""Constructors for the per-kind watch sources.

Each function binds an :class:`~kubemeta.collector.informer.Informer` to the
matching ``kubernetes_asyncio`` list method.  :class:`InformerFactory` groups
them so the cache can be built against in-memory sources in tests.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from kubernetes_asyncio.client import ApiClient, AppsV1Api, CoreV1Api

from kubemeta.collector.informer import Informer, NoOpInformer, WatchSource

KUBE_SYSTEM_NAMESPACE = "kube-system"


def pod_informer(
    api_client: ApiClient | None,
    namespace: str,
    label_selector: str,
    field_selector: str,
) -> WatchSource:
    core = CoreV1Api(api_client)
    if namespace:
        return Informer(
            "Pod",
            core.list_namespaced_pod,
            namespace,
            label_selector=label_selector,
            field_selector=field_selector,
        )
    return Informer(
        "Pod",
        core.list_pod_for_all_namespaces,
        label_selector=label_selector,
        field_selector=field_selector,
    )


def namespace_informer(api_client: ApiClient | None) -> WatchSource:
    """Watch every namespace, kube-system included."""
    return Informer("Namespace", CoreV1Api(api_client).list_namespace)


def kube_system_informer(api_client: ApiClient | None) -> WatchSource:
    """Watch only the kube-system namespace, whose UID identifies the cluster."""
    return Informer(
        "Namespace",
        CoreV1Api(api_client).list_namespace,
        field_selector=f"metadata.name={KUBE_SYSTEM_NAMESPACE}",
    )


def noop_namespace_informer(api_client: ApiClient | None) -> WatchSource:
    return NoOpInformer("Namespace")


def node_informer(api_client: ApiClient | None, node: str) -> WatchSource:
    field_selector = f"metadata.name={node}" if node else ""
    return Informer("Node", CoreV1Api(api_client).list_node, field_selector=field_selector)


def replicaset_informer(api_client: ApiClient | None, namespace: str) -> WatchSource:
    apps = AppsV1Api(api_client)
    if namespace:
        return Informer("ReplicaSet", apps.list_namespaced_replica_set, namespace)
    return Informer("ReplicaSet", apps.list_replica_set_for_all_namespaces)


def deployment_informer(api_client: ApiClient | None, namespace: str) -> WatchSource:
    apps = AppsV1Api(api_client)
    if namespace:
        return Informer("Deployment", apps.list_namespaced_deployment, namespace)
    return Informer("Deployment", apps.list_deployment_for_all_namespaces)


def statefulset_informer(api_client: ApiClient | None, namespace: str) -> WatchSource:
    apps = AppsV1Api(api_client)
    if namespace:
        return Informer("StatefulSet", apps.list_namespaced_stateful_set, namespace)
    return Informer("StatefulSet", apps.list_stateful_set_for_all_namespaces)


@dataclass
class InformerFactory:
    """Builders for every watch source the cache may start.

    ``new_namespace_informer`` left as ``None`` lets the cache pick between
    the all-namespaces, kube-system-only and no-op sources from its rules.
    """

    new_pod_informer: Callable[[ApiClient | None, str, str, str], WatchSource] = pod_informer
    new_namespace_informer: Callable[[ApiClient | None], WatchSource] | None = None
    new_node_informer: Callable[[ApiClient | None, str], WatchSource] = node_informer
    new_replicaset_informer: Callable[[ApiClient | None, str], WatchSource] = replicaset_informer
    new_deployment_informer: Callable[[ApiClient | None, str], WatchSource] = deployment_informer
    new_statefulset_informer: Callable[[ApiClient | None, str], WatchSource] = statefulset_informer
