"""Shared factories for kubemeta tests.

Kubernetes objects are built from real ``kubernetes_asyncio`` models so the
code under test sees exactly what a watch stream would deliver.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from kubernetes_asyncio.client import (
    V1Container,
    V1ContainerStatus,
    V1Deployment,
    V1Namespace,
    V1Node,
    V1ObjectMeta,
    V1OwnerReference,
    V1Pod,
    V1PodSpec,
    V1PodStatus,
    V1ReplicaSet,
    V1StatefulSet,
)

# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=UTC)


def at(seconds: float) -> datetime:
    """T0 shifted by *seconds*."""
    return T0 + timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Object factories
# ---------------------------------------------------------------------------


def owner(kind: str, name: str, uid: str, controller: bool = True) -> V1OwnerReference:
    api_version = "batch/v1" if kind == "Job" else "apps/v1"
    return V1OwnerReference(api_version=api_version, kind=kind, name=name, uid=uid, controller=controller)


def make_container_status(
    name: str,
    container_id: str = "",
    image: str = "",
    image_id: str = "",
    restart_count: int = 0,
) -> V1ContainerStatus:
    return V1ContainerStatus(
        name=name,
        container_id=container_id or None,
        image=image,
        image_id=image_id,
        ready=True,
        restart_count=restart_count,
    )


def make_pod(
    name: str = "web-1",
    namespace: str = "default",
    uid: str = "u1",
    ip: str | None = "10.0.0.5",
    start_time: datetime | None = T0,
    node_name: str = "node-1",
    host_network: bool = False,
    hostname: str | None = None,
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
    owner_references: list[V1OwnerReference] | None = None,
    containers: list[tuple[str, str]] | None = None,
    container_statuses: list[V1ContainerStatus] | None = None,
    creation_timestamp: datetime | None = None,
) -> V1Pod:
    """Create a V1Pod with sensible defaults.  *containers* is ``[(name, image)]``."""
    return V1Pod(
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            uid=uid,
            labels=labels,
            annotations=annotations,
            owner_references=owner_references,
            creation_timestamp=creation_timestamp or start_time,
        ),
        spec=V1PodSpec(
            containers=[V1Container(name=n, image=image) for n, image in containers or []],
            node_name=node_name,
            host_network=host_network,
            hostname=hostname,
        ),
        status=V1PodStatus(
            pod_ip=ip,
            start_time=start_time,
            container_statuses=container_statuses,
        ),
    )


def make_namespace(
    name: str,
    uid: str = "",
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
) -> V1Namespace:
    return V1Namespace(
        metadata=V1ObjectMeta(
            name=name,
            uid=uid or f"ns-{name}",
            labels=labels,
            annotations=annotations,
            creation_timestamp=T0,
        )
    )


def make_node(name: str, uid: str = "", labels: dict[str, str] | None = None) -> V1Node:
    return V1Node(metadata=V1ObjectMeta(name=name, uid=uid or f"node-{name}", labels=labels))


def make_replicaset(
    name: str,
    uid: str,
    namespace: str = "default",
    deployment: tuple[str, str] | None = None,
) -> V1ReplicaSet:
    """*deployment* is the controlling ``(name, uid)`` pair, if any."""
    refs = [owner("Deployment", deployment[0], deployment[1])] if deployment else None
    return V1ReplicaSet(metadata=V1ObjectMeta(name=name, namespace=namespace, uid=uid, owner_references=refs))


def make_deployment(
    name: str,
    uid: str,
    namespace: str = "default",
    labels: dict[str, str] | None = None,
) -> V1Deployment:
    return V1Deployment(metadata=V1ObjectMeta(name=name, namespace=namespace, uid=uid, labels=labels))


def make_statefulset(
    name: str,
    uid: str,
    namespace: str = "default",
    labels: dict[str, str] | None = None,
) -> V1StatefulSet:
    return V1StatefulSet(metadata=V1ObjectMeta(name=name, namespace=namespace, uid=uid, labels=labels))
