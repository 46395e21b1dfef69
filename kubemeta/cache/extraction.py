"""Attribute extraction and payload trimming for watched objects.

Everything here works on ``kubernetes_asyncio`` model objects and is pure
apart from the two lookups the extractor is constructed with; those take
the cache read lock, so extraction must run without the write lock held.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes_asyncio.client import (
    V1Container,
    V1ContainerStatus,
    V1ObjectMeta,
    V1Pod,
    V1PodSpec,
    V1PodStatus,
    V1ReplicaSet,
)

from kubemeta.cache import attributes as attr
from kubemeta.cache.images import (
    ImageReferenceError,
    canonical_image_ref,
    parse_image_name,
    service_version_from_image,
)
from kubemeta.models.config import Excludes, ExtractionRules, FieldExtractionRule, MetadataFrom
from kubemeta.models.resources import (
    Container,
    ContainerStatus,
    DeploymentRef,
    Namespace,
    PodContainers,
    ReplicaSet,
)
from kubemeta.observability.logging import get_logger

_log = get_logger("cache.extraction")

# Job names created by a CronJob are "<cronjob-name>-<schedule-time>"
_RE_CRONJOB_JOB_NAME = re.compile(r"^(.*)-\d+$")

_KUBE_SYSTEM_NAMESPACE = "kube-system"

_LABEL_APP_NAME = "app.kubernetes.io/name"
_LABEL_APP_INSTANCE = "app.kubernetes.io/instance"
_LABEL_APP_VERSION = "app.kubernetes.io/version"

ReplicaSetLookup = Callable[[str], ReplicaSet | None]
NamespaceLookup = Callable[[str], Namespace | None]


# ---------------------------------------------------------------------------
# Owner references
# ---------------------------------------------------------------------------


def owner_uid(obj: Any, kind: str) -> str:
    """Return the UID of the first owner reference of *kind*, or ``""``."""
    metadata = getattr(obj, "metadata", None)
    for ref in getattr(metadata, "owner_references", None) or []:
        if ref.kind == kind:
            return str(ref.uid or "")
    return ""


def replicaset_from_api(rs: V1ReplicaSet) -> ReplicaSet:
    """Build the replicaset cross-reference from its controller owner reference."""
    metadata = rs.metadata
    deployment_name = deployment_uid = ""
    for ref in metadata.owner_references or []:
        if ref.kind == "Deployment" and ref.controller:
            deployment_name, deployment_uid = ref.name or "", str(ref.uid or "")
            break
    return ReplicaSet(
        name=metadata.name or "",
        namespace=metadata.namespace or "",
        uid=str(metadata.uid or ""),
        deployment=DeploymentRef(name=deployment_name, uid=deployment_uid),
    )


# ---------------------------------------------------------------------------
# Payload trimming
# ---------------------------------------------------------------------------


def _needs_owner_references(rules: ExtractionRules) -> bool:
    return (
        rules.includes_owner_metadata()
        or rules.extracts_metadata_from(MetadataFrom.DEPLOYMENT)
        or rules.extracts_metadata_from(MetadataFrom.STATEFULSET)
    )


def trim_pod(pod: Any, rules: ExtractionRules, keep_container_ids: bool = False) -> Any:
    """Drop everything from *pod* that neither identification nor the rules need.

    *keep_container_ids* keeps container statuses for association rules that
    key on ``container.id`` even when no container attribute is extracted.

    Non-pod payloads (e.g. a deleted-final-state marker) are returned unchanged.
    """
    if not isinstance(pod, V1Pod):
        return pod
    metadata = pod.metadata or V1ObjectMeta()
    spec = pod.spec
    status = pod.status or V1PodStatus()

    trimmed_meta = V1ObjectMeta(name=metadata.name, namespace=metadata.namespace, uid=metadata.uid)
    trimmed_spec = V1PodSpec(
        containers=[],
        host_network=spec.host_network if spec else None,
        node_name=spec.node_name if spec else None,
    )
    trimmed_status = V1PodStatus(pod_ip=status.pod_ip, start_time=status.start_time)

    if rules.start_time:
        trimmed_meta.creation_timestamp = metadata.creation_timestamp
    if rules.pod_hostname and spec is not None:
        trimmed_spec.hostname = spec.hostname

    if rules.needs_container_attributes() or keep_container_ids:
        keep_image = rules.container_image_name or rules.container_image_tag or rules.service_version

        def _status(cs: V1ContainerStatus) -> V1ContainerStatus:
            return V1ContainerStatus(
                name=cs.name,
                container_id=cs.container_id,
                restart_count=cs.restart_count or 0,
                image=cs.image or "",
                image_id=(cs.image_id or "") if rules.container_image_repo_digests else "",
                ready=bool(cs.ready),
            )

        def _container(c: V1Container) -> V1Container:
            return V1Container(name=c.name, image=c.image if keep_image else None)

        trimmed_status.container_statuses = [_status(cs) for cs in status.container_statuses or []]
        trimmed_status.init_container_statuses = [_status(cs) for cs in status.init_container_statuses or []]
        if spec is not None:
            trimmed_spec.containers = [_container(c) for c in spec.containers or []]
            trimmed_spec.init_containers = [_container(c) for c in spec.init_containers or []]

    if rules.labels or rules.service_name or rules.service_version:
        trimmed_meta.labels = metadata.labels

    annotations = metadata.annotations or {}
    if rules.annotations:
        trimmed_meta.annotations = annotations
    elif attr.IGNORE_ANNOTATION in annotations:
        trimmed_meta.annotations = {attr.IGNORE_ANNOTATION: annotations[attr.IGNORE_ANNOTATION]}

    if _needs_owner_references(rules):
        trimmed_meta.owner_references = metadata.owner_references

    return V1Pod(metadata=trimmed_meta, spec=trimmed_spec, status=trimmed_status)


def trim_replicaset(rs: Any) -> Any:
    """Keep only identity and owner references of a replicaset."""
    if not isinstance(rs, V1ReplicaSet):
        return rs
    metadata = rs.metadata or V1ObjectMeta()
    return V1ReplicaSet(
        metadata=V1ObjectMeta(
            name=metadata.name,
            namespace=metadata.namespace,
            uid=metadata.uid,
            owner_references=metadata.owner_references,
        )
    )


# ---------------------------------------------------------------------------
# Exclusion
# ---------------------------------------------------------------------------


def should_ignore_pod(pod: V1Pod, excludes: Excludes) -> bool:
    """Return True if the pod opted out by annotation or matches an exclude pattern."""
    annotations = pod.metadata.annotations or {}
    value = annotations.get(attr.IGNORE_ANNOTATION)
    if value is not None and value.strip().lower() == "true":
        return True
    name = pod.metadata.name or ""
    return any(excluded.name.search(name) for excluded in excludes.pods)


# ---------------------------------------------------------------------------
# Attribute extraction
# ---------------------------------------------------------------------------


def format_start_time(ts: datetime) -> str:
    """Render a timestamp as RFC 3339 in UTC with second precision."""
    return ts.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _extract_metadata(
    rules: list[FieldExtractionRule],
    kind: MetadataFrom,
    metadata: dict[str, str] | None,
    tags: dict[str, str],
    name_format: str,
) -> None:
    for rule in rules:
        if rule.from_ == kind:
            rule.extract(metadata, tags, name_format)


def _automatic_service_instance_id(pod: V1Pod, container_name: str) -> str:
    return ".".join((pod.metadata.namespace or "", pod.metadata.name or "", container_name))


def _strip_runtime_prefix(container_id: str) -> str:
    # "containerd://<id>" -> "<id>"
    parts = container_id.split("://")
    return parts[1] if len(parts) == 2 else container_id


class AttributeExtractor:
    """Turns watched objects into the attribute maps stored in the cache."""

    def __init__(
        self,
        rules: ExtractionRules,
        get_replicaset: ReplicaSetLookup,
        get_namespace: NamespaceLookup,
        needs_container_ids: bool = False,
    ) -> None:
        self.rules = rules
        self.needs_container_ids = needs_container_ids
        self._get_replicaset = get_replicaset
        self._get_namespace = get_namespace

    def pod_attributes(self, pod: V1Pod) -> dict[str, str]:
        rules = self.rules
        metadata = pod.metadata
        spec = pod.spec
        status = pod.status
        tags: dict[str, str] = {}

        if rules.pod_name:
            tags[attr.K8S_POD_NAME] = metadata.name or ""
        if rules.service_name:
            tags[attr.SERVICE_NAME] = metadata.name or ""
        if rules.pod_hostname:
            tags[attr.K8S_POD_HOSTNAME] = (spec.hostname if spec else None) or ""
        if rules.pod_ip:
            tags[attr.K8S_POD_IP] = (status.pod_ip if status else None) or ""
        if rules.namespace:
            tags[attr.K8S_NAMESPACE_NAME] = metadata.namespace or ""
        if rules.start_time and metadata.creation_timestamp is not None:
            try:
                tags[attr.K8S_POD_START_TIME] = format_start_time(metadata.creation_timestamp)
            except (AttributeError, OverflowError, ValueError) as exc:
                _log.error("pod_start_time_format_failed", pod=metadata.name, error=str(exc))
        if rules.pod_uid:
            tags[attr.K8S_POD_UID] = str(metadata.uid or "")

        if rules.includes_owner_metadata():
            for ref in metadata.owner_references or []:
                self._extract_owner(ref, tags)

        if rules.node:
            tags[attr.K8S_NODE_NAME] = (spec.node_name if spec else None) or ""

        if rules.cluster_uid:
            kube_system = self._get_namespace(_KUBE_SYSTEM_NAMESPACE)
            if kube_system is not None:
                tags[attr.K8S_CLUSTER_UID] = kube_system.uid
            else:
                _log.debug("kube_system_namespace_missing", detail="cluster uid will not be available")

        _extract_metadata(rules.labels, MetadataFrom.POD, metadata.labels, tags, attr.POD_LABELS_FORMAT)

        labels = metadata.labels or {}
        if rules.service_name:
            # app.kubernetes.io/instance takes precedence over app.kubernetes.io/name
            for label in (_LABEL_APP_NAME, _LABEL_APP_INSTANCE):
                if label in labels:
                    tags[attr.SERVICE_NAME] = labels[label]
        if rules.service_version and _LABEL_APP_VERSION in labels:
            tags[attr.SERVICE_VERSION] = labels[_LABEL_APP_VERSION]

        _extract_metadata(rules.annotations, MetadataFrom.POD, metadata.annotations, tags, attr.POD_ANNOTATIONS_FORMAT)
        return tags

    def _extract_owner(self, ref: Any, tags: dict[str, str]) -> None:
        rules = self.rules
        uid = str(ref.uid or "")
        name = ref.name or ""
        if ref.kind == "ReplicaSet":
            if rules.replicaset_id:
                tags[attr.K8S_REPLICASET_UID] = uid
            if rules.replicaset_name:
                tags[attr.K8S_REPLICASET_NAME] = name
            if rules.service_name:
                tags[attr.SERVICE_NAME] = name
            if rules.deployment_name or rules.deployment_uid or rules.service_name:
                replicaset = self._get_replicaset(uid)
                if replicaset is not None and replicaset.deployment.name:
                    if rules.deployment_name:
                        tags[attr.K8S_DEPLOYMENT_NAME] = replicaset.deployment.name
                    if rules.deployment_uid:
                        tags[attr.K8S_DEPLOYMENT_UID] = replicaset.deployment.uid
                    if rules.service_name:
                        # deployment name wins over replicaset name
                        tags[attr.SERVICE_NAME] = replicaset.deployment.name
        elif ref.kind == "DaemonSet":
            if rules.daemonset_uid:
                tags[attr.K8S_DAEMONSET_UID] = uid
            if rules.daemonset_name:
                tags[attr.K8S_DAEMONSET_NAME] = name
            if rules.service_name:
                tags[attr.SERVICE_NAME] = name
        elif ref.kind == "StatefulSet":
            if rules.statefulset_uid:
                tags[attr.K8S_STATEFULSET_UID] = uid
            if rules.statefulset_name:
                tags[attr.K8S_STATEFULSET_NAME] = name
            if rules.service_name:
                tags[attr.SERVICE_NAME] = name
        elif ref.kind == "Job":
            if rules.job_uid:
                tags[attr.K8S_JOB_UID] = uid
            if rules.job_name:
                tags[attr.K8S_JOB_NAME] = name
            if rules.service_name:
                tags[attr.SERVICE_NAME] = name
            if rules.cronjob_name or rules.service_name:
                match = _RE_CRONJOB_JOB_NAME.match(name)
                if match:
                    if rules.cronjob_name:
                        tags[attr.K8S_CRONJOB_NAME] = match.group(1)
                    if rules.service_name:
                        # cronjob name wins over job name
                        tags[attr.SERVICE_NAME] = match.group(1)

    def pod_containers(self, pod: V1Pod) -> PodContainers:
        rules = self.rules
        containers = PodContainers()
        if not (rules.needs_container_attributes() or self.needs_container_ids):
            return containers

        spec = pod.spec
        status = pod.status
        needs_spec = (
            rules.container_image_name or rules.container_image_tag or rules.service_version or rules.service_instance_id
        )
        if needs_spec:
            specs = [*(spec.containers or []), *(spec.init_containers or [])] if spec else []
            for container_spec in specs:
                container = Container()
                try:
                    image = parse_image_name(container_spec.image or "")
                except ImageReferenceError as exc:
                    _log.debug("container_image_parse_failed", pod=pod.metadata.name, error=str(exc))
                else:
                    if rules.container_image_name:
                        container.image_name = image.repository
                    if rules.container_image_tag:
                        container.image_tag = image.tag
                    if rules.service_version:
                        try:
                            container.service_version = service_version_from_image(container_spec.image)
                        except ImageReferenceError as exc:
                            _log.debug("service_version_parse_failed", pod=pod.metadata.name, error=str(exc))
                containers.by_name[container_spec.name] = container

        statuses = [*(status.container_statuses or []), *(status.init_container_statuses or [])] if status else []
        for api_status in statuses:
            container = containers.by_name.setdefault(api_status.name, Container())
            if rules.container_name:
                container.name = api_status.name
            if rules.service_instance_id:
                container.service_instance_id = _automatic_service_instance_id(pod, api_status.name)
            container_id = _strip_runtime_prefix(api_status.container_id or "")
            # not yet assigned while the container is being created
            if container_id:
                containers.by_id[container_id] = container
            if rules.container_id or rules.container_image_repo_digests:
                container_status = ContainerStatus()
                if rules.container_id:
                    container_status.container_id = container_id
                if rules.container_image_repo_digests:
                    try:
                        container_status.image_repo_digest = canonical_image_ref(api_status.image_id or "")
                    except ImageReferenceError as exc:
                        _log.debug("container_image_id_parse_failed", pod=pod.metadata.name, error=str(exc))
                container.statuses[int(api_status.restart_count or 0)] = container_status
        return containers

    def namespace_attributes(self, metadata: V1ObjectMeta) -> dict[str, str]:
        return self._object_attributes(
            metadata, MetadataFrom.NAMESPACE, attr.NAMESPACE_LABELS_FORMAT, attr.NAMESPACE_ANNOTATIONS_FORMAT
        )

    def node_attributes(self, metadata: V1ObjectMeta) -> dict[str, str]:
        return self._object_attributes(
            metadata, MetadataFrom.NODE, attr.NODE_LABELS_FORMAT, attr.NODE_ANNOTATIONS_FORMAT
        )

    def deployment_attributes(self, metadata: V1ObjectMeta) -> dict[str, str]:
        return self._object_attributes(
            metadata, MetadataFrom.DEPLOYMENT, attr.DEPLOYMENT_LABEL_FORMAT, attr.DEPLOYMENT_ANNOTATION_FORMAT
        )

    def statefulset_attributes(self, metadata: V1ObjectMeta) -> dict[str, str]:
        return self._object_attributes(
            metadata, MetadataFrom.STATEFULSET, attr.STATEFULSET_LABEL_FORMAT, attr.STATEFULSET_ANNOTATION_FORMAT
        )

    def _object_attributes(
        self,
        metadata: V1ObjectMeta,
        kind: MetadataFrom,
        labels_format: str,
        annotations_format: str,
    ) -> dict[str, str]:
        tags: dict[str, str] = {}
        _extract_metadata(self.rules.labels, kind, metadata.labels, tags, labels_format)
        _extract_metadata(self.rules.annotations, kind, metadata.annotations, tags, annotations_format)
        return tags
