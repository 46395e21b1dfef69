"""Cached metadata records and pod identifiers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from kubemeta.models.config import AssociationSource, AssociationSourceKind

# Upper bound on the number of sources in an association rule.
POD_IDENTIFIER_MAX_SIZE = 4


@dataclass(frozen=True)
class PodIdentifierAttribute:
    """One (source-kind, key, value) slot of a :data:`PodIdentifier`.

    Connection attributes carry no key; the default instance is the empty slot.
    """

    source: AssociationSourceKind | None = None
    name: str = ""
    value: str = ""


# Fixed-size tuple of POD_IDENTIFIER_MAX_SIZE attributes; unused slots are empty.
PodIdentifier = tuple[PodIdentifierAttribute, ...]

_EMPTY_ATTRIBUTE = PodIdentifierAttribute()


def make_identifier(*attributes: PodIdentifierAttribute) -> PodIdentifier:
    """Build a PodIdentifier, padding unused slots with empty attributes."""
    if len(attributes) > POD_IDENTIFIER_MAX_SIZE:
        raise ValueError(f"pod identifier supports at most {POD_IDENTIFIER_MAX_SIZE} attributes, got {len(attributes)}")
    return tuple(attributes) + (_EMPTY_ATTRIBUTE,) * (POD_IDENTIFIER_MAX_SIZE - len(attributes))


def connection_attribute(value: str) -> PodIdentifierAttribute:
    return PodIdentifierAttribute(source=AssociationSourceKind.CONNECTION, value=value)


def resource_attribute(name: str, value: str) -> PodIdentifierAttribute:
    return PodIdentifierAttribute(source=AssociationSourceKind.RESOURCE_ATTRIBUTE, name=name, value=value)


def attribute_from_source(source: AssociationSource, value: str) -> PodIdentifierAttribute:
    if source.from_ == AssociationSourceKind.CONNECTION:
        return connection_attribute(value)
    return resource_attribute(source.name, value)


@dataclass
class ContainerStatus:
    """Per-restart state of a container."""

    container_id: str = ""
    image_repo_digest: str = ""


@dataclass
class Container:
    """Container-level attributes, populated according to extraction rules."""

    name: str = ""
    image_name: str = ""
    image_tag: str = ""
    service_version: str = ""
    service_instance_id: str = ""
    # restart count -> status
    statuses: dict[int, ContainerStatus] = field(default_factory=dict)


@dataclass
class PodContainers:
    by_id: dict[str, Container] = field(default_factory=dict)
    by_name: dict[str, Container] = field(default_factory=dict)


@dataclass(frozen=True)
class Pod:
    """Enriched pod record.  Never mutated; updates replace it wholesale."""

    name: str
    namespace: str
    uid: str = ""
    node_name: str = ""
    address: str = ""
    host_network: bool = False
    start_time: datetime | None = None
    deployment_uid: str = ""
    statefulset_uid: str = ""
    ignore: bool = False
    attributes: dict[str, str] = field(default_factory=dict)
    containers: PodContainers = field(default_factory=PodContainers)


@dataclass(frozen=True)
class Namespace:
    name: str
    uid: str = ""
    start_time: datetime | None = None
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Node:
    name: str
    uid: str = ""
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Deployment:
    name: str
    uid: str = ""
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StatefulSet:
    name: str
    uid: str = ""
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DeploymentRef:
    """Owning deployment as read from a replicaset's owner references."""

    name: str = ""
    uid: str = ""


@dataclass(frozen=True)
class ReplicaSet:
    """Cross-reference used to resolve pod -> replicaset -> deployment."""

    name: str
    namespace: str
    uid: str
    deployment: DeploymentRef = field(default_factory=DeploymentRef)


@dataclass(frozen=True)
class DeleteRequest:
    """A pending removal of one identifier, applied after the grace period."""

    identifier: PodIdentifier
    pod_name: str
    # time.monotonic() seconds at enqueue
    ts: float
