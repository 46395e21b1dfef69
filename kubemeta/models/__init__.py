"""Core data structures for kubemeta."""

from kubemeta.models.config import (
    Association,
    AssociationSource,
    AssociationSourceKind,
    Excludes,
    ExcludePodConfig,
    ExtractionRules,
    FieldExtractionRule,
    FieldFilter,
    FilterOperator,
    Filters,
    KubeMetaConfig,
    MetadataFrom,
)
from kubemeta.models.resources import (
    Container,
    ContainerStatus,
    DeleteRequest,
    Deployment,
    DeploymentRef,
    Namespace,
    Node,
    Pod,
    PodContainers,
    PodIdentifier,
    PodIdentifierAttribute,
    ReplicaSet,
    StatefulSet,
    connection_attribute,
    make_identifier,
    resource_attribute,
)

__all__ = [
    "Association",
    "AssociationSource",
    "AssociationSourceKind",
    "Container",
    "ContainerStatus",
    "DeleteRequest",
    "Deployment",
    "DeploymentRef",
    "ExcludePodConfig",
    "Excludes",
    "ExtractionRules",
    "FieldExtractionRule",
    "FieldFilter",
    "FilterOperator",
    "Filters",
    "KubeMetaConfig",
    "MetadataFrom",
    "Namespace",
    "Node",
    "Pod",
    "PodContainers",
    "PodIdentifier",
    "PodIdentifierAttribute",
    "ReplicaSet",
    "StatefulSet",
    "connection_attribute",
    "make_identifier",
    "resource_attribute",
]
