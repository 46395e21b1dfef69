"""Derivation of the identifiers a pod can be looked up by.

A pod is reachable through every identifier produced here.  Each association
rule yields at most one identifier, except rules containing ``container.id``,
which fan out to one identifier per container ID on the pod.  Two fallback
identifiers (pod UID and pod address) are always appended so callers with
partial context can still resolve the pod.
"""

from __future__ import annotations

from collections.abc import Sequence

from kubemeta.cache.attributes import (
    CONTAINER_ID,
    HOST_NAME,
    K8S_NAMESPACE_NAME,
    K8S_POD_IP,
    K8S_POD_NAME,
    K8S_POD_UID,
)
from kubemeta.models.config import Association, AssociationSourceKind
from kubemeta.models.resources import (
    POD_IDENTIFIER_MAX_SIZE,
    Pod,
    PodIdentifier,
    PodIdentifierAttribute,
    attribute_from_source,
    connection_attribute,
    make_identifier,
    resource_attribute,
)


def validate_associations(associations: Sequence[Association]) -> None:
    """Reject association rules that cannot produce identifiers.

    Raises:
        ValueError: a rule is empty, too long, or has an unnamed resource source.
    """
    for i, assoc in enumerate(associations):
        if not assoc.sources:
            raise ValueError(f"association {i} has no sources")
        if len(assoc.sources) > POD_IDENTIFIER_MAX_SIZE:
            raise ValueError(
                f"association {i} has {len(assoc.sources)} sources, at most {POD_IDENTIFIER_MAX_SIZE} are supported"
            )
        for source in assoc.sources:
            if source.from_ == AssociationSourceKind.RESOURCE_ATTRIBUTE and not source.name:
                raise ValueError(f"association {i} has a resource_attribute source without a name")


def _resource_value(pod: Pod, name: str) -> str:
    if name == K8S_NAMESPACE_NAME:
        return pod.namespace
    if name == K8S_POD_NAME:
        return pod.name
    if name == K8S_POD_UID:
        return pod.uid
    # host.name and k8s.pod.ip both carry the pod address on the telemetry side
    if name in (HOST_NAME, K8S_POD_IP):
        return pod.address
    return pod.attributes.get(name, "")


def _identifiers_for_rule(pod: Pod, assoc: Association) -> list[PodIdentifier]:
    slots: list[PodIdentifierAttribute] = []
    container_slot = -1
    for i, source in enumerate(assoc.sources):
        if source.from_ == AssociationSourceKind.CONNECTION:
            # host-network pods share the node address and cannot be told apart
            if not pod.address or pod.host_network:
                return []
            slots.append(connection_attribute(pod.address))
            continue
        if source.name == CONTAINER_ID:
            container_slot = i
            slots.append(PodIdentifierAttribute())
            continue
        value = _resource_value(pod, source.name)
        if not value:
            return []
        slots.append(attribute_from_source(source, value))

    if container_slot == -1:
        return [make_identifier(*slots)]

    identifiers = []
    for container_id in pod.containers.by_id:
        filled = list(slots)
        filled[container_slot] = resource_attribute(CONTAINER_ID, container_id)
        identifiers.append(make_identifier(*filled))
    return identifiers


def identifiers_for(pod: Pod, associations: Sequence[Association]) -> list[PodIdentifier]:
    """Return every identifier *pod* should be reachable through.

    Order follows the association rules, then the UID fallback, then the
    address fallbacks.  Duplicates are possible and harmless.
    """
    ids: list[PodIdentifier] = []
    for assoc in associations:
        ids.extend(_identifiers_for_rule(pod, assoc))

    if pod.uid:
        ids.append(make_identifier(resource_attribute(K8S_POD_UID, pod.uid)))

    if pod.address and not pod.host_network:
        ids.append(make_identifier(connection_attribute(pod.address)))
        ids.append(make_identifier(resource_attribute(K8S_POD_IP, pod.address)))

    return ids
