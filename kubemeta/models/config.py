"""Configuration data structures."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum

_DEFAULT_WAIT_FOR_METADATA_TIMEOUT = 10.0
_DEFAULT_DELETE_INTERVAL = 30.0
_DEFAULT_DELETE_GRACE_PERIOD = 5.0

# "$1" / "${1}" references to key_regex capture groups inside a tag name
_RE_GROUP_REFERENCE = re.compile(r"\$\{?(\d+)\}?")


class AssociationSourceKind(StrEnum):
    """Where an identifier attribute is taken from on the telemetry side."""

    CONNECTION = "connection"
    RESOURCE_ATTRIBUTE = "resource_attribute"


class MetadataFrom(StrEnum):
    """Object kind a label/annotation extraction rule reads from."""

    POD = "pod"
    NAMESPACE = "namespace"
    NODE = "node"
    DEPLOYMENT = "deployment"
    STATEFULSET = "statefulset"


class FilterOperator(StrEnum):
    """Selector operators accepted by label and field filters."""

    EQUALS = "="
    DOUBLE_EQUALS = "=="
    NOT_EQUALS = "!="
    EXISTS = "exists"
    DOES_NOT_EXIST = "!"
    IN = "in"
    NOT_IN = "notin"


@dataclass(frozen=True)
class FieldExtractionRule:
    """Copies a label or annotation value into the attribute map.

    Exactly one of ``key`` or ``key_regex`` is set.  With ``key_regex`` every
    matching metadata key is extracted and ``tag_name`` may reference capture
    groups as ``$1``.  An empty ``tag_name`` falls back to the kind's default
    naming format.
    """

    tag_name: str = ""
    key: str = ""
    key_regex: re.Pattern[str] | None = None
    from_: MetadataFrom = MetadataFrom.POD

    def extract(self, metadata: dict[str, str] | None, tags: dict[str, str], name_format: str) -> None:
        if not metadata:
            return
        if self.key_regex is None:
            if self.key in metadata:
                tags[self.tag_name or name_format % self.key] = metadata[self.key]
            return
        for key, value in metadata.items():
            match = self.key_regex.fullmatch(key)
            if match is None or value == "":
                continue
            if self.tag_name and _RE_GROUP_REFERENCE.search(self.tag_name):
                name = _RE_GROUP_REFERENCE.sub(lambda m: match.group(int(m.group(1))) or "", self.tag_name)
            else:
                name = name_format % key
            tags[name] = value


@dataclass
class ExtractionRules:
    """Which attributes are extracted from pods and their related objects."""

    pod_name: bool = False
    pod_uid: bool = False
    pod_hostname: bool = False
    pod_ip: bool = False
    namespace: bool = False
    start_time: bool = False
    node: bool = False
    node_uid: bool = False
    cluster_uid: bool = False
    replicaset_id: bool = False
    replicaset_name: bool = False
    daemonset_uid: bool = False
    daemonset_name: bool = False
    job_uid: bool = False
    job_name: bool = False
    cronjob_name: bool = False
    statefulset_uid: bool = False
    statefulset_name: bool = False
    deployment_name: bool = False
    deployment_uid: bool = False
    service_name: bool = False
    service_version: bool = False
    service_instance_id: bool = False
    container_name: bool = False
    container_id: bool = False
    container_image_name: bool = False
    container_image_tag: bool = False
    container_image_repo_digests: bool = False
    labels: list[FieldExtractionRule] = field(default_factory=list)
    annotations: list[FieldExtractionRule] = field(default_factory=list)

    def includes_owner_metadata(self) -> bool:
        return any(
            (
                self.cronjob_name,
                self.deployment_name,
                self.deployment_uid,
                self.daemonset_uid,
                self.daemonset_name,
                self.job_name,
                self.job_uid,
                self.replicaset_id,
                self.replicaset_name,
                self.statefulset_uid,
                self.statefulset_name,
                self.service_name,
            )
        )

    def needs_container_attributes(self) -> bool:
        return any(
            (
                self.container_image_name,
                self.container_name,
                self.container_image_tag,
                self.container_image_repo_digests,
                self.container_id,
                self.service_version,
                self.service_instance_id,
            )
        )

    def extracts_metadata_from(self, kind: MetadataFrom) -> bool:
        """Return True if any label or annotation rule reads from *kind*."""
        return any(r.from_ == kind for r in (*self.labels, *self.annotations))


@dataclass(frozen=True)
class FieldFilter:
    """A single label or field selector term."""

    key: str
    value: str = ""
    op: FilterOperator = FilterOperator.EQUALS


@dataclass
class Filters:
    """Server-side scoping of the pod watch."""

    namespace: str = ""
    node: str = ""
    labels: list[FieldFilter] = field(default_factory=list)
    fields: list[FieldFilter] = field(default_factory=list)


@dataclass(frozen=True)
class AssociationSource:
    """One element of an association rule."""

    from_: AssociationSourceKind
    name: str = ""


@dataclass(frozen=True)
class Association:
    """Ordered recipe for deriving an identifier from telemetry context."""

    sources: tuple[AssociationSource, ...]


@dataclass(frozen=True)
class ExcludePodConfig:
    """Pods whose name matches ``name`` are cached but never returned."""

    name: re.Pattern[str]


@dataclass
class Excludes:
    pods: list[ExcludePodConfig] = field(default_factory=list)


@dataclass
class APIConfig:
    """Health and metrics HTTP endpoint configuration."""

    port: int = 8080


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class KubeMetaConfig:
    """Top-level kubemeta configuration."""

    extract: ExtractionRules = field(default_factory=ExtractionRules)
    filters: Filters = field(default_factory=Filters)
    associations: list[Association] = field(default_factory=list)
    exclude: Excludes = field(default_factory=Excludes)
    wait_for_metadata: bool = False
    wait_for_metadata_timeout: float = _DEFAULT_WAIT_FOR_METADATA_TIMEOUT
    delete_interval: float = _DEFAULT_DELETE_INTERVAL
    delete_grace_period: float = _DEFAULT_DELETE_GRACE_PERIOD
    api: APIConfig = field(default_factory=APIConfig)
    log: LogConfig = field(default_factory=LogConfig)
