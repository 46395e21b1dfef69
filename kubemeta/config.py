"""Configuration loading from environment variables."""

from __future__ import annotations

import os
import re

from kubemeta.cache import attributes as attr
from kubemeta.models.config import (
    APIConfig,
    Association,
    AssociationSource,
    AssociationSourceKind,
    ExcludePodConfig,
    Excludes,
    ExtractionRules,
    FieldExtractionRule,
    FieldFilter,
    FilterOperator,
    Filters,
    KubeMetaConfig,
    LogConfig,
    MetadataFrom,
)

# attribute key accepted in KUBEMETA_EXTRACT_METADATA -> ExtractionRules field
_METADATA_FIELDS: dict[str, str] = {
    attr.K8S_NAMESPACE_NAME: "namespace",
    attr.K8S_POD_NAME: "pod_name",
    attr.K8S_POD_UID: "pod_uid",
    attr.K8S_POD_HOSTNAME: "pod_hostname",
    attr.K8S_POD_IP: "pod_ip",
    attr.K8S_POD_START_TIME: "start_time",
    attr.K8S_DEPLOYMENT_NAME: "deployment_name",
    attr.K8S_DEPLOYMENT_UID: "deployment_uid",
    attr.K8S_REPLICASET_NAME: "replicaset_name",
    attr.K8S_REPLICASET_UID: "replicaset_id",
    attr.K8S_DAEMONSET_NAME: "daemonset_name",
    attr.K8S_DAEMONSET_UID: "daemonset_uid",
    attr.K8S_STATEFULSET_NAME: "statefulset_name",
    attr.K8S_STATEFULSET_UID: "statefulset_uid",
    attr.K8S_JOB_NAME: "job_name",
    attr.K8S_JOB_UID: "job_uid",
    attr.K8S_CRONJOB_NAME: "cronjob_name",
    attr.K8S_NODE_NAME: "node",
    attr.K8S_NODE_UID: "node_uid",
    attr.K8S_CLUSTER_UID: "cluster_uid",
    attr.K8S_CONTAINER_NAME: "container_name",
    attr.CONTAINER_ID: "container_id",
    attr.CONTAINER_IMAGE_NAME: "container_image_name",
    attr.CONTAINER_IMAGE_TAG: "container_image_tag",
    attr.CONTAINER_IMAGE_REPO_DIGESTS: "container_image_repo_digests",
    attr.SERVICE_NAME: "service_name",
    attr.SERVICE_VERSION: "service_version",
    attr.SERVICE_INSTANCE_ID: "service_instance_id",
}

_DEFAULT_EXTRACT_METADATA = ",".join(
    (
        attr.K8S_NAMESPACE_NAME,
        attr.K8S_POD_NAME,
        attr.K8S_POD_UID,
        attr.K8S_POD_START_TIME,
        attr.K8S_DEPLOYMENT_NAME,
        attr.K8S_NODE_NAME,
        attr.CONTAINER_IMAGE_NAME,
        attr.CONTAINER_IMAGE_TAG,
    )
)

_DEFAULT_EXCLUDE_PODS = "jaeger-agent,jaeger-collector"

# "<from>:<key>[=<tag_name>]", a key starting with "~" is a regular expression
_RE_FIELD_RULE = re.compile(r"^(?P<from>[a-z]+):(?P<key>[^=]+)(?:=(?P<tag>.+))?$")


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"KUBEMETA_{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower())
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _env_float(key: str, default: float, min_val: float | None = None) -> float:
    val = float(_env(key, str(default)))
    if min_val is not None and val < min_val:
        raise ValueError(f"KUBEMETA_{key} must be at least {min_val:g}, got {val:g}")
    return val


def _split(value: str, sep: str = ",") -> list[str]:
    return [item.strip() for item in value.split(sep) if item.strip()]


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def parse_extract_metadata(value: str) -> ExtractionRules:
    """Turn a comma-separated list of attribute keys into extraction toggles."""
    rules = ExtractionRules()
    for key in _split(value):
        field_name = _METADATA_FIELDS.get(key)
        if field_name is None:
            raise ValueError(f"\"{key}\" is not a supported metadata field")
        setattr(rules, field_name, True)
    return rules


def parse_field_rules(value: str) -> list[FieldExtractionRule]:
    """Parse ``<from>:<key>[=<tag_name>]`` label/annotation rules.

    A key prefixed with ``~`` is compiled as a regular expression.
    """
    rules = []
    for item in _split(value):
        match = _RE_FIELD_RULE.match(item)
        if match is None:
            raise ValueError(f"Invalid field extraction rule: {item}")
        try:
            from_ = MetadataFrom(match.group("from"))
        except ValueError:
            raise ValueError(f"{match.group('from')!r} is not a valid rule source") from None
        key = match.group("key")
        tag_name = match.group("tag") or ""
        if key.startswith("~"):
            try:
                pattern = re.compile(key[1:])
            except re.error as exc:
                raise ValueError(f"Invalid key regex {key[1:]!r}: {exc}") from exc
            rules.append(FieldExtractionRule(tag_name=tag_name, key_regex=pattern, from_=from_))
        else:
            rules.append(FieldExtractionRule(tag_name=tag_name, key=key, from_=from_))
    return rules


def parse_associations(value: str) -> list[Association]:
    """Parse association rules.

    Rules are separated by ``;`` and their sources by ``,``.  A source is
    either ``connection`` or ``resource_attribute:<name>``.
    """
    associations = []
    for rule in _split(value, ";"):
        sources = []
        for item in _split(rule):
            kind, _, name = item.partition(":")
            try:
                source_kind = AssociationSourceKind(kind)
            except ValueError:
                raise ValueError(f"{kind!r} is not a valid association source") from None
            if source_kind == AssociationSourceKind.RESOURCE_ATTRIBUTE and not name:
                raise ValueError(f"association source {item!r} is missing an attribute name")
            sources.append(AssociationSource(from_=source_kind, name=name))
        associations.append(Association(sources=tuple(sources)))
    return associations


def parse_exclude_pods(value: str) -> Excludes:
    """Compile comma-separated pod name patterns; each must match the whole name."""
    pods = []
    for pattern in _split(value):
        try:
            pods.append(ExcludePodConfig(name=re.compile(f"^{pattern}$")))
        except re.error as exc:
            raise ValueError(f"Invalid exclude pattern {pattern!r}: {exc}") from exc
    return Excludes(pods=pods)


def parse_filters(value: str) -> list[FieldFilter]:
    """Parse comma-separated selector terms.

    Accepts ``key=value``, ``key==value``, ``key!=value``, ``key`` (exists) and
    ``!key`` (does not exist).
    """
    filters = []
    for term in _split(value):
        for op in (FilterOperator.NOT_EQUALS, FilterOperator.DOUBLE_EQUALS, FilterOperator.EQUALS):
            key, sep, rest = term.partition(op.value)
            if sep:
                filters.append(FieldFilter(key=key.strip(), value=rest.strip(), op=op))
                break
        else:
            if term.startswith("!"):
                filters.append(FieldFilter(key=term[1:].strip(), op=FilterOperator.DOES_NOT_EXIST))
            else:
                filters.append(FieldFilter(key=term, op=FilterOperator.EXISTS))
        if not filters[-1].key:
            raise ValueError(f"filter term {term!r} has no key")
    return filters


def _node_filter() -> str:
    # the node name is usually injected through the downward API
    env_var = _env("FILTER_NODE_FROM_ENV_VAR", "")
    if env_var:
        node = os.environ.get(env_var, "")
        if not node:
            raise ValueError(f"KUBEMETA_FILTER_NODE_FROM_ENV_VAR is set to {env_var!r} but that variable is empty")
        return node
    return _env("FILTER_NODE", "")


def load_config() -> KubeMetaConfig:
    """Load configuration from KUBEMETA_* environment variables."""
    extract = parse_extract_metadata(_env("EXTRACT_METADATA", _DEFAULT_EXTRACT_METADATA))
    extract.labels = parse_field_rules(_env("EXTRACT_LABELS", ""))
    extract.annotations = parse_field_rules(_env("EXTRACT_ANNOTATIONS", ""))
    return KubeMetaConfig(
        extract=extract,
        filters=Filters(
            namespace=_env("FILTER_NAMESPACE", ""),
            node=_node_filter(),
            labels=parse_filters(_env("FILTER_LABELS", "")),
            fields=parse_filters(_env("FILTER_FIELDS", "")),
        ),
        associations=parse_associations(_env("POD_ASSOCIATION", "")),
        exclude=parse_exclude_pods(_env("EXCLUDE_PODS", _DEFAULT_EXCLUDE_PODS)),
        wait_for_metadata=_env_bool("WAIT_FOR_METADATA", False),
        wait_for_metadata_timeout=_env_float("WAIT_FOR_METADATA_TIMEOUT", 10.0, min_val=0.0),
        delete_interval=_env_float("DELETE_INTERVAL", 30.0, min_val=1.0),
        delete_grace_period=_env_float("DELETE_GRACE_PERIOD", 5.0, min_val=0.0),
        api=APIConfig(
            port=_env_int("METRICS_PORT", 8080, min_val=1024, max_val=65535),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
        ),
    )
