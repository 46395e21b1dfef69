"""Attribute keys written into cached records.

Standard keys come from the OpenTelemetry semantic conventions; the rest are
names used by this cache for values the conventions do not cover.
"""

from __future__ import annotations

from opentelemetry.semconv._incubating.attributes import (
    container_attributes,
    host_attributes,
    k8s_attributes,
    service_attributes,
)

K8S_POD_NAME = k8s_attributes.K8S_POD_NAME
K8S_POD_UID = k8s_attributes.K8S_POD_UID
K8S_NAMESPACE_NAME = k8s_attributes.K8S_NAMESPACE_NAME
K8S_NODE_NAME = k8s_attributes.K8S_NODE_NAME
K8S_NODE_UID = k8s_attributes.K8S_NODE_UID
K8S_CLUSTER_UID = k8s_attributes.K8S_CLUSTER_UID
K8S_REPLICASET_UID = k8s_attributes.K8S_REPLICASET_UID
K8S_REPLICASET_NAME = k8s_attributes.K8S_REPLICASET_NAME
K8S_DEPLOYMENT_NAME = k8s_attributes.K8S_DEPLOYMENT_NAME
K8S_DEPLOYMENT_UID = k8s_attributes.K8S_DEPLOYMENT_UID
K8S_DAEMONSET_UID = k8s_attributes.K8S_DAEMONSET_UID
K8S_DAEMONSET_NAME = k8s_attributes.K8S_DAEMONSET_NAME
K8S_STATEFULSET_UID = k8s_attributes.K8S_STATEFULSET_UID
K8S_STATEFULSET_NAME = k8s_attributes.K8S_STATEFULSET_NAME
K8S_JOB_UID = k8s_attributes.K8S_JOB_UID
K8S_JOB_NAME = k8s_attributes.K8S_JOB_NAME
K8S_CRONJOB_NAME = k8s_attributes.K8S_CRONJOB_NAME
K8S_CONTAINER_NAME = k8s_attributes.K8S_CONTAINER_NAME
CONTAINER_ID = container_attributes.CONTAINER_ID
CONTAINER_IMAGE_NAME = container_attributes.CONTAINER_IMAGE_NAME
CONTAINER_IMAGE_REPO_DIGESTS = container_attributes.CONTAINER_IMAGE_REPO_DIGESTS
HOST_NAME = host_attributes.HOST_NAME
SERVICE_NAME = service_attributes.SERVICE_NAME
SERVICE_VERSION = service_attributes.SERVICE_VERSION
SERVICE_INSTANCE_ID = service_attributes.SERVICE_INSTANCE_ID

# Keys the semantic conventions do not define.
K8S_POD_IP = "k8s.pod.ip"
K8S_POD_HOSTNAME = "k8s.pod.hostname"
K8S_POD_START_TIME = "k8s.pod.start_time"
CONTAINER_IMAGE_TAG = "container.image.tag"

# Pods carrying this annotation with value "true" are never returned by lookups.
IGNORE_ANNOTATION = "kubemeta.io/ignore"

# Name formats for label/annotation rules without an explicit tag name.
POD_LABELS_FORMAT = "k8s.pod.labels.%s"
POD_ANNOTATIONS_FORMAT = "k8s.pod.annotations.%s"
NODE_LABELS_FORMAT = "k8s.node.labels.%s"
NODE_ANNOTATIONS_FORMAT = "k8s.node.annotations.%s"
NAMESPACE_LABELS_FORMAT = "k8s.namespace.labels.%s"
NAMESPACE_ANNOTATIONS_FORMAT = "k8s.namespace.annotations.%s"
DEPLOYMENT_LABEL_FORMAT = "k8s.deployment.label.%s"
DEPLOYMENT_ANNOTATION_FORMAT = "k8s.deployment.annotation.%s"
STATEFULSET_LABEL_FORMAT = "k8s.statefulset.label.%s"
STATEFULSET_ANNOTATION_FORMAT = "k8s.statefulset.annotation.%s"
