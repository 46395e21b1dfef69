"""Pydantic response models for the kubemeta HTTP API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Error envelope returned for every non-2xx response."""

    error: str
    detail: str = ""


class HealthResponse(BaseModel):
    status: str = Field(description="'ok' once every watch stream has synced, 'syncing' before that")
    synced: bool
    pod_table_size: int
    version: str


class ContainerResponse(BaseModel):
    name: str = ""
    image_name: str = ""
    image_tag: str = ""
    service_version: str = ""
    service_instance_id: str = ""


class PodResponse(BaseModel):
    """Cached pod record as returned by the lookup endpoint."""

    name: str
    namespace: str
    uid: str
    node_name: str
    address: str
    host_network: bool
    start_time: datetime | None
    deployment_uid: str
    statefulset_uid: str
    attributes: dict[str, str]
    containers: list[ContainerResponse]
