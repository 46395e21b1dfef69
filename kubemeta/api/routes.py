"""Route handlers for the kubemeta HTTP API."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from kubemeta.api.schemas import ContainerResponse, ErrorResponse, HealthResponse, PodResponse
from kubemeta.cache.attributes import K8S_POD_UID
from kubemeta.models.resources import Pod, connection_attribute, make_identifier, resource_attribute

_log = structlog.get_logger(component="api.routes")

router = APIRouter()


def _pod_response(pod: Pod) -> PodResponse:
    return PodResponse(
        name=pod.name,
        namespace=pod.namespace,
        uid=pod.uid,
        node_name=pod.node_name,
        address=pod.address,
        host_network=pod.host_network,
        start_time=pod.start_time,
        deployment_uid=pod.deployment_uid,
        statefulset_uid=pod.statefulset_uid,
        attributes=dict(pod.attributes),
        containers=[
            ContainerResponse(
                name=name,
                image_name=c.image_name,
                image_tag=c.image_tag,
                service_version=c.service_version,
                service_instance_id=c.service_instance_id,
            )
            for name, c in pod.containers.by_name.items()
        ],
    )


def _not_found(detail: str) -> JSONResponse:
    return JSONResponse(status_code=404, content=ErrorResponse(error="POD_NOT_FOUND", detail=detail).model_dump())


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    """Report whether the watch streams have completed their initial sync.

    Always 200: a syncing cache still answers lookups, it may just miss pods.
    """
    from kubemeta import __version__

    client = request.app.state.client
    synced = client.synced
    return HealthResponse(
        status="ok" if synced else "syncing",
        synced=synced,
        pod_table_size=client.pod_table_size,
        version=__version__,
    )


@router.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics in text exposition format."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/api/v1/pods/ip/{address}", response_model=PodResponse, responses={404: {"model": ErrorResponse}})
async def pod_by_ip(address: str, request: Request) -> PodResponse | JSONResponse:
    """Look up a pod by the connection address telemetry arrived from."""
    pod = request.app.state.client.get_pod(make_identifier(connection_attribute(address)))
    if pod is None:
        _log.debug("pod_lookup_miss", by="ip", address=address)
        return _not_found(f"no pod with address {address}")
    return _pod_response(pod)


@router.get("/api/v1/pods/uid/{uid}", response_model=PodResponse, responses={404: {"model": ErrorResponse}})
async def pod_by_uid(uid: str, request: Request) -> PodResponse | JSONResponse:
    """Look up a pod by its UID."""
    pod = request.app.state.client.get_pod(make_identifier(resource_attribute(K8S_POD_UID, uid)))
    if pod is None:
        _log.debug("pod_lookup_miss", by="uid", uid=uid)
        return _not_found(f"no pod with uid {uid}")
    return _pod_response(pod)
