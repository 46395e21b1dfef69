"""Application bootstrap for kubemeta.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → K8s client → watch client → REST

Shutdown is graceful: components are stopped in reverse startup order.
Each component's stop error is caught and logged independently so that a
single failure does not prevent the rest from shutting down cleanly.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

from kubemeta.config import load_config
from kubemeta.models.config import KubeMetaConfig
from kubemeta.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog
    import uvicorn
    from kubernetes_asyncio.client import ApiClient

    from kubemeta.cache.watch_client import WatchClient

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class KubeMetaApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    Calling ``stop()`` on an app that was never started (or already stopped)
    is safe.
    """

    def __init__(self) -> None:
        self.config: KubeMetaConfig | None = None

        self._api_client: ApiClient | None = None
        self._watch_client: WatchClient | None = None
        self._rest_server: uvicorn.Server | None = None
        self._rest_task: asyncio.Task[None] | None = None

        self._running = False
        self._stopped = asyncio.Event()
        self._log: structlog.stdlib.BoundLogger | None = None

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a component cannot start.  The caller
        (main()) turns this into a non-zero exit.
        """
        # --- 1. Configuration -------------------------------------------
        try:
            self.config = load_config()
        except ValueError as exc:
            raise _ComponentError("config", exc) from exc

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info("kubemeta_starting", version=_kubemeta_version())

        # --- 3. Kubernetes client ----------------------------------------
        await self._start_k8s_client()

        # --- 4. Watch client ---------------------------------------------
        await self._start_watch_client()

        # --- 5. REST API -------------------------------------------------
        await self._start_rest()

        self._running = True
        self._log.info("kubemeta_started", port=self.config.api.port)

    async def _start_k8s_client(self) -> None:
        """Initialise the kubernetes-asyncio client from in-cluster config or kubeconfig."""
        assert self._log is not None
        self._log.debug("starting_k8s_client")
        try:
            from kubernetes_asyncio import client as k8s_client
            from kubernetes_asyncio import config as k8s_config

            try:
                # load_incluster_config() is synchronous in kubernetes-asyncio
                k8s_config.load_incluster_config()
                self._log.info("k8s_client_configured", source="in-cluster service account")
            except k8s_config.ConfigException:
                await k8s_config.load_kube_config()
                self._log.info("k8s_client_configured", source="kubeconfig")

            self._api_client = k8s_client.ApiClient()
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    async def _start_watch_client(self) -> None:
        """Build the metadata cache and start its watch streams."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting_watch_client")
        try:
            from kubemeta.cache import WatchClient

            watch_client = WatchClient(self.config, api_client=self._api_client)
            self._watch_client = watch_client
            await watch_client.start()
            self._log.info(
                "watch_client_started",
                wait_for_metadata=self.config.wait_for_metadata,
                pod_table_size=watch_client.pod_table_size,
            )
        except Exception as exc:
            raise _ComponentError("watch_client", exc) from exc

    async def _start_rest(self) -> None:
        """Start the uvicorn server for health, metrics and lookups."""
        assert self._log is not None
        assert self.config is not None
        assert self._watch_client is not None
        self._log.debug("starting_rest_api")
        try:
            import uvicorn

            from kubemeta.api.app import create_app

            uv_config = uvicorn.Config(
                app=create_app(client=self._watch_client),
                host="0.0.0.0",
                port=self.config.api.port,
                log_config=None,  # structlog handles all logging
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            self._rest_task = asyncio.create_task(server.serve(), name="rest-server")
            self._rest_server = server
            self._log.info("rest_api_started", port=self.config.api.port)
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def stop(self) -> None:
        """Gracefully stop all components in reverse startup order."""
        if self._log is None or self._stopped.is_set():
            # Never started, or already stopped
            self._stopped.set()
            return

        log = self._log
        log.info("kubemeta_shutting_down")
        self._running = False

        await self._stop_rest()
        if self._watch_client is not None:
            await self._stop_step("watch_client", self._watch_client.stop())
        if self._api_client is not None:
            await self._stop_step("k8s_client", self._api_client.close())

        self._stopped.set()
        log.info("kubemeta_stopped")

    async def _stop_rest(self) -> None:
        if self._rest_server is None or self._rest_task is None:
            return
        self._rest_server.should_exit = True
        await self._stop_step("rest", asyncio.shield(self._rest_task))
        if not self._rest_task.done():
            self._rest_task.cancel()
            await asyncio.gather(self._rest_task, return_exceptions=True)

    async def _stop_step(self, name: str, awaitable: object) -> None:
        """Await one component's teardown, catching all errors."""
        log = self._log or get_logger("app")
        try:
            await asyncio.wait_for(awaitable, timeout=_SHUTDOWN_GRACE_SECONDS)  # type: ignore[arg-type]
        except TimeoutError:
            log.warning("component_stop_timed_out", component=name, timeout=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component_stop_failed", component=name, error=str(exc))


def _kubemeta_version() -> str:
    from kubemeta import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main() -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = KubeMetaApp()
    loop = asyncio.get_running_loop()

    shutdown_triggered = False

    def _request_shutdown() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            return
        shutdown_triggered = True
        asyncio.create_task(app.stop(), name="shutdown")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await app.start()
        await app.wait_stopped()
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical(
            "fatal_startup_error",
            component=exc.component,
            error=str(exc.cause),
        )
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if app._running:
            await app.stop()
