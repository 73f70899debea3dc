"""
Health check endpoints for the pipeline process.

Provides Kubernetes-compatible health check endpoints:
- /health/live - Liveness probe (is the event loop responsive?)
- /health/ready - Readiness probe (are the queues attached and the store open?)

Usage:
    from workpipe.common.health import HealthCheckServer

    health_server = HealthCheckServer(port=8080, worker_name="workpipe")
    await health_server.start()
    health_server.set_ready(queues_ready=True, store_ready=True)
    ...
    await health_server.stop()

The server runs its own event loop in a daemon thread so a stalled pipeline
loop cannot stop the probes from answering.
"""

import asyncio
import logging
import threading
import time
from datetime import UTC, datetime

from aiohttp import web

logger = logging.getLogger(__name__)


class HealthCheckServer:
    """
    HTTP server for Kubernetes health check endpoints.

    Liveness:
        200 while the pipeline loop keeps calling ``record_heartbeat()``;
        503 once the last heartbeat is older than the timeout.

    Readiness:
        200 when queues are attached and the work store is open, 503
        otherwise. A configuration error reported with ``set_error()`` is
        returned as 200 with status "error" so a rollout can complete and
        the error stays inspectable.
    """

    def __init__(
        self,
        port: int | None = 8080,
        worker_name: str = "workpipe",
        enabled: bool = True,
        heartbeat_timeout_seconds: float = 60.0,
    ):
        """
        Args:
            port: HTTP port. 0 picks a free port, None disables the server
            worker_name: Name reported in responses and logs
            enabled: If False, start() and stop() are no-ops
            heartbeat_timeout_seconds: Max heartbeat age before liveness fails.
                0 disables heartbeat checking.
        """
        self.port = port
        self.worker_name = worker_name
        self._enabled = enabled and port is not None
        self._ready = False
        self._queues_ready = False
        self._store_ready = False
        self._started_at = datetime.now(UTC)
        self._actual_port: int | None = None
        self._error_message: str | None = None

        self._heartbeat_timeout_seconds = heartbeat_timeout_seconds
        self._last_heartbeat: float | None = None

        self._runner: web.AppRunner | None = None

        self._thread: threading.Thread | None = None
        self._server_started = threading.Event()
        self._shutdown_event = threading.Event()
        self._state_lock = threading.Lock()

    def set_ready(self, queues_ready: bool, store_ready: bool | None = None) -> None:
        """Update readiness from the pipeline's current state."""
        with self._state_lock:
            self._queues_ready = queues_ready
            if store_ready is not None:
                self._store_ready = store_ready

            old_ready = self._ready
            self._ready = self._queues_ready and self._store_ready

            if old_ready != self._ready:
                logger.info(
                    f"Readiness status changed: {old_ready} -> {self._ready}",
                    extra={
                        "worker_name": self.worker_name,
                        "queues_ready": self._queues_ready,
                        "store_ready": self._store_ready,
                    },
                )

    def set_error(self, error_message: str) -> None:
        """Report a startup/configuration error; readiness drops."""
        with self._state_lock:
            self._error_message = error_message
            self._ready = False
        logger.error(
            f"Health check error state set: {error_message}",
            extra={"worker_name": self.worker_name, "error": error_message},
        )

    def record_heartbeat(self) -> None:
        with self._state_lock:
            self._last_heartbeat = time.monotonic()

    async def handle_liveness(self, request: web.Request) -> web.Response:
        with self._state_lock:
            last_hb = self._last_heartbeat

        now = datetime.now(UTC)
        uptime_seconds = int((now - self._started_at).total_seconds())
        hb_timeout = self._heartbeat_timeout_seconds

        if hb_timeout > 0 and last_hb is not None:
            staleness = time.monotonic() - last_hb
            if staleness > hb_timeout:
                logger.warning(
                    "Liveness check failed: event loop heartbeat stale",
                    extra={
                        "worker_name": self.worker_name,
                        "staleness_seconds": round(staleness, 1),
                    },
                )
                return web.json_response(
                    {
                        "status": "unhealthy",
                        "reason": "event_loop_stale",
                        "worker": self.worker_name,
                        "heartbeat_staleness_seconds": round(staleness, 1),
                        "uptime_seconds": uptime_seconds,
                        "timestamp": now.isoformat(),
                    },
                    status=503,
                )

        return web.json_response(
            {
                "status": "alive",
                "worker": self.worker_name,
                "uptime_seconds": uptime_seconds,
                "timestamp": now.isoformat(),
            },
            status=200,
        )

    async def handle_readiness(self, request: web.Request) -> web.Response:
        with self._state_lock:
            error_message = self._error_message
            ready = self._ready
            checks = {"queues_ready": self._queues_ready, "store_ready": self._store_ready}

        timestamp = datetime.now(UTC).isoformat()

        if error_message:
            return web.json_response(
                {
                    "status": "error",
                    "worker": self.worker_name,
                    "error": error_message,
                    "reasons": ["configuration_error"],
                    "timestamp": timestamp,
                },
                status=200,
            )

        if ready:
            return web.json_response(
                {"status": "ready", "worker": self.worker_name, "checks": checks, "timestamp": timestamp},
                status=200,
            )

        reasons = [name.replace("_ready", "_not_ready") for name, ok in checks.items() if not ok]
        return web.json_response(
            {
                "status": "not_ready",
                "worker": self.worker_name,
                "reasons": reasons,
                "checks": checks,
                "timestamp": timestamp,
            },
            status=503,
        )

    def create_app(self) -> web.Application:
        """Create aiohttp application with health endpoints."""
        app = web.Application()
        app.router.add_get("/health/live", self.handle_liveness)
        app.router.add_get("/health/ready", self.handle_readiness)
        return app

    def _run_server_thread(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(self._serve())
        except Exception as e:
            logger.error(
                f"Health server thread error: {e}",
                extra={"worker_name": self.worker_name},
                exc_info=True,
            )
        finally:
            self._server_started.set()
            loop.close()

    async def _serve(self) -> None:
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        try:
            site = web.TCPSite(self._runner, "0.0.0.0", self.port, reuse_address=True)
            try:
                await site.start()
            except OSError as e:
                if self.port == 0:
                    raise
                logger.warning(
                    f"Port {self.port} unavailable ({e}), falling back to dynamic port",
                    extra={"worker_name": self.worker_name},
                )
                site = web.TCPSite(self._runner, "0.0.0.0", 0, reuse_address=True)
                await site.start()

            server = site._server
            if server is not None and server.sockets:
                self._actual_port = server.sockets[0].getsockname()[1]
            else:
                self._actual_port = self.port

            logger.info(
                "Health check server started",
                extra={
                    "worker_name": self.worker_name,
                    "port": self._actual_port,
                    "liveness_endpoint": f"http://localhost:{self._actual_port}/health/live",
                    "readiness_endpoint": f"http://localhost:{self._actual_port}/health/ready",
                },
            )
            self._server_started.set()

            while not self._shutdown_event.is_set():
                await asyncio.sleep(0.2)
        finally:
            await self._runner.cleanup()
            self._runner = None

    async def start(self) -> None:
        """Start the server thread. A failed start disables health checks
        instead of crashing the pipeline."""
        if not self._enabled:
            logger.debug(
                "Health check server is disabled, skipping start",
                extra={"worker_name": self.worker_name},
            )
            return

        if self._thread is not None and self._thread.is_alive():
            return

        self._shutdown_event.clear()
        self._server_started.clear()
        self._thread = threading.Thread(
            target=self._run_server_thread,
            name=f"health-server-{self.worker_name}",
            daemon=True,
        )
        self._thread.start()

        started = await asyncio.to_thread(self._server_started.wait, 5.0)
        if not started or self._actual_port is None:
            logger.warning(
                "Continuing without health checks: server failed to start",
                extra={"worker_name": self.worker_name, "port": self.port},
            )
            self._enabled = False

    async def stop(self) -> None:
        if not self._enabled or self._thread is None:
            return

        self._shutdown_event.set()
        await asyncio.to_thread(self._thread.join, 5.0)
        if self._thread.is_alive():
            logger.warning(
                "Health server thread did not stop cleanly",
                extra={"worker_name": self.worker_name},
            )
        else:
            logger.info("Health check server stopped", extra={"worker_name": self.worker_name})

        self._thread = None
        self._actual_port = None

    @property
    def is_ready(self) -> bool:
        with self._state_lock:
            return self._ready

    @property
    def actual_port(self) -> int | None:
        return self._actual_port

    @property
    def is_enabled(self) -> bool:
        return self._enabled


__all__ = ["HealthCheckServer"]
