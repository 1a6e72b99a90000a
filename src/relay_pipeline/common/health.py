"""
Health check endpoints for the relay worker.

- /health/live - Liveness probe (is the event loop responsive?)
- /health/ready - Readiness probe (is the subscription consuming?)

Usage:
    health_server = HealthCheckServer(port=8080, worker_name="relay-ingest")
    await health_server.start()
    health_server.set_ready(transport_connected=True)
    ...
    health_server.set_draining()
    await health_server.stop()
"""

import logging
import time
from datetime import UTC, datetime

from aiohttp import web

from core.logging.setup import DEFAULT_LOGGER_NAME


class HealthCheckServer:
    """
    aiohttp server for Kubernetes-style health probes.

    Readiness is 200 only while the bus subscription is connected, the
    worker is not draining and no startup error was recorded. Liveness
    turns 503 when the worker's heartbeat goes stale.
    """

    def __init__(
        self,
        port: int | None = 8080,
        host: str = "0.0.0.0",
        worker_name: str = "relay",
        enabled: bool = True,
        heartbeat_timeout_seconds: float = 60.0,
        logger: logging.Logger | None = None,
    ):
        """
        Args:
            port: HTTP port; 0 for dynamic assignment, None to disable
            host: Interface to bind
            worker_name: Name reported in responses
            enabled: If False, start() and stop() are no-ops
            heartbeat_timeout_seconds: Max seconds since the last heartbeat
                before liveness fails. 0 disables the check.
        """
        self.port = port
        self.host = host
        self.worker_name = worker_name
        self._enabled = enabled and port is not None
        self._logger = (logger or logging.getLogger(DEFAULT_LOGGER_NAME)).getChild("health")

        self._transport_connected = False
        self._draining = False
        self._error_message: str | None = None
        self._started_at = datetime.now(UTC)
        self._heartbeat_timeout_seconds = heartbeat_timeout_seconds
        self._last_heartbeat: float | None = None

        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._actual_port: int | None = None

    @property
    def is_ready(self) -> bool:
        return self._transport_connected and not self._draining and self._error_message is None

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def actual_port(self) -> int | None:
        return self._actual_port

    def set_ready(self, transport_connected: bool) -> None:
        old_ready = self.is_ready
        self._transport_connected = transport_connected
        if old_ready != self.is_ready:
            self._logger.info(f"Readiness status changed: {old_ready} -> {self.is_ready}")

    def set_draining(self) -> None:
        self._draining = True

    def set_error(self, error_message: str) -> None:
        self._error_message = error_message
        self._logger.error(f"Health check error state set: {error_message}")

    def record_heartbeat(self) -> None:
        self._last_heartbeat = time.monotonic()

    def _check_reasons(self) -> list[str]:
        reasons = []
        if self._error_message:
            reasons.append("error")
        if not self._transport_connected:
            reasons.append("transport_disconnected")
        if self._draining:
            reasons.append("draining")
        return reasons

    async def handle_liveness(self, request: web.Request) -> web.Response:
        now = datetime.now(UTC)
        uptime_seconds = int((now - self._started_at).total_seconds())

        if self._heartbeat_timeout_seconds > 0 and self._last_heartbeat is not None:
            staleness = time.monotonic() - self._last_heartbeat
            if staleness > self._heartbeat_timeout_seconds:
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
        body = {
            "worker": self.worker_name,
            "checks": {
                "transport_connected": self._transport_connected,
                "draining": self._draining,
            },
            "timestamp": datetime.now(UTC).isoformat(),
        }
        if self.is_ready:
            return web.json_response({"status": "ready", **body}, status=200)

        body["reasons"] = self._check_reasons()
        if self._error_message:
            body["error"] = self._error_message
        return web.json_response({"status": "not_ready", **body}, status=503)

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health/live", self.handle_liveness)
        app.router.add_get("/health/ready", self.handle_readiness)
        return app

    async def start(self) -> None:
        """
        Start listening. A port already in use falls back to a dynamic
        port; any other failure disables health checks without stopping
        the worker.
        """
        if not self._enabled or self._runner is not None:
            return

        try:
            if not await self._try_start_on_port(self.port):
                self._logger.warning(f"Port {self.port} in use, falling back to dynamic port")
                await self._try_start_on_port(0)
        except OSError as e:
            self._logger.warning(f"Continuing without health checks: {e}")
            self._enabled = False
            return

        self._logger.info(f"Health check server started on port {self._actual_port}")

    async def _try_start_on_port(self, port: int) -> bool:
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        try:
            self._site = web.TCPSite(self._runner, self.host, port, reuse_address=True)
            await self._site.start()
        except OSError as e:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            # Port in use: errno 98 (Linux), 48 (macOS) or 10048 (Windows)
            if e.errno in (98, 48, 10048) and port != 0:
                return False
            raise

        server = self._site._server
        if server is not None and server.sockets:
            self._actual_port = server.sockets[0].getsockname()[1]
        else:
            self._actual_port = port
        return True

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        self._site = None
        self._actual_port = None
        self._logger.info("Health check server stopped")


__all__ = ["HealthCheckServer"]
