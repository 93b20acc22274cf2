from __future__ import annotations

import asyncio
import time

from aiohttp import web

from .logging import get_logger

logger = get_logger(__name__)

_LOG_INTERVAL = 30  # seconds


class CallMetrics:
    """Counters and gauges for one peer-call process.

    Written from the event loop only; no locking needed.
    """

    def __init__(self) -> None:
        self._start = time.monotonic()

        # Counters (lifetime totals).
        self.joins: int = 0
        self.rounds: int = 0
        self.initiator_rounds: int = 0
        self.responder_rounds: int = 0
        self.stale_rooms_cleared: int = 0
        self.connections: int = 0
        self.connection_failures: int = 0
        self.negotiation_failures: int = 0
        self.camera_switches: int = 0

        # Gauges (point-in-time).
        self.connected: bool = False
        self.role: str | None = None
        self.state: str = "idle"

        # Delta tracking for periodic log.
        self._prev_rounds: int = 0
        self._prev_failures: int = 0

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._start

    def snapshot(self) -> dict:
        return {
            "connected": self.connected,
            "state": self.state,
            "role": self.role,
            "uptime_seconds": int(self.uptime_seconds),
            "joins": self.joins,
            "rounds": self.rounds,
            "initiator_rounds": self.initiator_rounds,
            "responder_rounds": self.responder_rounds,
            "stale_rooms_cleared": self.stale_rooms_cleared,
            "connections": self.connections,
            "connection_failures": self.connection_failures,
            "negotiation_failures": self.negotiation_failures,
            "camera_switches": self.camera_switches,
        }

    def log_periodic(self) -> None:
        """Log deltas since last call, then reset delta counters."""
        d_rounds = self.rounds - self._prev_rounds
        d_failures = self.negotiation_failures - self._prev_failures
        self._prev_rounds = self.rounds
        self._prev_failures = self.negotiation_failures

        logger.info(
            "metrics",
            rounds=d_rounds,
            failures=d_failures,
            state=self.state,
            role=self.role,
            connected=self.connected,
        )


# ------------------------------------------------------------------
# Health HTTP server
# ------------------------------------------------------------------


async def _health_handler(request: web.Request) -> web.Response:
    metrics: CallMetrics = request.app["metrics"]
    status = 200 if metrics.connected else 503
    return web.json_response(metrics.snapshot(), status=status)


def create_health_app(metrics: CallMetrics) -> web.Application:
    app = web.Application()
    app["metrics"] = metrics
    app.router.add_get("/health", _health_handler)
    return app


async def start_health_server(metrics: CallMetrics, port: int) -> web.AppRunner:
    runner = web.AppRunner(create_health_app(metrics))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    logger.info("health_server_listening", port=port)
    return runner


# ------------------------------------------------------------------
# Periodic logging task
# ------------------------------------------------------------------


async def periodic_log(metrics: CallMetrics, interval: float = _LOG_INTERVAL) -> None:
    """Log metrics every ``interval`` seconds. Runs as a background task."""
    while True:
        await asyncio.sleep(interval)
        metrics.log_periodic()
