from __future__ import annotations

import asyncio
import signal

from .config import CallConfig
from .controller import SessionController
from .errors import CallError, StoreUnavailable
from .logging import get_logger, setup_logging, silence_noisy_modules
from .metrics import CallMetrics, periodic_log, start_health_server
from .store import MQTTStore

logger = get_logger(__name__)


async def _wait_first(*aws) -> None:
    """Wait for the first awaitable to finish, cancel the rest."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


async def run(config: CallConfig) -> None:
    """Join the room and re-join with exponential backoff after failures."""
    room_key = config.resolve_room_key()
    metrics = CallMetrics()

    health_runner = None
    if config.health_port:
        health_runner = await start_health_server(metrics, config.health_port)
    log_task = asyncio.create_task(periodic_log(metrics))

    # Shutdown flag set by signal handlers.
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    store = MQTTStore(
        host=config.mqtt_host,
        port=config.mqtt_port,
        username=config.mqtt_username,
        password=config.mqtt_password,
        prefix=config.topic_prefix,
        read_timeout=config.read_timeout,
        keepalive=config.mqtt_keepalive,
    )
    controller = SessionController(config, store, metrics=metrics)
    delay = config.reconnect_delay

    try:
        while not shutdown.is_set():
            error: CallError | None = None
            try:
                if store.client is None:
                    await store.connect()
                scenario = await controller.join(room_key)
                delay = config.reconnect_delay  # Reset backoff on a successful join.
                logger.info("joined", room=room_key, scenario=scenario.value if scenario else None)

                # Wait for the call to fail or for shutdown.
                finished = asyncio.ensure_future(controller.wait_closed())
                await _wait_first(finished, shutdown.wait())
                if finished.done() and not finished.cancelled():
                    error = finished.result()
            except CallError as exc:
                error = exc
            finally:
                await controller.end()

            if shutdown.is_set():
                break
            if error is not None:
                logger.warning("call_failed", reason=error.reason, error=str(error))
            if isinstance(error, StoreUnavailable):
                # A lost broker connection needs a fresh client.
                await store.close()

            logger.info("rejoining", delay=delay)
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=delay)
                break  # Shutdown signalled during backoff.
            except asyncio.TimeoutError:
                pass  # Backoff elapsed, retry.
            delay = min(delay * 2, config.max_reconnect_delay)
    finally:
        await controller.end()
        await store.close()
        log_task.cancel()
        if health_runner is not None:
            await health_runner.cleanup()
        logger.info("shutdown_complete")


def cli() -> None:
    """Entry point: ``python -m peer_call`` or ``peer-call`` script."""
    config = CallConfig.from_env_and_args()
    setup_logging(config.log_level, json_logs=config.json_logs)
    silence_noisy_modules()

    logger.info("starting_peer_call", mqtt_host=config.mqtt_host, room_given=bool(config.room_key))
    asyncio.run(run(config))


if __name__ == "__main__":
    cli()
