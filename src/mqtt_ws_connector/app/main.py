"""
Main entry point for the MQTT-over-WebSocket connector.

This module is responsible for:
- Configuring logging and reading the YAML configuration.
- Building the transport and the ConnectionManager.
- Re-subscribing to the configured topic once per established connection.
- Logging the display text of every new inbound message.
- Optionally publishing a heartbeat envelope at a fixed interval.
- Managing the overall application lifecycle (start, graceful shutdown on SIGINT/SIGTERM).
"""

import asyncio
import logging
import signal
import sys

from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

from mqtt_ws_connector.app.config_loader import (
    build_connection_config,
    build_retry_policy,
    default_topic,
    load_config,
    max_messages,
)
from mqtt_ws_connector.client.connection import ConnectionManager
from mqtt_ws_connector.client.models import ConnectionSnapshot, ConnectionState, display_text
from mqtt_ws_connector.client.transport import AiomqttTransport
from mqtt_ws_connector.exceptions import ConfigurationError


def setup_logging(level: Union[int, str] = logging.INFO):
    """
    Configures the global logging settings for the entire application.
    This should be called as early as possible during startup.
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)-8s] %(name)s.%(funcName)s: %(message)s'
    )

logger = logging.getLogger(__name__)


class TopicSubscriber:
    """
    Listener that subscribes to its topics once per established connection.

    The broker forgets subscriptions with the session, so every transition
    into CONNECTED needs a fresh subscribe. Repeated snapshots of the same
    connection (e.g. message arrivals) must not subscribe again.
    """
    def __init__(self, manager: ConnectionManager, topics: Iterable[str]):
        self.manager = manager
        self.topics = list(topics)
        self._subscribed = False

    def __call__(self, snapshot: ConnectionSnapshot):
        if snapshot.state != ConnectionState.CONNECTED:
            self._subscribed = False
            return
        if self._subscribed:
            return
        self._subscribed = True
        for topic in self.topics:
            self.manager.subscribe(topic)


class MessagePrinter:
    """Listener that logs each new inbound message once, oldest first."""
    def __init__(self):
        self._seen = 0

    def __call__(self, snapshot: ConnectionSnapshot):
        new_count = snapshot.total_messages - self._seen
        if new_count <= 0:
            return
        self._seen = snapshot.total_messages
        # messages are newest-first; evicted ones are gone already
        for payload in reversed(snapshot.messages[:new_count]):
            logger.info(f"Message: {display_text(payload)}")


class StatusReporter:
    """Listener that logs state changes in a form an operator can act on."""
    def __init__(self):
        self._last_state: Optional[ConnectionState] = None

    def __call__(self, snapshot: ConnectionSnapshot):
        if snapshot.state == self._last_state:
            return
        self._last_state = snapshot.state
        if snapshot.state == ConnectionState.CONNECTED:
            logger.info("MQTT is connected.")
        elif snapshot.state == ConnectionState.RETRY_WAITING:
            logger.info(f"MQTT is not connected. Retry {snapshot.retry_count}/{snapshot.max_retries} pending.")
        elif snapshot.state == ConnectionState.FAILED:
            hint = snapshot.last_error.hint if snapshot.last_error else ""
            logger.error(f"MQTT is not connected. Retries exhausted. {hint}")


async def heartbeat_loop(manager: ConnectionManager, topic: str, interval: float, text: str = "heartbeat"):
    """
    Background task publishing an envelope every `interval` seconds.
    While disconnected the publish is dropped by the manager.
    """
    logger.info(f"Heartbeat loop started ({interval}s on '{topic}').")
    try:
        while True:
            manager.publish_message(topic, text)
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("Heartbeat loop stopped.")


async def shutdown(signal_name: str, loop: asyncio.AbstractEventLoop, manager: ConnectionManager, transport: AiomqttTransport):
    """Graceful shutdown handler."""
    logger.info(f"Received exit signal {signal_name}...")

    # No retry may fire once we start tearing down
    manager.teardown()

    # Let the sessions send their DISCONNECT
    await transport.aclose()

    # Cancel all running tasks (like the heartbeat loop)
    tasks = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
    for task in tasks:
        task.cancel()

    # Await cancellation to finish safely
    await asyncio.gather(*tasks, return_exceptions=True)

    # Stop the loop
    loop.stop()


def _apply_log_level(config: Dict[str, Any]):
    level = (config.get("logging") or {}).get("level")
    if level:
        logging.getLogger().setLevel(str(level).upper())


async def main_application_runner(config_path: Union[str, Path] = "config.yaml"):
    setup_logging()
    logger.info("Starting MQTT connector...")

    config: Dict[str, Any] = load_config(config_path)
    _apply_log_level(config)

    try:
        connection_config = build_connection_config(config)
        retry_policy = build_retry_policy(config)
        buffer_size = max_messages(config)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return

    loop = asyncio.get_running_loop()
    transport = AiomqttTransport()
    manager = ConnectionManager(transport, retry_policy, max_messages=buffer_size)

    topic = default_topic(config)
    manager.add_listener(StatusReporter())
    manager.add_listener(TopicSubscriber(manager, [topic]))
    manager.add_listener(MessagePrinter())

    try:
        manager.start(connection_config)
    except ConfigurationError as e:
        logger.error(f"Cannot connect: {e}")
        return

    heartbeat = config.get("heartbeat") or {}
    heartbeat_task: Optional[asyncio.Task] = None
    if heartbeat.get("interval_seconds"):
        heartbeat_task = asyncio.create_task(heartbeat_loop(
            manager, topic, float(heartbeat["interval_seconds"]), heartbeat.get("text", "heartbeat")
        ))

    # Setup Signal Handlers for OS interrupts
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(
            sig,
            lambda s=sig: asyncio.create_task(shutdown(s.name, loop, manager, transport))
        )

    logger.info("Connector is running. Press Ctrl+C to exit.")

    try:
        await asyncio.Future()
    except asyncio.CancelledError:
        pass
    finally:
        if heartbeat_task is not None:
            heartbeat_task.cancel()


def run():
    """Console script entry point: mqtt-ws-connector [config.yaml]"""
    config_path = sys.argv[1] if len(sys.argv) > 1 else "config.yaml"
    try:
        asyncio.run(main_application_runner(config_path))
    except KeyboardInterrupt:
        # Handled by the signal handler, but good to catch here just in case.
        pass


if __name__ == "__main__":
    run()
