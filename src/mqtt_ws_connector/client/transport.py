"""
Transport Provider: the boundary to the MQTT library.

This module is responsible for:
- Defining the small callback-style contract the connection core consumes
  (`TransportProvider`, `TransportSession`).
- Implementing that contract on top of `aiomqtt`, tunnelled over WebSockets
  with optional TLS.
- Converting aiomqtt's context-manager/async-iterator style into the
  callback style: one background task per session runs the handshake and
  the inbound message loop, and reports back through callbacks.

One session object supports exactly one connect call. A reconnect always
opens a new session.
"""
import asyncio
import functools
import logging
from typing import Callable, List, Optional, Protocol, Set

import aiomqtt
import paho.mqtt.client as mqtt
from aiomqtt import ProtocolVersion, TLSParameters

from mqtt_ws_connector.client.diagnostics import TRANSPORT_ERROR
from mqtt_ws_connector.client.models import ConnectOptions
from mqtt_ws_connector.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

SuccessCallback = Callable[[], None]
FailureCallback = Callable[[int, str], None]
ConnectionLostCallback = Callable[[int, str], None]
MessageArrivedCallback = Callable[[str, str], None]


class TransportSession(Protocol):
    on_connection_lost: Optional[ConnectionLostCallback]
    on_message_arrived: Optional[MessageArrivedCallback]

    def connect(self, options: ConnectOptions, on_success: SuccessCallback, on_failure: FailureCallback) -> None: ...

    def subscribe(self, topic: str) -> None: ...

    def publish(self, topic: str, payload: str) -> None: ...

    def disconnect(self) -> None: ...

    def is_connected(self) -> bool: ...


class TransportProvider(Protocol):
    def open(self, host: str, port: int, path: str, client_id: str) -> TransportSession: ...


def _reason_code(error: Exception, default: int) -> int:
    """Extracts an int from MqttCodeError.rc (int or paho ReasonCode), else `default`."""
    rc = getattr(error, "rc", None)
    if rc is None:
        return default
    try:
        return int(getattr(rc, "value", rc))
    except (TypeError, ValueError):
        return default


def _payload_to_str(payload) -> str:
    if payload is None:
        return ""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload).decode('utf-8', errors='replace')
    return str(payload)


class AiomqttSession:
    host: str
    port: int
    path: str
    client_id: str
    protocol: ProtocolVersion
    on_connection_lost: Optional[ConnectionLostCallback]
    on_message_arrived: Optional[MessageArrivedCallback]
    _client: Optional[aiomqtt.Client]
    _task: Optional[asyncio.Task]
    _connected: bool
    _pending: Set[asyncio.Task]

    """
    One aiomqtt client bound to one host/port/path/client id.
    """
    def __init__(self, host: str, port: int, path: str, client_id: str,
                 protocol: ProtocolVersion = ProtocolVersion.V311,
                 tls_params: Optional[TLSParameters] = None):
        self.host = host
        self.port = port
        self.path = path
        self.client_id = client_id
        self.protocol = protocol
        self.tls_params = tls_params
        self.on_connection_lost = None
        self.on_message_arrived = None

        # Internal state
        self._client = None
        self._task = None
        self._connected = False
        self._use_tls = False
        self._pending = set()

    def _build_client(self, options: ConnectOptions) -> aiomqtt.Client:
        tls_params = None
        if options.use_tls:
            tls_params = self.tls_params or TLSParameters()
        return aiomqtt.Client(
            self.host,
            self.port,
            identifier=self.client_id,
            username=options.username,
            password=options.password,
            protocol=self.protocol,
            transport="websockets",
            websocket_path=self.path,
            tls_params=tls_params,
            timeout=options.timeout_seconds,
            keepalive=options.keepalive_seconds,
        )

    def connect(self, options: ConnectOptions, on_success: SuccessCallback, on_failure: FailureCallback) -> None:
        """
        Starts the handshake in the background. Exactly one of `on_success`
        or `on_failure(code, message)` is called, once.
        """
        if self._task is not None:
            raise RuntimeError(f"Session {self.client_id} was already connected once; open a new session instead")
        self._use_tls = options.use_tls
        self._client = self._build_client(options)
        self._task = asyncio.get_running_loop().create_task(
            self._run(on_success, on_failure), name=f"mqtt-session-{self.client_id}"
        )

    async def _run(self, on_success: SuccessCallback, on_failure: FailureCallback):
        """
        The session task. The connection is ONLY valid inside the `async with` block.
        """
        handshake_done = False
        lost_code, lost_message = mqtt.MQTT_ERR_CONN_LOST, "Message stream closed by the broker"
        try:
            async with self._client as client:
                handshake_done = True
                self._connected = True
                logger.info(f"Session {self.client_id} connected to {self.url}")
                on_success()

                async for message in client.messages:
                    self._deliver(str(message.topic), _payload_to_str(message.payload))

        except asyncio.CancelledError:
            logger.debug(f"Session {self.client_id} task cancelled.")
            raise
        except aiomqtt.MqttError as e:
            if not handshake_done:
                code = _reason_code(e, TRANSPORT_ERROR)
                logger.debug(f"Session {self.client_id} handshake failed: {e} (code {code})")
                on_failure(code, str(e))
                return
            lost_code, lost_message = _reason_code(e, mqtt.MQTT_ERR_CONN_LOST), str(e)
        except Exception as e:
            # Errors aiomqtt does not wrap, e.g. a ValueError from paho's connect
            if not handshake_done:
                logger.error(f"Session {self.client_id} handshake crashed: {e!r}")
                on_failure(TRANSPORT_ERROR, str(e))
                return
            logger.error(f"Session {self.client_id} crashed while connected: {e!r}")
            lost_code, lost_message = TRANSPORT_ERROR, str(e)
        finally:
            self._connected = False

        if handshake_done:
            logger.debug(f"Session {self.client_id} lost: {lost_message} (code {lost_code})")
            if self.on_connection_lost is not None:
                self.on_connection_lost(lost_code, lost_message)

    def _deliver(self, topic: str, payload: str):
        if self.on_message_arrived is not None:
            self.on_message_arrived(topic, payload)

    def _spawn(self, coro, description: str):
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(functools.partial(self._on_operation_done, description))

    def _on_operation_done(self, description: str, task: asyncio.Task):
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"MQTT {description} failed on session {self.client_id}: {error}")

    def subscribe(self, topic: str) -> None:
        if not self._connected:
            return
        self._spawn(self._client.subscribe(topic), f"subscribe to '{topic}'")

    def publish(self, topic: str, payload: str) -> None:
        if not self._connected:
            return
        self._spawn(self._client.publish(topic, payload=payload), f"publish to '{topic}'")

    def disconnect(self) -> None:
        """
        Cancels the session task; leaving the aiomqtt context sends the DISCONNECT.
        Safe to call more than once.
        """
        self._connected = False
        for task in list(self._pending):
            task.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def is_connected(self) -> bool:
        return self._connected

    @property
    def url(self) -> str:
        scheme = "wss" if self._use_tls else "ws"
        return f"{scheme}://{self.host}:{self.port}{self.path}"

    @property
    def closed(self) -> bool:
        """True once a connected session task has ended."""
        return self._task is not None and self._task.done()

    async def wait_closed(self):
        """Waits until the session task has finished its cleanup."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            logger.debug(f"Session {self.client_id} closed.")
        except Exception as e:
            logger.error(f"Error while closing session {self.client_id}: {e}")


class AiomqttTransport:
    """
    Opens `AiomqttSession`s. Keeps track of the sessions it handed out so a
    shutdown can wait for their graceful disconnects.
    """
    def __init__(self, protocol: ProtocolVersion = ProtocolVersion.V311,
                 tls_params: Optional[TLSParameters] = None):
        self.protocol = protocol
        self.tls_params = tls_params
        self._sessions: List[AiomqttSession] = []

    def open(self, host: str, port: int, path: str, client_id: str) -> AiomqttSession:
        if not host:
            raise ConfigurationError("Cannot open an MQTT session without a host")
        session = AiomqttSession(host, port, path, client_id, protocol=self.protocol, tls_params=self.tls_params)
        # Forget sessions whose task already ended
        self._sessions = [s for s in self._sessions if not s.closed]
        self._sessions.append(session)
        return session

    async def aclose(self):
        """Disconnects every open session and waits for them to finish."""
        sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.disconnect()
        for session in sessions:
            await session.wait_closed()
