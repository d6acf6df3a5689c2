"""
Session Handle.

A thin owner of exactly one transport session. It issues the transport
calls and turns raw transport callbacks into tagged events stamped with
the lifecycle token it was opened under. It makes no retry decisions.
"""
import logging
from enum import Enum, auto
from typing import Callable

from mqtt_ws_connector.client.diagnostics import TRANSPORT_ERROR
from mqtt_ws_connector.client.events import (
    SessionConnected,
    SessionConnectFailed,
    SessionConnectionLost,
    SessionEvent,
    SessionMessageArrived,
)
from mqtt_ws_connector.client.models import ConnectionConfig
from mqtt_ws_connector.client.transport import TransportProvider, TransportSession

logger = logging.getLogger(__name__)

EventSink = Callable[[SessionEvent], None]


class HandleState(Enum):
    OPEN = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    CLOSED = auto()


class SessionHandle:
    config: ConnectionConfig
    token: int
    state: HandleState
    _session: TransportSession
    _sink: EventSink

    def __init__(self, session: TransportSession, config: ConnectionConfig, token: int, sink: EventSink):
        self._session = session
        self._sink = sink
        self.config = config
        self.token = token
        self.state = HandleState.OPEN

        # Upward event wiring; the transport calls these on the event loop
        session.on_connection_lost = self._handle_connection_lost
        session.on_message_arrived = self._handle_message_arrived

    @classmethod
    def open(cls, provider: TransportProvider, config: ConnectionConfig, token: int, sink: EventSink) -> "SessionHandle":
        """
        Creates one transport session bound to the config's host/port/path/client id.
        Raises ConfigurationError synchronously for a malformed config.
        """
        config.validate()
        session = provider.open(config.host, config.port, config.path, config.client_id)
        logger.debug(f"Opened session for {config.url} as {config.client_id} (token {token})")
        return cls(session, config, token, sink)

    @property
    def is_connected(self) -> bool:
        return self.state == HandleState.CONNECTED and self._session.is_connected()

    @property
    def released(self) -> bool:
        return self.state == HandleState.CLOSED

    def connect(self):
        """Issues the asynchronous handshake. Allowed once per handle."""
        if self.state != HandleState.OPEN:
            raise RuntimeError("A session handle can only be connected once")
        self.state = HandleState.CONNECTING
        try:
            self._session.connect(
                self.config.connect_options(),
                self._handle_success,
                self._handle_failure,
            )
        except Exception as e:
            # A connect call that cannot even start counts as a failed handshake
            logger.error(f"Transport refused to connect session {self.config.client_id}: {e!r}")
            self._handle_failure(TRANSPORT_ERROR, str(e))

    def subscribe(self, topic: str) -> bool:
        """Returns True if the subscribe was handed to the transport."""
        if not self.is_connected:
            return False
        self._session.subscribe(topic)
        return True

    def publish(self, topic: str, payload: str) -> bool:
        """Returns True if the publish was handed to the transport."""
        if not self.is_connected:
            return False
        self._session.publish(topic, payload)
        return True

    def disconnect(self):
        """
        Releases the session. The transport disconnect is issued at most once,
        and only if a handshake is in flight or the session is connected.
        """
        if self.state == HandleState.CLOSED:
            return
        needs_transport_call = self.state in (HandleState.CONNECTING, HandleState.CONNECTED)
        self.state = HandleState.CLOSED
        if needs_transport_call:
            self._session.disconnect()
            logger.debug(f"Session {self.config.client_id} disconnected (token {self.token})")

    # --- Transport callbacks ---

    def _forward(self, event: SessionEvent):
        self._sink(event)

    def _handle_success(self):
        if self.state != HandleState.CONNECTING:
            logger.debug(f"Ignoring late connect success for session {self.config.client_id}")
            return
        self.state = HandleState.CONNECTED
        self._forward(SessionConnected(token=self.token))

    def _handle_failure(self, code: int, message: str):
        if self.state != HandleState.CONNECTING:
            logger.debug(f"Ignoring late connect failure for session {self.config.client_id}")
            return
        self.state = HandleState.CLOSED
        self._forward(SessionConnectFailed(token=self.token, code=code, message=message))

    def _handle_connection_lost(self, code: int, message: str):
        if self.state != HandleState.CONNECTED:
            return
        self.state = HandleState.CLOSED
        self._forward(SessionConnectionLost(token=self.token, code=code, message=message))

    def _handle_message_arrived(self, topic: str, payload: str):
        if self.state != HandleState.CONNECTED:
            return
        self._forward(SessionMessageArrived(token=self.token, topic=topic, payload=payload))
