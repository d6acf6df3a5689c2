"""
MQTT Connection Lifecycle Management.

This module provides the `ConnectionManager`, which:
- Owns the single current connection state and the session handle.
- Retries failed handshakes with a bounded, optionally backed-off delay.
- Reconnects automatically after an unsolicited connection loss.
- Buffers inbound payloads newest-first and hands out copies.
- Notifies registered listeners with a consistent snapshot after every change.

Everything runs on one asyncio event loop. Deferred work (the retry timer,
transport callbacks) carries a lifecycle token captured when it was
scheduled; disconnect, teardown and every new session bump the token, so a
callback arriving late is dropped instead of mutating state.
"""
import asyncio
import functools
import logging
from collections import deque
from typing import Any, Callable, Deque, List, Optional

from mqtt_ws_connector.client.diagnostics import (
    PHASE_CONNECTION_LOST,
    PHASE_HANDSHAKE,
    Diagnostic,
    diagnose,
)
from mqtt_ws_connector.client.events import (
    ConnectionEvent,
    RetryTimerFired,
    SessionConnected,
    SessionConnectFailed,
    SessionConnectionLost,
    SessionMessageArrived,
)
from mqtt_ws_connector.client.models import (
    ConnectionConfig,
    ConnectionSnapshot,
    ConnectionState,
    MessageEnvelope,
    RetryPolicy,
)
from mqtt_ws_connector.client.session import SessionHandle
from mqtt_ws_connector.client.transport import TransportProvider

logger = logging.getLogger(__name__)

# call_later(delay, callback, *args) -> handle with cancel(), like loop.call_later
Scheduler = Callable[..., Any]
Listener = Callable[[ConnectionSnapshot], None]

_ACTIVE_STATES = (ConnectionState.CONNECTING, ConnectionState.CONNECTED, ConnectionState.RETRY_WAITING)


class ConnectionManager:
    transport: TransportProvider
    retry_policy: RetryPolicy
    config: Optional[ConnectionConfig]
    _state: ConnectionState
    _handle: Optional[SessionHandle]
    _retry_timer: Optional[Any]
    _token: int
    _retry_count: int
    _alive: bool
    _messages: Deque[str]
    _total_messages: int
    _listeners: List[Listener]
    _last_error: Optional[Diagnostic]

    """
    Keeps one MQTT session alive on behalf of a presentation layer.

    Example:
        manager = ConnectionManager(AiomqttTransport(), RetryPolicy(max_attempts=5))
        manager.add_listener(render)
        manager.start(ConnectionConfig(host="broker.hivemq.com", port=8000))
        ...
        manager.teardown()
    """
    def __init__(self, transport: TransportProvider, retry_policy: Optional[RetryPolicy] = None, *,
                 scheduler: Optional[Scheduler] = None, max_messages: Optional[int] = None):
        self.transport = transport
        self.retry_policy = retry_policy or RetryPolicy()
        self.config = None
        self._scheduler = scheduler

        # Internal state
        self._state = ConnectionState.IDLE
        self._handle = None
        self._retry_timer = None
        self._token = 0
        self._retry_count = 0
        self._alive = True
        # maxlen=None keeps every message; otherwise the oldest fall off the right end
        self._messages = deque(maxlen=max_messages)
        self._total_messages = 0
        self._listeners = []
        self._last_error = None

    def __repr__(self) -> str:
        return f"ConnectionManager(state={self._state.value}, retry_count={self._retry_count}/{self.max_retries})"

    # --- Read accessors ---

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def max_retries(self) -> int:
        return self.retry_policy.max_attempts

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def last_error(self) -> Optional[Diagnostic]:
        return self._last_error

    @property
    def client_id(self) -> Optional[str]:
        return self.config.client_id if self.config else None

    def messages(self) -> List[str]:
        """Received payloads, newest first. The list is a copy."""
        return list(self._messages)

    def snapshot(self) -> ConnectionSnapshot:
        return ConnectionSnapshot(
            state=self._state,
            retry_count=self._retry_count,
            max_retries=self.max_retries,
            messages=tuple(self._messages),
            last_error=self._last_error,
            total_messages=self._total_messages,
        )

    # --- Observers ---

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Registers a listener and returns a callable that removes it again."""
        self._listeners.append(listener)
        return functools.partial(self.remove_listener, listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self):
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Error in connection listener {listener!r}: {e}")

    # --- Lifecycle ---

    def start(self, config: ConnectionConfig, retry_policy: Optional[RetryPolicy] = None):
        """
        Validates the config and issues the first connection attempt.

        Raises ConfigurationError for an unusable config; that is the only
        exception this manager lets escape. Calling start() while a lifecycle
        is already active, or after teardown(), is logged and ignored.
        """
        config.validate()

        if not self._alive:
            logger.warning("start() called on a torn down ConnectionManager. Ignoring.")
            return
        if self._state in _ACTIVE_STATES:
            logger.warning(f"start() called while {self._state.value}. Ignoring.")
            return

        if retry_policy is not None:
            self.retry_policy = retry_policy
        self.config = config
        self._retry_count = 0
        self._last_error = None
        logger.info(f"Starting MQTT connection to {config.url} as {config.client_id}...")
        self._open_session(config)

    def _open_session(self, config: ConnectionConfig):
        """Replaces the session with a fresh one and issues its single connect call."""
        self._token += 1
        handle = SessionHandle.open(self.transport, config, self._token, self._dispatch)
        self._handle = handle
        self._set_state(ConnectionState.CONNECTING)

        # A listener may have called disconnect() during the notification above
        if self._handle is handle:
            handle.connect()

    def disconnect(self):
        """
        Closes the session and cancels any pending retry. Idempotent.
        The manager can be started again afterwards.
        """
        if self._state == ConnectionState.DISCONNECTED and self._handle is None and self._retry_timer is None:
            return
        self._release()
        self._set_state(ConnectionState.DISCONNECTED)

    def teardown(self):
        """
        Final shutdown of the manager. After this call no timer or transport
        callback can change state, and start() is refused.
        """
        if not self._alive:
            return
        logger.info("Tearing down MQTT connection manager...")
        self._release()
        self._set_state(ConnectionState.DISCONNECTED)
        self._alive = False
        self._listeners.clear()

    def _release(self):
        # Invalidate every callback captured under the current token
        self._token += 1
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None
        if self._handle is not None:
            self._handle.disconnect()
            self._handle = None

    # --- Commands ---

    def subscribe(self, topic: str) -> bool:
        """Subscribes on the live session. Silently ignored unless connected."""
        if self._state != ConnectionState.CONNECTED or self._handle is None:
            logger.debug(f"Not connected ({self._state.value}); subscribe to '{topic}' ignored.")
            return False
        sent = self._handle.subscribe(topic)
        if sent:
            logger.info(f"Subscribed to: {topic}")
        return sent

    def publish(self, topic: str, payload: str) -> bool:
        """
        Publishes on the live session. Silently dropped unless connected;
        there is no outbound queue.
        """
        if self._state != ConnectionState.CONNECTED or self._handle is None:
            logger.debug(f"Not connected ({self._state.value}); publish to '{topic}' dropped.")
            return False
        sent = self._handle.publish(topic, payload)
        if sent:
            logger.debug(f"Published to '{topic}': {payload}")
        return sent

    def publish_message(self, topic: str, text: str) -> bool:
        """Wraps `text` in a MessageEnvelope stamped with this client's id and publishes it."""
        envelope = MessageEnvelope(message=text, client_id=self.client_id)
        return self.publish(topic, envelope.to_json())

    # --- The transition function ---

    def _dispatch(self, event: ConnectionEvent):
        """Single entry point for every transport event and timer expiry."""
        if not self._alive or event.token != self._token:
            logger.debug(f"Dropping stale event {event!r} (current token {self._token})")
            return

        if isinstance(event, SessionConnected):
            self._on_connected()
        elif isinstance(event, SessionConnectFailed):
            self._on_connect_failed(event)
        elif isinstance(event, SessionConnectionLost):
            self._on_connection_lost(event)
        elif isinstance(event, SessionMessageArrived):
            self._on_message_arrived(event)
        elif isinstance(event, RetryTimerFired):
            self._on_retry_timer(event)
        else:
            logger.warning(f"Unhandled connection event: {event!r}")

    def _on_connected(self):
        if self._state != ConnectionState.CONNECTING:
            return
        if self._retry_count:
            logger.info(f"Connected after {self._retry_count} failed attempt(s).")
        self._retry_count = 0
        self._last_error = None
        logger.info(f"Connected to MQTT broker at {self.config.url}")
        self._set_state(ConnectionState.CONNECTED)

    def _on_connect_failed(self, event: SessionConnectFailed):
        if self._state != ConnectionState.CONNECTING:
            return
        self._handle = None
        diagnostic = diagnose(PHASE_HANDSHAKE, event.code, event.message)
        self._last_error = diagnostic
        self._retry_count += 1
        policy = self.retry_policy

        if self._retry_count < policy.max_attempts:
            delay = policy.delay_for(self._retry_count)
            logger.warning(
                f"MQTT connection attempt {self._retry_count}/{policy.max_attempts} failed: {diagnostic}. "
                f"Hint: {diagnostic.hint} Retrying in {delay:.1f}s..."
            )
            self._schedule_retry(delay)
        else:
            logger.error(
                f"MQTT connection failed after {self._retry_count} attempt(s): {diagnostic}. "
                f"Hint: {diagnostic.hint} Giving up."
            )
            self._set_state(ConnectionState.FAILED)

    def _on_connection_lost(self, event: SessionConnectionLost):
        # Only a drop of a live connection triggers recovery; late duplicates are ignored
        if self._state != ConnectionState.CONNECTED:
            return
        self._handle = None
        diagnostic = diagnose(PHASE_CONNECTION_LOST, event.code, event.message)
        self._last_error = diagnostic
        delay = self.retry_policy.delay_for(self._retry_count)
        logger.warning(f"MQTT connection lost: {diagnostic}. Hint: {diagnostic.hint} Reconnecting in {delay:.1f}s...")
        self._schedule_retry(delay)

    def _on_message_arrived(self, event: SessionMessageArrived):
        logger.debug(f"Message arrived on '{event.topic}': {event.payload}")
        self._messages.appendleft(event.payload)
        self._total_messages += 1
        self._notify()

    def _on_retry_timer(self, event: RetryTimerFired):
        self._retry_timer = None
        if self._state != ConnectionState.RETRY_WAITING:
            return
        self._open_session(event.config)

    def _schedule_retry(self, delay: float):
        # The config travels with the timer event, so the retry uses exactly
        # what was current when it was scheduled
        event = RetryTimerFired(token=self._token, config=self.config)
        call_later = self._scheduler
        if call_later is None:
            try:
                call_later = asyncio.get_running_loop().call_later
            except RuntimeError:
                logger.error("No running event loop to schedule the retry on. Giving up.")
                self._set_state(ConnectionState.FAILED)
                return
        self._retry_timer = call_later(delay, self._dispatch, event)
        self._set_state(ConnectionState.RETRY_WAITING)

    def _set_state(self, new_state: ConnectionState):
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.info(f"Connection state: {old_state.value} -> {new_state.value}")
        self._notify()
