"""
Pytest Configuration and Fixtures for the mqtt_ws_connector project.

This module provides a recording fake of the transport provider and a
virtual clock, so the connection manager can be driven through every
transition deterministically, without a broker and without real timers.
"""

import sys
import logging
from typing import Any, Callable, List, Optional, Tuple

import pytest

from mqtt_ws_connector.client.connection import ConnectionManager
from mqtt_ws_connector.client.models import ConnectionConfig, ConnectOptions, RetryPolicy


# --- Transport fake ---

class FakeSession:
    """
    Records every call the core makes and lets the test fire the transport
    callbacks by hand (succeed/fail/lose/deliver).
    """
    def __init__(self, host: str, port: int, path: str, client_id: str):
        self.host = host
        self.port = port
        self.path = path
        self.client_id = client_id
        self.on_connection_lost = None
        self.on_message_arrived = None

        self.connected = False
        self.connect_calls: List[ConnectOptions] = []
        self.subscribed: List[str] = []
        self.published: List[Tuple[str, str]] = []
        self.disconnect_calls = 0
        self.connect_error: Optional[Exception] = None
        self._on_success: Optional[Callable[[], None]] = None
        self._on_failure: Optional[Callable[[int, str], None]] = None

    # Transport contract
    def connect(self, options, on_success, on_failure):
        self.connect_calls.append(options)
        self._on_success = on_success
        self._on_failure = on_failure
        if self.connect_error is not None:
            raise self.connect_error

    def subscribe(self, topic):
        self.subscribed.append(topic)

    def publish(self, topic, payload):
        self.published.append((topic, payload))

    def disconnect(self):
        self.disconnect_calls += 1
        self.connected = False

    def is_connected(self):
        return self.connected

    # Test drivers
    def succeed(self):
        self.connected = True
        self._on_success()

    def fail(self, code: int = 1, message: str = "Connection failed"):
        self._on_failure(code, message)

    def lose(self, code: int = 1, message: str = "Connection lost"):
        self.connected = False
        self.on_connection_lost(code, message)

    def deliver(self, payload: str, topic: str = "psu/drone"):
        self.on_message_arrived(topic, payload)


class FakeTransport:
    def __init__(self):
        self.sessions: List[FakeSession] = []
        # Raised by the connect call of every session opened from now on
        self.connect_error: Optional[Exception] = None

    def open(self, host, port, path, client_id):
        session = FakeSession(host, port, path, client_id)
        session.connect_error = self.connect_error
        self.sessions.append(session)
        return session

    @property
    def latest(self) -> FakeSession:
        return self.sessions[-1]


# --- Virtual clock ---

class VirtualTimer:
    def __init__(self, when: float, callback: Callable, args: Tuple[Any, ...]):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class VirtualClock:
    """Drop-in for loop.call_later whose time only moves on advance()."""
    def __init__(self):
        self.now = 0.0
        self._timers: List[VirtualTimer] = []

    def call_later(self, delay: float, callback: Callable, *args) -> VirtualTimer:
        timer = VirtualTimer(self.now + delay, callback, args)
        self._timers.append(timer)
        return timer

    @property
    def pending(self) -> List[VirtualTimer]:
        return [t for t in self._timers if not t.cancelled and not t.fired]

    def advance(self, seconds: float):
        target = self.now + seconds
        while True:
            due = [t for t in self.pending if t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self.now = timer.when
            timer.fired = True
            timer.callback(*timer.args)
        self.now = target


# --- Fixtures ---

@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """
    Configures the Python logging framework globally for all tests.
    Because tests bypass main.py, this ensures our logs are formatted
    and visible exactly how we want them during test runs.
    """
    formatter = logging.Formatter(fmt="%(levelname)-8s %(message)s - %(funcName)s:%(lineno)d ")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def config():
    return ConnectionConfig(host="test.broker.com", port=8883, use_tls=True)


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=5, delay_seconds=2.0)


@pytest.fixture
def manager(transport, clock, retry_policy):
    return ConnectionManager(transport, retry_policy, scheduler=clock.call_later)
