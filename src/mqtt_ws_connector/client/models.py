"""
Data Models for the Connection Core and the Wire Envelope.

Defines the immutable connection parameters, the retry policy, the
connection state enum, the snapshot handed to observers, and the JSON
envelope convention used for message payloads.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
import json
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from enum import Enum

from mqtt_ws_connector.client.diagnostics import Diagnostic
from mqtt_ws_connector.exceptions import ConfigurationError

CLIENT_ID_PREFIX = "mqttws_"


def generate_client_id(prefix: str = CLIENT_ID_PREFIX) -> str:
    """Returns a client identifier with a random 8 hex digit suffix."""
    return prefix + uuid.uuid4().hex[:8]


def utc_now_iso() -> str:
    """ISO-8601 UTC timestamp with millisecond precision, e.g. 2024-01-01T12:00:00.000Z"""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RETRY_WAITING = "retry_waiting"
    DISCONNECTED = "disconnected"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ConnectionState.FAILED, ConnectionState.DISCONNECTED)


# --- Connection parameters ---

@dataclass(frozen=True, kw_only=True)
class ConnectOptions:
    """Per-handshake options handed to the transport's connect call."""
    use_tls: bool = False
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    timeout_seconds: float = 30.0
    keepalive_seconds: int = 60


@dataclass(frozen=True, kw_only=True)
class ConnectionConfig:
    """
    Immutable per-session parameters.

    `host` is only checked by `validate()`, which the manager calls before the
    first connection attempt. An empty host is a caller error, never a
    connection failure.
    """
    host: str
    port: int = 8000
    path: str = "/mqtt"
    use_tls: bool = False
    client_id: str = field(default_factory=generate_client_id)
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    timeout_seconds: float = 30.0
    keepalive_seconds: int = 60

    def __post_init__(self):
        # An explicitly empty client id gets a generated one as well
        if not self.client_id:
            object.__setattr__(self, "client_id", generate_client_id())

    def validate(self) -> None:
        """Raises ConfigurationError if the config cannot be used for a connection attempt."""
        if not isinstance(self.host, str) or not self.host.strip():
            raise ConfigurationError("MQTT host must be a non-empty string")
        if isinstance(self.port, bool) or not isinstance(self.port, int) or not 1 <= self.port <= 65535:
            raise ConfigurationError(f"MQTT port must be an integer between 1 and 65535, got {self.port!r}")
        if isinstance(self.keepalive_seconds, bool) or not isinstance(self.keepalive_seconds, int) \
                or self.keepalive_seconds < 0:
            raise ConfigurationError(f"keepalive_seconds must be a non-negative integer, got {self.keepalive_seconds!r}")
        if isinstance(self.timeout_seconds, bool) or not isinstance(self.timeout_seconds, (int, float)) \
                or self.timeout_seconds <= 0:
            raise ConfigurationError(f"timeout_seconds must be a positive number, got {self.timeout_seconds!r}")

    def connect_options(self) -> ConnectOptions:
        return ConnectOptions(
            use_tls=self.use_tls,
            username=self.username,
            password=self.password,
            timeout_seconds=self.timeout_seconds,
            keepalive_seconds=self.keepalive_seconds,
        )

    @property
    def url(self) -> str:
        scheme = "wss" if self.use_tls else "ws"
        return f"{scheme}://{self.host}:{self.port}{self.path}"


@dataclass(frozen=True, kw_only=True)
class RetryPolicy:
    """
    Bounded-attempt reconnection strategy.

    `max_attempts` bounds the number of failed handshakes tolerated since the
    last successful connect. The delay is fixed unless `backoff_factor` > 1,
    in which case it grows geometrically up to `max_delay_seconds`.
    """
    max_attempts: int = 5
    delay_seconds: float = 2.0
    backoff_factor: float = 1.0
    max_delay_seconds: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ConfigurationError("Retry delays must not be negative")
        if self.backoff_factor < 1:
            raise ConfigurationError(f"backoff_factor must be >= 1, got {self.backoff_factor}")

    def delay_for(self, failures: int) -> float:
        """Delay before the next attempt after `failures` consecutive failed handshakes."""
        if failures <= 1:
            return min(self.delay_seconds, self.max_delay_seconds)
        return min(self.delay_seconds * self.backoff_factor ** (failures - 1), self.max_delay_seconds)


# --- What the presentation layer sees ---

@dataclass(frozen=True)
class ConnectionSnapshot:
    """A consistent, read-only view of the manager at one point in time."""
    state: ConnectionState
    retry_count: int
    max_retries: int
    messages: Tuple[str, ...] = ()
    last_error: Optional[Diagnostic] = None
    # Count of all messages received, including ones evicted from `messages`
    total_messages: int = 0

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def retries_exhausted(self) -> bool:
        return self.state == ConnectionState.FAILED


# --- Wire envelope ---

@dataclass(frozen=True, kw_only=True)
class BasePayload:
    """Base class for all JSON payloads sent over MQTT."""
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        """Converts the object to a JSON string."""
        return json.dumps(self.to_dict())

    def to_bytes(self) -> bytes:
        """Converts the object to UTF-8 encoded bytes for MQTT."""
        return self.to_json().encode('utf-8')


@dataclass(frozen=True, kw_only=True)
class MessageEnvelope(BasePayload):
    """
    The JSON shape used for chat-style payloads:
    {"message": str, "timestamp": ISO-8601 str, "clientId": str (optional)}
    """
    message: str
    client_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"message": self.message, "timestamp": self.timestamp}
        if self.client_id:
            data["clientId"] = self.client_id
        return data

    @classmethod
    def parse(cls, payload: Union[str, bytes]) -> Optional["MessageEnvelope"]:
        """
        Parses a payload into an envelope.

        Returns None when the payload is not JSON, not an object, or has no
        string `message`. A missing timestamp is filled with the current time.
        """
        try:
            data = json.loads(payload)
        except (TypeError, ValueError):
            return None
        if not isinstance(data, dict):
            return None

        message = data.get("message")
        if not isinstance(message, str) or not message:
            return None

        timestamp = data.get("timestamp")
        if not isinstance(timestamp, str) or not timestamp:
            timestamp = utc_now_iso()
        client_id = data.get("clientId")
        if not isinstance(client_id, str):
            client_id = None
        return cls(message=message, timestamp=timestamp, client_id=client_id)


def display_text(payload: Union[str, bytes]) -> str:
    """The envelope's message text, or the raw payload when it is not an envelope."""
    envelope = MessageEnvelope.parse(payload)
    if envelope is not None:
        return envelope.message
    if isinstance(payload, bytes):
        return payload.decode('utf-8', errors='replace')
    return payload


def filter_valid_messages(payloads: Iterable[Union[str, bytes]]) -> List[str]:
    """Message texts of all payloads that are valid envelopes, order preserved."""
    texts = []
    for payload in payloads:
        envelope = MessageEnvelope.parse(payload)
        if envelope is not None:
            texts.append(envelope.message)
    return texts
