"""
Transport Error Diagnostics.

Maps the numeric codes reported by the transport to a diagnostic category
and a remediation hint for the logs. Diagnostics are advisory only: the
connection manager never changes its retry decision based on them.

Two code spaces exist:
- handshake failures carry the broker's CONNACK result (MQTT 3.1.1 return
  codes 1-5, or MQTT v5 reason codes >= 0x80),
- unexpected drops carry paho's MQTT_ERR_* values.
Failures that never produced a broker reply (DNS, refused socket, timeout)
are reported as TRANSPORT_ERROR.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple

import paho.mqtt.client as mqtt

TRANSPORT_ERROR = -1

PHASE_HANDSHAKE = "handshake"
PHASE_CONNECTION_LOST = "connection_lost"


class DiagnosticCategory(str, Enum):
    NONE = "none"
    PROTOCOL = "protocol"
    IDENTIFIER_REJECTED = "identifier_rejected"
    BROKER_UNAVAILABLE = "broker_unavailable"
    BAD_CREDENTIALS = "bad_credentials"
    NOT_AUTHORIZED = "not_authorized"
    NETWORK = "network"
    TLS = "tls"
    KEEPALIVE_TIMEOUT = "keepalive_timeout"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Diagnostic:
    phase: str
    code: int
    message: str
    category: DiagnosticCategory
    hint: str

    def __str__(self) -> str:
        return f"{self.phase} code={self.code} [{self.category.value}] {self.message}"


_HINTS: Dict[DiagnosticCategory, str] = {
    DiagnosticCategory.NONE: "No action needed.",
    DiagnosticCategory.PROTOCOL: "Check that the broker listener speaks MQTT over WebSocket and the protocol version matches.",
    DiagnosticCategory.IDENTIFIER_REJECTED: "Use a unique client id; another session may be using the same one.",
    DiagnosticCategory.BROKER_UNAVAILABLE: "The broker is up but refusing sessions; retry later or check broker health.",
    DiagnosticCategory.BAD_CREDENTIALS: "Verify username and password.",
    DiagnosticCategory.NOT_AUTHORIZED: "The account is not allowed to connect; check broker ACLs.",
    DiagnosticCategory.NETWORK: "Check host, port and WebSocket path, and that the broker is reachable.",
    DiagnosticCategory.TLS: "Check use_tls against the listener (ws vs wss) and the broker certificate.",
    DiagnosticCategory.KEEPALIVE_TIMEOUT: "The broker stopped answering pings; check network stability or raise keepalive.",
    DiagnosticCategory.UNKNOWN: "Unrecognized code; see the broker logs.",
}

# CONNACK return codes (3.1.1) and CONNACK reason codes (v5)
_HANDSHAKE_CODES: Dict[int, DiagnosticCategory] = {
    mqtt.CONNACK_ACCEPTED: DiagnosticCategory.NONE,
    mqtt.CONNACK_REFUSED_PROTOCOL_VERSION: DiagnosticCategory.PROTOCOL,
    mqtt.CONNACK_REFUSED_IDENTIFIER_REJECTED: DiagnosticCategory.IDENTIFIER_REJECTED,
    mqtt.CONNACK_REFUSED_SERVER_UNAVAILABLE: DiagnosticCategory.BROKER_UNAVAILABLE,
    mqtt.CONNACK_REFUSED_BAD_USERNAME_PASSWORD: DiagnosticCategory.BAD_CREDENTIALS,
    mqtt.CONNACK_REFUSED_NOT_AUTHORIZED: DiagnosticCategory.NOT_AUTHORIZED,
    0x80: DiagnosticCategory.UNKNOWN,             # Unspecified error
    0x81: DiagnosticCategory.PROTOCOL,            # Malformed packet
    0x82: DiagnosticCategory.PROTOCOL,            # Protocol error
    0x84: DiagnosticCategory.PROTOCOL,            # Unsupported protocol version
    0x85: DiagnosticCategory.IDENTIFIER_REJECTED, # Client identifier not valid
    0x86: DiagnosticCategory.BAD_CREDENTIALS,     # Bad user name or password
    0x87: DiagnosticCategory.NOT_AUTHORIZED,      # Not authorized
    0x88: DiagnosticCategory.BROKER_UNAVAILABLE,  # Server unavailable
    0x89: DiagnosticCategory.BROKER_UNAVAILABLE,  # Server busy
    0x8A: DiagnosticCategory.NOT_AUTHORIZED,      # Banned
    0x8C: DiagnosticCategory.BAD_CREDENTIALS,     # Bad authentication method
    TRANSPORT_ERROR: DiagnosticCategory.NETWORK,
}

_CONNECTION_LOST_CODES: Dict[int, DiagnosticCategory] = {
    mqtt.MQTT_ERR_SUCCESS: DiagnosticCategory.NONE,
    mqtt.MQTT_ERR_PROTOCOL: DiagnosticCategory.PROTOCOL,
    mqtt.MQTT_ERR_NO_CONN: DiagnosticCategory.NETWORK,
    mqtt.MQTT_ERR_CONN_REFUSED: DiagnosticCategory.NETWORK,
    mqtt.MQTT_ERR_CONN_LOST: DiagnosticCategory.NETWORK,
    mqtt.MQTT_ERR_TLS: DiagnosticCategory.TLS,
    mqtt.MQTT_ERR_AUTH: DiagnosticCategory.BAD_CREDENTIALS,
    mqtt.MQTT_ERR_ACL_DENIED: DiagnosticCategory.NOT_AUTHORIZED,
    mqtt.MQTT_ERR_ERRNO: DiagnosticCategory.NETWORK,
    mqtt.MQTT_ERR_KEEPALIVE: DiagnosticCategory.KEEPALIVE_TIMEOUT,
    TRANSPORT_ERROR: DiagnosticCategory.NETWORK,
}


def _describe(phase: str, code: int) -> str:
    if code == TRANSPORT_ERROR:
        return "No reply from broker"
    if phase == PHASE_HANDSHAKE:
        return mqtt.connack_string(code)
    return mqtt.error_string(code)


def classify(phase: str, code: int) -> Tuple[DiagnosticCategory, str]:
    """Returns (category, hint) for a transport code in the given phase."""
    table = _HANDSHAKE_CODES if phase == PHASE_HANDSHAKE else _CONNECTION_LOST_CODES
    category = table.get(code, DiagnosticCategory.UNKNOWN)
    return category, _HINTS[category]


def diagnose(phase: str, code: int, message: str = "") -> Diagnostic:
    """Builds a Diagnostic, falling back to paho's description when the transport gave no message."""
    category, hint = classify(phase, code)
    return Diagnostic(
        phase=phase,
        code=code,
        message=message or _describe(phase, code),
        category=category,
        hint=hint,
    )
