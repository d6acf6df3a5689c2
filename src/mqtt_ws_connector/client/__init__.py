"""
Client-side connection core.

This package keeps one MQTT session alive over a WebSocket-tunnelled broker
connection and exposes its state, its inbound message history and the
publish/subscribe commands to a presentation layer.
"""
from mqtt_ws_connector.client.connection import ConnectionManager
from mqtt_ws_connector.client.diagnostics import Diagnostic, DiagnosticCategory
from mqtt_ws_connector.client.models import (
    ConnectionConfig,
    ConnectionSnapshot,
    ConnectionState,
    MessageEnvelope,
    RetryPolicy,
)
from mqtt_ws_connector.client.transport import AiomqttTransport

__all__ = [
    "AiomqttTransport",
    "ConnectionConfig",
    "ConnectionManager",
    "ConnectionSnapshot",
    "ConnectionState",
    "Diagnostic",
    "DiagnosticCategory",
    "MessageEnvelope",
    "RetryPolicy",
]
