"""
mqtt_ws_connector

This package provides an asynchronous MQTT-over-WebSocket client connector
that keeps a broker session alive, retries with a bounded backoff policy,
and buffers inbound messages for a presentation layer.
"""
__version__ = "0.1.0"
