"""
Console runner for the connector: YAML configuration, logging setup,
subscribe-on-connect and graceful shutdown.
"""
