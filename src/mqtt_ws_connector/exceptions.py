"""
Exception hierarchy for the connector.

Only configuration problems escape the connection manager as exceptions.
Transport failures are handled inside the manager and surface as state.
"""

from typing import Optional


class ConnectorError(Exception):
    """Base exception for all connector-specific errors."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class ConfigurationError(ConnectorError, ValueError):
    """Raised when connection parameters are missing or malformed."""
