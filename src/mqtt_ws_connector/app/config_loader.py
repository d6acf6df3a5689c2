"""
Configuration Loader.

Responsible for reading the config.yaml file and turning its sections into
the connector's immutable config objects.
"""
import yaml
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from mqtt_ws_connector.client.models import ConnectionConfig, RetryPolicy
from mqtt_ws_connector.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_TOPIC = "psu/drone"

_CONNECTION_FIELDS = {
    "host": str,
    "port": int,
    "path": str,
    "use_tls": bool,
    "client_id": str,
    "username": str,
    "password": str,
    "timeout_seconds": (int, float),
    "keepalive_seconds": int,
}

_RETRY_FIELDS = {
    "max_attempts": int,
    "delay_seconds": (int, float),
    "backoff_factor": (int, float),
    "max_delay_seconds": (int, float),
}


def load_config(config_path: Union[str, Path] = "config.yaml") -> Dict[str, Any]:
    """
    Loads the YAML configuration file.
    """
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file not found at {path}. Using defaults.")
        return {}

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {path}")
    except Exception as e:
        logger.error(f"Failed to parse config file: {e}")
        raise

    if not isinstance(config, dict):
        raise ConfigurationError(f"Top level of {path} must be a mapping, got {type(config).__name__}")
    return config


def _section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = config.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Config section '{name}' must be a mapping")
    return section


def _typed_values(section: Dict[str, Any], fields: Dict[str, Any], section_name: str) -> Dict[str, Any]:
    values = {}
    for key, value in section.items():
        if key not in fields:
            logger.warning(f"Ignoring unknown key '{section_name}.{key}'")
            continue
        if value is None:
            continue
        expected = fields[key]
        # bool is an int subclass; only accept it where a bool is expected
        if isinstance(value, bool) and expected is not bool:
            raise ConfigurationError(f"'{section_name}.{key}' must not be a boolean")
        if not isinstance(value, expected):
            raise ConfigurationError(f"'{section_name}.{key}' has the wrong type: {value!r}")
        values[key] = value
    return values


def build_connection_config(config: Dict[str, Any]) -> ConnectionConfig:
    """Builds the ConnectionConfig from the `mqtt` section. The host is validated later, at start()."""
    values = _typed_values(_section(config, "mqtt"), _CONNECTION_FIELDS, "mqtt")
    values.setdefault("host", "")
    return ConnectionConfig(**values)


def build_retry_policy(config: Dict[str, Any]) -> RetryPolicy:
    return RetryPolicy(**_typed_values(_section(config, "retry"), _RETRY_FIELDS, "retry"))


def max_messages(config: Dict[str, Any]) -> Optional[int]:
    value = _section(config, "messages").get("max_messages")
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigurationError(f"'messages.max_messages' must be a positive integer, got {value!r}")
    return value


def default_topic(config: Dict[str, Any]) -> str:
    return _section(config, "topics").get("default") or DEFAULT_TOPIC
