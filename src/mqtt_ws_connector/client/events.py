"""
Tagged Events consumed by the Connection Manager.

Every transport callback and every deferred action is turned into one of
these small immutable records and fed to a single transition function.
Each event carries the lifecycle token that was current when its source
(a session handle or a scheduled retry) was created, so the manager can
drop events that belong to a lifecycle it has already left.
"""
from dataclasses import dataclass
from typing import Union

from mqtt_ws_connector.client.models import ConnectionConfig


@dataclass(frozen=True)
class SessionConnected:
    token: int


@dataclass(frozen=True)
class SessionConnectFailed:
    token: int
    code: int
    message: str


@dataclass(frozen=True)
class SessionConnectionLost:
    token: int
    code: int
    message: str


@dataclass(frozen=True)
class SessionMessageArrived:
    token: int
    topic: str
    payload: str


@dataclass(frozen=True)
class RetryTimerFired:
    token: int
    config: ConnectionConfig


SessionEvent = Union[SessionConnected, SessionConnectFailed, SessionConnectionLost, SessionMessageArrived]
ConnectionEvent = Union[SessionEvent, RetryTimerFired]
