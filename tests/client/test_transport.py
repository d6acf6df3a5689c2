import asyncio
import os

import aiomqtt
import paho.mqtt.client as mqtt
import pytest
from aiomqtt import ProtocolVersion

from mqtt_ws_connector.client.connection import ConnectionManager
from mqtt_ws_connector.client.diagnostics import TRANSPORT_ERROR
from mqtt_ws_connector.client.models import ConnectionConfig, ConnectionState, ConnectOptions, RetryPolicy
from mqtt_ws_connector.client.transport import AiomqttSession, AiomqttTransport
from mqtt_ws_connector.exceptions import ConfigurationError

"""
aiomqtt Transport Tests.
Replaces aiomqtt.Client with an in-memory stand-in and checks that the
callback contract (exactly one of success/failure, loss after success,
message forwarding) is honoured.
"""

_CLOSE = object()


class FakeMessage:
    def __init__(self, topic, payload):
        self.topic = topic
        self.payload = payload


class FakeClient:
    """Async context manager mimicking the parts of aiomqtt.Client we use."""
    instances = []

    def __init__(self, hostname, port, **kwargs):
        self.hostname = hostname
        self.port = port
        self.kwargs = kwargs
        self.enter_error = None
        self.stream_error = None
        self.exited = False
        self.subscribed = []
        self.published = []
        self._queue = asyncio.Queue()
        FakeClient.instances.append(self)

    async def __aenter__(self):
        await asyncio.sleep(0)
        if self.enter_error is not None:
            raise self.enter_error
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.exited = True
        return False

    @property
    def messages(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                if self.stream_error is not None:
                    raise self.stream_error
                return
            yield item

    def push(self, topic, payload):
        self._queue.put_nowait(FakeMessage(topic, payload))

    def close_stream(self, error=None):
        self.stream_error = error
        self._queue.put_nowait(_CLOSE)

    async def subscribe(self, topic):
        self.subscribed.append(topic)

    async def publish(self, topic, payload=None):
        self.published.append((topic, payload))


class CrashingClient(FakeClient):
    """Fails the handshake with an error aiomqtt does not wrap."""
    async def __aenter__(self):
        raise ValueError("Keepalive must be >=0.")


class Recorder:
    def __init__(self):
        self.successes = 0
        self.failures = []
        self.lost = []
        self.messages = []

    def on_success(self):
        self.successes += 1

    def on_failure(self, code, message):
        self.failures.append((code, message))

    def on_connection_lost(self, code, message):
        self.lost.append((code, message))

    def on_message_arrived(self, topic, payload):
        self.messages.append((topic, payload))


@pytest.fixture
def fake_client(mocker):
    FakeClient.instances = []
    mocker.patch("mqtt_ws_connector.client.transport.aiomqtt.Client", FakeClient)
    return FakeClient


@pytest.fixture
def recorder():
    return Recorder()


def open_session(recorder, path="/mqtt"):
    session = AiomqttSession("broker.local", 8000, path, "mqttws_test")
    session.on_connection_lost = recorder.on_connection_lost
    session.on_message_arrived = recorder.on_message_arrived
    return session


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_client_is_built_for_websockets(fake_client, recorder):
    session = open_session(recorder, path="/ws")
    session.connect(ConnectOptions(use_tls=True, username="u", password="p", keepalive_seconds=20),
                    recorder.on_success, recorder.on_failure)

    client = fake_client.instances[0]
    assert (client.hostname, client.port) == ("broker.local", 8000)
    assert client.kwargs["transport"] == "websockets"
    assert client.kwargs["websocket_path"] == "/ws"
    assert client.kwargs["identifier"] == "mqttws_test"
    assert client.kwargs["username"] == "u"
    assert client.kwargs["password"] == "p"
    assert client.kwargs["keepalive"] == 20
    assert client.kwargs["protocol"] == ProtocolVersion.V311
    assert isinstance(client.kwargs["tls_params"], aiomqtt.TLSParameters)
    assert session.url == "wss://broker.local:8000/ws"

    session.disconnect()
    await session.wait_closed()


@pytest.mark.asyncio
async def test_plain_websocket_has_no_tls(fake_client, recorder):
    session = open_session(recorder)
    session.connect(ConnectOptions(), recorder.on_success, recorder.on_failure)

    assert fake_client.instances[0].kwargs["tls_params"] is None
    assert session.url == "ws://broker.local:8000/mqtt"
    session.disconnect()
    await session.wait_closed()


@pytest.mark.asyncio
async def test_successful_handshake_and_message_forwarding(fake_client, recorder):
    session = open_session(recorder)
    session.connect(ConnectOptions(), recorder.on_success, recorder.on_failure)
    await settle()

    assert recorder.successes == 1
    assert session.is_connected()

    client = fake_client.instances[0]
    client.push("psu/drone", b'{"message": "hi"}')
    await settle()

    assert recorder.messages == [("psu/drone", '{"message": "hi"}')]
    assert recorder.failures == []
    session.disconnect()
    await session.wait_closed()


@pytest.mark.asyncio
async def test_rejected_handshake_reports_reason_code(fake_client, recorder):
    session = open_session(recorder)
    session.connect(ConnectOptions(), recorder.on_success, recorder.on_failure)
    fake_client.instances[0].enter_error = aiomqtt.MqttCodeError(134, "Bad user name or password")
    await settle()

    assert recorder.successes == 0
    assert len(recorder.failures) == 1
    assert recorder.failures[0][0] == 134
    assert recorder.lost == []
    assert not session.is_connected()
    assert session.closed


@pytest.mark.asyncio
async def test_unreachable_broker_reports_transport_error(fake_client, recorder):
    session = open_session(recorder)
    session.connect(ConnectOptions(), recorder.on_success, recorder.on_failure)
    fake_client.instances[0].enter_error = aiomqtt.MqttError("[Errno 111] Connection refused")
    await settle()

    assert recorder.failures == [(TRANSPORT_ERROR, "[Errno 111] Connection refused")]
    assert recorder.lost == []


@pytest.mark.asyncio
async def test_dropped_connection_reports_loss(fake_client, recorder):
    session = open_session(recorder)
    session.connect(ConnectOptions(), recorder.on_success, recorder.on_failure)
    await settle()

    fake_client.instances[0].close_stream(aiomqtt.MqttError("Disconnected during message iteration"))
    await settle()

    assert recorder.lost == [(mqtt.MQTT_ERR_CONN_LOST, "Disconnected during message iteration")]
    assert recorder.failures == []
    assert not session.is_connected()


@pytest.mark.asyncio
async def test_disconnect_does_not_report_loss(fake_client, recorder):
    session = open_session(recorder)
    session.connect(ConnectOptions(), recorder.on_success, recorder.on_failure)
    await settle()

    session.disconnect()
    session.disconnect()
    await session.wait_closed()

    assert fake_client.instances[0].exited
    assert recorder.lost == []
    assert session.closed


@pytest.mark.asyncio
async def test_connect_twice_is_refused(fake_client, recorder):
    session = open_session(recorder)
    session.connect(ConnectOptions(), recorder.on_success, recorder.on_failure)
    with pytest.raises(RuntimeError):
        session.connect(ConnectOptions(), recorder.on_success, recorder.on_failure)
    assert len(fake_client.instances) == 1
    session.disconnect()
    await session.wait_closed()


@pytest.mark.asyncio
async def test_subscribe_and_publish_run_in_background(fake_client, recorder):
    session = open_session(recorder)
    session.subscribe("ignored")
    session.connect(ConnectOptions(), recorder.on_success, recorder.on_failure)
    await settle()

    session.subscribe("psu/drone")
    session.publish("psu/drone", '{"message": "x"}')
    await settle()

    client = fake_client.instances[0]
    assert client.subscribed == ["psu/drone"]
    assert client.published == [("psu/drone", '{"message": "x"}')]
    session.disconnect()
    await session.wait_closed()


@pytest.mark.asyncio
async def test_transport_tracks_and_closes_sessions(fake_client, recorder):
    transport = AiomqttTransport()
    session = transport.open("broker.local", 8000, "/mqtt", "mqttws_a")
    session.connect(ConnectOptions(), recorder.on_success, recorder.on_failure)
    await settle()

    await transport.aclose()

    assert fake_client.instances[0].exited
    assert session.closed
    assert recorder.lost == []


def test_transport_rejects_empty_host():
    with pytest.raises(ConfigurationError):
        AiomqttTransport().open("", 8000, "/mqtt", "mqttws_a")


@pytest.mark.asyncio
@pytest.mark.skipif(not os.environ.get("MQTT_WS_TEST_HOST"), reason="set MQTT_WS_TEST_HOST to run against a real broker")
async def test_real_broker_round_trip(recorder):
    """
    Integration Test: connects to a real WebSocket listener, subscribes and
    receives its own publish.
    """
    host = os.environ["MQTT_WS_TEST_HOST"]
    port = int(os.environ.get("MQTT_WS_TEST_PORT", "8000"))
    session = AiomqttSession(host, port, os.environ.get("MQTT_WS_TEST_PATH", "/mqtt"), "mqttws_itest")
    session.on_message_arrived = recorder.on_message_arrived
    session.on_connection_lost = recorder.on_connection_lost

    connected = asyncio.get_running_loop().create_future()
    session.connect(ConnectOptions(timeout_seconds=10),
                    lambda: connected.set_result(True),
                    lambda code, message: connected.set_exception(RuntimeError(f"{code}: {message}")))
    await asyncio.wait_for(connected, timeout=15)

    session.subscribe("mqttws/itest")
    await asyncio.sleep(0.5)
    session.publish("mqttws/itest", '{"message": "ping"}')

    for _ in range(50):
        if recorder.messages:
            break
        await asyncio.sleep(0.1)

    session.disconnect()
    await session.wait_closed()
    assert recorder.messages == [("mqttws/itest", '{"message": "ping"}')]


# --- Errors aiomqtt does not wrap ---

@pytest.mark.asyncio
async def test_unexpected_handshake_error_reports_failure(fake_client, recorder):
    session = open_session(recorder)
    session.connect(ConnectOptions(), recorder.on_success, recorder.on_failure)
    fake_client.instances[0].enter_error = ValueError("Keepalive must be >=0.")
    await settle()

    assert recorder.failures == [(TRANSPORT_ERROR, "Keepalive must be >=0.")]
    assert recorder.successes == 0
    assert recorder.lost == []
    assert session.closed


@pytest.mark.asyncio
async def test_unexpected_stream_error_reports_loss(fake_client, recorder):
    session = open_session(recorder)
    session.connect(ConnectOptions(), recorder.on_success, recorder.on_failure)
    await settle()

    fake_client.instances[0].close_stream(RuntimeError("decoder blew up"))
    await settle()

    assert recorder.lost == [(TRANSPORT_ERROR, "decoder blew up")]
    assert recorder.failures == []
    assert not session.is_connected()
    assert session.closed


@pytest.mark.asyncio
async def test_manager_retries_after_unexpected_handshake_error(fake_client, mocker):
    mocker.patch("mqtt_ws_connector.client.transport.aiomqtt.Client", CrashingClient)
    manager = ConnectionManager(AiomqttTransport(), RetryPolicy(max_attempts=2, delay_seconds=0.01))
    manager.start(ConnectionConfig(host="broker.local"))

    for _ in range(50):
        if manager.state == ConnectionState.FAILED:
            break
        await asyncio.sleep(0.01)

    assert manager.state == ConnectionState.FAILED
    assert manager.retry_count == 2
    assert manager.last_error.code == TRANSPORT_ERROR
    assert len(fake_client.instances) == 2
    manager.teardown()


def test_manager_start_outside_event_loop_does_not_get_stuck(fake_client):
    manager = ConnectionManager(AiomqttTransport(), RetryPolicy(max_attempts=3))

    manager.start(ConnectionConfig(host="broker.local"))

    assert manager.state == ConnectionState.FAILED
    assert manager.last_error.code == TRANSPORT_ERROR
