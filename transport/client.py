"""Shared construction of paho MQTT clients."""

from __future__ import annotations

import logging
from threading import Event
from typing import Optional

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)


class TransportConnectError(RuntimeError):
    """Broker could not be reached within the allotted time."""


def create_mqtt_client(
    client_id: str,
    username: Optional[str] = None,
    password: Optional[str] = None,
    use_tls: bool = False,
    clean_session: bool = True,
    manual_ack: bool = False,
) -> mqtt.Client:
    """Build an MQTT 3.1.1 client using the version 2 callback API."""
    client = mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
        protocol=mqtt.MQTTv311,
        clean_session=clean_session,
        manual_ack=manual_ack,
    )
    if username:
        client.username_pw_set(username, password)
    if use_tls:
        client.tls_set()
    client.reconnect_delay_set(min_delay=1, max_delay=60)
    return client


def probe_broker(
    host: str,
    port: int,
    client_id: str,
    username: Optional[str] = None,
    password: Optional[str] = None,
    use_tls: bool = False,
    timeout: float = 10.0,
    topic: str = "test/connection",
    payload: str = "",
) -> None:
    """Connect, publish one QoS 1 test message and disconnect.

    Raises :class:`TransportConnectError` when any step does not complete
    within ``timeout`` seconds.
    """
    connected = Event()

    def on_connect(client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code == 0:
            connected.set()
        else:
            logger.error("MQTT broker refused connection: %s", reason_code)

    client = create_mqtt_client(
        client_id=client_id,
        username=username,
        password=password,
        use_tls=use_tls,
    )
    client.on_connect = on_connect
    try:
        client.connect(host, port, keepalive=30)
    except OSError as exc:
        raise TransportConnectError(f"Could not reach MQTT broker {host}:{port}: {exc}") from exc

    client.loop_start()
    try:
        if not connected.wait(timeout):
            raise TransportConnectError(
                f"Could not connect to broker {host}:{port} within {timeout} seconds"
            )
        info = client.publish(topic, payload, qos=1)
        try:
            info.wait_for_publish(timeout=timeout)
        except RuntimeError as exc:
            raise TransportConnectError(f"Publishing test message failed: {exc}") from exc
        if not info.is_published():
            raise TransportConnectError(f"Test message to {topic!r} was not acknowledged")
    finally:
        client.disconnect()
        client.loop_stop()
