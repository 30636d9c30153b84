"""MQTT subscriber that acknowledges messages only when the handler says so."""

from __future__ import annotations

import logging
from threading import Event, Lock, Thread, current_thread
from typing import Any, Callable, Optional

from services.ingestion import AckDecision
from transport.client import TransportConnectError, create_mqtt_client

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], AckDecision]


class MQTTSubscriber:
    """QoS 1 subscription on a persistent session with manual acknowledgment.

    An MQTT 3.1.1 broker resends unacknowledged messages only when the session
    reconnects. A ``retry`` decision therefore wakes a redelivery worker that
    disconnects and reopens the same session after ``redelivery_delay``
    seconds. The delay doubles while retries keep coming, up to
    ``max_redelivery_delay``, and drops back after the next acknowledged
    message. Retries that arrive while a reset is pending share that reset.
    """

    def __init__(
        self,
        broker_host: str,
        broker_port: int,
        topic: str,
        handler: MessageHandler,
        client_id: str = "telemetry_bridge",
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = False,
        qos: int = 1,
        client_factory: Callable[..., Any] = create_mqtt_client,
        redelivery_delay: float = 1.0,
        max_redelivery_delay: float = 60.0,
    ) -> None:
        self.broker_host = broker_host
        self.broker_port = broker_port
        self.topic = topic
        self.qos = qos
        self.redelivery_delay = redelivery_delay
        self.max_redelivery_delay = max_redelivery_delay
        self.session_resets = 0
        self._handler = handler
        self._connected = Event()
        self._redelivery_requested = Event()
        self._stopping = Event()
        self._delay_lock = Lock()
        self._next_delay = redelivery_delay
        self._worker: Optional[Thread] = None
        self._client = client_factory(
            client_id=client_id,
            username=username,
            password=password,
            use_tls=use_tls,
            clean_session=False,
            manual_ack=True,
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

    def connect(self, timeout: float = 10.0) -> None:
        """Connect and subscribe, raising if the broker does not accept in time."""
        logger.info("Connecting to MQTT broker %s:%d", self.broker_host, self.broker_port)
        try:
            self._client.connect(self.broker_host, self.broker_port, keepalive=60)
        except OSError as exc:
            raise TransportConnectError(
                f"Could not reach MQTT broker {self.broker_host}:{self.broker_port}: {exc}"
            ) from exc

        self._client.loop_start()
        if not self._connected.wait(timeout):
            try:
                self._client.disconnect()
            finally:
                self._client.loop_stop()
            raise TransportConnectError(
                f"Timed out after {timeout}s waiting for MQTT broker "
                f"{self.broker_host}:{self.broker_port}"
            )

        self._stopping.clear()
        if self._worker is None or not self._worker.is_alive():
            self._worker = Thread(target=self._redelivery_loop, name="mqtt-redelivery", daemon=True)
            self._worker.start()

    def disconnect(self) -> None:
        self._stopping.set()
        self._redelivery_requested.set()
        worker = self._worker
        if worker is not None and worker is not current_thread():
            worker.join()
        self._worker = None
        try:
            self._client.disconnect()
        finally:
            self._client.loop_stop()
            self._connected.clear()
        logger.info("Disconnected from MQTT broker")

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code != 0:
            logger.error("MQTT broker refused connection: %s", reason_code)
            return
        client.subscribe(self.topic, qos=self.qos)
        self._connected.set()
        logger.info("Subscribed to MQTT topic", extra={"topic": self.topic})

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        self._connected.clear()
        if reason_code != 0:
            logger.warning("MQTT connection lost (%s); reconnecting", reason_code)

    def _on_message(self, client, userdata, message) -> None:
        try:
            decision = self._handler(message.topic, message.payload)
        except Exception:
            logger.exception(
                "Message handler raised; leaving message unacknowledged",
                extra={"topic": message.topic},
            )
            self._redelivery_requested.set()
            return
        if decision is AckDecision.ack:
            client.ack(message.mid, message.qos)
            with self._delay_lock:
                self._next_delay = self.redelivery_delay
        else:
            self._redelivery_requested.set()

    def _redelivery_loop(self) -> None:
        while not self._stopping.is_set():
            self._redelivery_requested.wait()
            if self._stopping.is_set():
                return
            with self._delay_lock:
                delay = self._next_delay
                self._next_delay = min(delay * 2, self.max_redelivery_delay)
            if self._stopping.wait(delay):
                return
            self._redelivery_requested.clear()
            self._reset_session(delay)

    def _reset_session(self, delay: float) -> None:
        """Reopen the persistent session so the broker resends unacknowledged messages."""
        logger.warning(
            "Reconnecting MQTT session to redeliver unacknowledged messages",
            extra={"topic": self.topic, "reason": f"backoff {delay}s"},
        )
        try:
            self._client.disconnect()
        finally:
            self._client.loop_stop()
            self._connected.clear()
        # paho retries connect_async from the network thread with its reconnect backoff
        self._client.connect_async(self.broker_host, self.broker_port, keepalive=60)
        self.session_resets += 1
        self._client.loop_start()
