"""
MQTT broker client for soqtt.

Thin blocking facade over paho-mqtt: connect() waits for CONNACK, publish()
waits until the packet is written, subscribe() waits for SUBACK. Incoming
messages are handed to per-topic handlers on a single dispatch worker so a
slow handler never stalls the paho network loop.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from soqtt.config import BrokerAddress

logger = logging.getLogger(__name__)

MessageHandler = Callable[[bytes], None]

QOS_AT_MOST_ONCE = 0


class BrokerError(RuntimeError):
    """Raised when a broker operation fails."""


class BrokerClient:
    """
    Publish/subscribe capability shared by both relays.
    Safe for concurrent publish() and subscribe() from different threads.
    """

    def __init__(
        self,
        broker: BrokerAddress,
        client_id: str,
        *,
        keepalive: int = 60,
        connect_timeout: float = 10.0,
        op_timeout: float = 10.0,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.broker = broker
        self.client_id = client_id
        self.keepalive = keepalive
        self.connect_timeout = connect_timeout
        self.op_timeout = op_timeout
        self._log = log or logger

        self._client: Optional[mqtt.Client] = None
        # one worker keeps delivery order per topic
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mqtt-dispatch")

        self._handlers: dict[str, MessageHandler] = {}
        self._handlers_lock = threading.Lock()

        self._connack = threading.Event()
        self._connack_rc: Any = None

        self._suback_cond = threading.Condition()
        self._suback: dict[int, list[Any]] = {}
        # resubscribe mids from _on_connect; nobody waits on their SUBACK
        self._untracked_mids: set[int] = set()

    # -------------------------
    # paho callbacks
    # -------------------------
    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, rc: Any, properties: Any = None) -> None:
        self._connack_rc = rc
        first = not self._connack.is_set()
        self._connack.set()
        if rc.is_failure:
            self._log.error("MQTT connect refused: %s", rc)
            return

        self._log.info("Connected to MQTT broker %s as %s", self.broker, self.client_id)
        if first:
            return

        # clean session: subscriptions do not survive a reconnect
        with self._handlers_lock:
            topics = list(self._handlers.keys())
        for topic in topics:
            result, mid = client.subscribe(topic, qos=QOS_AT_MOST_ONCE)
            if result != mqtt.MQTT_ERR_SUCCESS:
                self._log.error("Resubscribe to %s failed: %s", topic, mqtt.error_string(result))
                continue
            with self._suback_cond:
                self._untracked_mids.add(mid)
            self._log.info("Resubscribed: %s", topic)

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, flags: Any, rc: Any, properties: Any = None) -> None:
        if rc.is_failure:
            self._log.warning("Unexpected disconnect from MQTT broker: %s", rc)
        else:
            self._log.info("Disconnected from MQTT broker")

    def _on_subscribe(self, client: mqtt.Client, userdata: Any, mid: int, reason_codes: list[Any], properties: Any = None) -> None:
        with self._suback_cond:
            if mid in self._untracked_mids:
                self._untracked_mids.discard(mid)
                if any(rc.is_failure for rc in reason_codes):
                    self._log.error("Broker rejected resubscription (mid %s): %s", mid, reason_codes)
                return
            self._suback[mid] = list(reason_codes)
            self._suback_cond.notify_all()

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        with self._handlers_lock:
            handler = self._handlers.get(msg.topic)
        if not handler:
            self._log.warning("Unhandled topic: %s", msg.topic)
            return
        self._executor.submit(self._dispatch, handler, msg.topic, bytes(msg.payload))

    def _dispatch(self, handler: MessageHandler, topic: str, payload: bytes) -> None:
        try:
            handler(payload)
        except Exception:
            self._log.exception("Handler for %s failed", topic)

    # -------------------------
    # public API
    # -------------------------
    def connect(self) -> None:
        """Connect and wait for the broker to accept. Raises BrokerError."""
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
            clean_session=True,
        )
        if self.broker.username:
            client.username_pw_set(self.broker.username, self.broker.password)
        if self.broker.tls:
            client.tls_set()

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message

        self._connack.clear()
        try:
            client.connect(self.broker.host, self.broker.port, keepalive=self.keepalive)
        except (OSError, ValueError) as exc:
            raise BrokerError(f"cannot reach broker {self.broker}: {exc}") from exc
        client.loop_start()

        if not self._connack.wait(timeout=self.connect_timeout):
            client.loop_stop()
            raise BrokerError(f"no CONNACK from {self.broker} within {self.connect_timeout}s")
        if self._connack_rc.is_failure:
            client.loop_stop()
            raise BrokerError(f"broker {self.broker} refused connection: {self._connack_rc}")

        self._client = client

    def disconnect(self) -> None:
        if not self._client:
            return
        try:
            self._client.loop_stop()
            self._client.disconnect()
        finally:
            self._client = None
            self._executor.shutdown(wait=False, cancel_futures=True)

    def is_connected(self) -> bool:
        return bool(self._client and self._client.is_connected())

    def publish(self, topic: str, payload: bytes) -> None:
        """Publish at QoS 0, not retained; returns once written. Raises BrokerError."""
        if not self._client:
            raise BrokerError("MQTT client not connected")

        info = self._client.publish(topic, payload=payload, qos=QOS_AT_MOST_ONCE, retain=False)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise BrokerError(f"publish to {topic} failed: {mqtt.error_string(info.rc)}")
        try:
            info.wait_for_publish(timeout=self.op_timeout)
        except (RuntimeError, ValueError) as exc:
            raise BrokerError(f"publish to {topic} failed: {exc}") from exc
        if not info.is_published():
            raise BrokerError(f"publish to {topic} timed out")

    def subscribe(self, topic: str, handler: MessageHandler) -> None:
        """Register handler for topic and wait for SUBACK. Raises BrokerError."""
        if not self._client:
            raise BrokerError("MQTT client not connected")

        with self._handlers_lock:
            self._handlers[topic] = handler

        result, mid = self._client.subscribe(topic, qos=QOS_AT_MOST_ONCE)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._drop_handler(topic)
            raise BrokerError(f"subscribe to {topic} failed: {mqtt.error_string(result)}")

        with self._suback_cond:
            acked = self._suback_cond.wait_for(lambda: mid in self._suback, timeout=self.op_timeout)
            codes = self._suback.pop(mid, [])
        if not acked:
            self._drop_handler(topic)
            raise BrokerError(f"no SUBACK for {topic} within {self.op_timeout}s")
        if any(rc.is_failure for rc in codes):
            self._drop_handler(topic)
            raise BrokerError(f"broker rejected subscription to {topic}: {codes}")

        self._log.info("Subscribed: %s", topic)

    def _drop_handler(self, topic: str) -> None:
        with self._handlers_lock:
            self._handlers.pop(topic, None)
