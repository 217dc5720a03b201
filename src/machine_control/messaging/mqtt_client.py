"""
MQTT Transport Module
Publishes control messages and delivers machine telemetry, acks and status
reports from the factory broker
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import paho.mqtt.client as mqtt
from paho.mqtt.client import topic_matches_sub

from ..config.settings import MqttConfig, settings
from .topics import encode_payload

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], None]


@dataclass
class TransportMetrics:
    """Metrics for monitoring the transport"""
    messages_received: int = 0
    messages_published: int = 0
    publish_failures: int = 0
    handler_errors: int = 0
    connects: int = 0
    disconnects: int = 0
    topics_received: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    last_message_time: Optional[datetime] = None
    start_time: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary"""
        return {
            'messages_received': self.messages_received,
            'messages_published': self.messages_published,
            'publish_failures': self.publish_failures,
            'handler_errors': self.handler_errors,
            'connects': self.connects,
            'disconnects': self.disconnects,
            'topics_received': dict(self.topics_received),
            'last_message_time': self.last_message_time.isoformat() if self.last_message_time else None,
            'runtime_seconds': (datetime.now() - self.start_time).total_seconds()
        }


class MqttTransport:
    """
    paho-mqtt publish/subscribe transport

    The network loop runs on paho's background thread, which reconnects with
    exponential backoff after a drop. Every registered subscription pattern is
    re-subscribed on each successful connect.
    """

    def __init__(self, config: Optional[MqttConfig] = None):
        """
        Initialize MQTT transport

        Args:
            config: Broker settings; defaults to the loaded configuration
        """
        self.config = config or settings.get_mqtt_config()
        self.client: Optional[mqtt.Client] = None

        self._subscriptions: Dict[str, int] = {}
        self.message_handlers: List[MessageHandler] = []
        self._connected = threading.Event()
        self._lock = threading.Lock()

        self.metrics = TransportMetrics()

        logger.info(f"MqttTransport initialized for {self.config.host}:{self.config.port}")

    def _create_client(self) -> mqtt.Client:
        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=self.config.client_id)

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.reconnect_delay_set(
            min_delay=self.config.reconnect_min_delay,
            max_delay=self.config.reconnect_max_delay
        )
        return client

    def connect(self, wait: bool = True) -> bool:
        """
        Connect to the broker and start the network loop

        Args:
            wait: Block up to connect_timeout for the first CONNACK

        Returns:
            True if connected (or connecting when wait is False)
        """
        try:
            self.client = self._create_client()
            self.client.connect_async(self.config.host, self.config.port, keepalive=self.config.keepalive)
            self.client.loop_start()
        except (OSError, ValueError) as e:
            logger.error(f"Failed to connect to MQTT broker {self.config.url}: {e}")
            return False

        if not wait:
            return True

        if not self._connected.wait(timeout=self.config.connect_timeout):
            logger.error(f"No CONNACK from {self.config.url} within {self.config.connect_timeout}s, "
                         f"still retrying in background")
            return False

        return True

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error(f"MQTT connection refused: {reason_code}")
            return

        self.metrics.connects += 1
        self._connected.set()
        logger.info(f"Connected to MQTT broker {self.config.url}")

        with self._lock:
            subscriptions = list(self._subscriptions.items())

        if subscriptions:
            client.subscribe(subscriptions)
            logger.info(f"Subscribed to {[pattern for pattern, _ in subscriptions]}")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        self._connected.clear()
        self.metrics.disconnects += 1
        if reason_code.is_failure:
            logger.warning(f"MQTT connection lost ({reason_code}), reconnecting")
        else:
            logger.info("Disconnected from MQTT broker")

    def _on_message(self, client, userdata, msg):
        self.metrics.messages_received += 1
        self.metrics.topics_received[msg.topic] += 1
        self.metrics.last_message_time = datetime.now()
        self._dispatch(msg.topic, msg.payload)

    def _dispatch(self, topic: str, payload: bytes):
        for handler in list(self.message_handlers):
            try:
                handler(topic, payload)
            except Exception as e:
                self.metrics.handler_errors += 1
                logger.error(f"Message handler failed for {topic}: {e}")

    def subscribe(self, patterns: Iterable[str], handler: Optional[MessageHandler] = None,
                  qos: Optional[int] = None):
        """
        Register subscription patterns, kept across reconnects

        Args:
            patterns: Topic filters, wildcards allowed
            handler: Optional handler to add for the delivered messages
            qos: Subscription QoS; defaults to the configured QoS
        """
        qos = self.config.qos if qos is None else qos
        patterns = list(patterns)

        with self._lock:
            for pattern in patterns:
                self._subscriptions[pattern] = qos

        if handler is not None:
            self.add_message_handler(handler)

        if self.client is not None and self.is_connected:
            self.client.subscribe([(pattern, qos) for pattern in patterns])
            logger.info(f"Subscribed to {patterns}")

    def add_message_handler(self, handler: MessageHandler):
        """Add handler called with (topic, payload) for each delivered message"""
        self.message_handlers.append(handler)

    def publish(self, topic: str, body: Union[Dict[str, Any], bytes], qos: Optional[int] = None) -> bool:
        """
        Publish a message

        Returns:
            True if the message was queued by the client
        """
        if self.client is None:
            logger.error(f"Cannot publish to {topic}: transport not connected")
            self.metrics.publish_failures += 1
            return False

        payload = body if isinstance(body, bytes) else encode_payload(body)
        info = self.client.publish(topic, payload, qos=self.config.qos if qos is None else qos)

        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning(f"Publish to {topic} failed: {mqtt.error_string(info.rc)}")
            self.metrics.publish_failures += 1
            return False

        self.metrics.messages_published += 1
        return True

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.to_dict()

    def disconnect(self):
        """Stop the network loop and close the connection"""
        if self.client is None:
            return

        self.client.disconnect()
        self.client.loop_stop()
        self._connected.clear()
        logger.info("MQTT transport stopped")


class InMemoryTransport:
    """In-process broker stand-in for tests and local runs without MQTT"""

    def __init__(self):
        self._subscriptions: Dict[str, int] = {}
        self.message_handlers: List[MessageHandler] = []
        self.published: List[Tuple[str, Dict[str, Any]]] = []
        self.publish_ok = True
        self.connected = False
        self.metrics = TransportMetrics()
        logger.info("Using InMemoryTransport (no actual MQTT connection)")

    def connect(self, wait: bool = True) -> bool:
        self.connected = True
        self.metrics.connects += 1
        return True

    def subscribe(self, patterns: Iterable[str], handler: Optional[MessageHandler] = None,
                  qos: Optional[int] = None):
        for pattern in patterns:
            self._subscriptions[pattern] = 1 if qos is None else qos
        if handler is not None:
            self.add_message_handler(handler)

    def add_message_handler(self, handler: MessageHandler):
        self.message_handlers.append(handler)

    def publish(self, topic: str, body: Union[Dict[str, Any], bytes], qos: Optional[int] = None) -> bool:
        if not self.publish_ok:
            self.metrics.publish_failures += 1
            return False

        self.published.append((topic, body))
        self.metrics.messages_published += 1
        return True

    def inject(self, topic: str, body: Union[Dict[str, Any], bytes, str]) -> bool:
        """
        Deliver a device message synchronously to the handlers

        Returns:
            True if the topic matched a subscription
        """
        if not any(topic_matches_sub(pattern, topic) for pattern in self._subscriptions):
            return False

        if isinstance(body, dict):
            payload = encode_payload(body)
        elif isinstance(body, str):
            payload = body.encode('utf-8')
        else:
            payload = body

        self.metrics.messages_received += 1
        self.metrics.topics_received[topic] += 1
        self.metrics.last_message_time = datetime.now()

        for handler in list(self.message_handlers):
            handler(topic, payload)
        return True

    def published_to(self, topic: str) -> List[Dict[str, Any]]:
        """Bodies published to one topic, oldest first"""
        return [body for published_topic, body in self.published if published_topic == topic]

    @property
    def is_connected(self) -> bool:
        return self.connected

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.to_dict()

    def disconnect(self):
        self.connected = False


def create_transport(config: Optional[MqttConfig] = None,
                     use_mock: bool = False) -> Union[MqttTransport, InMemoryTransport]:
    """
    Factory function to create the transport

    Args:
        config: Broker settings
        use_mock: Use the in-memory transport

    Returns:
        Transport instance
    """
    if use_mock:
        return InMemoryTransport()
    return MqttTransport(config)
