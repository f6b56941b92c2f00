"""MQTT client wrapper for the bridge.

Provides JSON publish/subscribe plus Home Assistant auto-discovery and
an availability topic backed by a last-will message, so HA marks every
bridge entity unavailable when the process dies.

Topic convention:
    homelab/{service_name}/{event_type}

Usage:
    from shared.mqtt_client import MQTTClient
    from shared.config import Settings

    settings = Settings()
    mqtt = MQTTClient(
        host=settings.mqtt_host,
        port=settings.mqtt_port,
        client_id="wallbox-bridge",
        availability_topic="homelab/wallbox-bridge/availability",
    )
    mqtt.connect_background()
    mqtt.publish("homelab/wallbox-bridge/status", {"ocpp_mismatch": False})
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import paho.mqtt.client as mqtt

from shared.log import get_logger

logger = get_logger("mqtt-client")

ONLINE = "online"
OFFLINE = "offline"

MessageHandler = Callable[[str, dict[str, Any]], None]


class MQTTClient:
    """MQTT pub/sub client wrapping paho-mqtt."""

    def __init__(
        self,
        host: str = "mqtt",
        port: int = 1883,
        client_id: str = "",
        username: str = "",
        password: str = "",
        availability_topic: str = "",
    ) -> None:
        self.host = host
        self.port = port
        self.availability_topic = availability_topic
        self._handlers: dict[str, list[MessageHandler]] = {}

        self._client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
        )
        if username:
            self._client.username_pw_set(username, password)
        if availability_topic:
            self._client.will_set(availability_topic, OFFLINE, qos=1, retain=True)

        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

    def _on_connect(self, client: Any, userdata: Any, flags: Any, rc: Any, properties: Any = None) -> None:
        logger.info("mqtt_connected", host=self.host, port=self.port)
        if self.availability_topic:
            self._client.publish(self.availability_topic, ONLINE, qos=1, retain=True)
        # Re-subscribe on reconnect
        for topic in self._handlers:
            self._client.subscribe(topic)

    def _on_disconnect(self, client: Any, userdata: Any, flags: Any, rc: Any, properties: Any = None) -> None:
        logger.warning("mqtt_disconnected", host=self.host, reason=str(rc))

    def _on_message(self, client: Any, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        try:
            payload = json.loads(msg.payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            payload = {"raw": msg.payload.decode(errors="replace")}
        # Plain values like "1" or "16" decode to scalars
        if not isinstance(payload, dict):
            payload = {"value": payload}

        handlers = self._handlers.get(msg.topic, [])
        # Also check wildcard subscriptions
        for pattern, pattern_handlers in self._handlers.items():
            if "#" in pattern or "+" in pattern:
                if mqtt.topic_matches_sub(pattern, msg.topic):
                    handlers = handlers + pattern_handlers

        for handler in handlers:
            try:
                handler(msg.topic, payload)
            except Exception:
                logger.exception("mqtt_handler_error", topic=msg.topic)

    def subscribe(self, topic: str, handler: MessageHandler) -> None:
        """Register a handler for a topic (supports MQTT wildcards)."""
        if topic not in self._handlers:
            self._handlers[topic] = []
        self._handlers[topic].append(handler)
        if self._client.is_connected():
            self._client.subscribe(topic)

    def publish(self, topic: str, payload: dict[str, Any] | str, retain: bool = False) -> None:
        """Publish a JSON message to a topic."""
        data = json.dumps(payload) if isinstance(payload, dict) else payload
        self._client.publish(topic, data, qos=1, retain=retain)

    def connect_background(self) -> None:
        """Connect and start the network loop in a background thread."""
        self._client.connect(self.host, self.port)
        self._client.loop_start()

    def publish_ha_discovery(
        self,
        component: str,
        object_id: str,
        config: dict[str, Any],
        node_id: str = "",
    ) -> None:
        """Publish an HA MQTT auto-discovery config message.

        Args:
            component: HA platform type (e.g. "sensor", "binary_sensor").
            object_id: Unique ID for this entity (e.g. "ocpp_mismatch").
            config: HA discovery config dict (name, state_topic, etc.).
            node_id: Optional grouping node (e.g. "wallbox_bridge").
        """
        if node_id:
            topic = f"homeassistant/{component}/{node_id}/{object_id}/config"
        else:
            topic = f"homeassistant/{component}/{object_id}/config"

        if "unique_id" not in config:
            config["unique_id"] = f"{node_id}_{object_id}" if node_id else object_id
        if self.availability_topic and "availability_topic" not in config:
            config["availability_topic"] = self.availability_topic

        self._client.publish(topic, json.dumps(config), qos=1, retain=True)
        logger.info("ha_discovery_published", component=component, object_id=object_id)

    def disconnect(self) -> None:
        """Mark the bridge offline, stop the loop and disconnect."""
        if self.availability_topic and self._client.is_connected():
            self._client.publish(self.availability_topic, OFFLINE, qos=1, retain=True).wait_for_publish(2)
        self._client.loop_stop()
        self._client.disconnect()
