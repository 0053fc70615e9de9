# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""MQTT publisher: snapshot state, bridge status and supervisor events.

Registered with the BroadcastHub as an observer, so every published
snapshot update lands on ``{prefix}/{kind}/state`` (retained).
"""

import json
import logging
import time

import paho.mqtt.client as mqtt

from .config import Config

logger = logging.getLogger(__name__)


class MQTTHandler:
    def __init__(self, config: Config):
        self.config = config
        self.prefix = config.mqtt_topic_prefix

        self._connected: bool = False
        self._reconnect_count: int = 0
        self._last_connect_time: float | None = None
        self._last_disconnect_time: float | None = None
        self._publish_errors: int = 0
        self._total_publishes: int = 0

        # Retained publishes queued while disconnected (max 100)
        self._pending_publishes: list[tuple[str, str, bool, int]] = []
        self._max_pending = 100

        self.client = mqtt.Client(
            client_id=f"{self.prefix}-supervisor",
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        self.client.will_set(self.status_topic, "offline", qos=1, retain=True)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.reconnect_delay_set(min_delay=1, max_delay=30)

    @property
    def status_topic(self) -> str:
        return f"{self.prefix}/bridge/status"

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self):
        logger.info("Connecting to MQTT broker %s:%d", self.config.mqtt_broker, self.config.mqtt_port)
        if self.config.mqtt_username:
            self.client.username_pw_set(
                self.config.mqtt_username, self.config.mqtt_password
            )
            logger.info("MQTT authentication configured for user %s", self.config.mqtt_username)

        try:
            self.client.connect(self.config.mqtt_broker, self.config.mqtt_port, keepalive=60)
            self.client.loop_start()
        except Exception:
            logger.exception("Failed to connect to MQTT broker")

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        logger.info("MQTT connected (rc=%s)", reason_code)
        if self._last_connect_time is not None:
            self._reconnect_count += 1
            logger.info("MQTT reconnected (count=%d)", self._reconnect_count)
        self._connected = True
        self._last_connect_time = time.time()

        client.publish(self.status_topic, "online", qos=1, retain=True)

        if self._pending_publishes:
            drained = len(self._pending_publishes)
            for topic, payload, retain, qos in self._pending_publishes:
                try:
                    client.publish(topic, payload, qos=qos, retain=retain)
                except Exception:
                    logger.debug("Pending publish to %s failed", topic, exc_info=True)
            self._pending_publishes.clear()
            logger.info("Drained %d pending publishes after reconnect", drained)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        logger.warning("MQTT disconnected (rc=%s)", reason_code)
        self._connected = False
        self._last_disconnect_time = time.time()

    def get_status(self) -> dict:
        return {
            "connected": self._connected,
            "reconnect_count": self._reconnect_count,
            "last_connect": self._last_connect_time,
            "last_disconnect": self._last_disconnect_time,
            "broker": self.config.mqtt_broker,
            "port": self.config.mqtt_port,
            "publish_errors": self._publish_errors,
            "total_publishes": self._total_publishes,
            "pending": len(self._pending_publishes),
        }

    def _publish(self, topic: str, payload, retain: bool = False, qos: int = 0):
        """Publish with error tracking. Queues retained messages on failure."""
        self._total_publishes += 1
        try:
            info = self.client.publish(topic, payload, qos=qos, retain=retain)
            if info.rc == mqtt.MQTT_ERR_SUCCESS:
                return
            self._publish_errors += 1
            if self._publish_errors % 100 == 1:
                logger.warning("MQTT publish failed (rc=%s, topic=%s)", info.rc, topic)
        except Exception:
            self._publish_errors += 1
            if self._publish_errors % 100 == 1:
                logger.exception("MQTT publish exception (topic=%s)", topic)
        if retain and len(self._pending_publishes) < self._max_pending:
            self._pending_publishes.append((topic, str(payload), retain, qos))

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def send(self, payload: str) -> None:
        """Observer entry point: route a snapshot to its kind's state topic."""
        kind = json.loads(payload).get("type", "unknown")
        self._publish(f"{self.prefix}/{kind}/state", payload, retain=True)

    def publish_event(self, event: dict):
        self._publish(f"{self.prefix}/events", json.dumps(event))

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    def disconnect(self):
        """Publish offline status and disconnect."""
        self._publish(self.status_topic, "offline", qos=1, retain=True)
        try:
            self.client.loop_stop()
            self.client.disconnect()
        except Exception:
            logger.debug("Error during MQTT disconnect", exc_info=True)
